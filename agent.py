#!/usr/bin/env python3
"""
Text-to-diagram generation agent.

Turns free-form text into mermaid diagram code through an OpenAI-compatible
chat completion endpoint, streaming the code as it is produced.

Each request passes the gates in a fixed order before any upstream call:

  1. input validation      empty or over-long text is rejected
  2. config resolution     custom config, access password, or server defaults
  3. session capacity      a pending turn is reserved in the conversation
  4. usage throttle        anonymous users of the defaults get a daily quota

Usage:
    python agent.py "用户登录流程"
    python agent.py "Quarterly revenue by region" --type pie
    python agent.py "Release plan" --type timeline --model gpt-4o-mini
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, field

import httpx

import config as cfg
from errors import (
    DiagramServiceError,
    InputValidationError,
    QuotaExceededError,
    UpstreamError,
)
from llm_client import GenerationConfig, ResolvedConfig, resolve_config
from prompts import AUTO, build_messages, clean_text, trim_context
from relay import RelayResult, RelayState, StreamRelay, terminal_event
from repair import RepairResult, SelfRepairLoop
from session import SessionManager
from sinks import CallbackSink, EventSink
from usage import UsageThrottle

logger = logging.getLogger(__name__)


@dataclass
class GenerationRequest:
    text: str
    diagram_type: str = AUTO
    explicit_config: GenerationConfig | None = None
    access_credential: str | None = None
    model_override: str | None = None
    # already-rendered user/assistant messages for stateless callers
    context_turns: list[dict[str, str]] | None = None


@dataclass
class PreparedGeneration:
    text: str
    resolved: ResolvedConfig
    messages: list[dict[str, str]] = field(default_factory=list)
    session_id: str | None = None
    # pending turn reserved for this generation; committed or discarded by run
    turn_id: str | None = None


class DiagramAgent:
    def __init__(
        self,
        sessions: SessionManager,
        throttle: UsageThrottle,
        *,
        defaults: GenerationConfig | None = None,
        access_secret: str | None = None,
        max_chars: int = cfg.MAX_CHARS,
        context_messages: int = cfg.CONTEXT_MESSAGES,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.sessions = sessions
        self.throttle = throttle
        self.defaults = defaults
        self.access_secret = access_secret
        self.max_chars = max_chars
        self.context_messages = context_messages
        self._http_client = http_client

    # ── Gates ─────────────────────────────────────────────────────────────────

    def validate_text(self, text: str) -> str:
        cleaned = clean_text(text or "")
        if not cleaned:
            raise InputValidationError("Please enter some text to turn into a diagram.")
        if len(cleaned) > self.max_chars:
            raise InputValidationError(
                f"Text is too long ({len(cleaned)} characters); the limit is {self.max_chars}.",
                status_code=413,
            )
        return cleaned

    def resolve(
        self,
        explicit: GenerationConfig | None,
        access_credential: str | None,
        model_override: str | None,
    ) -> ResolvedConfig:
        return resolve_config(
            explicit,
            access_credential,
            model_override,
            defaults=self.defaults,
            access_secret=self.access_secret,
        )

    def prepare(
        self,
        request: GenerationRequest,
        *,
        session_id: str | None = None,
        identity: str = "local",
    ) -> PreparedGeneration:
        """Run every gate and build the message list.

        Raises a ``DiagramServiceError`` subclass on the first gate that
        fails; the usage counter is only charged once all others passed.
        In session mode a pending turn is reserved before the quota is
        charged and released again if the quota gate refuses.
        """
        text = self.validate_text(request.text)
        resolved = self.resolve(request.explicit_config, request.access_credential, request.model_override)

        turn_id: str | None = None
        if session_id is not None:
            context = self.sessions.context_window(session_id)
            turn_id = self.sessions.begin_turn(session_id, text).id
        else:
            context = trim_context(request.context_turns or [], self.context_messages)

        if not self.throttle.check_and_increment(identity, exempt=resolved.quota_exempt):
            if turn_id is not None:
                self.sessions.discard_turn(session_id, turn_id)
            raise QuotaExceededError(
                f"Today's limit of {self.throttle.limit} generations has been reached. "
                "Enter the access password or configure your own API to keep going."
            )

        return PreparedGeneration(
            text=text,
            resolved=resolved,
            messages=build_messages(request.diagram_type, text, context),
            session_id=session_id,
            turn_id=turn_id,
        )

    # ── Generation ────────────────────────────────────────────────────────────

    async def run(self, prepared: PreparedGeneration, sink: EventSink) -> RelayResult:
        """Stream one generation into ``sink`` and commit it to the session.

        Exactly one terminal event is emitted, after the turn is committed.
        A failed or abandoned generation leaves the session unchanged.
        """
        turn_id = prepared.turn_id
        committed = False
        try:
            relay = StreamRelay(prepared.resolved.config, sink, http_client=self._http_client)
            result = await relay.run(prepared.messages, emit_terminal=False)
            if turn_id is not None and result.ok:
                await asyncio.to_thread(
                    self.sessions.commit_turn, prepared.session_id, turn_id, result.artifact or ""
                )
                committed = True
        except DiagramServiceError as exc:
            logger.warning("Generation stopped: %s", exc.message)
            result = RelayResult(state=RelayState.FAILED, error=UpstreamError(exc.message))
        except Exception:
            logger.exception("Unexpected failure during generation")
            result = RelayResult(
                state=RelayState.FAILED,
                error=UpstreamError("Generation failed because of an internal error."),
            )
        finally:
            if turn_id is not None and not committed:
                self.sessions.discard_turn(prepared.session_id, turn_id)

        await sink.emit(terminal_event(result))
        sink.close()
        return result

    async def generate(
        self,
        request: GenerationRequest,
        sink: EventSink,
        *,
        session_id: str | None = None,
        identity: str = "local",
    ) -> RelayResult:
        return await self.run(self.prepare(request, session_id=session_id, identity=identity), sink)

    # ── Repair ────────────────────────────────────────────────────────────────

    def prepare_repair(
        self,
        artifact: str,
        *,
        explicit_config: GenerationConfig | None = None,
        access_credential: str | None = None,
        model_override: str | None = None,
    ) -> GenerationConfig:
        if not artifact or not artifact.strip():
            raise InputValidationError("There is no diagram code to repair.")
        return self.resolve(explicit_config, access_credential, model_override).config

    async def repair(
        self,
        artifact: str,
        error_text: str | None,
        config: GenerationConfig,
        sink: EventSink,
    ) -> RepairResult:
        loop = SelfRepairLoop(http_client=self._http_client)
        return await loop.repair(artifact, error_text, config, sink)


# ── CLI ───────────────────────────────────────────────────────────────────────

async def _run_cli(args: argparse.Namespace) -> int:
    agent = DiagramAgent(SessionManager(), UsageThrottle(path=cfg.USAGE_PATH))
    request = GenerationRequest(
        text=args.text,
        diagram_type=args.type,
        access_credential=args.password,
        model_override=args.model,
    )

    def write_delta(event: dict) -> None:
        if "delta" in event:
            sys.stdout.write(event["delta"])
            sys.stdout.flush()

    try:
        result = await agent.generate(request, CallbackSink(write_delta), identity="cli")
    except DiagramServiceError as exc:
        print(json.dumps({"status": "error", "error": exc.message}, ensure_ascii=False, indent=2))
        return 1

    sys.stdout.write("\n")
    if not result.ok:
        print(json.dumps({"status": "error", "error": result.error.message if result.error else None},
                         ensure_ascii=False, indent=2))
        return 1
    print(result.artifact)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate mermaid diagram code from free-form text.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("text", help="Text to turn into a diagram.")
    parser.add_argument(
        "--type",
        default=AUTO,
        metavar="DIAGRAM_TYPE",
        help="Grammar (flowchart, pie, ...) or category (mindMap, timeline, ...); default: auto.",
    )
    parser.add_argument(
        "--model",
        metavar="MODEL_ID",
        help=f"Override the model (default: {cfg.AI_MODEL_NAME or 'unset'}).",
    )
    parser.add_argument(
        "--password",
        metavar="SECRET",
        help="Access password; skips the daily usage limit.",
    )
    args = parser.parse_args()

    logging.basicConfig(level=cfg.LOG_LEVEL.upper(), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    sys.exit(asyncio.run(_run_cli(args)))


if __name__ == "__main__":
    main()
