"""Streaming relay between an OpenAI-compatible endpoint and an event sink.

One ``StreamRelay`` serves exactly one upstream call and moves through::

    Idle -> Requesting -> Streaming -> Completed
                  \\            \\
                   +-> Failed    +-> Failed

Every text delta is forwarded to the sink as ``{"delta": ...}`` in the order
it arrived, before the upstream call finishes. Malformed frames are logged
and skipped. A failure never yields an artifact, even when some deltas were
already delivered.
"""
from __future__ import annotations

import codecs
import json
import logging
import re
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator

import httpx
import openai

from errors import ParseWarning, UpstreamError
from llm_client import GenerationConfig, get_async_client
from sinks import EventSink

logger = logging.getLogger(__name__)


class RelayState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[RelayState, frozenset[RelayState]] = {
    RelayState.IDLE: frozenset({RelayState.REQUESTING}),
    RelayState.REQUESTING: frozenset({RelayState.STREAMING, RelayState.FAILED}),
    RelayState.STREAMING: frozenset({RelayState.COMPLETED, RelayState.FAILED}),
    RelayState.COMPLETED: frozenset(),
    RelayState.FAILED: frozenset(),
}


@dataclass
class RelayResult:
    state: RelayState
    artifact: str | None = None
    text: str = ""
    error: UpstreamError | None = None
    delivered: int = 0
    fenced: bool = False

    @property
    def ok(self) -> bool:
        return self.state is RelayState.COMPLETED


def terminal_event(result: RelayResult) -> dict[str, Any]:
    if result.ok:
        return {"artifact": result.artifact, "done": True}
    message = result.error.message if result.error else "Generation failed."
    return {"error": message, "done": True}


# ── Frames ────────────────────────────────────────────────────────────────────

TERMINATOR = object()


class FrameDecoder:
    """Turns raw byte chunks into complete ``\\n``-terminated lines.

    Multi-byte characters and lines split across chunks are carried over to
    the next ``feed``.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        rest = rest.rstrip("\r")
        return [rest] if rest.strip() else []


def parse_frame(line: str) -> object:
    """Return the text delta of one frame, ``TERMINATOR``, or ``None``.

    ``None`` covers lines that carry no text (blank separators, comments,
    ``event:`` lines, role-only or usage-only chunks).
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if data == "[DONE]":
        return TERMINATOR
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ParseWarning(data, "invalid JSON") from exc
    if not isinstance(payload, dict):
        raise ParseWarning(data, "payload is not an object")

    if "error" in payload:
        error = payload["error"]
        detail = error.get("message", "Unknown error") if isinstance(error, dict) else str(error)
        raise UpstreamError(f"AI service reported an error: {detail}", body=data)

    choices = payload.get("choices")
    if not choices:
        return None
    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        raise ParseWarning(data, "unexpected choices shape")
    delta = choices[0].get("delta") or {}
    if not isinstance(delta, dict):
        raise ParseWarning(data, "unexpected delta shape")
    content = delta.get("content")
    if content is None:
        return None
    if not isinstance(content, str):
        raise ParseWarning(data, "delta content is not text")
    return content


# ── Artifact ──────────────────────────────────────────────────────────────────

_FENCE = re.compile(r"```(?:mermaid)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_artifact(text: str) -> tuple[str, bool]:
    """Return the trimmed body of the last fenced block, or ``text`` itself."""
    blocks = _FENCE.findall(text)
    if blocks:
        return blocks[-1].strip(), True
    return text, False


# ── Relay ─────────────────────────────────────────────────────────────────────

class StreamRelay:
    def __init__(
        self,
        config: GenerationConfig,
        sink: EventSink,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.sink = sink
        self._http_client = http_client
        self._state = RelayState.IDLE

    @property
    def state(self) -> RelayState:
        return self._state

    def _transition(self, new_state: RelayState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal relay transition {self._state.value} -> {new_state.value}")
        logger.debug("Relay %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    async def run(
        self,
        messages: list[dict[str, str]],
        *,
        emit_terminal: bool = True,
    ) -> RelayResult:
        """Perform the upstream call, forwarding deltas to the sink.

        With ``emit_terminal`` the final ``{artifact|error, done}`` event is
        sent and the sink closed; otherwise the caller owns the terminal event.
        """
        self._transition(RelayState.REQUESTING)
        logger.info("Requesting streamed completion: %s", self.config.describe())

        client = get_async_client(self.config, http_client=self._http_client)
        try:
            result = await self._stream(client, messages)
        finally:
            if self._http_client is None:
                await client.close()

        if emit_terminal:
            await self.sink.emit(terminal_event(result))
            self.sink.close()
        return result

    async def _stream(self, client: openai.AsyncOpenAI, messages: list[dict[str, str]]) -> RelayResult:
        parts: list[str] = []
        delivered = 0
        try:
            async with client.chat.completions.with_streaming_response.create(
                model=self.config.model_name,
                messages=messages,
                stream=True,
            ) as response:
                self._transition(RelayState.STREAMING)
                async with aclosing(self._lines(response.iter_bytes())) as lines:
                    async for line in lines:
                        try:
                            delta = parse_frame(line)
                        except ParseWarning as warning:
                            logger.warning("Skipping malformed stream frame: %s", warning)
                            continue
                        if delta is TERMINATOR:
                            break
                        if not delta:
                            continue
                        parts.append(delta)
                        if not await self.sink.emit({"delta": delta}):
                            logger.info("Sink closed after %d deltas; aborting upstream read", delivered)
                            return self._fail(
                                UpstreamError("Generation abandoned: the client disconnected."),
                                parts,
                                delivered,
                            )
                        delivered += 1
        except openai.APIStatusError as exc:
            body = exc.response.text
            logger.error("AI service error %s: %s", exc.status_code, body)
            return self._fail(
                UpstreamError(
                    f"AI service returned an error ({exc.status_code}): {body or 'Unknown error'}",
                    status=exc.status_code,
                    body=body,
                ),
                parts,
                delivered,
            )
        except UpstreamError as exc:
            logger.error("AI service reported an in-stream error: %s", exc.body)
            return self._fail(exc, parts, delivered)
        except (openai.APIError, httpx.HTTPError) as exc:
            logger.error("Transport failure in %s state: %r", self._state.value, exc)
            if self._state is RelayState.REQUESTING:
                message = "Could not reach the AI service."
            else:
                message = "The AI service stream was interrupted before it finished."
            return self._fail(UpstreamError(message), parts, delivered)
        except UnicodeDecodeError as exc:
            logger.error("Undecodable bytes in stream: %s", exc)
            return self._fail(UpstreamError("The AI service sent undecodable data."), parts, delivered)

        text = "".join(parts)
        artifact, fenced = extract_artifact(text)
        if not artifact.strip():
            return self._fail(UpstreamError("The AI service returned no content."), parts, delivered)
        if not fenced:
            logger.debug("No fenced code block in model output; using the raw text")
        self._transition(RelayState.COMPLETED)
        logger.info("Stream completed: %d deltas, %d chars", delivered, len(text))
        return RelayResult(
            state=RelayState.COMPLETED,
            artifact=artifact,
            text=text,
            delivered=delivered,
            fenced=fenced,
        )

    def _fail(self, error: UpstreamError, parts: list[str], delivered: int) -> RelayResult:
        self._transition(RelayState.FAILED)
        return RelayResult(
            state=RelayState.FAILED,
            text="".join(parts),
            error=error,
            delivered=delivered,
        )

    @staticmethod
    async def _lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
        decoder = FrameDecoder()
        async for chunk in chunks:
            for line in decoder.feed(chunk):
                yield line
        for line in decoder.flush():
            yield line
