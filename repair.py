"""Repair of diagram code that failed to render.

A deterministic pass of local rewrite rules always runs first. The model is
consulted only when that pass cannot be shown to have fixed the reported
error: either no rule fired, no error text was given to check against, or
none of the fired rules is known to address it.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable

import httpx

from llm_client import GenerationConfig
from prompts import build_repair_messages
from relay import StreamRelay
from sinks import EventSink

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepairRule:
    name: str
    apply: Callable[[str], str]
    # lower-case fragments of renderer error messages this rule is known to fix
    signatures: tuple[str, ...] = ()

    def addresses(self, error_text: str) -> bool:
        lowered = error_text.lower()
        return any(sig in lowered for sig in self.signatures)


# ── Rules ─────────────────────────────────────────────────────────────────────

_OUTER_FENCE = re.compile(r"^\s*```[a-zA-Z]*[ \t]*\n(.*?)\n?```\s*$", re.DOTALL)


def _strip_fences(code: str) -> str:
    match = _OUTER_FENCE.match(code)
    return match.group(1) if match else code


_CURLY = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


def _plain_quotes(code: str) -> str:
    return code.translate(_CURLY)


_PIE_HEADER = re.compile(r"^\s*pie\b", re.IGNORECASE)
_PIE_QUOTED = re.compile(r'^\s*"([^"]*)"\s*[:：]\s*(-?\d+(?:\.\d+)?)\s*$')
_PIE_BARE = re.compile(r"^\s*([^\"\s:：][^:：]*?)\s*[:：]\s*(-?\d+(?:\.\d+)?)\s*$")


def _pie_data_lines(code: str) -> str:
    lines = code.split("\n")
    first = next((i for i, line in enumerate(lines) if line.strip()), None)
    if first is None or not _PIE_HEADER.match(lines[first]):
        return code
    out = lines[: first + 1]
    for line in lines[first + 1:]:
        match = _PIE_QUOTED.match(line) or _PIE_BARE.match(line)
        if match and not line.strip().lower().startswith("title"):
            out.append(f'    "{match.group(1).strip()}" : {match.group(2)}')
        else:
            out.append(line)
    return "\n".join(out)


_DIRECTION_HEADER = re.compile(r"^(\s*(?:graph|flowchart)\s+)(td|tb|lr|rl|bt)\b", re.IGNORECASE | re.MULTILINE)


def _direction_case(code: str) -> str:
    return _DIRECTION_HEADER.sub(lambda m: m.group(1) + m.group(2).upper(), code, count=1)


_LABEL = re.compile(r"[\[\(\{][^\]\)\}\n]*[\]\)\}]")
_NUMBERED = re.compile(r"(\d+)\.\s+")


def _list_number_space(code: str) -> str:
    return _LABEL.sub(lambda m: _NUMBERED.sub(r"\1.", m.group(0)), code)


# plain id[label] only; [[..]], [(..)], [/..], [\..] and [{..}] are other node shapes
_UNQUOTED_NON_ASCII = re.compile(
    r'(\b[A-Za-z][\w]*)\[(?![\[\(/\\{])([^\[\]"\n]*[^\x00-\x7f][^\[\]"\n]*)\](?!\])'
)


def _quote_labels(code: str) -> str:
    return _UNQUOTED_NON_ASCII.sub(lambda m: f'{m.group(1)}["{m.group(2).strip()}"]', code)


RULES: tuple[RepairRule, ...] = (
    RepairRule("strip_fences", _strip_fences, ("```", "backtick")),
    RepairRule("plain_quotes", _plain_quotes, ("quote", "“", "”", "lexical error")),
    RepairRule("pie_data_lines", _pie_data_lines, ("pie", "expecting 'txt'", "expecting 'string'")),
    RepairRule("direction_case", _direction_case, ("direction", "uppercase", "expecting 'dir'")),
    RepairRule("list_number_space", _list_number_space, ("unsupported markdown", "markdown")),
    RepairRule("quote_labels", _quote_labels, ("lexical error", "unrecognized text", "got 'str'")),
)


def normalize(code: str) -> tuple[str, list[str]]:
    """Apply every local rule in order; return the text and the rules that changed it."""
    applied: list[str] = []
    for rule in RULES:
        updated = rule.apply(code)
        if updated != code:
            applied.append(rule.name)
            code = updated
    return code, applied


_TOGGLE = {"TD": "LR", "TB": "LR", "LR": "TD", "BT": "RL", "RL": "BT"}


def toggle_direction(code: str) -> str:
    """Flip a flowchart/graph header between vertical and horizontal layout."""
    return _DIRECTION_HEADER.sub(
        lambda m: m.group(1) + _TOGGLE[m.group(2).upper()], code, count=1
    )


# ── Loop ──────────────────────────────────────────────────────────────────────

@dataclass
class RepairResult:
    artifact: str | None
    changed: bool = False
    used_model: bool = False
    warning: str | None = None
    error: str | None = None
    applied_rules: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.artifact is not None

    def terminal_event(self) -> dict[str, object]:
        if not self.ok:
            return {"error": self.error or "Repair failed.", "done": True}
        event: dict[str, object] = {"artifact": self.artifact, "done": True}
        if self.warning:
            event["warning"] = self.warning
        return event


class SelfRepairLoop:
    """Produces a corrected artifact; never touches session turn accounting."""

    def __init__(self, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._http_client = http_client

    async def repair(
        self,
        artifact: str,
        error_text: str | None,
        config: GenerationConfig,
        sink: EventSink,
    ) -> RepairResult:
        result = await self._repair(artifact, error_text, config, sink)
        await sink.emit(result.terminal_event())
        sink.close()
        return result

    async def _repair(
        self,
        artifact: str,
        error_text: str | None,
        config: GenerationConfig,
        sink: EventSink,
    ) -> RepairResult:
        fixed, applied = normalize(artifact)
        changed = fixed != artifact
        if applied:
            logger.info("Local repair rules applied: %s", ", ".join(applied))

        if changed and error_text:
            fired = [r for r in RULES if r.name in applied]
            if any(rule.addresses(error_text) for rule in fired):
                logger.info("Local repair addresses the reported error; skipping the model")
                return RepairResult(artifact=fixed, changed=True, applied_rules=applied)

        relay = StreamRelay(config, sink, http_client=self._http_client)
        outcome = await relay.run(build_repair_messages(fixed, error_text), emit_terminal=False)
        if outcome.ok:
            repaired, more = normalize(outcome.artifact or "")
            return RepairResult(
                artifact=repaired,
                changed=repaired != artifact,
                used_model=True,
                applied_rules=applied + [r for r in more if r not in applied],
            )

        message = outcome.error.message if outcome.error else "Repair failed."
        if changed:
            logger.warning("Model repair failed, returning local fix: %s", message)
            return RepairResult(
                artifact=fixed,
                changed=True,
                used_model=True,
                warning=f"AI repair unavailable, applied basic fixes only. {message}",
                applied_rules=applied,
            )
        return RepairResult(artifact=None, used_model=True, error=message)
