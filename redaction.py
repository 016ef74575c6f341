"""Logging filter that keeps credentials out of log output."""
from __future__ import annotations

import logging
import re
from typing import Any, Iterable

import config as cfg

_TEXT_REDACTION_PATTERNS: list[tuple[str, re.Pattern[str], Any]] = [
    (
        "auth_header",
        re.compile(r"(?i)authorization\s*[:=]\s*(bearer|basic)\s+[^\s\"']+"),
        lambda m: f"authorization: {m.group(1).lower()} [REDACTED]",
    ),
    (
        "bearer_token",
        re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]{8,}"),
        "Bearer [REDACTED]",
    ),
    (
        "header_secret",
        re.compile(r"(?i)(x-api-key|api-key|x-auth-token|x-access-token)\s*[:=]\s*[^\s\"']+"),
        lambda m: f"{m.group(1)}: [REDACTED]",
    ),
    (
        "openai_key",
        re.compile(r"\bsk-[A-Za-z0-9_-]{16,}\b"),
        "sk-[REDACTED]",
    ),
]


def redact(text: str, secrets: Iterable[str] = ()) -> str:
    for _, pattern, replacement in _TEXT_REDACTION_PATTERNS:
        text = pattern.sub(replacement, text)
    for secret in sorted((s for s in secrets if s), key=len, reverse=True):
        text = text.replace(secret, "[REDACTED]")
    return text


class RedactingFilter(logging.Filter):
    """Rewrites each record's rendered message with secrets masked.

    Configured secret values (the default API key and the access password)
    are masked verbatim in addition to the token patterns above.
    """

    def __init__(self, secrets: Iterable[str] | None = None) -> None:
        super().__init__()
        if secrets is None:
            secrets = (cfg.AI_API_KEY, cfg.ACCESS_PASSWORD)
        self._secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message, self._secrets)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def install(secrets: Iterable[str] | None = None) -> RedactingFilter:
    """Attach one filter to the root handlers and the HTTP client loggers."""
    redacting = RedactingFilter(secrets)
    for handler in logging.getLogger().handlers:
        handler.addFilter(redacting)
    for name in ("httpx", "httpcore", "openai"):
        logging.getLogger(name).addFilter(redacting)
    return redacting
