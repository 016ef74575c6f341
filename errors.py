"""Error taxonomy for the generation core.

Every error that can end a request carries an HTTP status and a message that
is safe to show to the user as-is. ``ParseWarning`` is raised and recovered
inside the stream relay and never reaches a caller.
"""
from __future__ import annotations


class DiagramServiceError(Exception):
    """Base class for user-visible failures."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(DiagramServiceError):
    """Endpoint, key or model name is missing after resolution."""

    status_code = 400


class AuthorizationError(DiagramServiceError):
    """The supplied access credential does not match the shared secret."""

    status_code = 401


class QuotaExceededError(DiagramServiceError):
    status_code = 429


class TurnLimitExceededError(DiagramServiceError):
    status_code = 409


class SessionNotFoundError(DiagramServiceError):
    status_code = 404


class InputValidationError(DiagramServiceError):
    status_code = 400

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamError(DiagramServiceError):
    """Non-success response or transport failure from the model endpoint.

    ``status`` and ``body`` are set when the upstream answered; the body is
    kept verbatim so the caller sees exactly what the provider said.
    """

    status_code = 502

    def __init__(self, message: str, status: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class ParseWarning(Exception):
    """A single stream frame could not be decoded."""

    def __init__(self, frame: str, reason: str) -> None:
        super().__init__(f"{reason}: {frame[:200]!r}")
        self.frame = frame
        self.reason = reason
