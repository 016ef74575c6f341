"""Dependency injection providers for FastAPI."""
from __future__ import annotations

import httpx

import config as cfg
from agent import DiagramAgent
from session import SessionManager, SessionStore
from usage import UsageThrottle

# Process-wide singletons; tests replace get_agent through dependency_overrides
_session_manager: SessionManager | None = None
_usage_throttle: UsageThrottle | None = None
_http_client: httpx.AsyncClient | None = None
_agent: DiagramAgent | None = None


def get_session_manager() -> SessionManager:
    """Return singleton SessionManager backed by the JSON session file."""
    global _session_manager
    if _session_manager is None:
        _session_manager = SessionManager(SessionStore(cfg.SESSIONS_PATH))
    return _session_manager


def get_usage_throttle() -> UsageThrottle:
    """Return singleton UsageThrottle backed by the JSON usage file."""
    global _usage_throttle
    if _usage_throttle is None:
        _usage_throttle = UsageThrottle(path=cfg.USAGE_PATH)
    return _usage_throttle


def set_http_client(client: httpx.AsyncClient | None) -> None:
    """Install the connection pool shared by all upstream calls."""
    global _http_client, _agent
    _http_client = client
    _agent = None


def get_agent() -> DiagramAgent:
    """Return singleton DiagramAgent wired to the shared stores and pool."""
    global _agent
    if _agent is None:
        _agent = DiagramAgent(get_session_manager(), get_usage_throttle(), http_client=_http_client)
    return _agent
