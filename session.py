"""Conversation session management for multi-turn diagram generation."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import config as cfg
from errors import SessionNotFoundError, TurnLimitExceededError

logger = logging.getLogger(__name__)

TITLE_WORDS = 8
TITLE_CHARS = 30
ASSISTANT_PREFIX = "Diagram code:\n"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _serialize_dt(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_dt(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def make_title(message: str) -> str:
    """First few words of the opening message, capped with an ellipsis."""
    title = " ".join(message.split()[:TITLE_WORDS])
    if len(title) > TITLE_CHARS:
        title = title[:TITLE_CHARS] + "..."
    return title


@dataclass
class Turn:
    id: str
    user_message: str
    artifact: str | None = None
    is_pending: bool = False
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": _serialize_dt(self.timestamp),
            "userMessage": self.user_message,
            "artifact": self.artifact,
            "isPending": self.is_pending,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Turn:
        return cls(
            id=data["id"],
            timestamp=_parse_dt(data["timestamp"]),
            user_message=data["userMessage"],
            artifact=data.get("artifact"),
        )


@dataclass
class Session:
    """One conversation. ``turns`` is append-only chat history."""

    id: str
    title: str
    created_at: datetime = field(default_factory=_utcnow)
    turns: list[Turn] = field(default_factory=list)

    @property
    def committed_turns(self) -> list[Turn]:
        return [t for t in self.turns if not t.is_pending]

    def to_dict(self, *, include_pending: bool = False) -> dict[str, Any]:
        turns = self.turns if include_pending else self.committed_turns
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": _serialize_dt(self.created_at),
            "turns": [t.to_dict() for t in turns],
        }

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": _serialize_dt(self.created_at),
            "turnCount": len(self.committed_turns),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            title=data["title"],
            created_at=_parse_dt(data["createdAt"]),
            turns=[Turn.from_dict(t) for t in data.get("turns", [])],
        )


class SessionStore:
    """Whole-collection JSON file, rewritten atomically on every change.

    Pending turns are never written. Single writer only: two processes sharing
    one file will overwrite each other.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path) if path is not None else cfg.SESSIONS_PATH

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> tuple[list[Session], str | None]:
        if not self._path.exists():
            return [], None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            sessions = [Session.from_dict(s) for s in data.get("sessions", [])]
            current = data.get("current")
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            backup = self._path.with_suffix(".corrupt")
            os.replace(self._path, backup)
            logger.error("Unreadable session file moved to %s: %s", backup, exc)
            return [], None
        if not isinstance(current, str) or current not in {s.id for s in sessions}:
            current = None
        logger.info("Loaded %d sessions from %s", len(sessions), self._path)
        return sessions, current

    def save(self, sessions: list[Session], current: str | None) -> None:
        payload = {
            "current": current,
            "sessions": [s.to_dict() for s in sessions],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".sessions-", suffix=".tmp", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class SessionManager:
    """Sole owner and writer of the session collection."""

    def __init__(
        self,
        store: SessionStore | None = None,
        *,
        max_turns: int = cfg.MAX_CONVERSATION_ROUNDS,
        context_messages: int = cfg.CONTEXT_MESSAGES,
    ) -> None:
        self._store = store if store is not None else SessionStore()
        self.max_turns = max_turns
        self.context_messages = context_messages
        self._lock = threading.RLock()
        self._sessions, self._current = self._store.load()

    # ── Collection ────────────────────────────────────────────────────────────

    @property
    def current_id(self) -> str | None:
        return self._current

    def _persist(self) -> None:
        self._store.save(self._sessions, self._current)

    def _find(self, session_id: str) -> Session:
        for session in self._sessions:
            if session.id == session_id:
                return session
        raise SessionNotFoundError(f"Session {session_id} not found.")

    def get(self, session_id: str) -> Session:
        with self._lock:
            return self._find(session_id)

    def list_sessions(self) -> list[Session]:
        """Newest first."""
        with self._lock:
            return list(reversed(self._sessions))

    def create_session(self, first_message: str) -> Session:
        session = Session(id=uuid.uuid4().hex, title=make_title(first_message))
        with self._lock:
            self._sessions.append(session)
            self._current = session.id
            self._persist()
        logger.info("Created session %s (%r)", session.id, session.title)
        return session

    def select_session(self, session_id: str) -> Session:
        with self._lock:
            session = self._find(session_id)
            self._current = session.id
            self._persist()
        return session

    def delete_session(self, session_id: str) -> str | None:
        """Remove a session; return the id that is current afterwards."""
        with self._lock:
            session = self._find(session_id)
            self._sessions.remove(session)
            if self._current == session_id:
                self._current = self._sessions[-1].id if self._sessions else None
            self._persist()
            logger.info("Deleted session %s; current is now %s", session_id, self._current)
            return self._current

    # ── Turns ─────────────────────────────────────────────────────────────────

    def check_capacity(self, session_id: str) -> Session:
        """Raise ``TurnLimitExceededError`` if no further turn fits."""
        with self._lock:
            session = self._find(session_id)
            if len(session.turns) >= self.max_turns:
                raise TurnLimitExceededError(
                    f"This conversation has reached the limit of {self.max_turns} rounds. "
                    "Start a new conversation to continue."
                )
            return session

    def append_turn(self, session_id: str, user_message: str, artifact: str) -> Turn:
        with self._lock:
            session = self.check_capacity(session_id)
            turn = Turn(id=uuid.uuid4().hex, user_message=user_message, artifact=artifact)
            session.turns.append(turn)
            self._persist()
            return turn

    def begin_turn(self, session_id: str, user_message: str) -> Turn:
        """Reserve a pending turn for an in-flight generation.

        The pending turn occupies a slot toward ``max_turns`` but is held in
        memory only.
        """
        with self._lock:
            session = self.check_capacity(session_id)
            turn = Turn(id=uuid.uuid4().hex, user_message=user_message, is_pending=True)
            session.turns.append(turn)
            return turn

    def commit_turn(self, session_id: str, turn_id: str, artifact: str) -> Turn:
        with self._lock:
            turn = self._pending(session_id, turn_id)
            turn.artifact = artifact
            turn.is_pending = False
            turn.timestamp = _utcnow()
            self._persist()
            return turn

    def discard_turn(self, session_id: str, turn_id: str) -> None:
        with self._lock:
            try:
                session = self._find(session_id)
            except SessionNotFoundError:
                # deleted while the generation was running
                return
            # a turn committed meanwhile stays
            session.turns = [t for t in session.turns if not (t.id == turn_id and t.is_pending)]

    def _pending(self, session_id: str, turn_id: str) -> Turn:
        session = self._find(session_id)
        for turn in session.turns:
            if turn.id == turn_id and turn.is_pending:
                return turn
        raise SessionNotFoundError(f"No pending turn {turn_id} in session {session_id}.")

    def context_window(self, session_id: str) -> list[dict[str, str]]:
        """Prior committed turns as user/assistant messages, most recent only.

        Older turns stay in the session; only what is sent to the model is cut.
        """
        with self._lock:
            session = self._find(session_id)
            messages: list[dict[str, str]] = []
            for turn in session.committed_turns:
                messages.append({"role": "user", "content": turn.user_message})
                messages.append({"role": "assistant", "content": ASSISTANT_PREFIX + (turn.artifact or "")})
        if self.context_messages <= 0:
            return []
        return messages[-self.context_messages:]
