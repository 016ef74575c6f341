"""Per-day generation quota for anonymous users of the shared credentials."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Callable

import config as cfg

logger = logging.getLogger(__name__)


@dataclass
class UsageCounter:
    date: date
    count: int = 0


class UsageThrottle:
    """Counts generations per client identity and calendar day.

    The day comes from ``clock`` so tests control rollover. A counter whose
    date is not today is treated as zero; there is no reset job. With a
    ``path`` the counters survive restarts (single process only).
    """

    def __init__(
        self,
        limit: int = cfg.DAILY_USAGE_LIMIT,
        *,
        path: Path | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.limit = limit
        self._path = Path(path) if path is not None else None
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: dict[str, UsageCounter] = self._load()

    def _today(self) -> date:
        return self._clock().date()

    def _used_today(self, identity: str) -> int:
        counter = self._counters.get(identity)
        if counter is None or counter.date != self._today():
            return 0
        return counter.count

    def check_and_increment(self, identity: str, *, exempt: bool = False) -> bool:
        if exempt:
            return True
        with self._lock:
            used = self._used_today(identity)
            if used >= self.limit:
                logger.info("Daily limit of %d reached for %s", self.limit, identity)
                return False
            self._counters[identity] = UsageCounter(self._today(), used + 1)
            self._prune()
            self._save()
            return True

    def _prune(self) -> None:
        """Forget counters from earlier days; they count as zero anyway."""
        today = self._today()
        stale = [identity for identity, c in self._counters.items() if c.date != today]
        for identity in stale:
            del self._counters[identity]
        if stale:
            logger.debug("Dropped %d usage counters from earlier days", len(stale))

    def remaining(self, identity: str) -> int:
        with self._lock:
            return max(0, self.limit - self._used_today(identity))

    # ── Persistence ───────────────────────────────────────────────────────────

    def _load(self) -> dict[str, UsageCounter]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            return {
                identity: UsageCounter(date.fromisoformat(entry["date"]), int(entry["count"]))
                for identity, entry in raw.items()
            }
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.error("Ignoring unreadable usage file %s: %s", self._path, exc)
            return {}

    def _save(self) -> None:
        if self._path is None:
            return
        payload = {
            identity: {"date": c.date.isoformat(), "count": c.count}
            for identity, c in self._counters.items()
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".usage-", suffix=".tmp", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
