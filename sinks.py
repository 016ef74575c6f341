"""Delivery channels for streamed generation events.

A sink is ``Open`` until it is closed, either by the producer after the
terminal event or by the consumer when it goes away. Closing is idempotent
and every emit after closure is a silent no-op that returns ``False``.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

logger = logging.getLogger(__name__)

Event = dict[str, Any]


class SinkState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class SinkClosedError(Exception):
    """Raised by a channel that finds its consumer gone."""


class EventSink:
    def __init__(self) -> None:
        self._state = SinkState.OPEN

    @property
    def state(self) -> SinkState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is SinkState.CLOSED

    def close(self) -> None:
        if self._state is SinkState.CLOSED:
            return
        self._state = SinkState.CLOSED
        self._on_close()

    async def emit(self, event: Event) -> bool:
        """Deliver ``event``; return whether it was delivered."""
        if self.closed:
            return False
        try:
            await self._deliver(event)
        except SinkClosedError:
            logger.debug("Consumer went away; closing sink")
            self.close()
            return False
        return True

    async def _deliver(self, event: Event) -> None:
        raise NotImplementedError

    def _on_close(self) -> None:
        pass


_CLOSED = object()


class QueueSink(EventSink):
    """Sink read by an async consumer, e.g. an SSE response body.

    Iteration ends after a terminal (``done``) event or once the sink closes.
    """

    def __init__(self) -> None:
        super().__init__()
        self._queue: asyncio.Queue[object] = asyncio.Queue()

    async def _deliver(self, event: Event) -> None:
        self._queue.put_nowait(event)

    def _on_close(self) -> None:
        self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]
            if item.get("done"):  # type: ignore[union-attr]
                return


class CallbackSink(EventSink):
    """Sink that hands each event to a plain or async callable."""

    def __init__(self, callback: Callable[[Event], Awaitable[None] | None]) -> None:
        super().__init__()
        self._callback = callback

    async def _deliver(self, event: Event) -> None:
        result = self._callback(event)
        if inspect.isawaitable(result):
            await result


class CollectingSink(EventSink):
    """Keeps every delivered event in order."""

    def __init__(self) -> None:
        super().__init__()
        self.events: list[Event] = []

    async def _deliver(self, event: Event) -> None:
        self.events.append(event)

    @property
    def deltas(self) -> list[str]:
        return [e["delta"] for e in self.events if "delta" in e]

    @property
    def terminal(self) -> Event | None:
        for event in reversed(self.events):
            if event.get("done"):
                return event
        return None
