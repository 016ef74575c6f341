"""Shared test fixtures for the diagram generation service."""
from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, AsyncIterator
from datetime import datetime

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from agent import DiagramAgent
from dependencies import get_agent
from llm_client import GenerationConfig
from server import app
from session import SessionManager, SessionStore
from usage import UsageThrottle

ACCESS_SECRET = "open-sesame"


def delta_frame(text: str) -> bytes:
    payload = {"choices": [{"index": 0, "delta": {"content": text}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def sse_body(deltas: list[str], *, done: bool = True) -> list[bytes]:
    """One upstream chunk per delta, optionally followed by the terminator."""
    chunks = [b'data: {"choices":[{"index":0,"delta":{"role":"assistant"}}]}\n\n']
    chunks += [delta_frame(d) for d in deltas]
    if done:
        chunks.append(b"data: [DONE]\n\n")
    return chunks


async def _iterate(chunks: list[bytes], error: Exception | None, hang: bool = False) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk
    if hang:
        # stalls mid-stream until the reader is cancelled
        await asyncio.Event().wait()
    if error is not None:
        raise error


class FakeUpstream:
    """Scripted OpenAI-compatible endpoint behind ``httpx.MockTransport``.

    Each call consumes the next scripted reply; the last one repeats.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._replies: list[dict] = []

    def reply(
        self,
        deltas: list[str] | None = None,
        *,
        chunks: list[bytes] | None = None,
        status: int = 200,
        body: str = "",
        error: Exception | None = None,
        connect_error: bool = False,
        hang: bool = False,
    ) -> None:
        self._replies.append(
            {
                "chunks": chunks if chunks is not None else sse_body(deltas or []),
                "status": status,
                "body": body,
                "error": error,
                "connect_error": connect_error,
                "hang": hang,
            }
        )

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        spec = self._replies.pop(0) if len(self._replies) > 1 else self._replies[0]
        if spec["connect_error"]:
            raise httpx.ConnectError("connection refused", request=request)
        if spec["status"] != 200:
            return httpx.Response(spec["status"], text=spec["body"])
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_iterate(spec["chunks"], spec["error"], spec["hang"]),
        )


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest_asyncio.fixture
async def http_client(upstream: FakeUpstream) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client whose requests are answered by ``upstream``."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)) as client:
        yield client


@pytest.fixture
def generation_config() -> GenerationConfig:
    return GenerationConfig(
        endpoint_base_url="https://upstream.test",
        api_key="sk-test-0123456789abcdefghij",
        model_name="test-model",
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 5, 1, 9, 30))


@pytest.fixture
def session_manager(tmp_path) -> SessionManager:
    return SessionManager(SessionStore(tmp_path / "sessions.json"), max_turns=3)


@pytest.fixture
def throttle(clock: FixedClock) -> UsageThrottle:
    return UsageThrottle(limit=3, clock=clock)


@pytest.fixture
def agent(session_manager, throttle, generation_config, http_client) -> DiagramAgent:
    return DiagramAgent(
        session_manager,
        throttle,
        defaults=generation_config,
        access_secret=ACCESS_SECRET,
        max_chars=200,
        http_client=http_client,
    )


@pytest_asyncio.fixture
async def client(agent: DiagramAgent) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing FastAPI endpoints."""
    app.dependency_overrides[get_agent] = lambda: agent
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
