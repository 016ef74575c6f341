"""Tests for the HTTP and SSE surface."""
import asyncio
import json
import threading

import pytest
from httpx import AsyncClient

import server
from agent import DiagramAgent, GenerationRequest
from conftest import sse_body
from prompts import diagram_type_instruction
from session import SessionStore

LOGIN_FLOW = ["```mermaid\n", "flowchart TD\n", "    A --> B\n", "```"]


def parse_sse(body: str) -> list[tuple[str, dict]]:
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.split("\n"))
        events.append((lines["event"], json.loads(lines["data"])))
    return events


@pytest.mark.asyncio
async def test_diagram_types(client: AsyncClient) -> None:
    response = await client.get("/diagram-types")
    assert response.status_code == 200
    values = [t["value"] for t in response.json()["types"]]
    assert "auto" in values and "mindMap" in values and "flowchart" in values


@pytest.mark.asyncio
async def test_session_conversation_streams_and_commits(client: AsyncClient, upstream) -> None:
    upstream.reply(LOGIN_FLOW)
    created = await client.post("/sessions", json={"message": "用户登录流程"})
    assert created.status_code == 201
    session_id = created.json()["id"]
    assert created.json()["current"] == session_id

    response = await client.post(f"/sessions/{session_id}/messages", json={"text": "用户登录流程"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = parse_sse(response.text)
    assert [e[0] for e in events] == ["delta"] * 4 + ["done"]
    assert events[-1][1] == {"artifact": "flowchart TD\n    A --> B", "done": True}

    session = (await client.get(f"/sessions/{session_id}")).json()
    assert session["title"] == "用户登录流程"
    assert session["turns"][0]["artifact"] == "flowchart TD\n    A --> B"
    assert session["turns"][0]["isPending"] is False


@pytest.mark.asyncio
async def test_upstream_error_arrives_as_error_event(client: AsyncClient, upstream) -> None:
    upstream.reply(status=429, body="slow down")

    response = await client.post("/generate", json={"text": "hello"})

    assert response.status_code == 200
    assert parse_sse(response.text) == [
        ("error", {"error": "AI service returned an error (429): slow down", "done": True})
    ]


@pytest.mark.asyncio
async def test_gate_errors_are_json(client: AsyncClient) -> None:
    bad_password = await client.post("/generate", json={"text": "hi", "accessPassword": "nope"})
    assert bad_password.status_code == 401
    assert bad_password.json() == {"error": "Invalid access password."}

    empty = await client.post("/generate", json={"text": "   "})
    assert empty.status_code == 400

    missing = await client.post("/sessions/nope/messages", json={"text": "hi"})
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_quota_per_client_id(client: AsyncClient, upstream) -> None:
    upstream.reply(["graph TD"])
    headers = {"X-Client-Id": "browser-1"}
    for _ in range(3):
        assert (await client.post("/generate", json={"text": "hi"}, headers=headers)).status_code == 200

    refused = await client.post("/generate", json={"text": "hi"}, headers=headers)
    assert refused.status_code == 429
    assert (await client.get("/usage", headers=headers)).json() == {"limit": 3, "remaining": 0}
    assert (await client.get("/usage", headers={"X-Client-Id": "browser-2"})).json()["remaining"] == 3


@pytest.mark.asyncio
async def test_session_listing_select_and_delete(client: AsyncClient) -> None:
    first = (await client.post("/sessions", json={"message": "first"})).json()["id"]
    second = (await client.post("/sessions", json={"message": "second"})).json()["id"]

    listing = (await client.get("/sessions")).json()
    assert listing["current"] == second
    assert [s["id"] for s in listing["sessions"]] == [second, first]

    assert (await client.post(f"/sessions/{first}/select")).json() == {"current": first}
    assert (await client.delete(f"/sessions/{first}")).json() == {"current": second}
    assert (await client.get(f"/sessions/{first}")).status_code == 404


@pytest.mark.asyncio
async def test_repair_with_upstream_down(client: AsyncClient, upstream) -> None:
    upstream.reply(status=502, body="bad gateway")

    response = await client.post("/repair", json={"code": 'pie title X\n"A":1'})

    event_type, payload = parse_sse(response.text)[-1]
    assert event_type == "done"
    assert payload["artifact"] == 'pie title X\n    "A" : 1'
    assert "warning" in payload


@pytest.mark.asyncio
async def test_toggle_direction(client: AsyncClient) -> None:
    response = await client.post("/toggle-direction", json={"code": "flowchart TD\n A-->B"})
    assert response.json() == {"code": "flowchart LR\n A-->B", "changed": True}


@pytest.mark.asyncio
async def test_request_fields_are_camel_case(client: AsyncClient, upstream) -> None:
    upstream.reply(["graph TD"])
    body = {
        "text": "hi",
        "diagramType": "mindMap",
        "aiConfig": {"apiUrl": "https://mine.test", "apiKey": "sk-mine-0123456789", "modelName": "my-model"},
        "contextTurns": [{"role": "user", "content": "earlier"}],
    }

    response = await client.post("/generate", json=body)

    assert response.status_code == 200
    assert upstream.requests[0].url.host == "mine.test"
    payload = upstream.payloads[0]
    assert payload["model"] == "my-model"
    assert diagram_type_instruction("mindMap") in payload["messages"][0]["content"]
    assert payload["messages"][1] == {"role": "user", "content": "earlier"}


@pytest.mark.asyncio
async def test_client_disconnect_cancels_generation(agent: DiagramAgent, upstream) -> None:
    upstream.reply(chunks=sse_body(["```mermaid\n"], done=False), hang=True)
    session = agent.sessions.create_session("gone")
    prepared = agent.prepare(GenerationRequest(text="gone"), session_id=session.id)

    response = server._stream(lambda sink: agent.run(prepared, sink))
    body = response.body_iterator
    first = await asyncio.wait_for(body.__anext__(), timeout=5)
    await body.aclose()
    await asyncio.gather(*server._jobs, return_exceptions=True)

    assert first.startswith("event: delta")
    assert agent.sessions.get(session.id).to_dict(include_pending=True)["turns"] == []


@pytest.mark.asyncio
async def test_session_writes_run_off_the_event_loop(client: AsyncClient, upstream, monkeypatch) -> None:
    upstream.reply(["graph TD"])
    writers: list[threading.Thread] = []
    original_save = SessionStore.save

    def recording_save(self, sessions, current):
        writers.append(threading.current_thread())
        original_save(self, sessions, current)

    monkeypatch.setattr(SessionStore, "save", recording_save)
    loop_thread = threading.current_thread()

    session_id = (await client.post("/sessions", json={"message": "threads"})).json()["id"]
    await client.post(f"/sessions/{session_id}/messages", json={"text": "threads"})
    await client.post(f"/sessions/{session_id}/select")
    await client.delete(f"/sessions/{session_id}")

    assert len(writers) == 4
    assert loop_thread not in writers
