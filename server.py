"""FastAPI server exposing the diagram agent as a dialogue API with SSE streaming.

Start with:
    uvicorn server:app --host 127.0.0.1 --port 8000 --reload

Endpoints
---------
GET    /diagram-types                  List diagram type selectors
GET    /usage                          Remaining free generations today
POST   /sessions                       Create a conversation (becomes current)
GET    /sessions                       List conversations, newest first
GET    /sessions/{id}                  Get one conversation with its turns
POST   /sessions/{id}/select           Make a conversation current
DELETE /sessions/{id}                  Delete a conversation
POST   /sessions/{id}/messages         Generate within a conversation; returns SSE stream
POST   /generate                       Stateless generation; returns SSE stream
POST   /repair                         Repair diagram code; returns SSE stream
POST   /toggle-direction               Flip a flowchart between vertical and horizontal

SSE event types
---------------
delta   {"delta": "..."}
done    {"artifact": "...", "done": true}            repair may add "warning"
error   {"error": "...", "done": true}

Request and response bodies use camelCase field names.
Requests refused before streaming starts get a JSON ``{"error": "..."}``
body with a 4xx status instead.
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Literal

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

import config as cfg
import redaction
from agent import DiagramAgent, GenerationRequest
from dependencies import get_agent, set_http_client
from errors import DiagramServiceError
from llm_client import GenerationConfig
from prompts import AUTO, list_diagram_types
from repair import toggle_direction
from sinks import EventSink, QueueSink

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=cfg.LOG_LEVEL.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    redaction.install()


configure_logging()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    client = httpx.AsyncClient(timeout=cfg.UPSTREAM_TIMEOUT)
    set_http_client(client)
    yield
    set_http_client(None)
    await client.aclose()


# ── App ───────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Text-to-Diagram API",
    description="Streaming mermaid diagram generation with multi-turn conversations.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DiagramServiceError)
async def service_error_handler(_request: Request, exc: DiagramServiceError) -> JSONResponse:
    logger.info("Request refused (%d): %s", exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


# ── Request models ────────────────────────────────────────────────────────────

class CamelModel(BaseModel):
    """Bodies use camelCase on the wire, like the JSON this API returns."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AIConfig(CamelModel):
    api_url: str = ""
    api_key: str = ""
    model_name: str = ""

    def to_config(self) -> GenerationConfig:
        return GenerationConfig(
            endpoint_base_url=self.api_url.strip(),
            api_key=self.api_key.strip(),
            model_name=self.model_name.strip(),
        )


class Credentials(CamelModel):
    ai_config: AIConfig | None = None
    access_password: str | None = None
    selected_model: str | None = None


class MessageRequest(Credentials):
    text: str
    diagram_type: str = AUTO

    def to_request(self) -> GenerationRequest:
        return GenerationRequest(
            text=self.text,
            diagram_type=self.diagram_type,
            explicit_config=self.ai_config.to_config() if self.ai_config else None,
            access_credential=self.access_password or None,
            model_override=self.selected_model or None,
        )


class ContextMessage(CamelModel):
    role: Literal["user", "assistant"]
    content: str


class GenerateRequest(MessageRequest):
    context_turns: list[ContextMessage] = Field(default_factory=list)

    def to_request(self) -> GenerationRequest:
        request = super().to_request()
        request.context_turns = [m.model_dump() for m in self.context_turns]
        return request


class CreateSessionRequest(CamelModel):
    message: str


class RepairRequest(Credentials):
    code: str
    error: str | None = None


class ToggleRequest(CamelModel):
    code: str


# ── Helpers ───────────────────────────────────────────────────────────────────

def client_identity(request: Request) -> str:
    """Usage-counter key: the client's own id header, else its address."""
    header = request.headers.get("x-client-id", "").strip()
    if header:
        return header
    return request.client.host if request.client else "anonymous"


def _sse(event: dict[str, Any]) -> str:
    if "delta" in event:
        event_type = "delta"
    elif "error" in event:
        event_type = "error"
    else:
        event_type = "done"
    return f"event: {event_type}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n"


# Strong references so abandoned jobs are not collected before they finish
_jobs: set[asyncio.Task] = set()


def _stream(job: Callable[[EventSink], Awaitable[object]]) -> StreamingResponse:
    """Run ``job`` against a fresh sink and relay its events as SSE.

    If the client goes away the sink is closed and the job cancelled, which
    aborts the upstream read.
    """
    sink = QueueSink()
    # started now so a reserved turn is always settled, even if the body is never read
    task = asyncio.create_task(job(sink))
    _jobs.add(task)
    task.add_done_callback(_jobs.discard)

    async def event_stream():
        try:
            async for event in sink:
                yield _sse(event)
        finally:
            sink.close()
            if not task.done():
                logger.info("Client disconnected; cancelling generation")
                task.cancel()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # disable nginx buffering
        },
    )


# ── Endpoints ─────────────────────────────────────────────────────────────────

@app.get("/diagram-types")
async def diagram_types():
    return {"types": list_diagram_types()}


@app.get("/usage")
async def usage(request: Request, agent: DiagramAgent = Depends(get_agent)):
    identity = client_identity(request)
    return {"limit": agent.throttle.limit, "remaining": agent.throttle.remaining(identity)}


@app.post("/sessions", status_code=201)
async def create_session(body: CreateSessionRequest, agent: DiagramAgent = Depends(get_agent)):
    """Create a conversation titled after its opening message."""
    session = await asyncio.to_thread(agent.sessions.create_session, body.message)
    return {**session.summary(), "current": agent.sessions.current_id}


@app.get("/sessions")
async def list_sessions(agent: DiagramAgent = Depends(get_agent)):
    return {
        "current": agent.sessions.current_id,
        "sessions": [s.summary() for s in agent.sessions.list_sessions()],
    }


@app.get("/sessions/{session_id}")
async def get_session(session_id: str, agent: DiagramAgent = Depends(get_agent)):
    """Return a conversation including any turn still being generated."""
    return agent.sessions.get(session_id).to_dict(include_pending=True)


@app.post("/sessions/{session_id}/select")
async def select_session(session_id: str, agent: DiagramAgent = Depends(get_agent)):
    session = await asyncio.to_thread(agent.sessions.select_session, session_id)
    return {"current": session.id}


@app.delete("/sessions/{session_id}")
async def delete_session(session_id: str, agent: DiagramAgent = Depends(get_agent)):
    return {"current": await asyncio.to_thread(agent.sessions.delete_session, session_id)}


@app.post("/sessions/{session_id}/messages")
async def send_message(
    session_id: str,
    body: MessageRequest,
    request: Request,
    agent: DiagramAgent = Depends(get_agent),
):
    """Generate a diagram for the next turn of a conversation.

    Gate failures are returned as JSON errors; once the stream has started,
    failures arrive as the terminal ``error`` event.
    """
    prepared = await asyncio.to_thread(
        agent.prepare, body.to_request(), session_id=session_id, identity=client_identity(request)
    )
    return _stream(lambda sink: agent.run(prepared, sink))


@app.post("/generate")
async def generate(body: GenerateRequest, request: Request, agent: DiagramAgent = Depends(get_agent)):
    """Generate without a stored conversation; context comes from the body."""
    prepared = await asyncio.to_thread(agent.prepare, body.to_request(), identity=client_identity(request))
    return _stream(lambda sink: agent.run(prepared, sink))


@app.post("/repair")
async def repair(body: RepairRequest, agent: DiagramAgent = Depends(get_agent)):
    config = agent.prepare_repair(
        body.code,
        explicit_config=body.ai_config.to_config() if body.ai_config else None,
        access_credential=body.access_password or None,
        model_override=body.selected_model or None,
    )
    return _stream(lambda sink: agent.repair(body.code, body.error, config, sink))


@app.post("/toggle-direction")
async def toggle(body: ToggleRequest):
    code = toggle_direction(body.code)
    return {"code": code, "changed": code != body.code}


# ── Dev entry-point ───────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "server:app",
        host=cfg.SERVER_HOST,
        port=cfg.SERVER_PORT,
        reload=True,
    )
