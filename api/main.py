"""
FastAPI Application — REST surface of the flow execution engine.

Provides:
- Flow validation for the editor
- Stateless turn execution (the host round-trips variables and history)
- In-memory browser test calls driven by CallSession
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import get_settings
from flow.executor import FlowExecutor
from flow.graph import FlowValidationError, find_start_node, initialize_variables, load_flow
from flow.session import CallSession, CallSessionStore, SessionClosedError
from flow.validation import validate_flow
from models.schemas import FlowModel, HistoryMessage, ValidationResult

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

flow_executor = FlowExecutor()
session_store = CallSessionStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("flow_engine_started", app_name=settings.app_name,
                provider=settings.llm.provider, model=settings.llm.model)
    yield
    for session in session_store.list_all():
        session.hang_up()
        session_store.remove(session.id)
    logger.info("flow_engine_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Flow Engine API",
    description="Turn-by-turn execution of voice agent conversation flows",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FlowValidationError)
async def flow_validation_error_handler(request, exc: FlowValidationError):
    return JSONResponse(status_code=422, content={
        "detail": "Invalid flow",
        "validation": exc.result.model_dump(),
    })


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class TurnRequest(FlowModel):
    flow: dict[str, Any]
    current_node_id: Optional[str] = None
    user_input: str = ""
    variables: Optional[dict[str, Any]] = None
    history: list[HistoryMessage] = []


class CallStartRequest(FlowModel):
    flow: dict[str, Any]
    variables: dict[str, Any] = {}


class CallInputRequest(FlowModel):
    text: str


def _get_session(session_id: str) -> CallSession:
    session = session_store.get(session_id)
    if not session:
        raise HTTPException(404, "Test call not found")
    return session


def _turn_payload(session: CallSession, result) -> dict[str, Any]:
    return {
        "session_id": session.id,
        "status": session.status.value,
        "result": result.model_dump(mode="json"),
    }


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "active_test_calls": session_store.count,
    }


# ══════════════════════════════════════════════════════════════
#  FLOWS
# ══════════════════════════════════════════════════════════════

@app.post("/api/flows/validate")
async def validate(flow: dict[str, Any]) -> dict[str, Any]:
    try:
        graph = load_flow(flow, strict=False)
    except FlowValidationError as e:
        return e.result.model_dump()
    result: ValidationResult = validate_flow(graph)
    logger.info("flow_validated", flow_id=graph.id, valid=result.valid,
                errors=len(result.errors), warnings=len(result.warnings))
    return result.model_dump()


# ══════════════════════════════════════════════════════════════
#  TURNS
# ══════════════════════════════════════════════════════════════

@app.post("/api/turns")
async def execute_turn(req: TurnRequest):
    graph = load_flow(req.flow)
    node_id = req.current_node_id or find_start_node(graph)
    variables = req.variables if req.variables is not None else initialize_variables(graph)

    result = await flow_executor.execute_node(
        graph, node_id, req.user_input, variables,
        [m.model_dump() for m in req.history],
    )
    return result.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  TEST CALLS
# ══════════════════════════════════════════════════════════════

@app.post("/api/test-calls")
async def create_test_call(req: CallStartRequest):
    graph = load_flow(req.flow)
    session = CallSession(graph, flow_executor, get_settings(), variables=req.variables)
    session_store.save(session)
    result = await session.start()
    logger.info("test_call_created", session_id=session.id, flow_id=graph.id)
    return _turn_payload(session, result)


@app.get("/api/test-calls/{session_id}")
async def get_test_call(session_id: str):
    return _get_session(session_id).to_dict()


@app.post("/api/test-calls/{session_id}/input")
async def test_call_input(session_id: str, req: CallInputRequest):
    session = _get_session(session_id)
    try:
        result = await session.handle_input(req.text)
    except SessionClosedError as e:
        raise HTTPException(409, str(e))
    return _turn_payload(session, result)


@app.delete("/api/test-calls/{session_id}")
async def hang_up_test_call(session_id: str):
    session = _get_session(session_id)
    session.hang_up()
    session_store.remove(session_id)
    return {"session_id": session_id, "status": session.status.value}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=get_settings().debug)
