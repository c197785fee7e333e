"""Task submission and trace inspection endpoints."""
from __future__ import annotations

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from conductor.core.errors import (
    DeadlineExceeded,
    DuplicateName,
    InvalidPlan,
    ModelUnavailable,
    NoAgentAvailable,
    NotFound,
    OrchestrationError,
    RateLimited,
    StepFailed,
    ValidationError,
)
from conductor.core.tracing import Tracer
from conductor.orchestration.orchestrator import Orchestrator
from conductor.runtime import get_orchestrator, get_tracer

router = APIRouter(prefix="/chat", tags=["chat"])

_STATUS_BY_ERROR = (
    (NotFound, status.HTTP_404_NOT_FOUND),
    (DuplicateName, status.HTTP_409_CONFLICT),
    ((ValidationError, InvalidPlan), status.HTTP_422_UNPROCESSABLE_ENTITY),
    (RateLimited, status.HTTP_429_TOO_MANY_REQUESTS),
    ((ModelUnavailable, NoAgentAvailable), status.HTTP_503_SERVICE_UNAVAILABLE),
    (DeadlineExceeded, status.HTTP_504_GATEWAY_TIMEOUT),
)


class ChatRequest(BaseModel):
    message: str = Field(..., description="Task for the orchestrator")
    session_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Session identifier for conversation continuity",
    )
    capability: Optional[str] = Field(None, description="Route to an agent advertising this capability")
    decompose: bool = Field(False, description="Plan the task into ordered steps before running it")


class ChatResponse(BaseModel):
    response: str
    agent: str
    request_id: str
    session_id: str
    status: str


class TraceEventResponse(BaseModel):
    sequence: int
    agent_name: str
    action: str
    payload_summary: str
    timestamp: str
    duration_ms: Optional[float] = None
    depth: int = 0
    parent_agent: Optional[str] = None
    tool_call: Optional[dict] = None


class TraceGraphResponse(BaseModel):
    nodes: List[dict]
    edges: List[dict]


def status_for(exc: OrchestrationError) -> int:
    if isinstance(exc, StepFailed) and isinstance(exc.cause, OrchestrationError):
        return status_for(exc.cause)
    for error_types, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_types):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@router.post("", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ChatResponse:
    """Run a task for the session and return the final answer."""
    request_id = str(uuid.uuid4())
    context = {"capability": request.capability} if request.capability else {}
    try:
        result = await orchestrator.handle_request(
            request.message,
            request.session_id,
            context=context,
            decompose=request.decompose,
            request_id=request_id,
        )
    except OrchestrationError as exc:
        raise HTTPException(
            status_code=status_for(exc),
            detail={"error": type(exc).__name__, "message": str(exc), "request_id": request_id},
        ) from exc
    return ChatResponse(
        response=result.output,
        agent=result.agent_name,
        request_id=result.request_id,
        session_id=result.session_id,
        status=result.status.value,
    )


@router.get("/traces/{trace_id}", response_model=List[TraceEventResponse])
async def get_trace(trace_id: str, tracer: Tracer = Depends(get_tracer)) -> List[TraceEventResponse]:
    if not tracer.has_trace(trace_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown trace {trace_id}")
    return [TraceEventResponse(**event.to_dict()) for event in tracer.get_trace(trace_id)]


@router.get("/traces/{trace_id}/graph", response_model=TraceGraphResponse)
async def get_trace_graph(trace_id: str, tracer: Tracer = Depends(get_tracer)) -> TraceGraphResponse:
    if not tracer.has_trace(trace_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown trace {trace_id}")
    return TraceGraphResponse(**tracer.visualize(trace_id).to_dict())


@router.delete("/traces/{trace_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_trace(trace_id: str, tracer: Tracer = Depends(get_tracer)) -> None:
    """Drop a finished trace before retention evicts it."""
    if not tracer.has_trace(trace_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown trace {trace_id}")
    tracer.discard(trace_id)
