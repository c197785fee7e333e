"""Session state API routes."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from conductor.core.models import SessionState
from conductor.core.state_store import StateStore
from conductor.runtime import get_state_store

router = APIRouter(prefix="/sessions", tags=["sessions"])


class TurnResponse(BaseModel):
    role: str
    content: str


class SessionResponse(BaseModel):
    session_id: str
    agent_name: str
    status: str
    conversation_history: List[TurnResponse]
    task_state: Dict[str, Any]
    task_count: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_state(cls, state: SessionState) -> "SessionResponse":
        return cls(
            session_id=state.session_id,
            agent_name=state.agent_name,
            status=state.status.value,
            conversation_history=[
                TurnResponse(role=turn.role, content=turn.content) for turn in state.conversation_history
            ],
            task_state=state.task_state,
            task_count=state.task_count,
            created_at=state.created_at,
            updated_at=state.updated_at,
        )


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, store: StateStore = Depends(get_state_store)) -> SessionResponse:
    state, found = await store.load(session_id)
    if not found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown session {session_id}")
    return SessionResponse.from_state(state)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(session_id: str, store: StateStore = Depends(get_state_store)) -> None:
    """Forget a session and its conversation history."""
    await store.delete(session_id)
