"""Core data models shared across orchestrator components."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set, Tuple, Type, Union

from pydantic import BaseModel

from .errors import InvalidStatusTransition, ValidationError

ToolHandler = Callable[[BaseModel], Union[Any, Awaitable[Any]]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class AgentDefinition:
    """Registered behaviour profile used for routing and delegation."""

    name: str
    description: str
    capability_tags: FrozenSet[str] = frozenset()
    delegation_targets: Tuple[str, ...] = ()
    tool_names: FrozenSet[str] = frozenset()
    instructions: str = ""

    def __post_init__(self) -> None:
        # Accept any iterable from callers but store immutable containers.
        object.__setattr__(self, "capability_tags", frozenset(self.capability_tags))
        object.__setattr__(self, "delegation_targets", tuple(self.delegation_targets))
        object.__setattr__(self, "tool_names", frozenset(self.tool_names))

    @property
    def system_prompt(self) -> str:
        return self.instructions or f"You are {self.name}. {self.description}".strip()


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """Contract for an invocable tool."""

    name: str
    description: str
    input_schema: Type[BaseModel]
    handler: ToolHandler
    timeout: float = 30.0
    rate_limit_per_minute: Optional[int] = None
    idempotent: bool = False
    output_schema: Optional[Type[BaseModel]] = None

    def json_schema(self) -> Dict[str, Any]:
        return self.input_schema.model_json_schema()


@dataclass(slots=True)
class ToolCall:
    """A single tool invocation requested by the model."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolCallRecord:
    """Outcome of one tool execution, attached to a TOOL_CALL trace event."""

    tool_name: str
    input: Dict[str, Any]
    output: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0
    success: bool = True


@dataclass(slots=True)
class ToolResult:
    """Result slot for one call of a parallel batch."""

    call: ToolCall
    output: Any = None
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_message(self) -> Dict[str, Any]:
        """Build the chat message that feeds this result back to the model."""
        if self.error is not None:
            content = json.dumps({"error": type(self.error).__name__, "message": str(self.error)})
        elif isinstance(self.output, str):
            content = self.output
        else:
            content = json.dumps(_jsonable(self.output), default=str)
        return {"role": "tool", "tool_call_id": self.call.id, "content": content}


class StopReason(Enum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"


@dataclass(slots=True)
class ModelResponse:
    """Provider-agnostic completion result."""

    stop_reason: StopReason
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)


class SessionStatus(Enum):
    """Lifecycle of the task currently bound to a session."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


_ALLOWED_TRANSITIONS = {
    SessionStatus.PENDING: {SessionStatus.IN_PROGRESS},
    SessionStatus.IN_PROGRESS: {SessionStatus.COMPLETED, SessionStatus.FAILED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
}


@dataclass(slots=True)
class TurnRecord:
    role: str
    content: str


@dataclass(slots=True)
class SessionState:
    """Persisted continuity scope for one caller session."""

    session_id: str
    agent_name: str = ""
    conversation_history: List[TurnRecord] = field(default_factory=list)
    task_state: Dict[str, Any] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    task_count: int = 0

    def transition(self, status: SessionStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStatusTransition(self.session_id, self.status.value, status.value)
        self.status = status

    def begin_task(self) -> None:
        """Open a new task cycle; history is kept, task state is not."""
        if self.status is SessionStatus.IN_PROGRESS:
            raise InvalidStatusTransition(self.session_id, self.status.value, SessionStatus.PENDING.value)
        if self.status.terminal:
            self.status = SessionStatus.PENDING
            self.task_state = {}
        self.task_count += 1

    def append_turn(self, role: str, content: str) -> None:
        self.conversation_history.append(TurnRecord(role=role, content=content))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent_name": self.agent_name,
            "conversation_history": [
                {"role": turn.role, "content": turn.content} for turn in self.conversation_history
            ],
            "task_state": self.task_state,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "task_count": self.task_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionState":
        return cls(
            session_id=data["session_id"],
            agent_name=data.get("agent_name", ""),
            conversation_history=[TurnRecord(**turn) for turn in data.get("conversation_history", [])],
            task_state=dict(data.get("task_state", {})),
            status=SessionStatus(data.get("status", SessionStatus.PENDING.value)),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            task_count=int(data.get("task_count", 0)),
        )


@dataclass(slots=True)
class TaskPlan:
    """Ordered decomposition of a top-level task."""

    task_id: str
    original_task: str
    steps: List[str]
    completed_steps: Set[int] = field(default_factory=set)
    results: Dict[int, str] = field(default_factory=dict)

    def mark_completed(self, index: int, result: str) -> None:
        if not 0 <= index < len(self.steps):
            raise ValidationError("plan", f"step index {index} outside 0..{len(self.steps) - 1}")
        self.completed_steps.add(index)
        self.results[index] = result

    @property
    def done(self) -> bool:
        return len(self.completed_steps) == len(self.steps)


class TraceAction(Enum):
    START = "start"
    MODEL_CALL = "model_call"
    TOOL_CALL = "tool_call"
    DELEGATE = "delegate"
    COMPLETE = "complete"
    FAIL = "fail"


@dataclass(slots=True)
class TraceEvent:
    """Append-only record of one step within a trace."""

    trace_id: str
    agent_name: str
    action: TraceAction
    payload_summary: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    duration_ms: Optional[float] = None
    sequence: int = -1
    depth: int = 0
    parent_agent: Optional[str] = None
    tool_call: Optional[ToolCallRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "trace_id": self.trace_id,
            "sequence": self.sequence,
            "agent_name": self.agent_name,
            "action": self.action.value,
            "payload_summary": self.payload_summary,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
            "depth": self.depth,
            "parent_agent": self.parent_agent,
        }
        if self.tool_call is not None:
            data["tool_call"] = {
                "tool_name": self.tool_call.tool_name,
                "input": self.tool_call.input,
                "output": _jsonable(self.tool_call.output),
                "error": self.tool_call.error,
                "duration_ms": self.tool_call.duration_ms,
                "success": self.tool_call.success,
            }
        return data


@dataclass(slots=True)
class TraceGraph:
    nodes: List[Dict[str, Any]] = field(default_factory=list)
    edges: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": self.nodes,
            "edges": [{"source": source, "target": target} for source, target in self.edges],
        }


@dataclass(slots=True)
class RequestResult:
    request_id: str
    session_id: str
    agent_name: str
    output: str
    status: SessionStatus


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value
