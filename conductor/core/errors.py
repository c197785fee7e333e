"""Error taxonomy raised by the orchestration runtime."""
from __future__ import annotations

from typing import Any, List, Optional, Sequence


class OrchestrationError(Exception):
    """Base class for every error surfaced by the runtime.

    ``retryable`` tells callers whether backing off and retrying may succeed.
    ``fatal`` marks structural failures that always abort the enclosing request.
    ``trace`` is filled in by the orchestrator with the partial trace recorded
    before the failure propagated.
    """

    retryable = False
    fatal = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.trace: List[Any] = []


class DuplicateName(OrchestrationError):
    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} '{name}' is already registered")
        self.kind = kind
        self.name = name


class NotFound(OrchestrationError):
    fatal = True

    def __init__(self, kind: str, name: str, detail: str = "") -> None:
        message = f"{kind} '{name}' not found"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.kind = kind
        self.name = name


class ValidationError(OrchestrationError):
    """Tool input did not match the declared schema."""

    def __init__(self, tool: str, detail: str) -> None:
        super().__init__(f"invalid input for '{tool}': {detail}")
        self.tool = tool
        self.detail = detail


class RateLimited(OrchestrationError):
    retryable = True

    def __init__(self, tool: str, limit: int, retry_after: float) -> None:
        super().__init__(f"'{tool}' exceeded {limit} calls per minute, retry in {retry_after:.1f}s")
        self.tool = tool
        self.limit = limit
        self.retry_after = retry_after


class Timeout(OrchestrationError):
    def __init__(self, target: str, timeout: float) -> None:
        super().__init__(f"'{target}' exceeded its {timeout:g}s budget")
        self.target = target
        self.timeout = timeout


class ToolExecutionError(OrchestrationError):
    def __init__(self, tool: str, cause: BaseException) -> None:
        super().__init__(f"tool '{tool}' failed: {cause}")
        self.tool = tool
        self.cause = cause


class MaxTurnsExceeded(OrchestrationError):
    fatal = True

    def __init__(self, agent: str, max_turns: int) -> None:
        super().__init__(f"agent '{agent}' produced no final answer within {max_turns} turns")
        self.agent = agent
        self.max_turns = max_turns


class MaxDepthExceeded(OrchestrationError):
    fatal = True

    def __init__(self, agent: str, depth: int, max_depth: int) -> None:
        super().__init__(f"delegation to '{agent}' at depth {depth} exceeds maximum {max_depth}")
        self.agent = agent
        self.depth = depth
        self.max_depth = max_depth


class CyclicDelegation(OrchestrationError):
    fatal = True

    def __init__(self, agent: str, chain: Sequence[str]) -> None:
        path = " -> ".join([*chain, agent])
        super().__init__(f"cyclic delegation detected: {path}")
        self.agent = agent
        self.chain = list(chain)


class NoAgentAvailable(OrchestrationError):
    fatal = True


class RetryableModelError(OrchestrationError):
    """Transient model gateway failure (provider rate limit, network)."""

    retryable = True

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class ModelUnavailable(OrchestrationError):
    fatal = True

    def __init__(self, attempts: int, cause: Optional[BaseException]) -> None:
        super().__init__(f"model gateway unavailable after {attempts} attempt(s): {cause}")
        self.attempts = attempts
        self.cause = cause


class InvalidPlan(OrchestrationError):
    fatal = True


class StepFailed(OrchestrationError):
    fatal = True

    def __init__(self, index: int, cause: BaseException, plan: Any = None) -> None:
        super().__init__(f"step {index} failed: {cause}")
        self.index = index
        self.cause = cause
        self.plan = plan


class DeadlineExceeded(OrchestrationError):
    fatal = True

    def __init__(self, request_id: str, deadline: float) -> None:
        super().__init__(f"request '{request_id}' exceeded its {deadline:g}s deadline")
        self.request_id = request_id
        self.deadline = deadline


class InvalidStatusTransition(OrchestrationError):
    fatal = True

    def __init__(self, session_id: str, current: str, requested: str) -> None:
        super().__init__(f"session '{session_id}' cannot move from {current} to {requested}")
        self.session_id = session_id
        self.current = current
        self.requested = requested
