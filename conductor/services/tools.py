"""Tool registry and concurrent executor with validation, rate limits and timeouts."""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict, deque
from typing import Any, Callable, Collection, Deque, Dict, Iterable, List, Optional, Sequence

import pydantic

from conductor.core.errors import (
    DuplicateName,
    NotFound,
    OrchestrationError,
    RateLimited,
    Timeout,
    ToolExecutionError,
    ValidationError,
)
from conductor.core.models import ToolCall, ToolCallRecord, ToolDefinition, ToolResult, TraceAction
from conductor.core.tracing import Tracer, summarize

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Registry maintaining tool definitions by name."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolDefinition] = {}

    def register(self, definition: ToolDefinition) -> None:
        if definition.name in self._tools:
            raise DuplicateName("tool", definition.name)
        self._tools[definition.name] = definition
        logger.debug("Registered tool %s", definition.name)

    def get(self, name: str) -> ToolDefinition:
        if name not in self._tools:
            raise NotFound("tool", name)
        return self._tools[name]

    def definitions_for(self, names: Iterable[str]) -> List[ToolDefinition]:
        """Return the registered subset of ``names`` in registration order."""
        wanted = set(names)
        return [tool for name, tool in self._tools.items() if name in wanted]

    def list(self) -> List[ToolDefinition]:
        return list(self._tools.values())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


class SlidingWindowRateLimiter:
    """Non-blocking sliding-window counter keyed by an arbitrary string."""

    def __init__(self, window: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._window = window
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)

    def _prune(self, key: str, now: float) -> Deque[float]:
        hits = self._hits[key]
        while hits and hits[0] <= now - self._window:
            hits.popleft()
        return hits

    def try_acquire(self, key: str, limit: int) -> bool:
        """Consume one slot if available. Rejected attempts consume nothing."""
        now = self._clock()
        hits = self._prune(key, now)
        if len(hits) >= limit:
            return False
        hits.append(now)
        return True

    def retry_after(self, key: str, limit: int) -> float:
        now = self._clock()
        hits = self._prune(key, now)
        if len(hits) < limit:
            return 0.0
        return max(0.0, hits[len(hits) - limit] + self._window - now)


class ToolExecutor:
    """Executes registered tools singly or as a parallel batch.

    Every execution is recorded on the tracer as a TOOL_CALL event carrying
    its :class:`ToolCallRecord`.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        tracer: Tracer,
        *,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        max_concurrency: int = 8,
    ) -> None:
        self._registry = registry
        self._tracer = tracer
        self._limiter = rate_limiter or SlidingWindowRateLimiter()
        self._max_concurrency = max_concurrency

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute(
        self,
        tool_name: str,
        input: Any,
        request_id: str,
        *,
        agent_name: str = "",
        permitted: Optional[Collection[str]] = None,
        depth: int = 0,
    ) -> Any:
        """Run one tool call; raises a taxonomy error on any failure.

        ``input`` comes straight from model output and may not be an object.
        """
        started = time.monotonic()
        if input is None:
            input = {}
        record = ToolCallRecord(
            tool_name=tool_name,
            input=dict(input) if isinstance(input, dict) else {"_raw": input},
        )
        try:
            output = await self._execute(tool_name, input, permitted)
        except OrchestrationError as exc:
            record.success = False
            record.error = f"{type(exc).__name__}: {exc}"
            raise
        except asyncio.CancelledError:
            record.success = False
            record.error = "cancelled"
            raise
        else:
            record.output = output
            return output
        finally:
            record.duration_ms = (time.monotonic() - started) * 1000
            summary = f"{tool_name} -> {'ok' if record.success else record.error}"
            self._tracer.record_event(
                request_id,
                agent_name,
                TraceAction.TOOL_CALL,
                summarize(summary),
                duration_ms=record.duration_ms,
                depth=depth,
                tool_call=record,
            )

    async def _execute(
        self,
        tool_name: str,
        input: Any,
        permitted: Optional[Collection[str]],
    ) -> Any:
        if permitted is not None and tool_name not in permitted:
            raise NotFound("tool", tool_name, "not permitted for this agent")
        tool = self._registry.get(tool_name)

        if not isinstance(input, dict):
            raise ValidationError(tool_name, f"arguments must be a JSON object, got {type(input).__name__}")

        try:
            arguments = tool.input_schema.model_validate(input)
        except pydantic.ValidationError as exc:
            raise ValidationError(tool_name, _describe(exc)) from exc

        limit = tool.rate_limit_per_minute
        if limit is not None and not self._limiter.try_acquire(tool_name, limit):
            retry_after = self._limiter.retry_after(tool_name, limit)
            logger.warning("Tool %s rate limited (%d/min)", tool_name, limit)
            raise RateLimited(tool_name, limit, retry_after)

        try:
            output = await asyncio.wait_for(_invoke(tool, arguments), timeout=tool.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Tool %s timed out after %.2fs", tool_name, tool.timeout)
            raise Timeout(tool_name, tool.timeout) from exc
        except Exception as exc:  # noqa: BLE001
            logger.info("Tool %s raised %s: %s", tool_name, type(exc).__name__, exc)
            raise ToolExecutionError(tool_name, exc) from exc

        if tool.output_schema is not None:
            try:
                output = tool.output_schema.model_validate(output)
            except pydantic.ValidationError as exc:
                raise ToolExecutionError(tool_name, exc) from exc
        return output

    async def execute_parallel(
        self,
        calls: Sequence[ToolCall],
        request_id: str,
        *,
        agent_name: str = "",
        permitted: Optional[Collection[str]] = None,
        depth: int = 0,
    ) -> List[ToolResult]:
        """Run ``calls`` concurrently; failures are isolated per call and order is preserved."""
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run(call: ToolCall) -> Any:
            async with semaphore:
                return await self.execute(
                    call.name,
                    call.arguments,
                    request_id,
                    agent_name=agent_name,
                    permitted=permitted,
                    depth=depth,
                )

        outcomes = await asyncio.gather(*(run(call) for call in calls), return_exceptions=True)

        results: List[ToolResult] = []
        for call, outcome in zip(calls, outcomes):
            if isinstance(outcome, OrchestrationError):
                results.append(ToolResult(call=call, error=outcome))
            elif isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                results.append(ToolResult(call=call, error=ToolExecutionError(call.name, outcome)))
            else:
                results.append(ToolResult(call=call, output=outcome))
        return results


async def _invoke(tool: ToolDefinition, arguments: pydantic.BaseModel) -> Any:
    if inspect.iscoroutinefunction(tool.handler):
        return await tool.handler(arguments)
    result = await asyncio.to_thread(tool.handler, arguments)
    if inspect.isawaitable(result):
        return await result
    return result


def _describe(exc: pydantic.ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "input"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)
