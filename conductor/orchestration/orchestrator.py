"""Orchestrator responsible for routing tasks and driving agent turn loops."""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

from conductor.config import OrchestratorSettings, ToolFailurePolicy
from conductor.core.agent_registry import AgentRegistry
from conductor.core.errors import (
    DeadlineExceeded,
    InvalidPlan,
    MaxTurnsExceeded,
    NoAgentAvailable,
    OrchestrationError,
    StepFailed,
    Timeout,
)
from conductor.core.models import (
    AgentDefinition,
    ModelResponse,
    RequestResult,
    SessionState,
    SessionStatus,
    StopReason,
    TaskPlan,
    ToolCall,
    ToolDefinition,
    ToolResult,
    TraceAction,
    TurnRecord,
)
from conductor.core.state_store import StateStore
from conductor.core.tracing import Tracer
from conductor.orchestration.delegation import DelegationController
from conductor.orchestration.routing import CapabilityMatch, CapabilityThenModel, ModelAssisted, RoutingStrategy
from conductor.services.model_gateway import Message, ModelGateway, call_with_retry, extract_json
from conductor.services.tools import ToolExecutor, ToolRegistry

logger = logging.getLogger(__name__)

ORCHESTRATOR_NAME = "orchestrator"

_PLANNING_PROMPT = """Break the user's task into {low} to {high} ordered steps.
Each step must be a self-contained instruction; later steps may rely on earlier results.
Respond with a JSON array of strings only."""

_SYNTHESIS_PROMPT = """Combine the results of the completed steps into one final answer
for the original task. Do not mention the steps themselves."""

_NUMBERED_LINE = re.compile(r"^\s*(?:\d+[.)]|[-*])\s+(.+)$")


class Orchestrator:
    """Coordinate routing, delegation, tool use and session state for each request."""

    def __init__(
        self,
        *,
        agents: AgentRegistry,
        tools: ToolRegistry,
        executor: ToolExecutor,
        gateway: ModelGateway,
        state_store: StateStore,
        tracer: Tracer,
        routing: Optional[RoutingStrategy] = None,
        delegation: Optional[DelegationController] = None,
        settings: Optional[OrchestratorSettings] = None,
    ) -> None:
        self._agents = agents
        self._tools = tools
        self._executor = executor
        self._gateway = gateway
        self._state_store = state_store
        self._tracer = tracer
        self._settings = settings or OrchestratorSettings()
        self._routing = routing or CapabilityThenModel(
            CapabilityMatch(), ModelAssisted(gateway, tracer, self._settings)
        )
        self._delegation = delegation or DelegationController(agents, gateway, tracer, self._settings)
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    @property
    def settings(self) -> OrchestratorSettings:
        return self._settings

    @property
    def delegation(self) -> DelegationController:
        return self._delegation

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    async def handle_request(
        self,
        task: str,
        session_id: str,
        *,
        context: Optional[Mapping[str, Any]] = None,
        decompose: bool = False,
        request_id: Optional[str] = None,
    ) -> RequestResult:
        """Run one top-level task for a session and persist the outcome.

        Requests for the same session are serialized; the whole request runs
        under ``request_timeout``.
        """
        request_id = request_id or str(uuid.uuid4())
        context = dict(context or {})

        async with self._session_lock(session_id):
            started = time.monotonic()
            state, found = await self._state_store.load(session_id)
            if not found:
                state = SessionState(session_id=session_id)
            elif state.status is SessionStatus.IN_PROGRESS:
                # Only reachable if a previous process died mid-request.
                logger.warning("Session %s was left in progress; marking it failed", session_id)
                state.transition(SessionStatus.FAILED)
            history = list(state.conversation_history)
            state.begin_task()
            state.transition(SessionStatus.IN_PROGRESS)
            state.task_state["request_id"] = request_id
            state.task_state["task"] = task
            await self._state_store.save(state)

            self._tracer.start(request_id, ORCHESTRATOR_NAME, task)
            logger.info("[%s] session=%s task=%r", request_id, session_id, task[:80])

            deadline = self._settings.request_timeout
            try:
                output = await asyncio.wait_for(
                    self._run(task, state, history, context, decompose, request_id),
                    timeout=deadline,
                )
            except asyncio.TimeoutError as exc:
                error = DeadlineExceeded(request_id, deadline)
                await self._finish_failed(state, task, error, request_id, started)
                raise error from exc
            except asyncio.CancelledError as exc:
                await self._finish_failed(state, task, exc, request_id, started)
                raise
            except Exception as exc:
                await self._finish_failed(state, task, exc, request_id, started)
                raise

            duration_ms = (time.monotonic() - started) * 1000
            self._tracer.complete(request_id, state.agent_name, output, duration_ms)
            state.append_turn("user", task)
            state.append_turn("assistant", output)
            state.transition(SessionStatus.COMPLETED)
            await self._state_store.save(state)
            logger.info("[%s] completed by %s in %.0fms", request_id, state.agent_name, duration_ms)

        return RequestResult(
            request_id=request_id,
            session_id=session_id,
            agent_name=state.agent_name,
            output=output,
            status=state.status,
        )

    async def _run(
        self,
        task: str,
        state: SessionState,
        history: Sequence[TurnRecord],
        context: Mapping[str, Any],
        decompose: bool,
        request_id: str,
    ) -> str:
        if decompose:
            state.agent_name = ORCHESTRATOR_NAME
            return await self.decompose_and_run(task, request_id, context=context)
        agent = await self.route(task, context, request_id)
        state.agent_name = agent.name
        return await self._execute(agent, task, context, request_id, history)

    async def _finish_failed(
        self,
        state: SessionState,
        task: str,
        error: BaseException,
        request_id: str,
        started: float,
    ) -> None:
        duration_ms = (time.monotonic() - started) * 1000
        trace = self._tracer.get_trace(request_id)
        if not trace or trace[-1].action is not TraceAction.FAIL:
            self._tracer.fail(request_id, state.agent_name or ORCHESTRATOR_NAME, error, duration_ms)
        if isinstance(error, OrchestrationError):
            error.trace = self._tracer.get_trace(request_id)
        log = logger.error if getattr(error, "fatal", True) else logger.warning
        log("[%s] failed: %s: %s", request_id, type(error).__name__, error)

        state.append_turn("user", task)
        state.task_state["error"] = f"{type(error).__name__}: {error}"
        state.transition(SessionStatus.FAILED)
        await self._state_store.save(state)

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        lock = self._session_locks.setdefault(session_id, asyncio.Lock())
        self._lock_holders[session_id] = self._lock_holders.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[session_id] -= 1
            if not self._lock_holders[session_id]:
                del self._lock_holders[session_id]
                self._session_locks.pop(session_id, None)

    # ------------------------------------------------------------------
    # Routing and execution
    # ------------------------------------------------------------------

    async def route(
        self,
        task: str,
        context: Optional[Mapping[str, Any]] = None,
        request_id: str = "",
    ) -> AgentDefinition:
        try:
            agent = await self._routing.select(task, context or {}, self._agents, request_id)
        except NoAgentAvailable as exc:
            logger.error("[%s] routing failed: %s", request_id, exc)
            raise
        logger.debug("[%s] routed to %s", request_id, agent.name)
        return agent

    async def _execute(
        self,
        agent: AgentDefinition,
        task: str,
        context: Mapping[str, Any],
        request_id: str,
        history: Sequence[TurnRecord] = (),
    ) -> str:
        async def run_local(target: AgentDefinition, sub_task: str, sub_context: Mapping[str, Any], depth: int) -> str:
            messages: List[Message] = []
            if depth == 0:
                messages.extend(
                    {"role": turn.role, "content": turn.content}
                    for turn in history
                    if turn.role in ("user", "assistant")
                )
            messages.append({"role": "user", "content": sub_task})
            return await self.run_turn_loop(
                target,
                messages,
                request_id,
                depth=depth,
                parent_agent=sub_context.get("parent_agent"),
            )

        return await self._delegation.delegate(agent, task, context, request_id, 0, run_local)

    async def run_turn_loop(
        self,
        agent: AgentDefinition,
        messages: List[Message],
        request_id: str,
        *,
        depth: int = 0,
        parent_agent: Optional[str] = None,
    ) -> str:
        """Alternate model calls and tool batches until the model gives a final answer.

        ``messages`` is extended in place with assistant and tool messages.
        """
        tools = self._tools.definitions_for(agent.tool_names)
        max_turns = self._settings.max_turns

        for turn in range(1, max_turns + 1):
            response = await self._complete(
                agent.name,
                agent.system_prompt,
                messages,
                tools,
                request_id,
                depth=depth,
                parent_agent=parent_agent,
                label=f"turn {turn}",
            )
            if response.stop_reason is StopReason.END_TURN or not response.tool_calls:
                messages.append({"role": "assistant", "content": response.text})
                return response.text

            messages.append(_assistant_tool_message(response))
            results = await self._run_tools(agent, response.tool_calls, request_id, depth)
            messages.extend(result.to_message() for result in results)

        error = MaxTurnsExceeded(agent.name, max_turns)
        logger.error("[%s] %s", request_id, error)
        self._tracer.fail(request_id, agent.name, error, depth=depth)
        raise error

    async def _run_tools(
        self,
        agent: AgentDefinition,
        calls: Sequence[ToolCall],
        request_id: str,
        depth: int,
    ) -> List[ToolResult]:
        results = await self._executor.execute_parallel(
            calls, request_id, agent_name=agent.name, permitted=agent.tool_names, depth=depth
        )

        # Timed-out idempotent tools get exactly one more attempt.
        retry = [
            index
            for index, result in enumerate(results)
            if isinstance(result.error, Timeout) and self._is_idempotent(result.call.name)
        ]
        if retry:
            logger.info("[%s] retrying %d timed-out idempotent tool call(s)", request_id, len(retry))
            retried = await self._executor.execute_parallel(
                [results[index].call for index in retry],
                request_id,
                agent_name=agent.name,
                permitted=agent.tool_names,
                depth=depth,
            )
            for index, result in zip(retry, retried):
                results[index] = result

        if self._settings.tool_failure_policy is ToolFailurePolicy.ABORT:
            for result in results:
                if result.error is not None:
                    raise result.error
        return results

    def _is_idempotent(self, tool_name: str) -> bool:
        return tool_name in self._tools and self._tools.get(tool_name).idempotent

    async def _complete(
        self,
        agent_name: str,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
        request_id: str,
        *,
        depth: int = 0,
        parent_agent: Optional[str] = None,
        label: str = "",
    ) -> ModelResponse:
        started = time.monotonic()
        response = await call_with_retry(
            self._gateway,
            system_prompt,
            messages,
            tools,
            max_attempts=self._settings.model_max_attempts,
            backoff=self._settings.model_backoff,
            timeout=self._settings.model_timeout,
        )
        if response.stop_reason is StopReason.TOOL_USE:
            summary = f"{label}: tool_use {', '.join(call.name for call in response.tool_calls)}"
        else:
            summary = f"{label}: {response.text}"
        self._tracer.record_event(
            request_id,
            agent_name,
            TraceAction.MODEL_CALL,
            summary,
            duration_ms=(time.monotonic() - started) * 1000,
            depth=depth,
            parent_agent=parent_agent,
        )
        return response

    # ------------------------------------------------------------------
    # Decomposition
    # ------------------------------------------------------------------

    async def plan(self, task: str, request_id: str) -> TaskPlan:
        """Ask the model for an ordered list of steps."""
        low, high = self._settings.min_plan_steps, self._settings.max_plan_steps
        response = await self._complete(
            ORCHESTRATOR_NAME,
            _PLANNING_PROMPT.format(low=low, high=high),
            [{"role": "user", "content": task}],
            (),
            request_id,
            label="plan",
        )
        steps = parse_steps(response.text)
        if not steps:
            raise InvalidPlan(f"model returned no usable steps for task {task[:80]!r}")
        if len(steps) > high:
            logger.warning("[%s] plan has %d steps, keeping the first %d", request_id, len(steps), high)
            steps = steps[:high]
        elif len(steps) < low:
            logger.warning("[%s] plan has only %d step(s)", request_id, len(steps))
        return TaskPlan(task_id=request_id, original_task=task, steps=steps)

    async def decompose_and_run(
        self,
        task: str,
        request_id: str,
        *,
        context: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Plan, run every step in order, then synthesize the final answer.

        The first failing step aborts the task with :class:`StepFailed`.
        """
        context = dict(context or {})
        plan = await self.plan(task, request_id)
        logger.info("[%s] decomposed into %d steps", request_id, len(plan.steps))

        for index, step in enumerate(plan.steps):
            try:
                agent = await self.route(step, context, request_id)
                result = await self._execute(agent, _step_prompt(plan, index), context, request_id)
            except OrchestrationError as exc:
                error = StepFailed(index, exc, plan)
                logger.error("[%s] %s", request_id, error)
                self._tracer.fail(request_id, ORCHESTRATOR_NAME, error)
                raise error from exc
            plan.mark_completed(index, result)

        results = "\n\n".join(
            f"Step {index + 1}: {plan.steps[index]}\nResult: {plan.results[index]}" for index in sorted(plan.results)
        )
        response = await self._complete(
            ORCHESTRATOR_NAME,
            _SYNTHESIS_PROMPT,
            [{"role": "user", "content": f"Original task: {task}\n\n{results}"}],
            (),
            request_id,
            label="synthesis",
        )
        return response.text


def parse_steps(text: str) -> List[str]:
    """Read a JSON array of steps, falling back to a numbered or bulleted list."""
    try:
        data = extract_json(text)
    except (json.JSONDecodeError, IndexError):
        data = None
    if isinstance(data, dict):
        data = data.get("steps")
    if isinstance(data, list):
        return [str(item).strip() for item in data if str(item).strip()]
    steps = []
    for line in text.splitlines():
        match = _NUMBERED_LINE.match(line)
        if match:
            steps.append(match.group(1).strip())
    return steps


def _step_prompt(plan: TaskPlan, index: int) -> str:
    lines = [f"Overall task: {plan.original_task}"]
    if plan.results:
        lines.append("Results of earlier steps:")
        lines.extend(f"{done + 1}. {plan.steps[done]}: {plan.results[done]}" for done in sorted(plan.results))
    lines.append(f"Current step ({index + 1} of {len(plan.steps)}): {plan.steps[index]}")
    return "\n".join(lines)


def _assistant_tool_message(response: ModelResponse) -> Message:
    return {
        "role": "assistant",
        "content": response.text or None,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in response.tool_calls
        ],
    }
