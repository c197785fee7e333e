"""Hierarchical delegation with depth bounds and per-request cycle detection."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from conductor.config import OrchestratorSettings
from conductor.core.agent_registry import AgentRegistry
from conductor.core.errors import CyclicDelegation, MaxDepthExceeded
from conductor.core.models import AgentDefinition, TraceAction
from conductor.core.tracing import Tracer
from conductor.services.model_gateway import ModelGateway, call_with_retry, extract_json

logger = logging.getLogger(__name__)

LocalRunner = Callable[[AgentDefinition, str, Mapping[str, Any], int], Awaitable[str]]

_DELEGATION_PROMPT = """You are {agent}, deciding whether to hand a task to one of your sub-agents.
Sub-agents:
{targets}

Respond with JSON only:
{{"delegate": true | false, "target": "<sub-agent name>" | null}}"""


class DelegationController:
    """Hands (sub-)tasks down the agent hierarchy.

    The active chain is tracked explicitly per request id, so a static graph
    with cycles is only rejected when a request actually walks the cycle.
    """

    def __init__(
        self,
        agents: AgentRegistry,
        gateway: ModelGateway,
        tracer: Tracer,
        settings: Optional[OrchestratorSettings] = None,
    ) -> None:
        self._agents = agents
        self._gateway = gateway
        self._tracer = tracer
        self._settings = settings or OrchestratorSettings()
        self._chains: Dict[str, List[str]] = {}

    @property
    def max_depth(self) -> int:
        return self._settings.max_delegation_depth

    def active_chain(self, request_id: str) -> List[str]:
        return list(self._chains.get(request_id, ()))

    async def delegate(
        self,
        agent: AgentDefinition,
        task: str,
        context: Mapping[str, Any],
        request_id: str,
        depth: int,
        run_local: LocalRunner,
    ) -> str:
        """Run ``task`` on ``agent`` or one of its descendants.

        ``run_local(agent, task, context, depth)`` executes the task on the agent that
        ends up keeping it.
        """
        if depth > self.max_depth:
            error = MaxDepthExceeded(agent.name, depth, self.max_depth)
            logger.error("%s", error)
            # recorded at the deepest level actually reached
            self._tracer.fail(request_id, agent.name, error, depth=self.max_depth)
            raise error

        chain = self._chains.setdefault(request_id, [])
        if agent.name in chain:
            error = CyclicDelegation(agent.name, chain)
            logger.error("%s", error)
            self._tracer.fail(request_id, agent.name, error, depth=depth)
            raise error

        chain.append(agent.name)
        try:
            target = None
            if agent.delegation_targets:
                target = await self._choose_target(agent, task, context, request_id, depth)
            if target is None:
                return await run_local(agent, task, context, depth)

            self._tracer.record_event(
                request_id,
                agent.name,
                TraceAction.DELEGATE,
                f"{agent.name} -> {target.name}: {task}",
                depth=depth,
                parent_agent=context.get("parent_agent"),
            )
            logger.info("[%s] %s delegates to %s (depth %d)", request_id, agent.name, target.name, depth + 1)
            child_context = {**context, "parent_agent": agent.name}
            return await self.delegate(target, task, child_context, request_id, depth + 1, run_local)
        finally:
            chain.pop()
            if not chain:
                self._chains.pop(request_id, None)

    async def _choose_target(
        self,
        agent: AgentDefinition,
        task: str,
        context: Mapping[str, Any],
        request_id: str,
        depth: int,
    ) -> Optional[AgentDefinition]:
        targets = [name for name in agent.delegation_targets if name in self._agents]
        if not targets:
            return None

        listing = "\n".join(f"- {name}: {self._agents.get(name).description}" for name in targets)
        started = time.monotonic()
        response = await call_with_retry(
            self._gateway,
            _DELEGATION_PROMPT.format(agent=agent.name, targets=listing),
            [{"role": "user", "content": task}],
            max_attempts=self._settings.model_max_attempts,
            backoff=self._settings.model_backoff,
            timeout=self._settings.model_timeout,
        )
        self._tracer.record_event(
            request_id,
            agent.name,
            TraceAction.MODEL_CALL,
            f"delegation decision: {response.text}",
            duration_ms=(time.monotonic() - started) * 1000,
            depth=depth,
            parent_agent=context.get("parent_agent"),
        )

        should_delegate, name = parse_decision(response.text)
        if not should_delegate:
            return None
        if name not in targets:
            logger.warning("%s chose unknown delegation target %r; running locally", agent.name, name)
            return None
        return self._agents.get(name)


def parse_decision(text: str) -> Tuple[bool, Optional[str]]:
    """Parse the ``{"delegate": ..., "target": ...}`` answer; malformed means no."""
    try:
        data = extract_json(text)
    except (json.JSONDecodeError, IndexError):
        logger.warning("Unparseable delegation decision: %r", text[:200])
        return False, None
    if not isinstance(data, dict):
        return False, None
    target = data.get("target")
    return bool(data.get("delegate")) and bool(target), target if isinstance(target, str) else None
