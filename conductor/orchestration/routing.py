"""Strategies that pick the agent responsible for a task."""
from __future__ import annotations

import abc
import logging
import re
import time
from typing import Any, Dict, Mapping, Optional, Sequence

from conductor.config import OrchestratorSettings
from conductor.core.agent_registry import AgentRegistry
from conductor.core.errors import NoAgentAvailable
from conductor.core.models import AgentDefinition, TraceAction
from conductor.core.tracing import Tracer
from conductor.services.model_gateway import ModelGateway, call_with_retry

logger = logging.getLogger(__name__)

ROUTER_NAME = "router"

_ROUTING_PROMPT = """You route tasks to the single best-suited agent.
Available agents:
{agents}

Reply with the agent name only, exactly as listed, and nothing else."""


class RoutingStrategy(abc.ABC):
    """Selects an agent for a task."""

    @abc.abstractmethod
    async def select(
        self,
        task: str,
        context: Mapping[str, Any],
        registry: AgentRegistry,
        request_id: str,
    ) -> AgentDefinition:
        """Return the chosen agent or raise :class:`NoAgentAvailable`."""


class CapabilityMatch(RoutingStrategy):
    """Deterministic routing by exact capability tag.

    The tag comes from ``context["capability"]`` when given; otherwise each
    word of the task is tried as a tag in order of appearance.
    """

    async def select(
        self,
        task: str,
        context: Mapping[str, Any],
        registry: AgentRegistry,
        request_id: str,
    ) -> AgentDefinition:
        if not len(registry):
            raise NoAgentAvailable("no agents are registered")
        requested = context.get("capability")
        candidates = [requested] if requested else _words(task)
        for tag in candidates:
            matches = registry.find_by_capability(tag)
            if matches:
                logger.debug("Capability '%s' matched agent %s", tag, matches[0].name)
                return matches[0]
        raise NoAgentAvailable(f"no agent advertises a capability for task: {task[:80]!r}")


class ModelAssisted(RoutingStrategy):
    """Ask the model gateway to choose one of the registered agents."""

    def __init__(
        self,
        gateway: ModelGateway,
        tracer: Tracer,
        settings: Optional[OrchestratorSettings] = None,
    ) -> None:
        self._gateway = gateway
        self._tracer = tracer
        self._settings = settings or OrchestratorSettings()

    async def select(
        self,
        task: str,
        context: Mapping[str, Any],
        registry: AgentRegistry,
        request_id: str,
    ) -> AgentDefinition:
        agents = registry.list()
        if not agents:
            raise NoAgentAvailable("no agents are registered")

        listing = "\n".join(
            f"- {agent.name}: {agent.description}"
            + (f" (capabilities: {', '.join(sorted(agent.capability_tags))})" if agent.capability_tags else "")
            for agent in agents
        )
        started = time.monotonic()
        response = await call_with_retry(
            self._gateway,
            _ROUTING_PROMPT.format(agents=listing),
            [{"role": "user", "content": task}],
            max_attempts=self._settings.model_max_attempts,
            backoff=self._settings.model_backoff,
            timeout=self._settings.model_timeout,
        )
        self._tracer.record_event(
            request_id,
            ROUTER_NAME,
            TraceAction.MODEL_CALL,
            f"route -> {response.text}",
            duration_ms=(time.monotonic() - started) * 1000,
        )
        name = parse_agent_name(response.text)
        if name not in registry:
            raise NoAgentAvailable(f"model selected unregistered agent {name!r}")
        return registry.get(name)


class CapabilityThenModel(RoutingStrategy):
    """Prefer a deterministic capability match, fall back to the model."""

    def __init__(self, primary: RoutingStrategy, fallback: RoutingStrategy) -> None:
        self._primary = primary
        self._fallback = fallback

    async def select(
        self,
        task: str,
        context: Mapping[str, Any],
        registry: AgentRegistry,
        request_id: str,
    ) -> AgentDefinition:
        if not len(registry):
            raise NoAgentAvailable("no agents are registered")
        try:
            return await self._primary.select(task, context, registry, request_id)
        except NoAgentAvailable:
            logger.debug("No capability match; asking the model to route")
        return await self._fallback.select(task, context, registry, request_id)


def parse_agent_name(text: str) -> str:
    """Take the first non-empty line and strip quoting/punctuation around it."""
    for line in text.strip().splitlines():
        line = line.strip().strip("`'\"*.:- ")
        if line:
            return line
    return ""


def _words(task: str) -> Sequence[str]:
    seen: Dict[str, None] = {}
    for word in re.findall(r"[\w-]+", task.lower()):
        seen.setdefault(word, None)
    return list(seen)
