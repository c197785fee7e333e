"""Application runtime composition helpers."""
from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache

from pydantic import BaseModel, Field

from conductor.config import config
from conductor.core.agent_registry import AgentRegistry
from conductor.core.models import AgentDefinition, ToolDefinition
from conductor.core.state_store import InMemoryKeyValueStore, StateStore
from conductor.core.tracing import Tracer
from conductor.orchestration.orchestrator import Orchestrator
from conductor.services.model_gateway import ModelGateway, OpenAIGateway
from conductor.services.tools import ToolExecutor, ToolRegistry


class CurrentTimeInput(BaseModel):
    timezone: str = Field("UTC", description="Only UTC is supported")


async def current_time(arguments: CurrentTimeInput) -> dict:
    return {"timezone": arguments.timezone, "now": datetime.now(timezone.utc).isoformat()}


DEFAULT_TOOLS = (
    ToolDefinition(
        name="current_time",
        description="Return the current date and time in ISO-8601 format",
        input_schema=CurrentTimeInput,
        handler=current_time,
        timeout=2.0,
        idempotent=True,
    ),
)

DEFAULT_AGENTS = (
    AgentDefinition(
        name="assistant",
        description="General purpose assistant for questions, summaries and explanations",
        capability_tags={"general", "summarize", "explain"},
        tool_names={"current_time"},
    ),
)


@lru_cache
def get_agent_registry() -> AgentRegistry:
    registry = AgentRegistry()
    for agent in DEFAULT_AGENTS:
        registry.register(agent)
    return registry


@lru_cache
def get_tool_registry() -> ToolRegistry:
    registry = ToolRegistry()
    for tool in DEFAULT_TOOLS:
        registry.register(tool)
    return registry


@lru_cache
def get_tracer() -> Tracer:
    return Tracer()


@lru_cache
def get_state_store() -> StateStore:
    return StateStore(InMemoryKeyValueStore(), ttl=config.orchestrator.session_ttl)


@lru_cache
def get_gateway() -> ModelGateway:
    if config.openai is None:
        raise RuntimeError("No model gateway configured. Set OPENAI_API_KEY or AZURE_OPENAI_KEY.")
    return OpenAIGateway(config.openai)


@lru_cache
def get_tool_executor() -> ToolExecutor:
    return ToolExecutor(
        get_tool_registry(),
        get_tracer(),
        max_concurrency=config.orchestrator.max_tool_concurrency,
    )


@lru_cache
def get_orchestrator() -> Orchestrator:
    return Orchestrator(
        agents=get_agent_registry(),
        tools=get_tool_registry(),
        executor=get_tool_executor(),
        gateway=get_gateway(),
        state_store=get_state_store(),
        tracer=get_tracer(),
        settings=config.orchestrator,
    )
