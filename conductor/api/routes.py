"""HTTP API exposing the agent and tool registries."""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from conductor.core.agent_registry import AgentRegistry
from conductor.core.errors import NotFound
from conductor.core.models import AgentDefinition, ToolDefinition
from conductor.runtime import get_agent_registry, get_tool_registry
from conductor.services.tools import ToolRegistry

router = APIRouter(prefix="/agents", tags=["agents"])
tools_router = APIRouter(prefix="/tools", tags=["tools"])


class AgentResponse(BaseModel):
    name: str
    description: str
    capability_tags: List[str]
    delegation_targets: List[str]
    tool_names: List[str]

    @classmethod
    def from_definition(cls, definition: AgentDefinition) -> "AgentResponse":
        return cls(
            name=definition.name,
            description=definition.description,
            capability_tags=sorted(definition.capability_tags),
            delegation_targets=list(definition.delegation_targets),
            tool_names=sorted(definition.tool_names),
        )


class ToolResponse(BaseModel):
    name: str
    description: str
    input_schema: dict
    timeout: float
    rate_limit_per_minute: Optional[int] = None
    idempotent: bool

    @classmethod
    def from_definition(cls, definition: ToolDefinition) -> "ToolResponse":
        return cls(
            name=definition.name,
            description=definition.description,
            input_schema=definition.json_schema(),
            timeout=definition.timeout,
            rate_limit_per_minute=definition.rate_limit_per_minute,
            idempotent=definition.idempotent,
        )


@router.get("", response_model=List[AgentResponse])
async def list_agents(registry: AgentRegistry = Depends(get_agent_registry)) -> List[AgentResponse]:
    return [AgentResponse.from_definition(agent) for agent in registry.list()]


@router.get("/capabilities/{tag}", response_model=List[AgentResponse])
async def find_agents(tag: str, registry: AgentRegistry = Depends(get_agent_registry)) -> List[AgentResponse]:
    return [AgentResponse.from_definition(agent) for agent in registry.find_by_capability(tag)]


@router.get("/{name}", response_model=AgentResponse)
async def get_agent(name: str, registry: AgentRegistry = Depends(get_agent_registry)) -> AgentResponse:
    try:
        definition = registry.get(name)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return AgentResponse.from_definition(definition)


@tools_router.get("", response_model=List[ToolResponse])
async def list_tools(registry: ToolRegistry = Depends(get_tool_registry)) -> List[ToolResponse]:
    return [ToolResponse.from_definition(tool) for tool in registry.list()]
