"""Registry of agent definitions available for routing and delegation."""
from __future__ import annotations

import logging
from typing import Dict, Iterator, List

from .errors import DuplicateName, NotFound
from .models import AgentDefinition

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Registry maintaining agent definitions by name.

    Populated at startup and read-only afterwards.
    """

    def __init__(self) -> None:
        self._agents: Dict[str, AgentDefinition] = {}

    def register(self, definition: AgentDefinition) -> None:
        if definition.name in self._agents:
            raise DuplicateName("agent", definition.name)
        self._agents[definition.name] = definition
        logger.debug("Registered agent %s (tags=%s)", definition.name, sorted(definition.capability_tags))

    def get(self, name: str) -> AgentDefinition:
        if name not in self._agents:
            raise NotFound("agent", name)
        return self._agents[name]

    def find_by_capability(self, tag: str) -> List[AgentDefinition]:
        """Return agents advertising ``tag``, in registration order."""
        return [agent for agent in self._agents.values() if tag in agent.capability_tags]

    def list(self) -> List[AgentDefinition]:
        return list(self._agents.values())

    def names(self) -> List[str]:
        return list(self._agents)

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def __iter__(self) -> Iterator[AgentDefinition]:
        return iter(self._agents.values())
