"""Explicit registration table for agent definitions.

Agents are declared up front as a mapping from a stable id to a
construction closure, then built and installed into an AgentRegistry at
startup. No decorator scanning or reflection is involved: what is in the
table is what exists.

Usage:
    catalog = AgentCatalog()
    catalog.register("researcher", lambda: AgentDefinition(...))
    catalog.install(registry)
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

import structlog

from src.agentmesh.agents.base import AgentDefinition
from src.agentmesh.agents.registry import AgentRegistry
from src.agentmesh.errors import AgentNotFoundError, InvalidAgentDefinitionError

logger = structlog.get_logger(__name__)

AgentFactory = Callable[[], AgentDefinition]


class AgentCatalog:
    """Ordered table of agent factories keyed by agent id."""

    def __init__(self) -> None:
        self._factories: dict[str, AgentFactory] = {}

    def register(self, agent_id: str, factory: AgentFactory) -> None:
        """Add a factory to the table.

        Raises:
            ValueError: If the id is already in the table.
        """
        if agent_id in self._factories:
            raise ValueError(f"Agent factory already registered: {agent_id}")
        self._factories[agent_id] = factory

    def ids(self) -> list[str]:
        return list(self._factories)

    def build(self, ids: Iterable[str] | None = None) -> list[AgentDefinition]:
        """Construct definitions for ``ids`` (all entries when None).

        Raises:
            AgentNotFoundError: If an id is not in the table.
            InvalidAgentDefinitionError: If a factory returns a definition
                whose id differs from its table key.
        """
        selected = list(ids) if ids is not None else list(self._factories)
        definitions = []
        for agent_id in selected:
            factory = self._factories.get(agent_id)
            if factory is None:
                raise AgentNotFoundError(agent_id)
            definition = factory()
            if definition.id != agent_id:
                raise InvalidAgentDefinitionError(
                    f"Factory for '{agent_id}' built agent '{definition.id}'",
                    details={"expected": agent_id, "actual": definition.id},
                )
            definitions.append(definition)
        return definitions

    def install(self, registry: AgentRegistry, ids: Iterable[str] | None = None) -> list[str]:
        """Build and register definitions, returning the installed ids."""
        definitions = self.build(ids)
        for definition in definitions:
            registry.register(definition)
        installed = [d.id for d in definitions]
        logger.info("agent_catalog_installed", agent_ids=installed)
        return installed

    def __len__(self) -> int:
        return len(self._factories)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._factories
