"""Agent registry holding agent definitions and per-agent health flags.

The AgentRegistry is the in-memory directory of agents available for
network construction. It supports:
- Validated registration (duplicate ids overwrite with a warning)
- Unregistration, strict lookup (get) and non-throwing lookup (find)
- Discovery by capability tag stored in definition metadata
- Health tracking with change notifications emitted only on transitions

Lifecycle notifications are published to an injected InMemoryEventBus;
the registry works without one.

Thread safety note: every mutation happens synchronously within a single
event-loop tick, so no locking is needed under asyncio. A multi-threaded
host must serialize access externally.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog
from pydantic import ValidationError

from src.agentmesh.agents.base import AgentDefinition
from src.agentmesh.errors import AgentNotFoundError, InvalidAgentDefinitionError
from src.agentmesh.events.bus import InMemoryEventBus
from src.agentmesh.events.schemas import EventType

logger = structlog.get_logger(__name__)

_SOURCE = "agent_registry"

RegistrySnapshot = dict[str, tuple[AgentDefinition, bool] | None]


class AgentRegistry:
    """Registry for agent definitions and their health.

    Args:
        event_bus: Optional bus receiving registry notifications.
    """

    def __init__(self, event_bus: InMemoryEventBus | None = None) -> None:
        self._agents: dict[str, AgentDefinition] = {}
        self._health: dict[str, bool] = {}
        self._event_bus = event_bus

    # ── Registration ─────────────────────────────────────────────────────────

    def register(self, definition: AgentDefinition | dict[str, Any]) -> AgentDefinition:
        """Register an agent definition.

        Re-registering an existing id replaces the prior definition and
        resets its health to healthy.

        Args:
            definition: The agent definition (or a dict of its fields).

        Returns:
            The stored AgentDefinition.

        Raises:
            InvalidAgentDefinitionError: If required fields are missing or empty.
        """
        agent = self._validate(definition)

        if agent.id in self._agents:
            logger.warning("agent_overwritten", agent_id=agent.id, agent_name=agent.name)

        self._agents[agent.id] = agent
        self._health[agent.id] = True

        logger.info(
            "agent_registered",
            agent_id=agent.id,
            agent_name=agent.name,
            capabilities=agent.capabilities,
            handoff_targets=agent.handoff_targets(),
        )
        self._emit(EventType.AGENT_REGISTERED, agent_id=agent.id, agent_name=agent.name)
        return agent

    def unregister(self, agent_id: str) -> bool:
        """Remove an agent and its health entry.

        Returns:
            True if the agent was registered, False otherwise.
        """
        removed = self._agents.pop(agent_id, None) is not None
        self._health.pop(agent_id, None)
        if removed:
            logger.info("agent_unregistered", agent_id=agent_id)
            self._emit(EventType.AGENT_UNREGISTERED, agent_id=agent_id)
        return removed

    # ── Lookup ───────────────────────────────────────────────────────────────

    def get(self, agent_id: str) -> AgentDefinition:
        """Get an agent definition by id.

        Raises:
            AgentNotFoundError: If the id is not registered.
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def find(self, agent_id: str) -> AgentDefinition | None:
        """Non-throwing variant of get()."""
        return self._agents.get(agent_id)

    def get_all(self) -> list[AgentDefinition]:
        return list(self._agents.values())

    def list_by_capability(self, capability: str) -> list[AgentDefinition]:
        """Find all agents whose metadata declares a capability tag.

        Args:
            capability: The capability tag to search for.

        Returns:
            Matching definitions in registration order.
        """
        return [a for a in self._agents.values() if capability in a.capabilities]

    def list_agents(self) -> list[dict[str, Any]]:
        """List all registered agents with routing info.

        Returns a list of dictionaries suitable for inclusion in LLM
        routing prompts, each with id, name, description, capabilities,
        and the current health flag.
        """
        return [
            {**a.to_routing_info(), "healthy": self._health.get(a.id, False)}
            for a in self._agents.values()
        ]

    def list_agent_ids(self) -> list[str]:
        return list(self._agents.keys())

    def validate_agents_exist(self, agent_ids: Iterable[str]) -> list[str]:
        """Return the subset of ``agent_ids`` that are not registered."""
        return [agent_id for agent_id in agent_ids if agent_id not in self._agents]

    # ── Health ───────────────────────────────────────────────────────────────

    def set_health(self, agent_id: str, healthy: bool) -> None:
        """Set an agent's health flag.

        A notification is emitted only when the flag actually changes.

        Raises:
            AgentNotFoundError: If the id is not registered.
        """
        if agent_id not in self._agents:
            raise AgentNotFoundError(agent_id)

        previous = self._health.get(agent_id)
        self._health[agent_id] = healthy
        if previous == healthy:
            return

        logger.info(
            "agent_health_changed",
            agent_id=agent_id,
            healthy=healthy,
            previous=previous,
        )
        self._emit(
            EventType.AGENT_HEALTH_CHANGED,
            agent_id=agent_id,
            healthy=healthy,
            previous=previous,
        )

    def is_healthy(self, agent_id: str) -> bool:
        """Return the agent's health flag (False for unknown ids)."""
        return self._health.get(agent_id, False)

    def get_healthy_agents(self) -> list[AgentDefinition]:
        return [a for a in self._agents.values() if self._health.get(a.id, False)]

    def get_stats(self) -> dict[str, int]:
        healthy = sum(1 for agent_id in self._agents if self._health.get(agent_id, False))
        return {
            "total": len(self._agents),
            "healthy": healthy,
            "unhealthy": len(self._agents) - healthy,
        }

    # ── Rollback ─────────────────────────────────────────────────────────────

    def snapshot(self, agent_ids: Iterable[str]) -> RegistrySnapshot:
        """Capture definition and health for ``agent_ids``.

        Ids that are not registered are captured as None so ``restore``
        removes them again.
        """
        return {
            agent_id: (
                (self._agents[agent_id], self._health.get(agent_id, True))
                if agent_id in self._agents
                else None
            )
            for agent_id in agent_ids
        }

    def restore(self, snapshot: RegistrySnapshot) -> None:
        """Put the captured entries back exactly, without emitting events."""
        for agent_id, entry in snapshot.items():
            if entry is None:
                self._agents.pop(agent_id, None)
                self._health.pop(agent_id, None)
            else:
                self._agents[agent_id], self._health[agent_id] = entry
        logger.info("agent_registry_restored", agent_ids=list(snapshot))

    # ── Teardown ─────────────────────────────────────────────────────────────

    def clear(self) -> None:
        """Remove every agent and health entry."""
        count = len(self._agents)
        self._agents.clear()
        self._health.clear()
        logger.info("agent_registry_cleared", removed=count)
        self._emit(EventType.REGISTRY_CLEARED, removed=count)

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    # ── Internals ────────────────────────────────────────────────────────────

    @staticmethod
    def _validate(definition: AgentDefinition | dict[str, Any]) -> AgentDefinition:
        if isinstance(definition, dict):
            try:
                return AgentDefinition.model_validate(definition)
            except ValidationError as exc:
                fields = sorted({str(err["loc"][0]) for err in exc.errors() if err["loc"]})
                raise InvalidAgentDefinitionError(
                    f"Invalid agent definition: {', '.join(fields) or exc}",
                    details={"fields": fields},
                ) from exc

        if not isinstance(definition, AgentDefinition):
            raise InvalidAgentDefinitionError(
                f"Expected AgentDefinition, got {type(definition).__name__}"
            )

        # Instances built with model_construct() skip pydantic validation.
        missing = [
            name
            for name in ("id", "name", "description")
            if not getattr(definition, name, None)
        ]
        if not callable(getattr(definition, "node_function", None)):
            missing.append("node_function")
        if missing:
            raise InvalidAgentDefinitionError(
                f"Invalid agent definition: missing {', '.join(missing)}",
                details={"fields": missing},
            )
        return definition

    def _emit(self, event_type: EventType, **data: Any) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event_type, _SOURCE, **data)
