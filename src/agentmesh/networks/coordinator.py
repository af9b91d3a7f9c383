"""Multi-agent coordinator: the caller-facing facade of the engine.

Wires the agent registry, graph builder, network manager, and the optional
collaborators (checkpoint store, LLM provider, event bus) through explicit
constructor arguments, and adds convenience operations:

- setup_network: create a network from agents with per-topology defaults
- execute_simple_workflow: run a network on a single text message
- checkpoint helpers: list, resume, clear, and summarize a network's
  checkpoints. All of them degrade to empty/zero results without a usable
  store, except resume_from_checkpoint which raises.
- get_system_status and cleanup for administration

Use create_coordinator() to build a coordinator with default wiring.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Any

import structlog

from src.agentmesh.agents.base import AgentDefinition
from src.agentmesh.agents.nodes import NodeFactory
from src.agentmesh.agents.registry import AgentRegistry
from src.agentmesh.checkpoints.store import Checkpoint, CheckpointStore, CleanupPolicy
from src.agentmesh.config import Settings, get_settings
from src.agentmesh.errors import CheckpointNotFoundError, CheckpointUnavailableError
from src.agentmesh.events.bus import InMemoryEventBus
from src.agentmesh.graph.builder import GraphBuilder
from src.agentmesh.networks.manager import MessageInput, NetworkManager
from src.agentmesh.networks.schemas import (
    AgentNetwork,
    CompilationOptions,
    ContextIsolationPolicy,
    HierarchicalConfig,
    MessageHistoryPolicy,
    NetworkConfig,
    NetworkSummary,
    NetworkType,
    SupervisorConfig,
    SwarmConfig,
    WorkflowResult,
)
from src.agentmesh.services.llm import LLMProvider

logger = structlog.get_logger(__name__)


class MultiAgentCoordinator:
    """Facade over registry, builder, and network manager.

    Args:
        registry: Agent registry.
        network_manager: Network manager sharing the same registry.
        checkpoint_store: Optional checkpoint backend.
        event_bus: Optional event bus shared with the other components.
        settings: Optional settings (defaults to get_settings()).
    """

    def __init__(
        self,
        registry: AgentRegistry,
        network_manager: NetworkManager,
        checkpoint_store: CheckpointStore | None = None,
        event_bus: InMemoryEventBus | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.registry = registry
        self.network_manager = network_manager
        self.event_bus = event_bus
        self._checkpoint_store = checkpoint_store
        self._settings = settings or get_settings()

    # ── Agents ───────────────────────────────────────────────────────────────

    def register_agent(self, definition: AgentDefinition | dict[str, Any]) -> AgentDefinition:
        return self.registry.register(definition)

    def register_agents(self, definitions: Sequence[AgentDefinition]) -> list[AgentDefinition]:
        return [self.registry.register(d) for d in definitions]

    def unregister_agent(self, agent_id: str) -> bool:
        return self.registry.unregister(agent_id)

    def get_agent(self, agent_id: str) -> AgentDefinition:
        return self.registry.get(agent_id)

    def find_agent(self, agent_id: str) -> AgentDefinition | None:
        return self.registry.find(agent_id)

    # ── Networks ─────────────────────────────────────────────────────────────

    def create_network(self, network: AgentNetwork | dict[str, Any]) -> str:
        return self.network_manager.create_network(network)

    def setup_network(
        self,
        network_id: str,
        agents: Sequence[AgentDefinition],
        network_type: NetworkType | str = NetworkType.SUPERVISOR,
        config: NetworkConfig | dict[str, Any] | None = None,
        compilation_options: CompilationOptions | None = None,
    ) -> str:
        """Create a network with sensible defaults for its topology.

        Defaults when ``config`` is omitted (a dict is layered on top):
        - supervisor: every agent is a worker
        - swarm: dynamic handoffs, handoff messages stripped, attribution on
        - hierarchical: a single level containing every agent

        Returns:
            The network id.
        """
        network_type = NetworkType(network_type)
        agents = list(agents)

        if config is None or isinstance(config, dict):
            config = self._default_config(network_type, agents, config or {})

        return self.network_manager.create_network(
            AgentNetwork(
                id=network_id,
                type=network_type,
                agents=agents,
                config=config,
                compilation_options=compilation_options,
            )
        )

    @staticmethod
    def _default_config(
        network_type: NetworkType,
        agents: list[AgentDefinition],
        overrides: dict[str, Any],
    ) -> NetworkConfig:
        if network_type == NetworkType.SUPERVISOR:
            base: dict[str, Any] = {
                "system_prompt": (
                    f"You are a supervisor coordinating {len(agents)} agents: "
                    f"{', '.join(a.name for a in agents)}.\n\nWorkers:\n{{worker_descriptions}}"
                ),
                "workers": [a.id for a in agents],
            }
            return SupervisorConfig.model_validate({**base, **overrides})
        if network_type == NetworkType.SWARM:
            base = {
                "enable_dynamic_handoffs": True,
                "message_history": MessageHistoryPolicy(
                    remove_handoff_messages=True, add_agent_attribution=True
                ),
                "context_isolation": ContextIsolationPolicy(enabled=False),
            }
            return SwarmConfig.model_validate({**base, **overrides})
        base = {"levels": [[a.id for a in agents]]}
        return HierarchicalConfig.model_validate({**base, **overrides})

    def list_networks(self) -> list[NetworkSummary]:
        return self.network_manager.list_networks()

    def remove_network(self, network_id: str) -> bool:
        return self.network_manager.remove_network(network_id)

    def get_network_config(self, network_id: str) -> AgentNetwork | None:
        return self.network_manager.get_network_config(network_id)

    # ── Execution ────────────────────────────────────────────────────────────

    async def execute_workflow(
        self,
        network_id: str,
        messages: MessageInput | Sequence[MessageInput] | None = None,
        config: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> WorkflowResult:
        return await self.network_manager.execute_workflow(network_id, messages, config, timeout)

    async def execute_simple_workflow(
        self,
        network_id: str,
        message: str,
        config: dict[str, Any] | None = None,
    ) -> WorkflowResult:
        """Run a network on a single text message."""
        return await self.network_manager.execute_workflow(network_id, [message], config)

    def stream_workflow(
        self,
        network_id: str,
        messages: MessageInput | Sequence[MessageInput] | None = None,
        config: dict[str, Any] | None = None,
    ) -> AsyncIterator[dict[str, Any] | WorkflowResult]:
        return self.network_manager.stream_workflow(network_id, messages, config)

    # ── Checkpoints ──────────────────────────────────────────────────────────

    def _usable_store(self) -> CheckpointStore | None:
        store = self._checkpoint_store
        if store is None:
            return None
        try:
            return store if store.is_ready() else None
        except Exception as exc:
            logger.warning("checkpoint_store_unavailable", error=str(exc))
            return None

    async def get_network_checkpoints(
        self,
        network_id: str,
        limit: int | None = 10,
        before: str | None = None,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[Checkpoint]:
        """List a network's checkpoints, newest first ([] without a store)."""
        store = self._usable_store()
        if store is None:
            logger.debug("checkpoints_unavailable", network_id=network_id)
            return []

        thread_id = self.network_manager.get_thread_id(network_id)
        try:
            return await store.list_checkpoints(
                thread_id, limit=limit, before=before, metadata_filter=metadata_filter
            )
        except Exception as exc:
            logger.warning(
                "checkpoint_list_failed",
                network_id=network_id,
                thread_id=thread_id,
                error=str(exc),
            )
            return []

    async def resume_from_checkpoint(
        self,
        network_id: str,
        checkpoint_id: str,
        messages: MessageInput | Sequence[MessageInput] | None = None,
        config: dict[str, Any] | None = None,
    ) -> WorkflowResult:
        """Resume a network from a checkpoint.

        With new messages, execution continues from the checkpoint. Without
        them, the checkpoint's state is returned as a successful result.

        Raises:
            CheckpointUnavailableError: If no usable checkpoint store is wired.
            CheckpointNotFoundError: If the checkpoint does not exist.
            NetworkNotFoundError: If the network id is unknown.
        """
        store = self._usable_store()
        if store is None:
            raise CheckpointUnavailableError(
                "Cannot resume without a checkpoint store",
                details={"network_id": network_id, "checkpoint_id": checkpoint_id},
            )

        thread_id = self.network_manager.get_thread_id(network_id)
        checkpoint = await store.load_checkpoint(thread_id, checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(thread_id, checkpoint_id)

        logger.info(
            "resuming_from_checkpoint",
            network_id=network_id,
            checkpoint_id=checkpoint_id,
            step=checkpoint.step,
        )

        if messages:
            run_config = dict(config or {})
            run_config["configurable"] = {
                **run_config.get("configurable", {}),
                "thread_id": thread_id,
                "checkpoint_id": checkpoint_id,
            }
            return await self.network_manager.execute_workflow(network_id, messages, run_config)

        return WorkflowResult(
            final_state=checkpoint.state,
            execution_path=[],
            execution_time=0.0,
            success=True,
        )

    async def clear_network_checkpoints(self, network_id: str) -> int:
        """Delete a network's checkpoints and return how many (0 without a store)."""
        store = self._usable_store()
        if store is None:
            return 0

        thread_id = self.network_manager.get_thread_id(network_id)
        try:
            removed = await store.cleanup(CleanupPolicy(thread_ids=[thread_id]))
        except Exception as exc:
            logger.warning("checkpoint_cleanup_failed", network_id=network_id, error=str(exc))
            return 0
        logger.info("network_checkpoints_cleared", network_id=network_id, removed=removed)
        return removed

    async def get_network_checkpoint_stats(self, network_id: str) -> dict[str, Any]:
        """Checkpoint count, oldest/newest timestamps, and total size."""
        checkpoints = await self.get_network_checkpoints(network_id, limit=None)
        timestamps = [cp.created_at for cp in checkpoints if cp.created_at is not None]
        return {
            "total_checkpoints": len(checkpoints),
            "oldest": min(timestamps) if timestamps else None,
            "newest": max(timestamps) if timestamps else None,
            "total_size": sum(cp.size for cp in checkpoints),
        }

    # ── Administration ───────────────────────────────────────────────────────

    def get_system_status(self) -> dict[str, Any]:
        return {
            "networks": self.network_manager.get_network_stats(),
            "agents": self.registry.get_stats(),
            "health": self.network_manager.health_check(),
            "checkpointing": {
                "enabled": self._settings.CHECKPOINT_ENABLED,
                "available": self._usable_store() is not None,
            },
        }

    def cleanup(self) -> None:
        """Remove every network and agent."""
        removed = self.network_manager.clear()
        self.registry.clear()
        logger.info("coordinator_cleanup_complete", networks_removed=removed)


# -- Factory ------------------------------------------------------------------


def create_coordinator(
    settings: Settings | None = None,
    checkpoint_store: CheckpointStore | None = None,
    llm_provider: LLMProvider | None = None,
    event_bus: InMemoryEventBus | None = None,
) -> MultiAgentCoordinator:
    """Factory function that wires all dependencies and returns a coordinator.

    Args:
        settings: Optional settings (defaults to get_settings()).
        checkpoint_store: Optional checkpoint backend.
        llm_provider: Optional LLM provider for supervisor routing.
        event_bus: Optional event bus; one is created when omitted.

    Returns:
        Configured MultiAgentCoordinator instance.
    """
    settings = settings or get_settings()
    event_bus = event_bus or InMemoryEventBus(max_queue_size=settings.EVENT_QUEUE_SIZE)
    registry = AgentRegistry(event_bus=event_bus)
    graph_builder = GraphBuilder(NodeFactory(llm_provider=llm_provider))
    manager = NetworkManager(
        registry=registry,
        graph_builder=graph_builder,
        event_bus=event_bus,
        checkpoint_store=checkpoint_store,
        settings=settings,
    )
    coordinator = MultiAgentCoordinator(
        registry=registry,
        network_manager=manager,
        checkpoint_store=checkpoint_store,
        event_bus=event_bus,
        settings=settings,
    )

    logger.info(
        "coordinator_created",
        has_checkpoint_store=checkpoint_store is not None,
        has_llm_provider=llm_provider is not None,
    )
    return coordinator
