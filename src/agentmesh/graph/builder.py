"""Graph builder: validates network topologies and builds langgraph graphs.

Given an AgentNetwork, the builder first validates the topology without
touching any shared state, then constructs a StateGraph:

- Supervisor: START -> supervisor; supervisor -> any worker | END;
  every worker -> supervisor.
- Swarm: START -> entry agent; every agent -> any other agent | END.
  The entry agent is ``SwarmConfig.entry_agent`` or, when unset, the
  first agent of the network's agent list.
- Hierarchical: a supervisor over ``levels[0]``. Escalation and parent
  navigation rules are validated and carried in config but not dispatched.

Conditional edges read ``next`` from state. A missing or unrecognised
value always routes to END rather than raising.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from typing import Any

import structlog
from langgraph.graph import START, StateGraph

from src.agentmesh.agents.base import AgentDefinition
from src.agentmesh.agents.nodes import NodeFactory
from src.agentmesh.errors import NetworkConfigurationError
from src.agentmesh.graph.state import AgentState, build_state_class, make_swarm_messages_reducer
from src.agentmesh.handoffs.protocol import HandoffProtocol
from src.agentmesh.networks.schemas import (
    END,
    AgentNetwork,
    CompilationOptions,
    HierarchicalConfig,
    NetworkType,
    SupervisorConfig,
    SwarmConfig,
)

logger = structlog.get_logger(__name__)

SUPERVISOR_NODE = "supervisor"

# Node names langgraph reserves or cannot address.
_RESERVED_NAMES = {START, END, SUPERVISOR_NODE}
_RESERVED_CHARS = (":", "|")


def route_by_next(allowed: set[str]) -> Callable[[dict[str, Any]], str]:
    """Conditional-edge function: ``state["next"]`` if allowed, else END."""

    def route(state: dict[str, Any]) -> str:
        target = state.get("next")
        return target if target in allowed else END

    return route


class GraphBuilder:
    """Builds and compiles network graphs.

    Args:
        node_factory: Factory for node callables (a default one is created
            when omitted).
    """

    def __init__(self, node_factory: NodeFactory | None = None) -> None:
        self._node_factory = node_factory or NodeFactory()

    # ── Validation ───────────────────────────────────────────────────────────

    def validate(self, network: AgentNetwork) -> None:
        """Validate a network's topology.

        Raises:
            NetworkConfigurationError: With the offending ids on any violation.
        """
        agents = network.agents
        if not agents:
            raise NetworkConfigurationError(
                "Network must contain at least one agent", network_id=network.id
            )

        duplicates = sorted(i for i, n in Counter(a.id for a in agents).items() if n > 1)
        if duplicates:
            raise NetworkConfigurationError(
                f"Duplicate agent ids: {', '.join(duplicates)}",
                offending_ids=duplicates,
                network_id=network.id,
            )

        unaddressable = sorted(
            a.id
            for a in agents
            if a.id in _RESERVED_NAMES or any(ch in a.id for ch in _RESERVED_CHARS)
        )
        if unaddressable:
            raise NetworkConfigurationError(
                f"Reserved or invalid agent ids: {', '.join(unaddressable)}",
                offending_ids=unaddressable,
                network_id=network.id,
            )

        agent_ids = set(network.agent_ids)
        if network.type == NetworkType.SUPERVISOR:
            self._validate_supervisor(network.id, network.config, agent_ids)
        elif network.type == NetworkType.SWARM:
            self._validate_swarm(network.id, network.config, agents)
        else:
            self._validate_hierarchical(network.id, network.config, agent_ids)

    @staticmethod
    def _validate_supervisor(
        network_id: str, config: SupervisorConfig, agent_ids: set[str]
    ) -> None:
        if not config.workers:
            raise NetworkConfigurationError(
                "Supervisor network requires at least one worker", network_id=network_id
            )
        unknown = [w for w in config.workers if w not in agent_ids]
        if unknown:
            raise NetworkConfigurationError(
                f"Supervisor workers are not agents of the network: {', '.join(unknown)}",
                offending_ids=unknown,
                network_id=network_id,
            )

    @staticmethod
    def _validate_swarm(
        network_id: str, config: SwarmConfig, agents: list[AgentDefinition]
    ) -> None:
        if len(agents) < 2:
            raise NetworkConfigurationError(
                "Swarm network requires at least 2 agents",
                offending_ids=[a.id for a in agents],
                network_id=network_id,
            )
        agent_ids = {a.id for a in agents}
        if config.entry_agent is not None and config.entry_agent not in agent_ids:
            raise NetworkConfigurationError(
                f"Swarm entry agent is not an agent of the network: {config.entry_agent}",
                offending_ids=[config.entry_agent],
                network_id=network_id,
            )
        if config.enable_dynamic_handoffs:
            unknown = sorted({
                target
                for agent in agents
                for target in agent.handoff_targets()
                if target not in agent_ids
            })
            if unknown:
                raise NetworkConfigurationError(
                    f"Handoff targets are not agents of the network: {', '.join(unknown)}",
                    offending_ids=unknown,
                    network_id=network_id,
                )

    @staticmethod
    def _validate_hierarchical(
        network_id: str, config: HierarchicalConfig, agent_ids: set[str]
    ) -> None:
        if not config.levels or not config.levels[0]:
            raise NetworkConfigurationError(
                "Hierarchical network requires at least one non-empty level",
                network_id=network_id,
            )
        unknown = [i for level in config.levels for i in level if i not in agent_ids]
        if unknown:
            raise NetworkConfigurationError(
                f"Hierarchy references unknown agents: {', '.join(unknown)}",
                offending_ids=unknown,
                network_id=network_id,
            )
        bad_levels = [
            str(rule.target_level)
            for rule in config.escalation_rules
            if rule.target_level >= len(config.levels)
        ]
        if bad_levels:
            raise NetworkConfigurationError(
                f"Escalation rules target missing levels: {', '.join(bad_levels)}",
                network_id=network_id,
            )
        unknown_parents = [
            r.target_agent for r in config.parent_graph_rules if r.target_agent not in agent_ids
        ]
        if unknown_parents:
            raise NetworkConfigurationError(
                f"Parent graph rules reference unknown agents: {', '.join(unknown_parents)}",
                offending_ids=unknown_parents,
                network_id=network_id,
            )

    # ── Construction ─────────────────────────────────────────────────────────

    def build(self, network: AgentNetwork) -> StateGraph:
        """Validate and construct the uncompiled graph for a network."""
        self.validate(network)

        if network.type == NetworkType.SUPERVISOR:
            graph = self._build_supervisor(network.agents, network.config)
        elif network.type == NetworkType.SWARM:
            graph = self._build_swarm(network.agents, network.config)
        else:
            graph = self._build_hierarchical(network.agents, network.config)

        logger.info(
            "graph_built",
            network_id=network.id,
            network_type=network.type.value,
            node_count=len(graph.nodes),
        )
        return graph

    def compile(
        self,
        network: AgentNetwork,
        options: CompilationOptions | None = None,
    ) -> Any:
        """Build and compile a network's graph.

        Interrupts are applied only when a checkpointer is attached, since
        an interrupted run can only be resumed from a checkpoint.
        """
        graph = self.build(network)
        options = options or CompilationOptions()
        kwargs: dict[str, Any] = {"debug": options.debug}

        interrupt_before = list(options.interrupt_before)
        if options.enable_interrupts and not interrupt_before:
            interrupt_before = self.worker_ids(network)

        if options.checkpointer is not None:
            kwargs["checkpointer"] = options.checkpointer
            if interrupt_before:
                kwargs["interrupt_before"] = interrupt_before
            if options.interrupt_after:
                kwargs["interrupt_after"] = list(options.interrupt_after)
        elif interrupt_before or options.interrupt_after:
            logger.debug("interrupts_ignored_without_checkpointer", network_id=network.id)

        return graph.compile(**kwargs)

    @staticmethod
    def worker_ids(network: AgentNetwork) -> list[str]:
        """Ids of the nodes that execute agents."""
        if network.type == NetworkType.SUPERVISOR:
            return list(network.config.workers)
        if network.type == NetworkType.HIERARCHICAL:
            return list(network.config.levels[0]) if network.config.levels else []
        return network.agent_ids

    def _build_supervisor(
        self, agents: list[AgentDefinition], config: SupervisorConfig
    ) -> StateGraph:
        by_id = {a.id: a for a in agents}
        workers = [by_id[w] for w in config.workers]

        graph = StateGraph(AgentState)
        graph.add_node(
            SUPERVISOR_NODE, self._node_factory.create_supervisor_node(workers, config)
        )
        for worker in workers:
            graph.add_node(
                worker.id,
                self._node_factory.create_worker_node(worker, config.remove_handoff_messages),
            )
            graph.add_edge(worker.id, SUPERVISOR_NODE)

        allowed = {w.id for w in workers}
        graph.add_edge(START, SUPERVISOR_NODE)
        graph.add_conditional_edges(
            SUPERVISOR_NODE,
            route_by_next(allowed),
            {**{w: w for w in allowed}, END: END},
        )
        return graph

    def _build_swarm(self, agents: list[AgentDefinition], config: SwarmConfig) -> StateGraph:
        state_class = build_state_class(
            make_swarm_messages_reducer(config.message_history), "SwarmAgentState"
        )
        graph = StateGraph(state_class)
        protocol = HandoffProtocol(a.id for a in agents)

        for agent in agents:
            graph.add_node(
                agent.id, self._node_factory.create_swarm_node(agent, config, protocol)
            )

        for agent in agents:
            peers = {a.id for a in agents if a.id != agent.id}
            graph.add_conditional_edges(
                agent.id,
                route_by_next(peers),
                {**{p: p for p in peers}, END: END},
            )

        # Explicit entry point; defaults to list order when not configured.
        entry = config.entry_agent or agents[0].id
        graph.add_edge(START, entry)
        return graph

    def _build_hierarchical(
        self, agents: list[AgentDefinition], config: HierarchicalConfig
    ) -> StateGraph:
        if config.escalation_rules or config.parent_graph_rules or len(config.levels) > 1:
            logger.debug(
                "hierarchical_rules_not_dispatched",
                levels=len(config.levels),
                escalation_rules=len(config.escalation_rules),
                parent_graph_rules=len(config.parent_graph_rules),
            )
        return self._build_supervisor(agents, config.as_supervisor())
