"""Agent networks: configuration, execution, and the coordinator facade.

Exports:
    AgentNetwork: Network envelope (agents + topology config).
    NetworkType: supervisor / swarm / hierarchical.
    SupervisorConfig, SwarmConfig, HierarchicalConfig: Topology configs.
    CompilationOptions: Interrupts, checkpointer, debug.
    WorkflowResult: Outcome of a workflow run.
    NetworkManager: Owns compiled networks and runs workflows.
    MultiAgentCoordinator: Caller-facing facade.
    create_coordinator: Factory with default wiring.
"""

from __future__ import annotations

from src.agentmesh.networks.schemas import (
    END,
    AgentNetwork,
    CompilationOptions,
    HierarchicalConfig,
    NetworkType,
    SupervisorConfig,
    SwarmConfig,
    WorkflowResult,
)

__all__ = [
    "END",
    "AgentNetwork",
    "CompilationOptions",
    "HierarchicalConfig",
    "MultiAgentCoordinator",
    "NetworkManager",
    "NetworkType",
    "SupervisorConfig",
    "SwarmConfig",
    "WorkflowResult",
    "create_coordinator",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load manager and coordinator to avoid circular imports."""
    if name == "NetworkManager":
        from src.agentmesh.networks.manager import NetworkManager

        return NetworkManager
    if name in ("MultiAgentCoordinator", "create_coordinator"):
        from src.agentmesh.networks import coordinator

        return getattr(coordinator, name)
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
