"""Graph construction for agent networks.

Exports:
    AgentState: Shared state schema with per-channel reducers.
    GraphBuilder: Validates topologies and builds langgraph StateGraphs.
"""

from __future__ import annotations

from src.agentmesh.graph.state import AgentState

__all__ = [
    "AgentState",
    "GraphBuilder",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the builder to avoid circular imports."""
    if name == "GraphBuilder":
        from src.agentmesh.graph.builder import GraphBuilder

        return GraphBuilder
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
