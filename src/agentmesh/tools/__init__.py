"""Tool execution for agent graphs.

Exports:
    ToolExecutor: Contract for invoking named tools.
    ToolRegistry: Explicit name -> callable tool table.
    ToolNodeFactory: Tool, conditional, parallel, and retrying nodes.
    NodeErrorState: Error record written to the ``error`` state channel.
"""

from __future__ import annotations

from src.agentmesh.tools.executor import (
    NodeErrorState,
    ToolExecutor,
    ToolNodeFactory,
    ToolRegistry,
)

__all__ = [
    "NodeErrorState",
    "ToolExecutor",
    "ToolNodeFactory",
    "ToolRegistry",
]
