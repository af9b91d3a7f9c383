"""Agent definitions, registry, routing, and graph nodes.

Exports:
    AgentDefinition: Immutable agent description.
    HandoffTool: Declared transfer to another agent.
    AgentRegistry: In-memory agent store with health tracking.
    AgentCatalog: Named factories for building agent definitions.
    SupervisorRouter: Handoff, rule, and LLM routing for supervisors.
    NodeFactory: Builds supervisor, worker, and swarm node callables.
"""

from __future__ import annotations

from src.agentmesh.agents.base import AgentDefinition, HandoffTool
from src.agentmesh.agents.catalog import AgentCatalog
from src.agentmesh.agents.nodes import NodeFactory
from src.agentmesh.agents.registry import AgentRegistry
from src.agentmesh.agents.router import SupervisorRouter

__all__ = [
    "AgentCatalog",
    "AgentDefinition",
    "AgentRegistry",
    "HandoffTool",
    "NodeFactory",
    "SupervisorRouter",
]
