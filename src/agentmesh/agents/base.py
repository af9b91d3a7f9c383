"""Agent definitions for the multi-agent orchestration engine.

An AgentDefinition describes one node of an execution graph: identity,
optional prompt and tool references, optional peer handoff tools, and the
asynchronous node function that transforms graph state. Definitions are
immutable once constructed; re-registering an id replaces the whole
definition.

These types are consumed by the AgentRegistry (registry.py) for lookup
and health tracking, and by the GraphBuilder for node construction.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.agentmesh.handoffs.validators import HandoffType

logger = structlog.get_logger(__name__)

# A node function receives the current AgentState and returns a partial
# state update. Plain synchronous functions are accepted as well.
NodeFunction = Callable[[dict[str, Any]], Union[Awaitable[dict[str, Any]], dict[str, Any]]]

# Context filters trim the message list handed to the next swarm agent.
ContextFilter = Callable[[list[Any]], list[Any]]


# ── Handoff Tool ─────────────────────────────────────────────────────────────


class HandoffTool(BaseModel):
    """A peer handoff an agent may perform in a swarm network.

    The agent requests the handoff either by returning ``next=<target>``
    from its node function or by emitting a tool call named ``name``.

    Attributes:
        name: Tool name the model calls (defaults to ``transfer_to_<target>``).
        target: Agent id control is transferred to.
        description: Shown to the model alongside the tool.
        handoff_type: Kind of transfer (delegation, escalation, ...).
        context_filter: Optional callable trimming the outbound messages.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = ""
    target: str = Field(min_length=1)
    description: str = ""
    handoff_type: HandoffType = HandoffType.DELEGATION
    context_filter: ContextFilter | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_name(cls, data: Any) -> Any:
        """Name the tool ``transfer_to_<target>`` when no name is given."""
        if isinstance(data, dict) and not data.get("name") and data.get("target"):
            data = {**data, "name": f"transfer_to_{data['target']}"}
        return data


# ── Agent Definition ─────────────────────────────────────────────────────────


class AgentDefinition(BaseModel):
    """Immutable description of an agent node.

    Attributes:
        id: Unique identifier within a registry (e.g. "researcher").
        name: Human-readable name.
        description: What this agent does; included in routing prompts.
        node_function: Async state -> partial-state transform.
        system_prompt: Optional prompt the node function may use.
        tools: Tool names (or tool objects) the agent may call.
        handoff_tools: Peer handoffs available in swarm networks.
        timeout: Per-node execution timeout in seconds (None disables).
        metadata: Free-form bag. ``metadata["capabilities"]`` is a list of
            capability tags used by ``AgentRegistry.list_by_capability``.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    node_function: NodeFunction
    system_prompt: str | None = None
    tools: list[Any] = Field(default_factory=list)
    handoff_tools: list[HandoffTool] = Field(default_factory=list)
    timeout: float | None = Field(default=None, gt=0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def capabilities(self) -> list[str]:
        """Capability tags declared in metadata."""
        return list(self.metadata.get("capabilities", []))

    def handoff_targets(self) -> list[str]:
        """Agent ids this agent may hand off to."""
        return [tool.target for tool in self.handoff_tools]

    def to_routing_info(self) -> dict[str, Any]:
        """Serialize for inclusion in LLM routing prompts."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "capabilities": self.capabilities,
        }
