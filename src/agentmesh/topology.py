"""Topology configuration for agent networks.

Holds the routing sentinels and the per-topology config models
(supervisor, swarm, hierarchical). Agent nodes, graph state and network
schemas all read these, so this module depends on pydantic only.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

# Sentinel node name terminating execution; equal to langgraph's END.
END = "__end__"

# LLM answer meaning "no more workers".
FINISH = "FINISH"

DEFAULT_ROUTING_TOOL = "route"
DEFAULT_HANDOFF_TOOL_PREFIX = "transfer_to_"
DEFAULT_FORWARD_MESSAGE_TOOL = "forward_message"

DEFAULT_SUPERVISOR_PROMPT = """You are a supervisor tasked with managing a conversation between the following workers: {workers}.

Given the following user request, respond with the worker to act next.
Each worker will perform a task and respond with their results and status.

When finished, respond with FINISH.

Workers:
{worker_descriptions}"""

StatePredicate = Callable[[dict[str, Any]], bool]


class NetworkType(str, Enum):
    """Coordination topology of an agent network."""

    SUPERVISOR = "supervisor"
    SWARM = "swarm"
    HIERARCHICAL = "hierarchical"


# ── Supervisor ───────────────────────────────────────────────────────────────


class LLMConfig(BaseModel):
    """Model used by the supervisor for routing decisions.

    An empty provider is inferred from the model name.
    """

    provider: str = ""
    model: str = Field(min_length=1)
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, gt=0)


class RoutingRule(BaseModel):
    """Deterministic supervisor rule: route to ``agent_id`` when ``condition`` holds.

    Rules are evaluated in order before LLM routing; the first match wins.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = ""
    condition: StatePredicate
    agent_id: str = Field(min_length=1)
    task: str | None = None


class SupervisorConfig(BaseModel):
    """Single coordinator routing to a fixed set of workers.

    Attributes:
        system_prompt: Supervisor prompt. ``{workers}`` and
            ``{worker_descriptions}`` placeholders are filled in.
        workers: Worker agent ids (non-empty, must be agents of the network).
        llm: Optional model for LLM routing.
        routing_rules: Deterministic rules evaluated before the LLM.
        routing_tool: Name of the routing function shown to the model.
        enable_forward_message: Allow the supervisor to forward a worker's
            last answer verbatim instead of summarising it.
        remove_handoff_messages: Hide routing chatter from workers.
    """

    system_prompt: str = DEFAULT_SUPERVISOR_PROMPT
    workers: list[str] = Field(default_factory=list)
    llm: LLMConfig | None = None
    routing_rules: list[RoutingRule] = Field(default_factory=list)
    routing_tool: str = DEFAULT_ROUTING_TOOL
    enable_forward_message: bool = False
    remove_handoff_messages: bool = False


# ── Swarm ────────────────────────────────────────────────────────────────────


class MessageHistoryPolicy(BaseModel):
    """How the swarm message channel treats history.

    Applied in order: append, strip handoff messages, attribute, truncate.
    """

    remove_handoff_messages: bool = False
    add_agent_attribution: bool = False
    max_messages: int | None = Field(default=None, gt=0)


class ContextIsolationPolicy(BaseModel):
    """Per-agent metadata isolation.

    When enabled, a swarm agent's node function only sees the metadata keys
    listed in ``shared_keys``.
    """

    enabled: bool = False
    shared_keys: list[str] = Field(default_factory=list)


class SwarmConfig(BaseModel):
    """Peer-to-peer handoff topology.

    Attributes:
        enable_dynamic_handoffs: Restrict handoffs to each agent's handoff
            tools, validated at build time.
        message_history: Message channel policy.
        context_isolation: Metadata isolation policy.
        entry_agent: Agent receiving the first turn. None selects the first
            agent of the network's agent list.
    """

    enable_dynamic_handoffs: bool = True
    message_history: MessageHistoryPolicy = Field(default_factory=MessageHistoryPolicy)
    context_isolation: ContextIsolationPolicy = Field(default_factory=ContextIsolationPolicy)
    entry_agent: str | None = None


# ── Hierarchical ─────────────────────────────────────────────────────────────


class EscalationRule(BaseModel):
    """Escalate to ``target_level`` when ``condition`` holds.

    Accepted and validated; not dispatched by the current graph shape.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    condition: StatePredicate
    target_level: int = Field(ge=0)
    message: str | None = None


class ParentGraphRule(BaseModel):
    """Navigate to ``target_agent`` in the parent graph when ``condition`` holds.

    Accepted and validated; not dispatched by the current graph shape.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    condition: StatePredicate
    target_agent: str = Field(min_length=1)
    command: dict[str, Any] = Field(default_factory=dict)


class HierarchicalConfig(BaseModel):
    """Multi-level topology, executed as a supervisor over ``levels[0]``."""

    levels: list[list[str]] = Field(default_factory=list)
    system_prompt: str = DEFAULT_SUPERVISOR_PROMPT
    llm: LLMConfig | None = None
    routing_rules: list[RoutingRule] = Field(default_factory=list)
    escalation_rules: list[EscalationRule] = Field(default_factory=list)
    parent_graph_rules: list[ParentGraphRule] = Field(default_factory=list)

    def as_supervisor(self) -> SupervisorConfig:
        """Supervisor semantics over the top level."""
        return SupervisorConfig(
            system_prompt=self.system_prompt,
            workers=list(self.levels[0]) if self.levels else [],
            llm=self.llm,
            routing_rules=list(self.routing_rules),
        )


NetworkConfig = Union[SupervisorConfig, SwarmConfig, HierarchicalConfig]
