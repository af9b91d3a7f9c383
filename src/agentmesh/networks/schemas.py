"""Network configuration and result schemas.

Defines compilation options, the AgentNetwork envelope validated by
NetworkManager.create_network, and the WorkflowResult bundle returned by
workflow execution. The topology configs live in ``src.agentmesh.topology``
and are re-exported here.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.agentmesh.agents.base import AgentDefinition
from src.agentmesh.topology import (
    DEFAULT_FORWARD_MESSAGE_TOOL,
    DEFAULT_HANDOFF_TOOL_PREFIX,
    DEFAULT_ROUTING_TOOL,
    DEFAULT_SUPERVISOR_PROMPT,
    END,
    FINISH,
    ContextIsolationPolicy,
    EscalationRule,
    HierarchicalConfig,
    LLMConfig,
    MessageHistoryPolicy,
    NetworkConfig,
    NetworkType,
    ParentGraphRule,
    RoutingRule,
    StatePredicate,
    SupervisorConfig,
    SwarmConfig,
)

__all__ = [
    "DEFAULT_FORWARD_MESSAGE_TOOL",
    "DEFAULT_HANDOFF_TOOL_PREFIX",
    "DEFAULT_ROUTING_TOOL",
    "DEFAULT_SUPERVISOR_PROMPT",
    "END",
    "FINISH",
    "AgentNetwork",
    "CheckpointerDescriptor",
    "CompilationOptions",
    "ContextIsolationPolicy",
    "EscalationRule",
    "HierarchicalConfig",
    "LLMConfig",
    "MessageHistoryPolicy",
    "NetworkConfig",
    "NetworkSummary",
    "NetworkType",
    "ParentGraphRule",
    "RoutingRule",
    "StatePredicate",
    "SupervisorConfig",
    "SwarmConfig",
    "TokenUsage",
    "WorkflowResult",
]


_CONFIG_TYPES: dict[NetworkType, type[BaseModel]] = {
    NetworkType.SUPERVISOR: SupervisorConfig,
    NetworkType.SWARM: SwarmConfig,
    NetworkType.HIERARCHICAL: HierarchicalConfig,
}


# ── Network ──────────────────────────────────────────────────────────────────


class CompilationOptions(BaseModel):
    """Options applied when compiling a network's graph.

    Attributes:
        checkpointer: A langgraph checkpoint saver. When None, the network
            manager may attach one from the checkpoint store.
        enable_interrupts: Interrupt before every worker node.
        interrupt_before: Explicit node names to interrupt before.
        interrupt_after: Explicit node names to interrupt after.
        debug: Enable langgraph debug output.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    checkpointer: Any = None
    enable_interrupts: bool = False
    interrupt_before: list[str] = Field(default_factory=list)
    interrupt_after: list[str] = Field(default_factory=list)
    debug: bool = False


class CheckpointerDescriptor(BaseModel):
    """Checkpointer attached to a network at creation time."""

    saver_name: str
    thread_prefix: str
    network_id: str

    @property
    def thread_id(self) -> str:
        return f"{self.thread_prefix}_{self.network_id}"


class AgentNetwork(BaseModel):
    """A network of agents and the topology that connects them.

    ``config`` may be passed as a dict; it is parsed into the config model
    matching ``type``.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(min_length=1)
    type: NetworkType
    agents: list[AgentDefinition] = Field(min_length=1)
    config: NetworkConfig
    compilation_options: CompilationOptions | None = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_config(cls, data: Any) -> Any:
        """Parse a dict config into the model matching the network type."""
        if not isinstance(data, dict):
            return data
        raw_type = data.get("type")
        config = data.get("config")
        try:
            network_type = NetworkType(raw_type)
        except ValueError:
            return data
        if isinstance(config, dict):
            data = {**data, "config": _CONFIG_TYPES[network_type].model_validate(config)}
        return data

    @model_validator(mode="after")
    def _check_config_type(self) -> AgentNetwork:
        expected = _CONFIG_TYPES[self.type]
        if not isinstance(self.config, expected):
            msg = (
                f"{self.type.value} network requires {expected.__name__}, "
                f"got {type(self.config).__name__}"
            )
            raise ValueError(msg)
        return self

    @property
    def agent_ids(self) -> list[str]:
        return [agent.id for agent in self.agents]


# ── Results ──────────────────────────────────────────────────────────────────


class TokenUsage(BaseModel):
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class WorkflowResult(BaseModel):
    """Outcome of a workflow run.

    Execution failures are reported here with ``success=False`` rather than
    raised. ``error`` holds the original exception.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    final_state: dict[str, Any] = Field(default_factory=dict)
    execution_path: list[str] = Field(default_factory=list)
    execution_time: float = 0.0
    success: bool = True
    token_usage: TokenUsage | None = None
    error: BaseException | None = None
    execution_id: str | None = None

    @property
    def error_message(self) -> str | None:
        return str(self.error) if self.error is not None else None


class NetworkSummary(BaseModel):
    id: str
    type: NetworkType
    agent_count: int
