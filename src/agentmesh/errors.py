"""Error taxonomy for the orchestration engine.

Configuration and lookup errors (NetworkConfigurationError,
AgentNotFoundError and friends) are raised synchronously at the offending
call. Errors raised while a workflow runs are caught by the NetworkManager
and reported through WorkflowResult instead of propagating.

Every error carries a machine-readable ``code`` and a ``details`` dict so
callers and event consumers can branch without parsing messages.
"""

from __future__ import annotations

from typing import Any


class MultiAgentError(Exception):
    """Base class for all orchestration errors.

    Attributes:
        code: Stable machine-readable error code.
        details: Structured context about the failure.
    """

    code: str = "MULTI_AGENT_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for results and events."""
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# -- Lookup errors ------------------------------------------------------------


class AgentNotFoundError(MultiAgentError):
    """Raised when an agent (or network, or stream) id is unknown."""

    code = "AGENT_NOT_FOUND"

    def __init__(self, agent_id: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Agent not found: {agent_id}",
            details={"agent_id": agent_id},
        )
        self.agent_id = agent_id


class NetworkNotFoundError(AgentNotFoundError):
    """Raised when a network id is unknown."""

    code = "NETWORK_NOT_FOUND"

    def __init__(self, network_id: str) -> None:
        super().__init__(network_id, f"Network not found: {network_id}")
        self.network_id = network_id


class StreamNotFoundError(AgentNotFoundError):
    """Raised when a token stream key is unknown."""

    code = "STREAM_NOT_FOUND"

    def __init__(self, stream_key: str) -> None:
        super().__init__(stream_key, f"Token stream not found: {stream_key}")
        self.stream_key = stream_key


# -- Configuration errors -----------------------------------------------------


class InvalidAgentDefinitionError(MultiAgentError, ValueError):
    """Raised when an agent definition is missing required fields."""

    code = "INVALID_AGENT_DEFINITION"


class NetworkConfigurationError(MultiAgentError):
    """Raised when a network topology or config is invalid.

    Attributes:
        offending_ids: Agent ids that caused the failure (may be empty).
        network_id: The network being configured, if known.
    """

    code = "NETWORK_CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str,
        offending_ids: list[str] | None = None,
        network_id: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.offending_ids = list(offending_ids or [])
        self.network_id = network_id
        details: dict[str, Any] = {"offending_ids": self.offending_ids}
        if network_id is not None:
            details["network_id"] = network_id
        if cause is not None:
            details["cause"] = str(cause)
        super().__init__(message, details=details)


# -- Execution errors ---------------------------------------------------------


class RoutingError(MultiAgentError):
    """Raised when a routing decision reaches an unexpected state."""

    code = "ROUTING_ERROR"


class HandoffError(MultiAgentError):
    """Raised when a peer handoff target is invalid or the handoff fails."""

    code = "HANDOFF_ERROR"

    def __init__(
        self,
        message: str,
        source: str | None = None,
        target: str | None = None,
        issues: list[str] | None = None,
    ) -> None:
        self.source = source
        self.target = target
        self.issues = list(issues or [])
        super().__init__(
            message,
            details={"source": source, "target": target, "issues": self.issues},
        )


class NodeExecutionError(MultiAgentError):
    """Raised when an agent node function fails."""

    code = "NODE_EXECUTION_ERROR"

    def __init__(self, node_id: str, cause: BaseException) -> None:
        super().__init__(
            f"Node '{node_id}' failed: {cause}",
            details={"node_id": node_id, "cause_type": type(cause).__name__},
        )
        self.node_id = node_id
        self.__cause__ = cause


class NodeTimeoutError(MultiAgentError):
    """Raised when an agent node exceeds its timeout."""

    code = "NODE_TIMEOUT"

    def __init__(self, node_id: str, timeout: float) -> None:
        super().__init__(
            f"Node '{node_id}' timed out after {timeout}s",
            details={"node_id": node_id, "timeout": timeout},
        )
        self.node_id = node_id
        self.timeout = timeout


class WorkflowTimeoutError(MultiAgentError):
    """Raised when a whole workflow run exceeds its timeout."""

    code = "WORKFLOW_TIMEOUT"

    def __init__(self, network_id: str, execution_id: str, timeout: float) -> None:
        super().__init__(
            f"Workflow '{execution_id}' on network '{network_id}' timed out after {timeout}s",
            details={"network_id": network_id, "execution_id": execution_id, "timeout": timeout},
        )
        self.network_id = network_id
        self.execution_id = execution_id
        self.timeout = timeout


# -- Tool errors --------------------------------------------------------------


class ToolNotFoundError(MultiAgentError):
    """Raised when a tool name is not registered with the executor."""

    code = "TOOL_NOT_FOUND"

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool not found: {tool_name}", details={"tool_name": tool_name})
        self.tool_name = tool_name


class ToolExecutionError(MultiAgentError):
    """Raised when a tool invocation fails."""

    code = "TOOL_EXECUTION_ERROR"

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message, details={"tool_name": tool_name})
        self.tool_name = tool_name


class ToolTimeoutError(ToolExecutionError):
    """Raised when a tool invocation exceeds its timeout."""

    code = "TOOL_TIMEOUT"

    def __init__(self, tool_name: str, timeout: float) -> None:
        super().__init__(tool_name, f"Tool '{tool_name}' timed out after {timeout}s")
        self.details["timeout"] = timeout
        self.timeout = timeout


# -- Collaborator errors ------------------------------------------------------


class CheckpointUnavailableError(MultiAgentError):
    """Raised when a checkpoint operation needs a store and none is usable."""

    code = "CHECKPOINT_UNAVAILABLE"


class CheckpointNotFoundError(MultiAgentError):
    """Raised when a checkpoint id does not exist for a thread."""

    code = "CHECKPOINT_NOT_FOUND"

    def __init__(self, thread_id: str, checkpoint_id: str) -> None:
        super().__init__(
            f"Checkpoint {checkpoint_id} not found for thread {thread_id}",
            details={"thread_id": thread_id, "checkpoint_id": checkpoint_id},
        )
        self.thread_id = thread_id
        self.checkpoint_id = checkpoint_id


class LLMUnavailableError(MultiAgentError):
    """Raised when an LLM provider is not configured or the call fails."""

    code = "LLM_UNAVAILABLE"
