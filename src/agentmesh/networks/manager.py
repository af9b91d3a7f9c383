"""Network manager: owns compiled network graphs and runs workflows.

Responsibilities:
- create_network: validate config, register agents, validate topology,
  attach a checkpointer when available, compile, and store. Any failure
  rolls back both the network maps and the registry changes for that id.
- execute_workflow / stream_workflow: build the initial state, drive the
  compiled graph, and report a WorkflowResult. Execution failures are
  returned as ``success=False`` results; only an unknown network id raises.
- Administration: lookup, listing, removal, stats, and health.

Checkpointing is optional. A network gets a checkpointer only when it is
enabled in settings AND a checkpoint store is wired AND the store reports
ready AND it names a default saver. Anything short of that disables
checkpointing for the network with a debug log, never an error.
"""

from __future__ import annotations

import asyncio
import random
import string
import time
from collections import Counter
from collections.abc import AsyncIterator, Sequence
from datetime import datetime, timezone
from typing import Any, Union

import structlog
from langchain_core.messages import BaseMessage
from pydantic import ValidationError

from src.agentmesh.agents.registry import AgentRegistry
from src.agentmesh.checkpoints.store import CheckpointStore, thread_id_for
from src.agentmesh.config import Settings, get_settings
from src.agentmesh.core.monitoring import active_networks, track_workflow
from src.agentmesh.core.timeouts import wait_with_timeout
from src.agentmesh.errors import (
    NetworkConfigurationError,
    NetworkNotFoundError,
    WorkflowTimeoutError,
)
from src.agentmesh.events.bus import InMemoryEventBus
from src.agentmesh.events.schemas import EventType
from src.agentmesh.graph.builder import GraphBuilder
from src.agentmesh.graph.state import to_message
from src.agentmesh.networks.schemas import (
    AgentNetwork,
    CheckpointerDescriptor,
    CompilationOptions,
    NetworkSummary,
    TokenUsage,
    WorkflowResult,
)

logger = structlog.get_logger(__name__)

_SOURCE = "network_manager"

MessageInput = Union[str, BaseMessage, dict[str, Any]]


# ── Helpers ──────────────────────────────────────────────────────────────────


def generate_execution_id() -> str:
    """``exec_{epoch_ms}_{9 random base36 chars}``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"exec_{int(time.time() * 1000)}_{suffix}"


def extract_execution_path(state: dict[str, Any]) -> list[str]:
    """Best-effort execution path from a final state.

    Uses ``metadata.execution_path`` when the graph populated it, otherwise
    falls back to the last known active agent.
    """
    metadata = state.get("metadata") or {}
    path = metadata.get("execution_path")
    if path:
        return list(path)
    last = metadata.get("last_agent") or state.get("current")
    return [last] if last else []


def extract_token_usage(state: dict[str, Any]) -> TokenUsage | None:
    usage = (state.get("metadata") or {}).get("token_usage")
    if not usage:
        return None
    return TokenUsage(
        total_tokens=int(usage.get("total_tokens", 0)),
        input_tokens=int(usage.get("input_tokens", 0)),
        output_tokens=int(usage.get("output_tokens", 0)),
    )


def _normalize_messages(messages: MessageInput | Sequence[MessageInput] | None) -> list[Any]:
    if messages is None:
        return []
    if isinstance(messages, (str, BaseMessage, dict)):
        messages = [messages]
    return [to_message(m) for m in messages]


# ── Network Manager ──────────────────────────────────────────────────────────


class NetworkManager:
    """Owns compiled networks and drives their execution.

    Args:
        registry: Agent registry that network agents are registered into.
        graph_builder: Builds and compiles network graphs.
        event_bus: Optional bus for lifecycle events.
        checkpoint_store: Optional checkpoint backend.
        settings: Optional settings (defaults to get_settings()).
    """

    def __init__(
        self,
        registry: AgentRegistry,
        graph_builder: GraphBuilder,
        event_bus: InMemoryEventBus | None = None,
        checkpoint_store: CheckpointStore | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry
        self._graph_builder = graph_builder
        self._event_bus = event_bus
        self._checkpoint_store = checkpoint_store
        self._settings = settings or get_settings()
        self._networks: dict[str, Any] = {}
        self._configs: dict[str, AgentNetwork] = {}
        self._checkpointers: dict[str, CheckpointerDescriptor | None] = {}

    # ── Creation ─────────────────────────────────────────────────────────────

    def create_network(self, network: AgentNetwork | dict[str, Any]) -> str:
        """Validate, compile, and store a network.

        Args:
            network: AgentNetwork (or a dict of its fields).

        Returns:
            The network id.

        Raises:
            NetworkConfigurationError: On any failure, after rolling back.
        """
        if isinstance(network, AgentNetwork):
            config = network
        else:
            try:
                config = AgentNetwork.model_validate(network)
            except ValidationError as exc:
                raw_id = network.get("id") if isinstance(network, dict) else None
                raise NetworkConfigurationError(
                    f"Invalid network configuration: {exc.error_count()} error(s): {exc}",
                    network_id=raw_id,
                    cause=exc,
                ) from exc

        network_id = config.id
        snapshot = self._registry.snapshot(a.id for a in config.agents)

        try:
            for agent in config.agents:
                self._registry.register(agent)
            self._graph_builder.validate(config)
            options, descriptor = self._prepare_compilation_options(config)
            compiled = self._graph_builder.compile(config, options)
        except Exception as exc:
            self._networks.pop(network_id, None)
            self._configs.pop(network_id, None)
            self._checkpointers.pop(network_id, None)
            self._registry.restore(snapshot)
            active_networks.set(len(self._networks))
            logger.error("network_creation_failed", network_id=network_id, error=str(exc))
            if isinstance(exc, NetworkConfigurationError):
                if exc.network_id is None:
                    exc.network_id = network_id
                    exc.details["network_id"] = network_id
                raise
            raise NetworkConfigurationError(
                f"Failed to create network {network_id}: {exc}",
                network_id=network_id,
                cause=exc,
            ) from exc

        if network_id in self._networks:
            logger.warning("network_replaced", network_id=network_id)

        self._networks[network_id] = compiled
        self._configs[network_id] = config
        self._checkpointers[network_id] = descriptor
        active_networks.set(len(self._networks))

        logger.info(
            "network_created",
            network_id=network_id,
            network_type=config.type.value,
            agent_count=len(config.agents),
            checkpointing=options.checkpointer is not None,
        )
        self._emit(
            EventType.NETWORK_CREATED,
            network_id=network_id,
            network_type=config.type.value,
            agent_count=len(config.agents),
        )
        return network_id

    def _prepare_compilation_options(
        self, network: AgentNetwork
    ) -> tuple[CompilationOptions, CheckpointerDescriptor | None]:
        """Attach a checkpointer from the store when one is usable."""
        options = (network.compilation_options or CompilationOptions()).model_copy()
        if options.checkpointer is not None:
            return options, None

        reason = None
        descriptor = None
        store = self._checkpoint_store
        if not self._settings.CHECKPOINT_ENABLED:
            reason = "disabled"
        elif store is None:
            reason = "no_store"
        else:
            try:
                if not store.is_ready():
                    reason = "store_not_ready"
                else:
                    saver_name = store.default_saver_name()
                    saver = store.get_saver(saver_name) if saver_name else None
                    if saver is None:
                        reason = "no_default_saver"
                    else:
                        options.checkpointer = saver
                        descriptor = CheckpointerDescriptor(
                            saver_name=saver_name,
                            thread_prefix=self._settings.CHECKPOINT_THREAD_PREFIX,
                            network_id=network.id,
                        )
            except Exception as exc:
                reason = f"store_error: {exc}"

        if reason is not None:
            logger.debug("checkpointing_disabled", network_id=network.id, reason=reason)
        return options, descriptor

    # ── Execution ────────────────────────────────────────────────────────────

    async def execute_workflow(
        self,
        network_id: str,
        messages: MessageInput | Sequence[MessageInput] | None = None,
        config: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> WorkflowResult:
        """Run a network to completion.

        Args:
            network_id: Network to run.
            messages: Input messages; plain strings become HumanMessages.
            config: Extra langgraph run config (merged, ``configurable``
                is extended with network and checkpoint keys).
            timeout: Seconds to wait for completion; defaults to
                WORKFLOW_DEFAULT_TIMEOUT (0 disables).

        Returns:
            WorkflowResult. Execution errors yield ``success=False``.

        Raises:
            NetworkNotFoundError: If the network id is unknown.
        """
        compiled, network = self._lookup(network_id)
        execution_id = generate_execution_id()
        initial_state = self._initial_state(network, messages, execution_id)
        run_config = self._run_config(network, execution_id, config)
        if timeout is None:
            timeout = self._settings.WORKFLOW_DEFAULT_TIMEOUT

        self._emit(
            EventType.WORKFLOW_STARTED,
            network_id=network_id,
            execution_id=execution_id,
            message_count=len(initial_state["messages"]),
        )
        logger.info("workflow_started", network_id=network_id, execution_id=execution_id)

        start = time.monotonic()
        with track_workflow(network.type.value, "invoke") as outcome:
            try:
                final_state = await wait_with_timeout(
                    compiled.ainvoke(initial_state, run_config), timeout
                )
            except Exception as exc:
                outcome["status"] = "failure"
                if isinstance(exc, asyncio.TimeoutError):
                    exc = WorkflowTimeoutError(network_id, execution_id, timeout)
                return self._failure(network_id, execution_id, exc, time.monotonic() - start)

        final_state = dict(final_state or {})
        result = WorkflowResult(
            final_state=final_state,
            execution_path=extract_execution_path(final_state),
            execution_time=time.monotonic() - start,
            success=True,
            token_usage=extract_token_usage(final_state),
            execution_id=execution_id,
        )
        self._complete(network_id, result, EventType.WORKFLOW_COMPLETED)
        return result

    def stream_workflow(
        self,
        network_id: str,
        messages: MessageInput | Sequence[MessageInput] | None = None,
        config: dict[str, Any] | None = None,
    ) -> AsyncIterator[dict[str, Any] | WorkflowResult]:
        """Stream a network run.

        Yields each intermediate state (a dict) as it is produced, then a
        final WorkflowResult. Failures are yielded as a failed result.
        Stopping iteration stops consumption only; an in-flight node may
        still finish in the background.

        Raises:
            NetworkNotFoundError: Immediately, if the network id is unknown.
        """
        compiled, network = self._lookup(network_id)
        return self._stream(compiled, network, messages, config)

    async def _stream(
        self,
        compiled: Any,
        network: AgentNetwork,
        messages: MessageInput | Sequence[MessageInput] | None,
        config: dict[str, Any] | None,
    ) -> AsyncIterator[dict[str, Any] | WorkflowResult]:
        execution_id = generate_execution_id()
        initial_state = self._initial_state(network, messages, execution_id)
        run_config = self._run_config(network, execution_id, config)

        self._emit(
            EventType.WORKFLOW_STREAM_STARTED,
            network_id=network.id,
            execution_id=execution_id,
        )

        path: list[str] = []
        seen_path_len = 0
        final_state: dict[str, Any] = {}
        start = time.monotonic()

        with track_workflow(network.type.value, "stream") as outcome:
            try:
                async for chunk in compiled.astream(initial_state, run_config, stream_mode="values"):
                    final_state = chunk
                    recorded = (chunk.get("metadata") or {}).get("execution_path") or []
                    if len(recorded) > seen_path_len:
                        path.extend(recorded[seen_path_len:])
                        seen_path_len = len(recorded)
                    elif chunk.get("current") and (not path or path[-1] != chunk["current"]):
                        path.append(chunk["current"])
                    yield chunk
            except Exception as exc:
                outcome["status"] = "failure"
                yield self._failure(
                    network.id,
                    execution_id,
                    exc,
                    time.monotonic() - start,
                    event_type=EventType.WORKFLOW_STREAM_FAILED,
                )
                return

        final_state = dict(final_state)
        result = WorkflowResult(
            final_state=final_state,
            execution_path=path or extract_execution_path(final_state),
            execution_time=time.monotonic() - start,
            success=True,
            token_usage=extract_token_usage(final_state),
            execution_id=execution_id,
        )
        self._complete(network.id, result, EventType.WORKFLOW_STREAM_COMPLETED)
        yield result

    def _lookup(self, network_id: str) -> tuple[Any, AgentNetwork]:
        compiled = self._networks.get(network_id)
        if compiled is None:
            raise NetworkNotFoundError(network_id)
        return compiled, self._configs[network_id]

    @staticmethod
    def _initial_state(
        network: AgentNetwork,
        messages: MessageInput | Sequence[MessageInput] | None,
        execution_id: str,
    ) -> dict[str, Any]:
        return {
            "messages": _normalize_messages(messages),
            "metadata": {
                "network_id": network.id,
                "network_type": network.type.value,
                "start_time": datetime.now(timezone.utc).isoformat(),
                "execution_id": execution_id,
                "execution_path": [],
                "routing_history": [],
            },
        }

    def _run_config(
        self,
        network: AgentNetwork,
        execution_id: str,
        config: dict[str, Any] | None,
    ) -> dict[str, Any]:
        run_config = dict(config or {})
        configurable = {
            **run_config.get("configurable", {}),
            "network_id": network.id,
            "network_type": network.type.value,
            "execution_id": execution_id,
        }
        if self.is_checkpointed(network.id):
            configurable.setdefault("thread_id", self.get_thread_id(network.id))
        run_config["configurable"] = configurable
        run_config.setdefault("recursion_limit", self._settings.WORKFLOW_RECURSION_LIMIT)
        return run_config

    def _failure(
        self,
        network_id: str,
        execution_id: str,
        error: BaseException,
        elapsed: float,
        event_type: EventType = EventType.WORKFLOW_FAILED,
    ) -> WorkflowResult:
        logger.error(
            "workflow_failed",
            network_id=network_id,
            execution_id=execution_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        self._emit(
            event_type,
            network_id=network_id,
            execution_id=execution_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        return WorkflowResult(
            final_state={
                "messages": [],
                "metadata": {
                    "error": True,
                    "error_message": str(error),
                    "execution_id": execution_id,
                },
            },
            execution_path=[],
            execution_time=elapsed,
            success=False,
            error=error,
            execution_id=execution_id,
        )

    def _complete(self, network_id: str, result: WorkflowResult, event_type: EventType) -> None:
        logger.info(
            "workflow_completed",
            network_id=network_id,
            execution_id=result.execution_id,
            execution_time=round(result.execution_time, 4),
            execution_path=result.execution_path,
        )
        self._emit(
            event_type,
            network_id=network_id,
            execution_id=result.execution_id,
            execution_time=result.execution_time,
            execution_path=result.execution_path,
        )

    # ── Lookup & administration ──────────────────────────────────────────────

    def get_network(self, network_id: str) -> Any | None:
        """Compiled graph for a network, or None."""
        return self._networks.get(network_id)

    def get_network_config(self, network_id: str) -> AgentNetwork | None:
        return self._configs.get(network_id)

    def list_networks(self) -> list[NetworkSummary]:
        return [
            NetworkSummary(id=network_id, type=config.type, agent_count=len(config.agents))
            for network_id, config in self._configs.items()
        ]

    def remove_network(self, network_id: str) -> bool:
        """Delete a network's compiled graph and config.

        Returns:
            True if the network existed.
        """
        existed = self._networks.pop(network_id, None) is not None
        self._configs.pop(network_id, None)
        self._checkpointers.pop(network_id, None)
        active_networks.set(len(self._networks))
        if existed:
            logger.info("network_removed", network_id=network_id)
            self._emit(EventType.NETWORK_REMOVED, network_id=network_id)
        return existed

    def clear(self) -> int:
        """Remove every network and return how many were removed."""
        network_ids = list(self._networks)
        for network_id in network_ids:
            self.remove_network(network_id)
        return len(network_ids)

    def is_checkpointed(self, network_id: str) -> bool:
        """Whether the network was compiled with a checkpointer."""
        config = self._configs.get(network_id)
        if config is None:
            return False
        caller_saver = (
            config.compilation_options is not None
            and config.compilation_options.checkpointer is not None
        )
        return caller_saver or self._checkpointers.get(network_id) is not None

    def get_thread_id(self, network_id: str) -> str:
        """Checkpoint thread id for a network."""
        descriptor = self._checkpointers.get(network_id)
        if descriptor is not None:
            return descriptor.thread_id
        return thread_id_for(network_id, self._settings.CHECKPOINT_THREAD_PREFIX)

    def get_network_stats(self) -> dict[str, Any]:
        by_type = Counter(config.type.value for config in self._configs.values())
        registry_stats = self._registry.get_stats()
        return {
            "total_networks": len(self._configs),
            "networks_by_type": dict(by_type),
            "checkpointed_networks": sum(1 for n in self._configs if self.is_checkpointed(n)),
            "total_agents": registry_stats["total"],
            "healthy_agents": registry_stats["healthy"],
        }

    def health_check(self) -> dict[str, Any]:
        """Aggregate registry health of every network's agents."""
        issues: list[str] = []
        agent_health: dict[str, bool] = {}

        for network_id, config in self._configs.items():
            for agent in config.agents:
                if agent.id not in self._registry:
                    issues.append(f"Network {network_id}: agent {agent.id} is not registered")
                    agent_health[agent.id] = False
                    continue
                healthy = self._registry.is_healthy(agent.id)
                agent_health[agent.id] = healthy
                if not healthy:
                    issues.append(f"Network {network_id}: agent {agent.id} is unhealthy")

        return {"healthy": not issues, "issues": issues, "agent_health": agent_health}

    def _emit(self, event_type: EventType, network_id: str | None = None, execution_id: str | None = None, **data: Any) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(
                event_type,
                _SOURCE,
                network_id=network_id,
                execution_id=execution_id,
                **data,
            )
