"""Tool execution: executor contract, tool registry, and tool-node factory.

The orchestration core only depends on the ToolExecutor contract
(``invoke(tool_name, tool_input)``). ToolRegistry is the explicit
name -> callable table implementing it.

ToolNodeFactory turns an executor into langgraph nodes:
- tool node: runs the tool calls of the last AI message and appends
  ToolMessages; failures land in the ``error`` state channel
- conditional node: picks one of two nodes from a state predicate
- parallel node: runs nodes concurrently, waits for all of them, and
  merges their updates with last-write-wins per field
- retrying node: re-runs a node with exponential backoff (tenacity)

Timeouts stop the caller waiting; the tool call itself is not cancelled.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from langchain_core.messages import AIMessage, ToolMessage
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from src.agentmesh.config import Settings, get_settings
from src.agentmesh.core.monitoring import tool_node_executions_total
from src.agentmesh.core.timeouts import wait_with_timeout
from src.agentmesh.errors import (
    MultiAgentError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
)

logger = structlog.get_logger(__name__)

Node = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]
ToolFunction = Callable[[dict[str, Any]], Any]


# ── Error state ──────────────────────────────────────────────────────────────


class NodeErrorState(BaseModel):
    """Error recorded in the ``error`` state channel by a tool node."""

    id: str = Field(default_factory=lambda: f"err_{uuid.uuid4().hex[:12]}")
    node_id: str
    type: str
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_recoverable: bool = False
    suggested_recovery: str | None = None


def classify_error(node_id: str, error: BaseException) -> NodeErrorState:
    """Describe an error and whether retrying can help."""
    if isinstance(error, (ToolTimeoutError, asyncio.TimeoutError)):
        recoverable, recovery = True, "retry with a longer timeout"
    elif isinstance(error, ToolNotFoundError):
        recoverable, recovery = False, "register the tool or correct the tool name"
    elif isinstance(error, ToolExecutionError):
        recoverable, recovery = True, "retry the tool call"
    else:
        recoverable, recovery = False, None
    return NodeErrorState(
        node_id=node_id,
        type=type(error).__name__,
        message=str(error) or type(error).__name__,
        is_recoverable=recoverable,
        suggested_recovery=recovery,
    )


# ── Executor contract ────────────────────────────────────────────────────────


class ToolExecutor(ABC):
    """Invokes named capabilities."""

    @abstractmethod
    async def invoke(self, tool_name: str, tool_input: dict[str, Any]) -> Any:
        """Run a tool and return its result.

        Raises:
            ToolNotFoundError: If the tool is unknown.
            ToolExecutionError: If the tool fails.
        """


@dataclass
class RegisteredTool:
    name: str
    func: ToolFunction
    description: str = ""
    timeout: float | None = None


class ToolRegistry(ToolExecutor):
    """Explicit table of named tool callables.

    Tools receive the call arguments as a single dict and may be sync or
    async.
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        func: ToolFunction,
        description: str = "",
        timeout: float | None = None,
    ) -> None:
        if name in self._tools:
            logger.warning("tool_overwritten", tool_name=name)
        self._tools[name] = RegisteredTool(name, func, description, timeout)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def list_tools(self) -> list[dict[str, str]]:
        return [{"name": t.name, "description": t.description} for t in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def invoke(self, tool_name: str, tool_input: dict[str, Any]) -> Any:
        tool = self._tools.get(tool_name)
        if tool is None:
            raise ToolNotFoundError(tool_name)

        try:
            result = tool.func(tool_input)
            if inspect.isawaitable(result):
                result = await wait_with_timeout(result, tool.timeout)
        except asyncio.TimeoutError as exc:
            raise ToolTimeoutError(tool_name, tool.timeout or 0.0) from exc
        except MultiAgentError:
            raise
        except Exception as exc:
            raise ToolExecutionError(tool_name, f"Tool '{tool_name}' failed: {exc}") from exc
        return result


# ── Tool node factory ────────────────────────────────────────────────────────


def _stringify(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def _pending_tool_calls(state: dict[str, Any]) -> list[dict[str, Any]]:
    messages = state.get("messages") or []
    for message in reversed(messages):
        if isinstance(message, AIMessage):
            return list(message.tool_calls or [])
    return []


class ToolNodeFactory:
    """Builds tool-executing nodes and records per-node metrics.

    Args:
        executor: Tool executor invoked by tool nodes.
        settings: Optional settings for retry defaults.
    """

    def __init__(self, executor: ToolExecutor, settings: Settings | None = None) -> None:
        self._executor = executor
        self._settings = settings or get_settings()
        self._metrics: dict[str, dict[str, float]] = {}

    def create_tool_node(
        self,
        node_id: str,
        timeout: float | None = None,
        capture_errors: bool = True,
    ) -> Node:
        """Node running the tool calls of the last AI message.

        Args:
            node_id: Node name, used for metrics and error records.
            timeout: Per-call timeout in seconds.
            capture_errors: Write failures to the ``error`` channel instead
                of raising. Retrying nodes need this off.
        """

        async def tool_node(state: dict[str, Any]) -> dict[str, Any]:
            start = time.monotonic()
            results: list[ToolMessage] = []
            try:
                for call in _pending_tool_calls(state):
                    name = call["name"]
                    try:
                        output = await wait_with_timeout(
                            self._executor.invoke(name, call.get("args") or {}), timeout
                        )
                    except asyncio.TimeoutError as exc:
                        raise ToolTimeoutError(name, timeout or 0.0) from exc
                    results.append(
                        ToolMessage(
                            content=_stringify(output),
                            tool_call_id=call.get("id") or name,
                            name=name,
                        )
                    )
            except Exception as exc:
                self._record(node_id, time.monotonic() - start, success=False)
                error_state = classify_error(node_id, exc)
                logger.warning(
                    "tool_node_failed",
                    node_id=node_id,
                    error=error_state.message,
                    recoverable=error_state.is_recoverable,
                )
                if not capture_errors:
                    raise
                return {"messages": results, "error": error_state.model_dump(mode="json")}

            self._record(node_id, time.monotonic() - start, success=True)
            return {"messages": results, "metadata": {"last_tool_node": node_id}}

        return tool_node

    def create_conditional_node(
        self,
        node_id: str,
        condition: Callable[[dict[str, Any]], bool],
        if_true: Node,
        if_false: Node,
    ) -> Node:
        """Node delegating to one of two nodes based on ``condition(state)``."""

        async def conditional_node(state: dict[str, Any]) -> dict[str, Any]:
            taken = bool(condition(state))
            logger.debug("conditional_branch", node_id=node_id, taken=taken)
            return await (if_true if taken else if_false)(state)

        return conditional_node

    def create_parallel_node(self, node_id: str, nodes: list[Node]) -> Node:
        """Node running ``nodes`` concurrently.

        Every node is awaited before returning. If any failed, the first
        failure (in node order) is raised. Updates merge in node order,
        later nodes overwriting earlier ones per field.
        """

        async def parallel_node(state: dict[str, Any]) -> dict[str, Any]:
            start = time.monotonic()
            outcomes = await asyncio.gather(*(n(state) for n in nodes), return_exceptions=True)
            failures = [o for o in outcomes if isinstance(o, BaseException)]
            if failures:
                self._record(node_id, time.monotonic() - start, success=False)
                logger.warning(
                    "parallel_node_failed",
                    node_id=node_id,
                    failed=len(failures),
                    total=len(nodes),
                )
                raise failures[0]

            merged: dict[str, Any] = {}
            for update in outcomes:
                merged.update(update or {})
            self._record(node_id, time.monotonic() - start, success=True)
            return merged

        return parallel_node

    def create_retrying_node(
        self,
        node_id: str,
        node: Node,
        max_retries: int | None = None,
        base_delay: float | None = None,
        multiplier: float | None = None,
    ) -> Node:
        """Node re-running ``node`` with exponential backoff.

        Waits ``base_delay * multiplier ** (attempt - 1)`` seconds between
        attempts. After ``max_retries`` retries the last error is raised.
        """
        max_retries = self._settings.TOOL_MAX_RETRIES if max_retries is None else max_retries
        base_delay = self._settings.TOOL_RETRY_BASE_DELAY if base_delay is None else base_delay
        multiplier = self._settings.TOOL_RETRY_MULTIPLIER if multiplier is None else multiplier

        async def retrying_node(state: dict[str, Any]) -> dict[str, Any]:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_retries + 1),
                wait=wait_exponential(multiplier=base_delay, exp_base=multiplier),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            "node_retry",
                            node_id=node_id,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    return await node(state)
            raise RuntimeError("unreachable")  # pragma: no cover

        return retrying_node

    # ── Metrics ──────────────────────────────────────────────────────────────

    def _record(self, node_id: str, duration: float, success: bool) -> None:
        metrics = self._metrics.setdefault(
            node_id, {"executions": 0, "failures": 0, "total_duration": 0.0}
        )
        metrics["executions"] += 1
        metrics["total_duration"] += duration
        if not success:
            metrics["failures"] += 1
        tool_node_executions_total.labels(
            node_id=node_id, status="success" if success else "failure"
        ).inc()

    def get_execution_metrics(self) -> dict[str, dict[str, float]]:
        """Per-node executions, failures, and total/average duration."""
        return {
            node_id: {
                **m,
                "average_duration": m["total_duration"] / m["executions"] if m["executions"] else 0.0,
            }
            for node_id, m in self._metrics.items()
        }

    def reset_metrics(self) -> None:
        self._metrics.clear()
