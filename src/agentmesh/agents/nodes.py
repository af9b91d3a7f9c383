"""Node factory: wraps agent definitions into langgraph node callables.

Three node kinds are produced:

- Supervisor node: asks the SupervisorRouter for the next worker and
  always writes ``next`` (a worker id or END).
- Worker node: runs an agent's node function under its optional timeout
  and stamps execution bookkeeping (current agent, execution path,
  timing, token usage) into the update.
- Swarm node: a worker node that also detects peer handoffs, either from
  the returned ``next`` or from a handoff tool call, validates them with
  the HandoffProtocol, and writes the handoff into ``next``.

Agent failures raise NodeExecutionError / NodeTimeoutError. They abort the
graph run and are reported by the NetworkManager as a failed result.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from langchain_core.messages import AIMessage, ToolMessage
from pydantic import ValidationError

from src.agentmesh.agents.base import AgentDefinition, HandoffTool
from src.agentmesh.agents.router import SupervisorRouter, summarize_messages
from src.agentmesh.core.timeouts import wait_with_timeout
from src.agentmesh.errors import (
    HandoffError,
    MultiAgentError,
    NodeExecutionError,
    NodeTimeoutError,
)
from src.agentmesh.graph.state import is_handoff_message, message_content, message_name, with_name
from src.agentmesh.handoffs.protocol import HandoffProtocol
from src.agentmesh.handoffs.validators import HandoffPayload, HandoffType
from src.agentmesh.topology import (
    DEFAULT_HANDOFF_TOOL_PREFIX,
    END,
    SupervisorConfig,
    SwarmConfig,
)
from src.agentmesh.services.llm import LLMProvider

logger = structlog.get_logger(__name__)

Node = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]

# Routing chatter hidden from supervisor workers.
SUPERVISOR_HANDOFF_MARKERS = ("route", "transfer_to", "handoff", "routing")


# ── Shared helpers ───────────────────────────────────────────────────────────


async def run_agent(agent: AgentDefinition, state: dict[str, Any]) -> dict[str, Any]:
    """Run an agent's node function, normalising errors.

    Raises:
        NodeTimeoutError: If the agent's timeout elapses.
        NodeExecutionError: If the node function raises or returns a non-dict.
    """
    try:
        result = agent.node_function(state)
        if inspect.isawaitable(result):
            result = await wait_with_timeout(result, agent.timeout)
    except asyncio.TimeoutError as exc:
        raise NodeTimeoutError(agent.id, agent.timeout or 0.0) from exc
    except MultiAgentError:
        raise
    except Exception as exc:
        raise NodeExecutionError(agent.id, exc) from exc

    if result is None:
        return {}
    if not isinstance(result, dict):
        raise NodeExecutionError(
            agent.id,
            TypeError(f"node function returned {type(result).__name__}, expected dict"),
        )
    return result


def _attribute(messages: Any, agent_id: str) -> list[Any]:
    """Name unnamed AI messages after the agent that produced them."""
    if messages is None:
        return []
    if not isinstance(messages, (list, tuple)):
        messages = [messages]
    stamped = []
    for message in messages:
        is_ai = isinstance(message, AIMessage) or (
            isinstance(message, dict) and message.get("role") in ("assistant", "ai")
        )
        if is_ai and not message_name(message):
            message = with_name(message, agent_id)
        stamped.append(message)
    return stamped


def _merge_token_usage(previous: dict[str, int] | None, current: dict[str, int] | None) -> dict[str, int] | None:
    if not current:
        return previous
    merged = dict(previous or {})
    for key in ("total_tokens", "input_tokens", "output_tokens"):
        merged[key] = merged.get(key, 0) + int(current.get(key, 0))
    return merged


def bookkeeping_update(
    agent: AgentDefinition,
    state: dict[str, Any],
    result: dict[str, Any],
    elapsed: float,
) -> dict[str, Any]:
    """Build the partial update for a completed agent turn."""
    update = {k: v for k, v in result.items() if k not in ("metadata", "messages", "current")}
    update["current"] = agent.id
    if "messages" in result:
        update["messages"] = _attribute(result["messages"], agent.id)

    prior = state.get("metadata") or {}
    returned = dict(result.get("metadata") or {})
    usage = _merge_token_usage(prior.get("token_usage"), returned.pop("token_usage", None))

    metadata = {
        **returned,
        "last_agent": agent.id,
        "execution_path": [*prior.get("execution_path", []), agent.id],
        "agent_execution_time": round(elapsed, 6),
        "task_completed": True,
    }
    if usage is not None:
        metadata["token_usage"] = usage
    update["metadata"] = metadata
    return update


# ── Node Factory ─────────────────────────────────────────────────────────────


class NodeFactory:
    """Creates langgraph node callables for network topologies.

    Args:
        llm_provider: Optional provider used for supervisor LLM routing.
    """

    def __init__(self, llm_provider: LLMProvider | None = None) -> None:
        self._llm_provider = llm_provider

    def create_supervisor_node(
        self,
        workers: list[AgentDefinition],
        config: SupervisorConfig,
    ) -> Node:
        """Create the routing node of a supervisor topology."""
        router = SupervisorRouter(workers, config, self._llm_provider)
        worker_ids = set(router.worker_ids)

        async def supervisor_node(state: dict[str, Any]) -> dict[str, Any]:
            decision = await router.route(state)
            metadata = state.get("metadata") or {}

            routing = {
                "next": decision.next,
                "routed_by": decision.routed_by,
                "reasoning": decision.reasoning,
            }
            update_metadata: dict[str, Any] = {
                "routing_history": [*metadata.get("routing_history", []), routing],
            }
            if decision.fallback:
                update_metadata["routing_fallback"] = True
            if decision.error:
                update_metadata["supervisor_error"] = decision.error

            update: dict[str, Any] = {"next": decision.next, "metadata": update_metadata}
            if decision.task:
                update["task"] = decision.task

            if decision.next == END and config.enable_forward_message:
                messages = state.get("messages", [])
                if messages and message_name(messages[-1]) in worker_ids:
                    update["messages"] = [
                        AIMessage(content=message_content(messages[-1]), name="supervisor")
                    ]

            logger.debug(
                "supervisor_routed",
                next=decision.next,
                routed_by=decision.routed_by,
                recent=summarize_messages(state.get("messages", []), limit=2),
            )
            return update

        return supervisor_node

    def create_worker_node(
        self,
        agent: AgentDefinition,
        filter_handoff_messages: bool = False,
    ) -> Node:
        """Create a worker node reporting back to a supervisor."""

        async def worker_node(state: dict[str, Any]) -> dict[str, Any]:
            view = state
            if filter_handoff_messages:
                view = {
                    **state,
                    "messages": [
                        m
                        for m in state.get("messages", [])
                        if not is_handoff_message(m, SUPERVISOR_HANDOFF_MARKERS)
                    ],
                }

            start = time.monotonic()
            result = await run_agent(agent, view)
            elapsed = time.monotonic() - start

            logger.info("agent_executed", agent_id=agent.id, duration_s=round(elapsed, 4))
            return bookkeeping_update(agent, state, result, elapsed)

        return worker_node

    def create_swarm_node(
        self,
        agent: AgentDefinition,
        config: SwarmConfig,
        protocol: HandoffProtocol,
    ) -> Node:
        """Create a swarm node that may hand control to a peer."""
        tools_by_name = {tool.name: tool for tool in agent.handoff_tools}
        tools_by_target = {tool.target: tool for tool in agent.handoff_tools}
        allowed_targets = set(tools_by_target) if config.enable_dynamic_handoffs else None

        async def swarm_node(state: dict[str, Any]) -> dict[str, Any]:
            view = state
            if config.context_isolation.enabled:
                shared = set(config.context_isolation.shared_keys)
                view = {
                    **state,
                    "metadata": {
                        k: v for k, v in (state.get("metadata") or {}).items() if k in shared
                    },
                }

            start = time.monotonic()
            result = await run_agent(agent, view)
            elapsed = time.monotonic() - start
            update = bookkeeping_update(agent, state, result, elapsed)

            target, tool, tool_call_id = _detect_handoff(
                result, tools_by_name, tools_by_target
            )
            if target is None or target == END:
                update["next"] = END
                logger.info("agent_executed", agent_id=agent.id, duration_s=round(elapsed, 4))
                return update

            if allowed_targets is not None:
                payload = _build_payload(agent, target, tool, result)
                protocol.validate_or_reject(payload, allowed_targets)
                update["metadata"]["handoff"] = payload.to_metadata()
                update["metadata"]["handoff_history"] = [
                    *(state.get("metadata") or {}).get("handoff_history", []),
                    payload.to_metadata(),
                ]

            messages = update.get("messages", [])
            if tool_call_id is not None:
                messages = [
                    *messages,
                    ToolMessage(
                        content=f"Successfully transferred to {target}",
                        tool_call_id=tool_call_id,
                        name=tool.name if tool else f"{DEFAULT_HANDOFF_TOOL_PREFIX}{target}",
                    ),
                ]
            if tool is not None and tool.context_filter is not None:
                messages = list(tool.context_filter(messages))
            if messages or "messages" in update:
                update["messages"] = messages

            update["next"] = target
            logger.info(
                "agent_handoff",
                source=agent.id,
                target=target,
                tool=tool.name if tool else None,
                duration_s=round(elapsed, 4),
            )
            return update

        return swarm_node


def _detect_handoff(
    result: dict[str, Any],
    tools_by_name: dict[str, HandoffTool],
    tools_by_target: dict[str, HandoffTool],
) -> tuple[str | None, HandoffTool | None, str | None]:
    """Find a requested handoff in a node result.

    Returns:
        (target, handoff tool, tool call id). Target is None when no
        handoff was requested.
    """
    target = result.get("next")
    if target:
        return target, tools_by_target.get(target), None

    messages = result.get("messages") or []
    if not isinstance(messages, (list, tuple)):
        messages = [messages]
    for message in reversed(messages):
        for call in getattr(message, "tool_calls", None) or []:
            name = call.get("name", "")
            tool = tools_by_name.get(name)
            if tool is not None:
                return tool.target, tool, call.get("id")
            if name.startswith(DEFAULT_HANDOFF_TOOL_PREFIX):
                target = name[len(DEFAULT_HANDOFF_TOOL_PREFIX):]
                return target, tools_by_target.get(target), call.get("id")
    return None, None, None


def _build_payload(
    agent: AgentDefinition,
    target: str,
    tool: HandoffTool | None,
    result: dict[str, Any],
) -> HandoffPayload:
    metadata = result.get("metadata") or {}
    try:
        return HandoffPayload(
            source_agent_id=agent.id,
            target_agent_id=target,
            handoff_type=tool.handoff_type if tool else HandoffType.DELEGATION,
            tool_name=tool.name if tool else None,
            reason=metadata.get("handoff_reason"),
            task=result.get("task"),
        )
    except ValidationError as exc:
        raise HandoffError(
            f"Invalid handoff {agent.id} -> {target}",
            source=agent.id,
            target=target,
            issues=[err["msg"] for err in exc.errors()],
        ) from exc
