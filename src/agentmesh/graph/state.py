"""Agent graph state and channel reducers.

AgentState is the shared state flowing through every network graph. Each
field is an Annotated channel whose reducer merges a node's partial update
into the current value:

- ``messages``: append (swarm networks use a policy-aware variant)
- ``next`` / ``current`` / ``task`` / ``scratchpad`` / ``error``:
  replace-if-present, otherwise keep the prior value
- ``metadata``: shallow merge, new keys overwrite old ones

Swarm networks get a state class generated per network so the message
reducer can close over that network's MessageHistoryPolicy.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Annotated, Any, Optional, TypedDict

from langchain_core.messages import BaseMessage, HumanMessage

from src.agentmesh.topology import MessageHistoryPolicy

HANDOFF_MARKERS = ("transfer_to", "handoff")

MessagesReducer = Callable[[list[Any], Any], list[Any]]


# ── Message helpers ──────────────────────────────────────────────────────────


def message_content(message: Any) -> str:
    """Return a message's text content.

    Accepts langchain messages and plain dicts. List-style content (text
    parts) is joined.
    """
    if isinstance(message, dict):
        content = message.get("content", "")
    else:
        content = getattr(message, "content", "")
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return "" if content is None else str(content)


def message_name(message: Any) -> str | None:
    if isinstance(message, dict):
        return message.get("name")
    return getattr(message, "name", None)


def with_name(message: Any, name: str) -> Any:
    """Return a copy of ``message`` carrying ``name``."""
    if isinstance(message, dict):
        return {**message, "name": name}
    return message.model_copy(update={"name": name})


def is_handoff_message(message: Any, markers: Sequence[str] = HANDOFF_MARKERS) -> bool:
    """True when the message content mentions a handoff/transfer marker."""
    content = message_content(message).lower()
    return any(marker in content for marker in markers)


def to_message(value: Any) -> Any:
    """Promote a plain string to a HumanMessage."""
    if isinstance(value, str):
        return HumanMessage(content=value)
    return value


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


# ── Reducers ─────────────────────────────────────────────────────────────────


def append_messages(left: list[Any] | None, right: Any) -> list[Any]:
    """Append new messages to the existing list."""
    return _as_list(left) + [to_message(m) for m in _as_list(right)]


def replace_if_present(left: Any, right: Any) -> Any:
    """Last write wins; a None update keeps the prior value."""
    return left if right is None else right


def merge_metadata(left: dict[str, Any] | None, right: dict[str, Any] | None) -> dict[str, Any]:
    """Shallow merge; keys in ``right`` overwrite keys in ``left``."""
    return {**(left or {}), **(right or {})}


def attribution_for(message: Any) -> str:
    """Default attribution for a message without a name."""
    if isinstance(message, HumanMessage) or (
        isinstance(message, dict) and message.get("role") in ("user", "human")
    ):
        return "user"
    return "agent"


def make_swarm_messages_reducer(policy: MessageHistoryPolicy) -> MessagesReducer:
    """Build the swarm message reducer for one network.

    Order of operations: append, strip handoff messages, attribute,
    truncate to the most recent ``max_messages``.
    """

    def reduce_swarm_messages(left: list[Any] | None, right: Any) -> list[Any]:
        messages = append_messages(left, right)

        if policy.remove_handoff_messages:
            messages = [m for m in messages if not is_handoff_message(m)]

        if policy.add_agent_attribution:
            messages = [
                m if message_name(m) else with_name(m, attribution_for(m))
                for m in messages
            ]

        if policy.max_messages is not None and len(messages) > policy.max_messages:
            messages = messages[-policy.max_messages:]

        return messages

    return reduce_swarm_messages


# ── State ────────────────────────────────────────────────────────────────────


class AgentState(TypedDict, total=False):
    """Shared state of a network graph.

    Attributes:
        messages: Conversation history, append-only per step.
        next: Routing target chosen by the last node.
        current: Id of the agent that ran last.
        task: Task description for the next agent.
        scratchpad: Free-form shared text.
        metadata: Open bag (execution ids, path, token usage, ...).
        error: Last node error recorded by a tool node.
    """

    messages: Annotated[list[BaseMessage], append_messages]
    next: Annotated[Optional[str], replace_if_present]
    current: Annotated[Optional[str], replace_if_present]
    task: Annotated[Optional[str], replace_if_present]
    scratchpad: Annotated[Optional[str], replace_if_present]
    metadata: Annotated[dict[str, Any], merge_metadata]
    error: Annotated[Optional[dict[str, Any]], replace_if_present]


def build_state_class(
    messages_reducer: MessagesReducer = append_messages,
    class_name: str = "AgentState",
) -> type:
    """Build an AgentState variant with a custom message reducer.

    Args:
        messages_reducer: Reducer for the ``messages`` channel.
        class_name: Name of the generated TypedDict class.

    Returns:
        A TypedDict class usable as a langgraph state schema.
    """
    annotations: dict[str, Any] = {
        "messages": Annotated[list[BaseMessage], messages_reducer],
        "next": Annotated[Optional[str], replace_if_present],
        "current": Annotated[Optional[str], replace_if_present],
        "task": Annotated[Optional[str], replace_if_present],
        "scratchpad": Annotated[Optional[str], replace_if_present],
        "metadata": Annotated[dict[str, Any], merge_metadata],
        "error": Annotated[Optional[dict[str, Any]], replace_if_present],
    }
    return TypedDict(class_name, annotations, total=False)  # type: ignore[operator]
