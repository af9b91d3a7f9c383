"""Tests for AgentState channel reducers and the swarm message reducer."""

from __future__ import annotations

from langchain_core.messages import AIMessage, HumanMessage

from src.agentmesh.graph.state import (
    append_messages,
    build_state_class,
    is_handoff_message,
    make_swarm_messages_reducer,
    merge_metadata,
    message_content,
    replace_if_present,
)
from src.agentmesh.networks.schemas import MessageHistoryPolicy


# ── Base Reducers ────────────────────────────────────────────────────────────


def test_append_messages_promotes_strings():
    """Plain strings are appended as HumanMessages."""
    result = append_messages([HumanMessage(content="hi")], "follow up")

    assert len(result) == 2
    assert isinstance(result[1], HumanMessage)
    assert result[1].content == "follow up"


def test_append_messages_handles_empty_left():
    assert append_messages(None, [AIMessage(content="a")])[0].content == "a"


def test_replace_if_present():
    """None keeps the prior value; anything else replaces it."""
    assert replace_if_present("analyst", None) == "analyst"
    assert replace_if_present("analyst", "reporter") == "reporter"


def test_merge_metadata_overwrites_keys():
    merged = merge_metadata({"a": 1, "b": 2}, {"b": 3, "c": 4})
    assert merged == {"a": 1, "b": 3, "c": 4}


def test_message_content_joins_text_parts():
    message = AIMessage(content=[{"type": "text", "text": "hello "}, {"type": "text", "text": "world"}])
    assert message_content(message) == "hello world"


def test_is_handoff_message_case_insensitive():
    assert is_handoff_message(AIMessage(content="Calling Transfer_To_analyst"))
    assert is_handoff_message({"role": "assistant", "content": "HANDOFF complete"})
    assert not is_handoff_message(AIMessage(content="Here are the results"))


# ── Swarm Reducer ────────────────────────────────────────────────────────────


def test_swarm_reducer_strips_handoff_messages():
    reducer = make_swarm_messages_reducer(MessageHistoryPolicy(remove_handoff_messages=True))

    result = reducer(
        [HumanMessage(content="research this")],
        [AIMessage(content="transfer_to_analyst"), AIMessage(content="findings")],
    )

    assert [message_content(m) for m in result] == ["research this", "findings"]


def test_swarm_reducer_attribution():
    """Unnamed messages are attributed to "user" or "agent"; named ones keep their name."""
    reducer = make_swarm_messages_reducer(MessageHistoryPolicy(add_agent_attribution=True))

    result = reducer(
        [HumanMessage(content="question")],
        [AIMessage(content="answer"), AIMessage(content="more", name="analyst")],
    )

    assert [m.name for m in result] == ["user", "agent", "analyst"]


def test_swarm_reducer_truncates_to_most_recent():
    """After any update the channel holds at most max_messages, the most recent ones."""
    reducer = make_swarm_messages_reducer(MessageHistoryPolicy(max_messages=3))

    messages: list = []
    for i in range(7):
        messages = reducer(messages, [HumanMessage(content=f"m{i}")])
        assert len(messages) <= 3

    assert [m.content for m in messages] == ["m4", "m5", "m6"]


def test_swarm_reducer_strips_before_truncating():
    """Handoff messages never consume truncation slots."""
    reducer = make_swarm_messages_reducer(
        MessageHistoryPolicy(remove_handoff_messages=True, max_messages=2)
    )

    result = reducer(
        [HumanMessage(content="a"), HumanMessage(content="b")],
        [AIMessage(content="handoff to analyst")],
    )

    assert [m.content for m in result] == ["a", "b"]


def test_build_state_class_fields():
    state_class = build_state_class(class_name="CustomState")
    assert state_class.__name__ == "CustomState"
    assert set(state_class.__annotations__) == {
        "messages", "next", "current", "task", "scratchpad", "metadata", "error",
    }
