"""Tests for the tool registry and ToolNodeFactory nodes.

Covers tool dispatch from AI tool calls, error capture into the error
channel, timeouts, conditional and parallel composition, and retries
with exponential backoff (zero delay in tests).
"""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock

import pytest
from langchain_core.messages import AIMessage, ToolMessage

from src.agentmesh.config import Settings
from src.agentmesh.errors import ToolExecutionError, ToolNotFoundError, ToolTimeoutError
from src.agentmesh.tools.executor import ToolNodeFactory, ToolRegistry, classify_error


# ── Helpers ──────────────────────────────────────────────────────────────────


def _state_with_calls(*calls: tuple[str, dict[str, Any]]) -> dict[str, Any]:
    tool_calls = [
        {"name": name, "args": args, "id": f"call_{i}"} for i, (name, args) in enumerate(calls)
    ]
    return {"messages": [AIMessage(content="", tool_calls=tool_calls)]}


async def _lookup(args: dict[str, Any]) -> dict[str, Any]:
    return {"ticker": args["ticker"], "price": 101.5}


@pytest.fixture
def tools() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register("lookup_price", _lookup, description="Fetch a stock price")
    registry.register("echo", lambda args: args.get("text", ""))
    return registry


@pytest.fixture
def factory(tools: ToolRegistry, settings: Settings) -> ToolNodeFactory:
    return ToolNodeFactory(tools, settings)


# ── Registry Tests ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_registry_invokes_sync_and_async(tools: ToolRegistry):
    assert await tools.invoke("echo", {"text": "hi"}) == "hi"
    assert (await tools.invoke("lookup_price", {"ticker": "ACME"}))["price"] == 101.5


@pytest.mark.asyncio
async def test_registry_unknown_tool(tools: ToolRegistry):
    with pytest.raises(ToolNotFoundError):
        await tools.invoke("missing", {})


@pytest.mark.asyncio
async def test_registry_wraps_failures(tools: ToolRegistry):
    def explode(args):
        raise KeyError("ticker")

    tools.register("explode", explode)
    with pytest.raises(ToolExecutionError, match="explode"):
        await tools.invoke("explode", {})


@pytest.mark.asyncio
async def test_registry_tool_timeout(tools: ToolRegistry):
    async def slow(args):
        await asyncio.sleep(0.2)

    tools.register("slow", slow, timeout=0.01)
    with pytest.raises(ToolTimeoutError):
        await tools.invoke("slow", {})


def test_list_tools(tools: ToolRegistry):
    assert {"name": "lookup_price", "description": "Fetch a stock price"} in tools.list_tools()
    assert tools.unregister("echo") is True
    assert "echo" not in tools


# ── Tool Node Tests ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_tool_node_answers_each_call(factory: ToolNodeFactory):
    node = factory.create_tool_node("tools")

    update = await node(_state_with_calls(("lookup_price", {"ticker": "ACME"}), ("echo", {"text": "ok"})))

    messages = update["messages"]
    assert all(isinstance(m, ToolMessage) for m in messages)
    assert [m.tool_call_id for m in messages] == ["call_0", "call_1"]
    assert '"price": 101.5' in messages[0].content
    assert messages[1].content == "ok"
    assert "error" not in update


@pytest.mark.asyncio
async def test_tool_node_no_calls(factory: ToolNodeFactory):
    update = await factory.create_tool_node("tools")({"messages": []})
    assert update["messages"] == []


@pytest.mark.asyncio
async def test_tool_node_captures_error(factory: ToolNodeFactory):
    """Failures land in the error channel with recovery hints."""
    node = factory.create_tool_node("tools")

    update = await node(_state_with_calls(("missing", {})))

    error = update["error"]
    assert error["node_id"] == "tools"
    assert error["type"] == "ToolNotFoundError"
    assert error["is_recoverable"] is False
    assert factory.get_execution_metrics()["tools"]["failures"] == 1


@pytest.mark.asyncio
async def test_tool_node_raises_when_not_capturing(factory: ToolNodeFactory):
    node = factory.create_tool_node("tools", capture_errors=False)
    with pytest.raises(ToolNotFoundError):
        await node(_state_with_calls(("missing", {})))


@pytest.mark.asyncio
async def test_tool_node_timeout(factory: ToolNodeFactory, tools: ToolRegistry):
    async def slow(args):
        await asyncio.sleep(0.2)
        return "late"

    tools.register("slow", slow)
    update = await factory.create_tool_node("tools", timeout=0.01)(_state_with_calls(("slow", {})))

    assert update["error"]["type"] == "ToolTimeoutError"
    assert update["error"]["is_recoverable"] is True


def test_classify_error():
    assert classify_error("n", ToolExecutionError("t", "bad")).suggested_recovery == "retry the tool call"
    assert classify_error("n", ValueError("x")).is_recoverable is False


# ── Composition Tests ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_conditional_node(factory: ToolNodeFactory):
    yes = AsyncMock(return_value={"scratchpad": "yes"})
    no = AsyncMock(return_value={"scratchpad": "no"})
    node = factory.create_conditional_node("branch", lambda s: s.get("task") == "go", yes, no)

    assert await node({"task": "go"}) == {"scratchpad": "yes"}
    assert await node({"task": "stop"}) == {"scratchpad": "no"}


@pytest.mark.asyncio
async def test_parallel_node_merges_last_write_wins(factory: ToolNodeFactory):
    async def first(state):
        await asyncio.sleep(0.02)
        return {"task": "first", "scratchpad": "a"}

    async def second(state):
        return {"task": "second"}

    update = await factory.create_parallel_node("fanout", [first, second])({})

    assert update == {"task": "second", "scratchpad": "a"}


@pytest.mark.asyncio
async def test_parallel_node_waits_for_all_before_raising(factory: ToolNodeFactory):
    finished: list[str] = []

    async def failing(state):
        raise RuntimeError("first failed")

    async def slow(state):
        await asyncio.sleep(0.02)
        finished.append("slow")
        return {}

    with pytest.raises(RuntimeError, match="first failed"):
        await factory.create_parallel_node("fanout", [failing, slow])({})

    assert finished == ["slow"]


# ── Retry Tests ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_retrying_node_recovers(factory: ToolNodeFactory):
    attempts = {"count": 0}

    async def flaky(state):
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise ToolExecutionError("flaky", "temporary")
        return {"scratchpad": "ok"}

    node = factory.create_retrying_node("retry", flaky, max_retries=3, base_delay=0.0)

    assert await node({}) == {"scratchpad": "ok"}
    assert attempts["count"] == 3


@pytest.mark.asyncio
async def test_retrying_node_surfaces_last_error(factory: ToolNodeFactory):
    """After max_retries retries the last error is raised."""
    attempts = {"count": 0}

    async def always(state):
        attempts["count"] += 1
        raise ToolExecutionError("always", f"failure {attempts['count']}")

    node = factory.create_retrying_node("retry", always, max_retries=2, base_delay=0.0)

    with pytest.raises(ToolExecutionError, match="failure 3"):
        await node({})
    assert attempts["count"] == 3


@pytest.mark.asyncio
async def test_retrying_tool_node_uses_settings(factory: ToolNodeFactory, tools: ToolRegistry):
    """A non-capturing tool node can be wrapped; settings supply the retry defaults."""
    calls = {"count": 0}

    def flaky_tool(args):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ConnectionError("reset")
        return "recovered"

    tools.register("flaky", flaky_tool)
    node = factory.create_retrying_node(
        "retry_tools", factory.create_tool_node("tools", capture_errors=False)
    )

    update = await node(_state_with_calls(("flaky", {})))

    assert update["messages"][0].content == "recovered"
    assert calls["count"] == 2


def test_reset_metrics(factory: ToolNodeFactory):
    factory._record("tools", 0.1, success=True)
    assert factory.get_execution_metrics()["tools"]["average_duration"] == pytest.approx(0.1)
    factory.reset_metrics()
    assert factory.get_execution_metrics() == {}
