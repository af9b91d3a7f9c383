"""Tests for supervisor routing and the node factory.

All LLM calls are mocked. Tests cover the routing order (pending handoff,
rules, LLM, default), unknown-worker fallback, LLM failure handling,
worker bookkeeping and error normalisation, and swarm handoff detection.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from src.agentmesh.agents.base import AgentDefinition, HandoffTool
from src.agentmesh.agents.nodes import NodeFactory
from src.agentmesh.agents.router import SupervisorRouter, parse_json_object
from src.agentmesh.errors import HandoffError, LLMUnavailableError, NodeExecutionError, NodeTimeoutError
from src.agentmesh.handoffs.protocol import HandoffProtocol
from src.agentmesh.networks.schemas import (
    END,
    LLMConfig,
    MessageHistoryPolicy,
    RoutingRule,
    SupervisorConfig,
    SwarmConfig,
    ContextIsolationPolicy,
)
from src.agentmesh.services.llm import LLMResponse


# -- Test Helpers --------------------------------------------------------------


def make_agent(agent_id: str, node_function=None, **kwargs: Any) -> AgentDefinition:
    async def default(state: dict[str, Any]) -> dict[str, Any]:
        return {"messages": [AIMessage(content=f"{agent_id} done")]}

    return AgentDefinition(
        id=agent_id,
        name=agent_id.title(),
        description=f"Handles {agent_id} work",
        node_function=node_function or default,
        **kwargs,
    )


def make_llm(content: str | None = None, error: Exception | None = None) -> MagicMock:
    """Mock LLMProvider whose invoke returns ``content`` or raises ``error``."""
    provider = MagicMock()
    provider.resolve = MagicMock(return_value=MagicMock(name="handle"))
    if error is not None:
        provider.invoke = AsyncMock(side_effect=error)
    else:
        provider.invoke = AsyncMock(return_value=LLMResponse(content=content or "", model="gpt-4o-mini"))
    return provider


WORKERS = [make_agent("researcher"), make_agent("analyst"), make_agent("reporter")]
LLM = LLMConfig(provider="openai", model="gpt-4o-mini")


def make_router(llm_provider=None, **config: Any) -> SupervisorRouter:
    config.setdefault("workers", [w.id for w in WORKERS])
    return SupervisorRouter(WORKERS, SupervisorConfig(**config), llm_provider)


# -- Routing Order -------------------------------------------------------------


class TestRoutingOrder:
    @pytest.mark.asyncio
    async def test_pending_handoff_wins(self):
        """A worker-requested next beats rules and the LLM."""
        llm = make_llm(json.dumps({"next": "reporter"}))
        router = make_router(
            llm,
            llm=LLM,
            routing_rules=[RoutingRule(condition=lambda s: True, agent_id="researcher")],
        )

        decision = await router.route({"next": "analyst", "current": "researcher"})

        assert decision.next == "analyst"
        assert decision.routed_by == "handoff"
        llm.invoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_next_equal_to_current_is_not_a_handoff(self):
        router = make_router()
        decision = await router.route({"next": "researcher", "current": "researcher"})
        assert decision.next == END
        assert decision.routed_by == "default"

    @pytest.mark.asyncio
    async def test_first_matching_rule_wins(self):
        router = make_router(
            routing_rules=[
                RoutingRule(name="never", condition=lambda s: False, agent_id="reporter"),
                RoutingRule(name="first", condition=lambda s: True, agent_id="analyst", task="analyze"),
                RoutingRule(name="second", condition=lambda s: True, agent_id="reporter"),
            ]
        )

        decision = await router.route({"messages": []})

        assert decision.next == "analyst"
        assert decision.task == "analyze"
        assert decision.routed_by == "rules"

    @pytest.mark.asyncio
    async def test_rule_errors_and_unknown_workers_are_skipped(self):
        def boom(state):
            raise RuntimeError("bad rule")

        router = make_router(
            routing_rules=[
                RoutingRule(condition=boom, agent_id="analyst"),
                RoutingRule(condition=lambda s: True, agent_id="ghost"),
                RoutingRule(condition=lambda s: True, agent_id="reporter"),
            ]
        )

        decision = await router.route({})
        assert decision.next == "reporter"

    @pytest.mark.asyncio
    async def test_finish_rule_ends(self):
        router = make_router(routing_rules=[RoutingRule(condition=lambda s: True, agent_id="FINISH")])
        decision = await router.route({})
        assert decision.next == END

    @pytest.mark.asyncio
    async def test_no_llm_defaults_to_end(self):
        """Without rules or an LLM the workflow finishes."""
        decision = await make_router().route({"messages": [HumanMessage(content="hi")]})
        assert decision.next == END
        assert decision.routed_by == "default"


# -- LLM Routing ---------------------------------------------------------------


class TestLLMRouting:
    @pytest.mark.asyncio
    async def test_llm_picks_worker(self):
        llm = make_llm(json.dumps({"next": "analyst", "reasoning": "needs analysis", "task": "crunch"}))
        router = make_router(llm, llm=LLM)

        decision = await router.route({"messages": [HumanMessage(content="analyze sales")]})

        assert decision.next == "analyst"
        assert decision.reasoning == "needs analysis"
        assert decision.task == "crunch"
        assert decision.routed_by == "llm"
        llm.resolve.assert_called_once_with("openai", "gpt-4o-mini", 0.0, 1024)

    @pytest.mark.asyncio
    async def test_llm_finish(self):
        router = make_router(make_llm('{"next": "FINISH", "reasoning": "done"}'), llm=LLM)
        decision = await router.route({"messages": []})
        assert decision.next == END
        assert decision.fallback is False

    @pytest.mark.asyncio
    async def test_llm_unknown_worker_falls_back(self):
        """An unknown worker id becomes END and is flagged as a fallback."""
        router = make_router(make_llm('{"next": "ghost"}'), llm=LLM)
        decision = await router.route({"messages": []})
        assert decision.next == END
        assert decision.fallback is True

    @pytest.mark.asyncio
    async def test_llm_error_ends_workflow(self):
        router = make_router(make_llm(error=LLMUnavailableError("no key")), llm=LLM)
        decision = await router.route({"messages": []})
        assert decision.next == END
        assert decision.error == "no key"

    @pytest.mark.asyncio
    async def test_llm_non_json_ends_workflow(self):
        router = make_router(make_llm("I think the analyst"), llm=LLM)
        decision = await router.route({"messages": []})
        assert decision.next == END
        assert decision.error

    def test_system_prompt_placeholders(self):
        router = make_router(system_prompt="Team: {workers}\n{worker_descriptions}")
        prompt = router.system_prompt()
        assert "researcher, analyst, reporter" in prompt
        assert "- analyst: Handles analyst work" in prompt

    def test_parse_json_object_with_surrounding_text(self):
        assert parse_json_object('Sure! {"next": "analyst"} Hope that helps') == {"next": "analyst"}
        with pytest.raises(ValueError):
            parse_json_object("[1, 2]")


# -- Supervisor Node -----------------------------------------------------------


class TestSupervisorNode:
    @pytest.mark.asyncio
    async def test_records_routing_history(self):
        factory = NodeFactory(make_llm('{"next": "ghost"}'))
        node = factory.create_supervisor_node(WORKERS, SupervisorConfig(workers=["researcher"], llm=LLM))

        update = await node({"messages": [], "metadata": {"routing_history": [{"next": "x"}]}})

        assert update["next"] == END
        assert update["metadata"]["routing_fallback"] is True
        assert len(update["metadata"]["routing_history"]) == 2

    @pytest.mark.asyncio
    async def test_llm_failure_recorded(self):
        factory = NodeFactory(make_llm(error=RuntimeError("boom")))
        node = factory.create_supervisor_node(WORKERS, SupervisorConfig(workers=["researcher"], llm=LLM))

        update = await node({"messages": []})

        assert update["next"] == END
        assert update["metadata"]["supervisor_error"] == "boom"

    @pytest.mark.asyncio
    async def test_forward_message_on_finish(self):
        """With forwarding on, the last worker answer is repeated by the supervisor."""
        node = NodeFactory().create_supervisor_node(
            WORKERS,
            SupervisorConfig(workers=["reporter"], enable_forward_message=True),
        )

        update = await node({"messages": [AIMessage(content="final report", name="reporter")]})

        assert update["next"] == END
        assert update["messages"][0].content == "final report"
        assert update["messages"][0].name == "supervisor"


# -- Worker Node ---------------------------------------------------------------


class TestWorkerNode:
    @pytest.mark.asyncio
    async def test_bookkeeping(self):
        """Worker updates carry current agent, path, timing, and summed token usage."""

        async def work(state):
            return {
                "messages": [AIMessage(content="found it")],
                "metadata": {"token_usage": {"total_tokens": 10, "input_tokens": 6, "output_tokens": 4}},
            }

        node = NodeFactory().create_worker_node(make_agent("researcher", work))
        state = {
            "messages": [],
            "metadata": {"execution_path": ["analyst"], "token_usage": {"total_tokens": 5}},
        }

        update = await node(state)

        assert update["current"] == "researcher"
        assert update["messages"][0].name == "researcher"
        metadata = update["metadata"]
        assert metadata["execution_path"] == ["analyst", "researcher"]
        assert metadata["last_agent"] == "researcher"
        assert metadata["task_completed"] is True
        assert metadata["token_usage"]["total_tokens"] == 15
        assert metadata["agent_execution_time"] >= 0

    @pytest.mark.asyncio
    async def test_sync_node_function(self):
        node = NodeFactory().create_worker_node(make_agent("researcher", lambda s: {"scratchpad": "x"}))
        update = await node({"messages": []})
        assert update["scratchpad"] == "x"

    @pytest.mark.asyncio
    async def test_failure_raises_node_execution_error(self):
        async def broken(state):
            raise RuntimeError("kaboom")

        node = NodeFactory().create_worker_node(make_agent("researcher", broken))
        with pytest.raises(NodeExecutionError, match="kaboom"):
            await node({"messages": []})

    @pytest.mark.asyncio
    async def test_non_dict_result_raises(self):
        async def wrong(state):
            return "oops"

        node = NodeFactory().create_worker_node(make_agent("researcher", wrong))
        with pytest.raises(NodeExecutionError):
            await node({"messages": []})

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        async def slow(state):
            await asyncio.sleep(0.2)
            return {}

        node = NodeFactory().create_worker_node(make_agent("researcher", slow, timeout=0.01))
        with pytest.raises(NodeTimeoutError):
            await node({"messages": []})

    @pytest.mark.asyncio
    async def test_filters_routing_chatter(self):
        seen: list = []

        async def capture(state):
            seen.extend(state["messages"])
            return {}

        node = NodeFactory().create_worker_node(make_agent("analyst", capture), filter_handoff_messages=True)
        await node({"messages": [HumanMessage(content="question"), AIMessage(content="Routing to analyst")]})

        assert [m.content for m in seen] == ["question"]


# -- Swarm Node ----------------------------------------------------------------


class TestSwarmNode:
    def _node(self, agent: AgentDefinition, **config: Any):
        protocol = HandoffProtocol(["alice", "bob", "carol"])
        return NodeFactory().create_swarm_node(agent, SwarmConfig(**config), protocol)

    @pytest.mark.asyncio
    async def test_no_handoff_ends(self):
        node = self._node(make_agent("alice"))
        update = await node({"messages": []})
        assert update["next"] == END

    @pytest.mark.asyncio
    async def test_handoff_via_next(self):
        agent = make_agent(
            "alice",
            lambda s: {"next": "bob", "metadata": {"handoff_reason": "bob knows"}},
            handoff_tools=[HandoffTool(target="bob")],
        )
        update = await self._node(agent)({"messages": []})

        assert update["next"] == "bob"
        assert update["metadata"]["handoff"]["target"] == "bob"
        assert update["metadata"]["handoff"]["reason"] == "bob knows"
        assert len(update["metadata"]["handoff_history"]) == 1

    @pytest.mark.asyncio
    async def test_handoff_via_tool_call(self):
        """A handoff tool call transfers control and is answered with a ToolMessage."""
        call = AIMessage(
            content="",
            tool_calls=[{"name": "transfer_to_bob", "args": {}, "id": "call_1"}],
        )
        agent = make_agent("alice", lambda s: {"messages": [call]}, handoff_tools=[HandoffTool(target="bob")])

        update = await self._node(agent)({"messages": []})

        assert update["next"] == "bob"
        tool_message = update["messages"][-1]
        assert isinstance(tool_message, ToolMessage)
        assert tool_message.content == "Successfully transferred to bob"
        assert tool_message.tool_call_id == "call_1"

    @pytest.mark.asyncio
    async def test_handoff_without_tool_rejected(self):
        """With dynamic handoffs, targets outside the agent's tools raise."""
        agent = make_agent("alice", lambda s: {"next": "carol"}, handoff_tools=[HandoffTool(target="bob")])
        with pytest.raises(HandoffError):
            await self._node(agent)({"messages": []})

    @pytest.mark.asyncio
    async def test_unvalidated_handoff_when_dynamic_disabled(self):
        agent = make_agent("alice", lambda s: {"next": "ghost"})
        update = await self._node(agent, enable_dynamic_handoffs=False)({"messages": []})
        assert update["next"] == "ghost"

    @pytest.mark.asyncio
    async def test_context_filter_applied(self):
        def last_only(messages):
            return messages[-1:]

        agent = make_agent(
            "alice",
            lambda s: {"next": "bob", "messages": [AIMessage(content="one"), AIMessage(content="two")]},
            handoff_tools=[HandoffTool(target="bob", context_filter=last_only)],
        )
        update = await self._node(agent)({"messages": []})
        assert [m.content for m in update["messages"]] == ["two"]

    @pytest.mark.asyncio
    async def test_context_isolation_hides_metadata(self):
        seen: dict = {}

        def capture(state):
            seen.update(state["metadata"])
            return {}

        node = self._node(
            make_agent("alice", capture),
            context_isolation=ContextIsolationPolicy(enabled=True, shared_keys=["execution_id"]),
            message_history=MessageHistoryPolicy(),
        )
        await node({"messages": [], "metadata": {"execution_id": "e1", "secret": "x"}})

        assert seen == {"execution_id": "e1"}
