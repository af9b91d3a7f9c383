"""Supervisor routing: picks the next worker from the current graph state.

Decision order (first hit wins):
1. Pending handoff -- the last worker set ``next`` to another worker
2. Deterministic rules -- ordered (condition, agent_id) pairs
3. LLM routing -- when a model is configured and an LLM provider is wired
4. Default -- finish (END)

Unknown worker ids never raise: they are normalised to END and flagged as
a fallback. LLM failures are logged and also end the workflow, so a
missing API key degrades a network to rule-only routing.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.agentmesh.agents.base import AgentDefinition
from src.agentmesh.graph.state import message_content
from src.agentmesh.topology import END, FINISH, SupervisorConfig
from src.agentmesh.services.llm import LLMProvider

logger = structlog.get_logger(__name__)


class RoutingDecision(BaseModel):
    """Result of a supervisor routing decision.

    Attributes:
        next: Worker id to run next, or END.
        reasoning: Why this worker was chosen.
        task: Optional task description for the worker.
        routed_by: "handoff", "rules", "llm", or "default".
        fallback: True when the chosen id was unknown and replaced by END.
        error: Routing error message, if the LLM call failed.
    """

    next: str
    reasoning: str = ""
    task: str | None = None
    routed_by: str = Field(pattern=r"^(handoff|rules|llm|default)$")
    fallback: bool = False
    error: str | None = None


class SupervisorRouter:
    """Rules-then-LLM router for a supervisor node.

    Args:
        workers: Worker definitions in configured order.
        config: Supervisor configuration.
        llm_provider: Optional provider used when ``config.llm`` is set.
    """

    def __init__(
        self,
        workers: list[AgentDefinition],
        config: SupervisorConfig,
        llm_provider: LLMProvider | None = None,
    ) -> None:
        self._workers = {w.id: w for w in workers}
        self._config = config
        self._llm_provider = llm_provider

    @property
    def worker_ids(self) -> list[str]:
        return list(self._workers)

    def system_prompt(self) -> str:
        """Render the configured prompt with worker placeholders filled in."""
        descriptions = "\n".join(
            f"- {w.id}: {w.description}" for w in self._workers.values()
        )
        prompt = self._config.system_prompt
        return prompt.replace("{workers}", ", ".join(self._workers)).replace(
            "{worker_descriptions}", descriptions
        )

    async def route(self, state: dict[str, Any]) -> RoutingDecision:
        """Choose the next worker for ``state``."""
        # Phase 1: worker-requested handoff
        requested = state.get("next")
        if requested in self._workers and requested != state.get("current"):
            return RoutingDecision(
                next=requested,
                reasoning=f"handoff requested by {state.get('current') or 'input'}",
                task=state.get("task"),
                routed_by="handoff",
            )

        # Phase 2: deterministic rules
        for rule in self._config.routing_rules:
            try:
                if not rule.condition(state):
                    continue
            except Exception as exc:
                logger.warning(
                    "routing_rule_error",
                    rule=rule.name or rule.agent_id,
                    error=str(exc),
                )
                continue

            if rule.agent_id == END or rule.agent_id == FINISH:
                return RoutingDecision(next=END, reasoning=rule.name, routed_by="rules")
            if rule.agent_id not in self._workers:
                logger.warning(
                    "routing_rule_unknown_worker",
                    rule=rule.name,
                    agent_id=rule.agent_id,
                )
                continue
            return RoutingDecision(
                next=rule.agent_id,
                reasoning=rule.name or "routing rule matched",
                task=rule.task,
                routed_by="rules",
            )

        # Phase 3: LLM routing
        if self._config.llm is not None and self._llm_provider is not None:
            return await self._llm_route(state)

        return RoutingDecision(next=END, reasoning="no routing rule matched", routed_by="default")

    async def _llm_route(self, state: dict[str, Any]) -> RoutingDecision:
        """Ask the configured model for the next worker."""
        llm = self._config.llm
        instruction = (
            "Respond with ONLY a JSON object (no markdown, no explanation outside the JSON):\n"
            "{\n"
            f'    "next": "<one of {json.dumps(self.worker_ids)} or {FINISH}>",\n'
            '    "reasoning": "<brief explanation>",\n'
            '    "task": "<instruction for the chosen worker>"\n'
            "}"
        )
        messages = [
            {"role": "system", "content": self.system_prompt()},
            *state.get("messages", []),
            {"role": "user", "content": instruction},
        ]

        try:
            handle = self._llm_provider.resolve(
                llm.provider, llm.model, llm.temperature, llm.max_tokens
            )
            response = await self._llm_provider.invoke(handle, messages)
            parsed = parse_json_object(response.content)
        except Exception as exc:
            logger.warning("supervisor_routing_failed", error=str(exc))
            return RoutingDecision(
                next=END,
                reasoning="Supervisor encountered an error. Ending workflow.",
                routed_by="llm",
                error=str(exc),
            )

        chosen = str(parsed.get("next", "")).strip()
        fallback = False
        if chosen in (FINISH, END, ""):
            chosen = END
        elif chosen not in self._workers:
            logger.warning(
                "llm_routed_to_unknown_worker",
                chosen=chosen,
                available=self.worker_ids,
            )
            chosen = END
            fallback = True

        decision = RoutingDecision(
            next=chosen,
            reasoning=str(parsed.get("reasoning", "LLM routing (no reasoning provided)")),
            task=parsed.get("task") or None,
            routed_by="llm",
            fallback=fallback,
        )
        logger.info("task_routed", next=decision.next, routed_by="llm", fallback=fallback)
        return decision


def parse_json_object(content: str) -> dict[str, Any]:
    """Parse a JSON object from model output, tolerating surrounding text.

    Raises:
        ValueError: If no JSON object can be extracted.
    """
    content = content.strip()
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        start = content.find("{")
        end = content.rfind("}") + 1
        if start >= 0 and end > start:
            parsed = json.loads(content[start:end])
        else:
            raise ValueError(f"LLM returned non-JSON routing response: {content[:200]}")
    if not isinstance(parsed, dict):
        raise ValueError(f"LLM returned non-object routing response: {content[:200]}")
    return parsed


def summarize_messages(messages: list[Any], limit: int = 5) -> list[str]:
    """Short previews of the most recent messages, for logging."""
    return [message_content(m)[:80] for m in messages[-limit:]]
