"""Handoff validation protocol for swarm networks.

HandoffProtocol is the entry point for validating a handoff request made
by a swarm agent. It chains structural validation (Pydantic) with
topology checks:

1. Structural validation: re-validate the payload via Pydantic
2. Target registration: the target must be an agent of the network
3. Allowed targets: when dynamic handoffs are enabled, the target must be
   one of the source agent's handoff tools

A handoff is valid only if every check passes.
"""

from __future__ import annotations

from collections.abc import Collection

import structlog
from pydantic import ValidationError

from src.agentmesh.errors import HandoffError
from src.agentmesh.handoffs.validators import HandoffPayload, HandoffResult

logger = structlog.get_logger(__name__)


class HandoffProtocol:
    """Validates peer handoffs against the network's agents.

    Args:
        known_agents: Agent ids present in the network.
    """

    def __init__(self, known_agents: Collection[str]) -> None:
        self._known_agents = set(known_agents)

    def validate(
        self,
        payload: HandoffPayload,
        allowed_targets: Collection[str] | None = None,
    ) -> HandoffResult:
        """Validate a handoff payload.

        Args:
            payload: The handoff to validate.
            allowed_targets: Targets the source agent may hand off to. None
                skips the allowed-target check.

        Returns:
            HandoffResult with validation outcome and any issues found.
        """
        issues: list[str] = []

        try:
            HandoffPayload.model_validate(payload.model_dump())
        except ValidationError as exc:
            for error in exc.errors():
                loc = ".".join(str(part) for part in error["loc"]) or "payload"
                issues.append(f"{loc}: {error['msg']}")

        if payload.target_agent_id not in self._known_agents:
            issues.append(f"target '{payload.target_agent_id}' is not an agent of this network")

        if allowed_targets is not None and payload.target_agent_id not in allowed_targets:
            issues.append(
                f"'{payload.source_agent_id}' has no handoff tool for '{payload.target_agent_id}'"
            )

        result = HandoffResult(valid=not issues, issues=issues)

        logger.debug(
            "handoff_validated",
            handoff_id=payload.handoff_id,
            source=payload.source_agent_id,
            target=payload.target_agent_id,
            valid=result.valid,
            issue_count=len(issues),
        )

        return result

    def validate_or_reject(
        self,
        payload: HandoffPayload,
        allowed_targets: Collection[str] | None = None,
    ) -> HandoffPayload:
        """Validate a handoff payload, raising on failure.

        Returns:
            The validated HandoffPayload (pass-through on success).

        Raises:
            HandoffError: If validation fails, with the list of issues.
        """
        result = self.validate(payload, allowed_targets)
        if not result.valid:
            logger.warning(
                "handoff_rejected",
                handoff_id=payload.handoff_id,
                source=payload.source_agent_id,
                target=payload.target_agent_id,
                handoff_type=payload.handoff_type.value,
                issues=result.issues,
            )
            raise HandoffError(
                f"Handoff rejected: {payload.source_agent_id} -> "
                f"{payload.target_agent_id}: {'; '.join(result.issues)}",
                source=payload.source_agent_id,
                target=payload.target_agent_id,
                issues=result.issues,
            )
        return payload
