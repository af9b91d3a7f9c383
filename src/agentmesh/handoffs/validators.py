"""Structural validation for peer handoff payloads.

Provides Pydantic-based validation ensuring a handoff between swarm agents
has correct source attribution and a well-formed target. Topology-level
checks (is the target one of the source's handoff tools, is it a known
agent) are applied by HandoffProtocol.

Key models:
- HandoffType: Kind of transfer (delegation, consultation, review, ...)
- HandoffPayload: The envelope describing one transfer of control
- HandoffResult: Validation outcome with the list of issues found
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field, model_validator

logger = structlog.get_logger(__name__)


# ── Handoff Type ────────────────────────────────────────────────────────────


class HandoffType(str, Enum):
    """Kind of control/context transfer between two agents."""

    DELEGATION = "delegation"
    CONSULTATION = "consultation"
    REVIEW = "review"
    ESCALATION = "escalation"
    COLLABORATION = "collaboration"
    FULL_HANDOVER = "full_handover"


# ── Handoff Result ──────────────────────────────────────────────────────────


class HandoffResult(BaseModel):
    """Outcome of handoff validation.

    Attributes:
        valid: Whether the handoff passed every check.
        issues: Human-readable rejection reasons.
        validated_at: UTC timestamp of when validation occurred.
    """

    valid: bool
    issues: list[str] = Field(default_factory=list)
    validated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Handoff Payload ─────────────────────────────────────────────────────────


class HandoffPayload(BaseModel):
    """Envelope describing one transfer of control in a swarm network.

    Attributes:
        handoff_id: Unique identifier for this handoff (auto-generated UUID4).
        source_agent_id: Agent giving up control.
        target_agent_id: Agent receiving control (must differ from source).
        handoff_type: Kind of transfer.
        tool_name: Handoff tool that triggered the transfer, if any.
        reason: Free-text justification supplied by the source agent.
        task: Task description forwarded to the target.
        context: Extra data forwarded to the target.
        timestamp: UTC creation time.
    """

    handoff_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_agent_id: str = Field(min_length=1)
    target_agent_id: str = Field(min_length=1)
    handoff_type: HandoffType = HandoffType.DELEGATION
    tool_name: str | None = None
    reason: str | None = None
    task: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _validate_direction(self) -> HandoffPayload:
        """An agent cannot hand off to itself."""
        if self.source_agent_id == self.target_agent_id:
            msg = f"agent '{self.source_agent_id}' cannot hand off to itself"
            raise ValueError(msg)
        return self

    def to_metadata(self) -> dict[str, Any]:
        """Compact form stored in ``AgentState.metadata["handoff"]``."""
        return {
            "handoff_id": self.handoff_id,
            "source": self.source_agent_id,
            "target": self.target_agent_id,
            "handoff_type": self.handoff_type.value,
            "tool_name": self.tool_name,
            "reason": self.reason,
        }
