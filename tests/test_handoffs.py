"""Tests for handoff payload validation and the HandoffProtocol.

Covers:
- HandoffPayload structural rules (self-handoff, empty ids)
- HandoffProtocol target and allowed-target checks
- validate_or_reject raising HandoffError with the issues found
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from src.agentmesh.errors import HandoffError
from src.agentmesh.handoffs.protocol import HandoffProtocol
from src.agentmesh.handoffs.validators import HandoffPayload, HandoffResult, HandoffType


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def protocol() -> HandoffProtocol:
    return HandoffProtocol(["researcher", "analyst", "reporter"])


@pytest.fixture
def valid_payload() -> HandoffPayload:
    """A well-formed handoff from researcher to analyst."""
    return HandoffPayload(
        source_agent_id="researcher",
        target_agent_id="analyst",
        handoff_type=HandoffType.DELEGATION,
        tool_name="transfer_to_analyst",
        reason="findings ready for analysis",
    )


# ── Structural Validation Tests ─────────────────────────────────────────────


def test_payload_defaults(valid_payload: HandoffPayload):
    """Payloads get an id and a UTC timestamp."""
    assert valid_payload.handoff_id
    assert valid_payload.timestamp.tzinfo is not None
    assert valid_payload.context == {}


def test_self_handoff_rejected():
    """An agent cannot hand off to itself."""
    with pytest.raises(ValidationError, match="cannot hand off to itself"):
        HandoffPayload(source_agent_id="researcher", target_agent_id="researcher")


def test_empty_target_rejected():
    with pytest.raises(ValidationError):
        HandoffPayload(source_agent_id="researcher", target_agent_id="")


def test_to_metadata(valid_payload: HandoffPayload):
    """The metadata form carries source, target, type, and tool."""
    metadata = valid_payload.to_metadata()
    assert metadata["source"] == "researcher"
    assert metadata["target"] == "analyst"
    assert metadata["handoff_type"] == "delegation"
    assert metadata["tool_name"] == "transfer_to_analyst"


# ── Protocol Tests ──────────────────────────────────────────────────────────


def test_protocol_accepts_known_target(protocol: HandoffProtocol, valid_payload: HandoffPayload):
    result = protocol.validate(valid_payload, allowed_targets={"analyst"})
    assert isinstance(result, HandoffResult)
    assert result.valid is True
    assert result.issues == []


def test_protocol_rejects_unknown_target(protocol: HandoffProtocol):
    """A target outside the network is reported as an issue."""
    payload = HandoffPayload(source_agent_id="researcher", target_agent_id="ghost")
    result = protocol.validate(payload)

    assert result.valid is False
    assert any("ghost" in issue for issue in result.issues)


def test_protocol_rejects_target_without_tool(protocol: HandoffProtocol):
    """A known agent the source has no handoff tool for is rejected."""
    payload = HandoffPayload(source_agent_id="researcher", target_agent_id="reporter")
    result = protocol.validate(payload, allowed_targets={"analyst"})

    assert result.valid is False
    assert any("no handoff tool" in issue for issue in result.issues)


def test_protocol_skips_allowed_check_when_none(protocol: HandoffProtocol):
    payload = HandoffPayload(source_agent_id="researcher", target_agent_id="reporter")
    assert protocol.validate(payload, allowed_targets=None).valid is True


def test_validate_or_reject_passes_through(
    protocol: HandoffProtocol, valid_payload: HandoffPayload
):
    assert protocol.validate_or_reject(valid_payload, {"analyst"}) is valid_payload


def test_validate_or_reject_raises(protocol: HandoffProtocol):
    """Rejection raises HandoffError carrying source, target, and issues."""
    payload = HandoffPayload(source_agent_id="analyst", target_agent_id="ghost")

    with pytest.raises(HandoffError) as exc_info:
        protocol.validate_or_reject(payload)

    error = exc_info.value
    assert error.source == "analyst"
    assert error.target == "ghost"
    assert error.issues
    assert error.code == "HANDOFF_ERROR"
