"""Peer handoff validation for swarm networks.

Exports:
    HandoffType: Kind of transfer between agents.
    HandoffPayload: Envelope describing one transfer of control.
    HandoffResult: Validation outcome with issue list.
    HandoffProtocol: Structural + topology validation entry point.
"""

from __future__ import annotations

from src.agentmesh.handoffs.protocol import HandoffProtocol
from src.agentmesh.handoffs.validators import HandoffPayload, HandoffResult, HandoffType

__all__ = [
    "HandoffPayload",
    "HandoffProtocol",
    "HandoffResult",
    "HandoffType",
]
