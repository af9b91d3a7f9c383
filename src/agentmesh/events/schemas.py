"""Event schemas for orchestration lifecycle notifications.

Provides the event model (OrchestrationEvent) published by the agent
registry, the network manager, and the token streaming pipeline. Events
carry the emitting component, optional execution/network correlation,
and a small inline payload.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the orchestrator.

    Covers agent registry changes, network lifecycle, workflow execution
    (invoke and stream modes), and token streaming.
    """

    AGENT_REGISTERED = "agent.registered"
    AGENT_UNREGISTERED = "agent.unregistered"
    AGENT_HEALTH_CHANGED = "agent.health.changed"
    REGISTRY_CLEARED = "agent.registry.cleared"
    NETWORK_CREATED = "network.created"
    NETWORK_REMOVED = "network.removed"
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    WORKFLOW_STREAM_STARTED = "workflow.stream.started"
    WORKFLOW_STREAM_COMPLETED = "workflow.stream.completed"
    WORKFLOW_STREAM_FAILED = "workflow.stream.failed"
    WORKFLOW_TOKEN = "workflow.token"
    TOKEN_BATCH_PROCESSED = "token.batch.processed"


class OrchestrationEvent(BaseModel):
    """Core event schema for orchestration notifications.

    Attributes:
        event_id: Unique identifier (auto-generated UUID4).
        event_type: The kind of event.
        timestamp: UTC creation time.
        source: Component that emitted the event (e.g. "agent_registry").
        execution_id: Workflow execution the event belongs to, if any.
            Token events are keyed by this field.
        network_id: Network the event belongs to, if any.
        data: Small inline payload.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: str
    execution_id: str | None = None
    network_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def channel(self) -> str:
        """Routing key for external bridges.

        Token events use ``workflow.token.{execution_id}`` so a bridge can
        fan out per execution; all other events use their type value.
        """
        if self.event_type == EventType.WORKFLOW_TOKEN and self.execution_id:
            return f"{self.event_type.value}.{self.execution_id}"
        return self.event_type.value
