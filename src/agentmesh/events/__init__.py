"""Observer abstraction for orchestration lifecycle notifications.

Exports:
    OrchestrationEvent: Event model with execution/network correlation.
    EventType: Enum of registry, network, workflow, and token events.
    EventSubscription: Filtered subscription handle.
    InMemoryEventBus: Single-process bus with bounded subscription queues.
"""

from __future__ import annotations

from src.agentmesh.events.schemas import EventType, OrchestrationEvent

__all__ = [
    "EventSubscription",
    "EventType",
    "InMemoryEventBus",
    "OrchestrationEvent",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the bus module."""
    if name in ("InMemoryEventBus", "EventSubscription"):
        from src.agentmesh.events import bus

        return getattr(bus, name)
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
