"""Shared fixtures for orchestration tests.

Provides:
- Settings isolated from the environment and any .env file
- An in-memory event bus
- An agent registry wired to that bus
"""

from __future__ import annotations

import pytest

from src.agentmesh.agents.registry import AgentRegistry
from src.agentmesh.config import Settings
from src.agentmesh.events.bus import InMemoryEventBus


@pytest.fixture
def settings() -> Settings:
    """Settings with checkpointing on and no API keys."""
    return Settings(
        _env_file=None,
        OPENAI_API_KEY="",
        ANTHROPIC_API_KEY="",
        CHECKPOINT_ENABLED=True,
        WORKFLOW_RECURSION_LIMIT=25,
        TOOL_RETRY_BASE_DELAY=0.0,
        TOKEN_BUFFER_SIZE=50,
        TOKEN_FLUSH_INTERVAL_MS=60_000,
    )


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    return InMemoryEventBus(max_queue_size=100)


@pytest.fixture
def registry(event_bus: InMemoryEventBus) -> AgentRegistry:
    return AgentRegistry(event_bus=event_bus)
