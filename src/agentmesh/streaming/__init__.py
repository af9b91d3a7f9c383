"""Token-level output streaming.

Exports:
    TokenStreamingService: Buffering and batching pipeline.
    StreamTokenConfig: Per-stream settings.
    TokenFilter: Token filter conditions.
    StreamUpdate: Emitted token update.
    TokenStats: Statistics snapshot.
"""

from __future__ import annotations

from src.agentmesh.streaming.schemas import (
    StreamEventType,
    StreamTokenConfig,
    StreamUpdate,
    TokenFilter,
    TokenStats,
)
from src.agentmesh.streaming.tokens import TokenStreamingService

__all__ = [
    "StreamEventType",
    "StreamTokenConfig",
    "StreamUpdate",
    "TokenFilter",
    "TokenStats",
    "TokenStreamingService",
]
