"""Token streaming data models.

Defines:
- StreamEventType: Kinds of stream updates
- TokenFilter: Length, whitespace, and pattern filters (AND-combined)
- StreamTokenConfig: Per-stream buffering and processing settings
- TokenBufferEntry: Buffered token awaiting flush
- StreamUpdate: Emitted token update
- TokenStats: Pipeline statistics snapshot
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

TokenProcessor = Callable[[str, dict[str, Any]], str]


class StreamEventType(str, Enum):
    TOKEN = "token"


class TokenFilter(BaseModel):
    """Token filter. Every configured condition must hold."""

    min_length: int | None = Field(default=None, ge=0)
    max_length: int | None = Field(default=None, ge=0)
    exclude_whitespace: bool = False
    pattern: str | None = None

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, v: str | None) -> str | None:
        if v is not None:
            re.compile(v)
        return v

    def accepts(self, token: str) -> bool:
        if self.min_length is not None and len(token) < self.min_length:
            return False
        if self.max_length is not None and len(token) > self.max_length:
            return False
        if self.exclude_whitespace and not token.strip():
            return False
        if self.pattern is not None and not re.search(self.pattern, token):
            return False
        return True


class StreamTokenConfig(BaseModel):
    """Buffering and processing settings for one token stream.

    Attributes:
        enabled: Disabled streams drop every token.
        buffer_size: Flush once this many tokens are buffered.
        flush_interval_ms: Flush a non-empty buffer once this much time
            has passed since the last flush.
        filter: Optional filter applied at flush time.
        processor: Optional ``(token, metadata) -> token`` transform.
        batch_size: Coalesce runs of this many tokens into one update.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    enabled: bool = True
    buffer_size: int = Field(default=50, ge=1)
    flush_interval_ms: int = Field(default=1000, ge=0)
    filter: TokenFilter | None = None
    processor: TokenProcessor | None = None
    batch_size: int = Field(default=1, ge=1)


@dataclass
class TokenBufferEntry:
    execution_id: str
    node_id: str
    token: str
    index: int
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class StreamUpdate(BaseModel):
    """Update delivered to token stream subscribers.

    ``data`` holds ``content`` and ``index``. ``metadata`` holds the
    timestamp, sequence number, execution and node ids, plus any metadata
    supplied with the token.
    """

    type: StreamEventType = StreamEventType.TOKEN
    data: dict[str, Any]
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_entry(cls, entry: TokenBufferEntry) -> StreamUpdate:
        return cls(
            data={"content": entry.token, "index": entry.index},
            metadata={
                "timestamp": entry.timestamp,
                "sequence_number": entry.index,
                "execution_id": entry.execution_id,
                "node_id": entry.node_id,
                **entry.metadata,
            },
        )


class TokenStats(BaseModel):
    active_streams: int = 0
    total_tokens_processed: int = 0
    total_tokens_dropped: int = 0
    average_tokens_per_second: float = 0.0
