"""Token streaming pipeline.

Buffers token fragments produced by nodes and flushes them as StreamUpdates.

Streams are keyed by ``{execution_id}:{node_id}``. A stream's buffer flushes
when it reaches ``buffer_size`` or, once non-empty, when ``flush_interval_ms``
has passed since the last flush. Flushing applies the filter, then the
processor, then batching, and emits each surviving entry to:
- the per-stream broadcast
- the global broadcast
- the event bus as ``workflow.token`` (keyed by execution id)

A ``token.batch.processed`` event is published per flush. Closing a stream
always flushes first. When the filter or processor raises, the batch is
dropped, logged and counted in ``total_tokens_dropped``; flushing never
raises into the producing node.

``start()`` runs the background tasks: the interval flush tick, the
idle-stream sweep and the stats refresh.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.agentmesh.config import Settings, get_settings
from src.agentmesh.core.monitoring import (
    active_token_streams,
    token_flushes_total,
    tokens_dropped_total,
    tokens_streamed_total,
)
from src.agentmesh.errors import StreamNotFoundError
from src.agentmesh.events.bus import InMemoryEventBus
from src.agentmesh.events.schemas import EventType
from src.agentmesh.streaming.observable import (
    BehaviorBroadcast,
    Broadcast,
    StreamSubscription,
)
from src.agentmesh.streaming.schemas import (
    StreamTokenConfig,
    StreamUpdate,
    TokenBufferEntry,
    TokenStats,
)

logger = structlog.get_logger(__name__)

EVENT_SOURCE = "token_streaming"


def stream_key(execution_id: str, node_id: str) -> str:
    return f"{execution_id}:{node_id}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclasses.dataclass
class _TokenStream:
    execution_id: str
    node_id: str
    config: StreamTokenConfig
    updates: Broadcast[StreamUpdate]
    buffer: list[TokenBufferEntry] = dataclasses.field(default_factory=list)
    last_flush: datetime = dataclasses.field(default_factory=_now)
    total_tokens: int = 0

    @property
    def key(self) -> str:
        return stream_key(self.execution_id, self.node_id)

    def interval_elapsed(self, now: datetime) -> bool:
        elapsed = now - self.last_flush
        return bool(self.buffer) and elapsed >= timedelta(
            milliseconds=self.config.flush_interval_ms
        )

    def last_activity(self) -> datetime:
        return max([self.last_flush, *(e.timestamp for e in self.buffer)])


class TokenStreamingService:
    """Buffers, filters, batches, and broadcasts node token output.

    Args:
        event_bus: Optional bus receiving token and batch events.
        settings: Optional settings for defaults and background intervals.
    """

    def __init__(
        self,
        event_bus: InMemoryEventBus | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._event_bus = event_bus
        self._settings = settings or get_settings()
        self._queue_size = self._settings.EVENT_QUEUE_SIZE
        self._streams: dict[str, _TokenStream] = {}
        self._global: Broadcast[StreamUpdate] = Broadcast(self._queue_size)
        self._stats: BehaviorBroadcast[TokenStats] = BehaviorBroadcast(
            TokenStats(), self._queue_size
        )
        self._total_tokens_processed = 0
        self._total_tokens_dropped = 0
        self._started_at = _now()
        self._tasks: list[asyncio.Task] = []

    def default_config(self) -> StreamTokenConfig:
        return StreamTokenConfig(
            buffer_size=self._settings.TOKEN_BUFFER_SIZE,
            flush_interval_ms=self._settings.TOKEN_FLUSH_INTERVAL_MS,
        )

    # ── Stream lifecycle ─────────────────────────────────────────────────────

    def initialize_token_stream(
        self,
        execution_id: str,
        node_id: str,
        config: StreamTokenConfig | None = None,
    ) -> None:
        """Open a token stream. Re-initializing an open stream is a no-op."""
        key = stream_key(execution_id, node_id)
        if key in self._streams:
            logger.warning("token_stream_exists", stream_key=key)
            return

        self._streams[key] = _TokenStream(
            execution_id=execution_id,
            node_id=node_id,
            config=config or self.default_config(),
            updates=Broadcast(self._queue_size),
        )
        self._update_stats()
        logger.info("token_stream_initialized", stream_key=key)

    def stream_token(
        self,
        execution_id: str,
        node_id: str,
        token: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Buffer one token, flushing if the buffer is due.

        Tokens for unknown (or already closed) streams are dropped.
        """
        stream = self._streams.get(stream_key(execution_id, node_id))
        if stream is None:
            logger.debug("token_stream_missing", execution_id=execution_id, node_id=node_id)
            return
        if not stream.config.enabled:
            return

        stream.buffer.append(
            TokenBufferEntry(
                execution_id=execution_id,
                node_id=node_id,
                token=token,
                index=stream.total_tokens,
                metadata=dict(metadata or {}),
            )
        )
        stream.total_tokens += 1
        self._total_tokens_processed += 1

        if len(stream.buffer) >= stream.config.buffer_size:
            self._flush(stream, reason="size")
        elif stream.interval_elapsed(_now()):
            self._flush(stream, reason="interval")

    def flush_tokens(self, execution_id: str, node_id: str) -> int:
        """Flush a stream's buffer now.

        Returns:
            Number of updates emitted. 0 for unknown streams.
        """
        stream = self._streams.get(stream_key(execution_id, node_id))
        if stream is None:
            return 0
        return self._flush(stream, reason="manual")

    def close_token_stream(self, execution_id: str, node_id: str) -> None:
        """Flush remaining tokens, then complete the stream's subscribers."""
        self._close(stream_key(execution_id, node_id), reason="close")

    def close_execution_token_streams(self, execution_id: str) -> int:
        """Close every stream of an execution. Returns the number closed."""
        keys = [k for k, s in self._streams.items() if s.execution_id == execution_id]
        self._close_many(keys, reason="close")
        logger.info("execution_token_streams_closed", execution_id=execution_id, count=len(keys))
        return len(keys)

    def _close(self, key: str, reason: str) -> None:
        stream = self._streams.get(key)
        if stream is None:
            return
        try:
            self._flush(stream, reason=reason)
        finally:
            stream.updates.complete()
            self._streams.pop(key, None)
            self._update_stats()
        logger.info("token_stream_closed", stream_key=key, total_tokens=stream.total_tokens)

    def _close_many(self, keys: list[str], reason: str) -> None:
        """Close each stream in turn; one failing stream never blocks the rest."""
        for key in keys:
            try:
                self._close(key, reason=reason)
            except Exception as exc:
                logger.error("token_stream_close_failed", stream_key=key, error=str(exc))

    # ── Flushing ─────────────────────────────────────────────────────────────

    def _flush(self, stream: _TokenStream, reason: str) -> int:
        if not stream.buffer:
            return 0

        pending = stream.buffer
        stream.buffer = []
        stream.last_flush = _now()

        try:
            entries = self._process(pending, stream.config)
        except Exception as exc:
            self._total_tokens_dropped += len(pending)
            tokens_dropped_total.inc(len(pending))
            logger.error(
                "token_flush_failed",
                stream_key=stream.key,
                dropped=len(pending),
                reason=reason,
                error=str(exc),
            )
            return 0

        for entry in entries:
            update = StreamUpdate.from_entry(entry)
            stream.updates.emit(update)
            self._global.emit(update)
            if self._event_bus is not None:
                self._event_bus.emit(
                    EventType.WORKFLOW_TOKEN,
                    EVENT_SOURCE,
                    execution_id=entry.execution_id,
                    content=entry.token,
                    index=entry.index,
                    node_id=entry.node_id,
                    metadata=entry.metadata,
                )

        if self._event_bus is not None:
            self._event_bus.emit(
                EventType.TOKEN_BATCH_PROCESSED,
                EVENT_SOURCE,
                execution_id=stream.execution_id,
                stream_key=stream.key,
                token_count=len(pending),
            )

        tokens_streamed_total.inc(len(entries))
        token_flushes_total.labels(reason=reason).inc()
        logger.debug(
            "tokens_flushed",
            stream_key=stream.key,
            buffered=len(pending),
            emitted=len(entries),
            reason=reason,
        )
        return len(entries)

    @staticmethod
    def _process(
        entries: list[TokenBufferEntry], config: StreamTokenConfig
    ) -> list[TokenBufferEntry]:
        if config.filter is not None:
            entries = [e for e in entries if config.filter.accepts(e.token)]

        if config.processor is not None:
            entries = [
                dataclasses.replace(e, token=config.processor(e.token, e.metadata))
                for e in entries
            ]

        if config.batch_size > 1:
            batched = []
            for i in range(0, len(entries), config.batch_size):
                run = entries[i : i + config.batch_size]
                batched.append(
                    dataclasses.replace(
                        run[0],
                        token="".join(e.token for e in run),
                        metadata={
                            **run[0].metadata,
                            "batch_size": len(run),
                            "batch_tokens": [e.token for e in run],
                        },
                    )
                )
            entries = batched

        return entries

    def flush_due_streams(self, now: datetime | None = None) -> int:
        """Flush every stream whose flush interval has elapsed."""
        now = now or _now()
        due = [s for s in self._streams.values() if s.interval_elapsed(now)]
        for stream in due:
            self._flush(stream, reason="interval")
        return len(due)

    def cleanup_stale_streams(self, now: datetime | None = None) -> int:
        """Close streams idle for longer than the staleness threshold.

        Returns:
            Number of streams closed.
        """
        now = now or _now()
        threshold = timedelta(seconds=self._settings.TOKEN_STREAM_IDLE_TIMEOUT_S)
        stale = [k for k, s in self._streams.items() if now - s.last_activity() > threshold]
        self._close_many(stale, reason="cleanup")
        if stale:
            logger.info("stale_token_streams_cleaned", count=len(stale))
        return len(stale)

    # ── Observation ──────────────────────────────────────────────────────────

    def get_token_stream(
        self, execution_id: str, node_id: str | None = None
    ) -> StreamSubscription[StreamUpdate]:
        """Subscribe to one stream, or to every stream of an execution.

        Raises:
            StreamNotFoundError: If ``node_id`` names no open stream.
        """
        if node_id is not None:
            key = stream_key(execution_id, node_id)
            stream = self._streams.get(key)
            if stream is None:
                raise StreamNotFoundError(key)
            return stream.updates.subscribe()

        return self._global.subscribe(
            lambda update: update.metadata.get("execution_id") == execution_id
        )

    def subscribe_global(self) -> StreamSubscription[StreamUpdate]:
        return self._global.subscribe()

    def get_active_token_streams(self) -> list[dict[str, Any]]:
        return [
            {
                "stream_key": key,
                "config": stream.config.model_dump(exclude={"processor"}),
                "buffer_size": len(stream.buffer),
                "total_tokens": stream.total_tokens,
                "last_flush": stream.last_flush,
            }
            for key, stream in self._streams.items()
        ]

    def get_token_stats(self) -> TokenStats:
        """Active streams, tokens processed, and lifetime tokens per second."""
        elapsed = (_now() - self._started_at).total_seconds()
        rate = self._total_tokens_processed / elapsed if elapsed > 0 else 0.0
        return TokenStats(
            active_streams=len(self._streams),
            total_tokens_processed=self._total_tokens_processed,
            total_tokens_dropped=self._total_tokens_dropped,
            average_tokens_per_second=round(rate, 2),
        )

    def subscribe_stats(self) -> StreamSubscription[TokenStats]:
        """Subscribe to statistics snapshots, starting with the latest one."""
        return self._stats.subscribe()

    def _update_stats(self) -> None:
        active_token_streams.set(len(self._streams))
        self._stats.emit(self.get_token_stats())

    # ── Background tasks ─────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        """Start the flush tick, cleanup sweep, and stats refresh tasks."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(
                self._every(self._settings.TOKEN_FLUSH_INTERVAL_MS / 1000, self.flush_due_streams)
            ),
            asyncio.create_task(
                self._every(self._settings.TOKEN_CLEANUP_INTERVAL_S, self.cleanup_stale_streams)
            ),
            asyncio.create_task(
                self._every(self._settings.TOKEN_STATS_INTERVAL_S, self._update_stats)
            ),
        ]
        logger.info("token_streaming_started")

    async def stop(self) -> None:
        """Stop background tasks, close every stream, and complete broadcasts."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        try:
            self._close_many(list(self._streams), reason="close")
        finally:
            self._global.complete()
            self._stats.complete()
        logger.info("token_streaming_stopped")

    @staticmethod
    async def _every(interval: float, fn: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(max(interval, 0.01))
            try:
                fn()
            except Exception as exc:
                logger.error("token_streaming_task_failed", task=fn.__name__, error=str(exc))
