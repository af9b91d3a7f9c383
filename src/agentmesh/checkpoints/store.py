"""Checkpoint store contract and an in-memory implementation.

The orchestrator never talks to a checkpoint backend directly. It holds an
optional CheckpointStore and feature-detects it:

- ``is_ready()`` gates whether networks get a checkpointer at all
- ``default_saver_name()`` names the saver attached at compile time
- ``get_saver(name)`` returns the LangGraph saver passed to ``compile()``

Checkpoints for a network are grouped under a thread id derived as
``{prefix}_{network_id}``.

MemoryCheckpointStore wraps LangGraph's InMemorySaver. It is the store
used in development and tests; SQL or Redis backed stores implement the
same contract.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import InMemorySaver
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


def thread_id_for(network_id: str, prefix: str) -> str:
    """Thread id under which a network's checkpoints are stored."""
    return f"{prefix}_{network_id}"


# ── Models ───────────────────────────────────────────────────────────────────


class Checkpoint(BaseModel):
    """A persisted snapshot of a network's state.

    Attributes:
        thread_id: Thread the checkpoint belongs to.
        checkpoint_id: Unique id within the thread (monotonic in LangGraph).
        checkpoint_ns: Graph namespace ("" for the root graph).
        state: Channel values (messages, next, metadata, ...).
        metadata: Step number, source, and any tags written by the run.
        created_at: When the checkpoint was written.
        parent_id: Previous checkpoint in the thread, if any.
        size: Approximate serialized size in bytes.
    """

    thread_id: str
    checkpoint_id: str
    checkpoint_ns: str = ""
    state: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    parent_id: str | None = None
    size: int = 0

    @property
    def step(self) -> int | None:
        return self.metadata.get("step")


class CleanupPolicy(BaseModel):
    """Which checkpoints to delete.

    Policies combine: thread ids select threads (all threads when None),
    then ``max_age`` deletes older checkpoints and ``max_per_thread`` keeps
    only the newest N. With neither limit set, every checkpoint of the
    selected threads is deleted.
    """

    thread_ids: list[str] | None = None
    max_age: timedelta | None = None
    max_per_thread: int | None = Field(default=None, ge=0)


# ── Contract ─────────────────────────────────────────────────────────────────


class CheckpointStore(ABC):
    """Contract the orchestrator expects from a checkpoint backend."""

    @abstractmethod
    def is_ready(self) -> bool:
        """Whether the backing store is initialized and usable."""

    @abstractmethod
    def default_saver_name(self) -> str | None:
        """Name of the saver to attach to new networks, or None."""

    @abstractmethod
    def get_saver(self, name: str | None = None) -> BaseCheckpointSaver | None:
        """Return a LangGraph saver by name (the default when None)."""

    @abstractmethod
    async def list_checkpoints(
        self,
        thread_id: str,
        limit: int | None = 10,
        before: str | None = None,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[Checkpoint]:
        """List a thread's checkpoints, newest first."""

    @abstractmethod
    async def load_checkpoint(self, thread_id: str, checkpoint_id: str) -> Checkpoint | None:
        """Load one checkpoint, or None if it does not exist."""

    @abstractmethod
    async def cleanup(self, policy: CleanupPolicy) -> int:
        """Delete checkpoints matching ``policy`` and return how many."""


# ── In-memory store ──────────────────────────────────────────────────────────


class MemoryCheckpointStore(CheckpointStore):
    """CheckpointStore backed by LangGraph's InMemorySaver.

    Usage:
        store = MemoryCheckpointStore()
        app = graph.compile(checkpointer=store.get_saver())
        checkpoints = await store.list_checkpoints("multi-agent_research")
    """

    SAVER_NAME = "memory"

    def __init__(self, saver: InMemorySaver | None = None) -> None:
        self._saver = saver or InMemorySaver()
        self._closed = False

    def is_ready(self) -> bool:
        return not self._closed

    def default_saver_name(self) -> str | None:
        return self.SAVER_NAME if self.is_ready() else None

    def get_saver(self, name: str | None = None) -> BaseCheckpointSaver | None:
        if not self.is_ready() or (name is not None and name != self.SAVER_NAME):
            return None
        return self._saver

    def close(self) -> None:
        """Mark the store unavailable. Stored checkpoints are kept."""
        self._closed = True
        logger.info("checkpoint_store.closed")

    def thread_ids(self) -> list[str]:
        return list(self._saver.storage.keys())

    async def list_checkpoints(
        self,
        thread_id: str,
        limit: int | None = 10,
        before: str | None = None,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[Checkpoint]:
        config = {"configurable": {"thread_id": thread_id}}
        before_config = (
            {"configurable": {"thread_id": thread_id, "checkpoint_id": before}}
            if before
            else None
        )

        checkpoints = []
        async for checkpoint_tuple in self._saver.alist(
            config,
            filter=metadata_filter or None,
            before=before_config,
            limit=limit,
        ):
            checkpoints.append(_to_checkpoint(thread_id, checkpoint_tuple))
        return checkpoints

    async def load_checkpoint(self, thread_id: str, checkpoint_id: str) -> Checkpoint | None:
        config = {"configurable": {"thread_id": thread_id, "checkpoint_id": checkpoint_id}}
        checkpoint_tuple = await self._saver.aget_tuple(config)
        if checkpoint_tuple is None:
            return None
        return _to_checkpoint(thread_id, checkpoint_tuple)

    async def cleanup(self, policy: CleanupPolicy) -> int:
        thread_ids = (
            policy.thread_ids if policy.thread_ids is not None else self.thread_ids()
        )
        removed = 0

        for thread_id in thread_ids:
            if thread_id not in self._saver.storage:
                continue

            checkpoints = await self.list_checkpoints(thread_id, limit=None)
            if policy.max_age is None and policy.max_per_thread is None:
                self._saver.delete_thread(thread_id)
                removed += len(checkpoints)
                continue

            doomed: dict[str, Checkpoint] = {}
            if policy.max_age is not None:
                cutoff = datetime.now(timezone.utc) - policy.max_age
                for cp in checkpoints:
                    if cp.created_at is not None and cp.created_at < cutoff:
                        doomed[cp.checkpoint_id] = cp
            if policy.max_per_thread is not None:
                for cp in checkpoints[policy.max_per_thread:]:
                    doomed[cp.checkpoint_id] = cp

            for cp in doomed.values():
                self._delete_checkpoint(cp)
            removed += len(doomed)

            if not any(self._saver.storage[thread_id].values()):
                self._saver.delete_thread(thread_id)

        logger.info(
            "checkpoint_store.cleanup_complete",
            removed=removed,
            thread_count=len(thread_ids),
        )
        return removed

    def _delete_checkpoint(self, checkpoint: Checkpoint) -> None:
        # InMemorySaver has no single-checkpoint delete; drop the entry and
        # its pending writes from the saver's storage maps.
        namespace = self._saver.storage[checkpoint.thread_id].get(checkpoint.checkpoint_ns, {})
        namespace.pop(checkpoint.checkpoint_id, None)
        self._saver.writes.pop(
            (checkpoint.thread_id, checkpoint.checkpoint_ns, checkpoint.checkpoint_id), None
        )


def _to_checkpoint(thread_id: str, checkpoint_tuple: Any) -> Checkpoint:
    checkpoint = checkpoint_tuple.checkpoint
    configurable = checkpoint_tuple.config.get("configurable", {})
    parent = (checkpoint_tuple.parent_config or {}).get("configurable", {})

    created_at = None
    if checkpoint.get("ts"):
        created_at = datetime.fromisoformat(checkpoint["ts"])

    return Checkpoint(
        thread_id=thread_id,
        checkpoint_id=checkpoint["id"],
        checkpoint_ns=configurable.get("checkpoint_ns", ""),
        state=dict(checkpoint.get("channel_values", {})),
        metadata=dict(checkpoint_tuple.metadata or {}),
        created_at=created_at,
        parent_id=parent.get("checkpoint_id"),
        size=len(json.dumps(checkpoint, default=str)),
    )
