"""Checkpoint persistence contract for resumable workflows.

Exports:
    Checkpoint: Persisted state snapshot keyed by thread id.
    CleanupPolicy: Selection of checkpoints to delete.
    CheckpointStore: Abstract backend contract.
    MemoryCheckpointStore: LangGraph InMemorySaver-backed store.
    thread_id_for: Thread id derivation for a network.
"""

from __future__ import annotations

from src.agentmesh.checkpoints.store import (
    Checkpoint,
    CheckpointStore,
    CleanupPolicy,
    MemoryCheckpointStore,
    thread_id_for,
)

__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "CleanupPolicy",
    "MemoryCheckpointStore",
    "thread_id_for",
]
