"""Checkpoint persistence."""

from proposal_engine.storage.backends import (
    CheckpointBackend,
    FileCheckpointBackend,
    HttpCheckpointBackend,
    MemoryCheckpointBackend,
)
from proposal_engine.storage.checkpoint_store import (
    CheckpointStore,
    MalformedCheckpointError,
    create_backend,
    open_checkpoint_store,
)

__all__ = [
    "CheckpointBackend",
    "CheckpointStore",
    "FileCheckpointBackend",
    "HttpCheckpointBackend",
    "MalformedCheckpointError",
    "MemoryCheckpointBackend",
    "create_backend",
    "open_checkpoint_store",
]
