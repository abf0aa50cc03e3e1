"""
Checkpoint Store - Append-only checkpoint history per thread.

Fronts a CheckpointBackend with:
- bounded exponential backoff on transient backend failures
- per-thread write serialisation (puts land in issue order)
- sequencing validation (a thread's history only grows)
- idempotent puts: re-sending an already stored checkpoint is acknowledged

If the durable backend cannot be reached at startup, open_checkpoint_store
falls back to a volatile in-memory backend and says so once.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

from proposal_engine.config import EngineConfig
from proposal_engine.errors import (
    BackendUnavailableError,
    CheckpointStoreError,
    NonRetryableError,
)
from proposal_engine.retry import RetryPolicy, with_retry
from proposal_engine.schemas.checkpoint import Checkpoint, CheckpointSummary
from proposal_engine.storage.backends import (
    CheckpointBackend,
    FileCheckpointBackend,
    HttpCheckpointBackend,
    MemoryCheckpointBackend,
)
from proposal_engine.utils.locks import ThreadLocks

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MalformedCheckpointError(CheckpointStoreError, NonRetryableError):
    """A put that would corrupt the thread's history. Never retried."""


class CheckpointStore:
    """
    Durable, append-only checkpoint history keyed by thread id.

    The store is the only resource shared across threads; threads never
    see each other's checkpoints and writes to one thread do not wait on
    writes to another.
    """

    def __init__(self, backend: CheckpointBackend, retry_policy: RetryPolicy | None = None):
        self.backend = backend
        self.retry_policy = retry_policy or RetryPolicy()
        self._locks = ThreadLocks()

    @property
    def durable(self) -> bool:
        return self.backend.durable

    async def _call(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        try:
            return await with_retry(operation, self.retry_policy, description=description)
        except CheckpointStoreError:
            raise
        except Exception as e:
            raise CheckpointStoreError(f"{description} failed: {e}") from e

    async def get(self, thread_id: str) -> Checkpoint | None:
        """
        Return the latest checkpoint of a thread.

        Args:
            thread_id: Thread to look up

        Returns:
            Latest checkpoint, or None for an unknown thread

        Raises:
            CheckpointStoreError: The backend failed after retries
        """
        return await self._call(
            lambda: self.backend.read_latest(thread_id), f"get checkpoint for {thread_id}"
        )

    async def put(
        self,
        thread_id: str,
        checkpoint: Checkpoint,
        metadata: dict[str, Any] | None = None,
    ) -> Checkpoint:
        """
        Append a checkpoint to a thread's history.

        Args:
            thread_id: Thread the checkpoint belongs to (must match the checkpoint)
            checkpoint: Snapshot to persist
            metadata: Extra metadata fields merged into the checkpoint's metadata

        Returns:
            The checkpoint as stored (the acknowledgement)

        Raises:
            MalformedCheckpointError: Thread id mismatch, or a sequence that does
                not extend the history with different content
            CheckpointStoreError: The backend failed after retries
        """
        if checkpoint.thread_id != thread_id:
            raise MalformedCheckpointError(
                f"Checkpoint for '{checkpoint.thread_id}' cannot be stored under '{thread_id}'"
            )
        if metadata:
            checkpoint = checkpoint.model_copy(
                update={"metadata": checkpoint.metadata.model_copy(update=metadata)}
            )

        async with self._locks.hold(thread_id):
            latest = await self.get(thread_id)
            if latest is not None and checkpoint.sequence <= latest.sequence:
                existing = await self._find(thread_id, checkpoint.sequence, latest)
                if existing is not None and existing.same_content(checkpoint):
                    logger.debug(f"Checkpoint {thread_id}#{checkpoint.sequence} already stored")
                    return existing
                raise MalformedCheckpointError(
                    f"Checkpoint sequence {checkpoint.sequence} for '{thread_id}' does not "
                    f"extend history (latest is {latest.sequence})"
                )

            await self._call(
                lambda: self.backend.write(checkpoint),
                f"put checkpoint {thread_id}#{checkpoint.sequence}",
            )
            logger.debug(
                f"💾 Checkpoint {thread_id}#{checkpoint.sequence} "
                f"({checkpoint.metadata.source}, step {checkpoint.metadata.step})"
            )
            return checkpoint

    async def _find(self, thread_id: str, sequence: int, latest: Checkpoint) -> Checkpoint | None:
        if latest.sequence == sequence:
            return latest
        for checkpoint in await self._history(thread_id):
            if checkpoint.sequence == sequence:
                return checkpoint
        return None

    async def _history(self, thread_id: str) -> list[Checkpoint]:
        return await self._call(
            lambda: self.backend.read_all(thread_id), f"list checkpoints for {thread_id}"
        )

    async def list_summaries(self, thread_id: str) -> list[CheckpointSummary]:
        """Lightweight history listing, most recent first."""
        return [CheckpointSummary.from_checkpoint(cp) for cp in await self.list(thread_id)]

    async def close(self) -> None:
        await self.backend.close()

    # Defined last: the method name shadows the builtin inside the class body
    async def list(self, thread_id: str) -> list[Checkpoint]:
        """Every checkpoint of a thread, most recent first. For debugging and audit."""
        history = await self._history(thread_id)
        return sorted(history, key=lambda cp: cp.sequence, reverse=True)


async def open_checkpoint_store(
    backend: CheckpointBackend,
    fallback: bool = True,
    retry_policy: RetryPolicy | None = None,
) -> CheckpointStore:
    """
    Connect to a backend, degrading to memory if it is unreachable.

    Args:
        backend: Preferred (normally durable) backend
        fallback: Use an in-memory backend when the preferred one fails to connect
        retry_policy: Backoff schedule for backend calls

    Returns:
        A ready CheckpointStore

    Raises:
        BackendUnavailableError: The backend is unreachable and fallback is disabled
    """
    try:
        await backend.connect()
    except (BackendUnavailableError, httpx.HTTPError, OSError) as e:
        if not fallback:
            raise BackendUnavailableError(
                f"Checkpoint backend '{backend.name}' is unreachable: {e}"
            ) from e
        logger.warning(
            f"⚠ Checkpoint backend '{backend.name}' is unreachable ({e}); using in-memory "
            "checkpoints. Workflow state will NOT survive a restart."
        )
        await backend.close()
        return CheckpointStore(MemoryCheckpointBackend(), retry_policy)

    logger.info(f"✓ Checkpoint store ready ({backend.name})")
    return CheckpointStore(backend, retry_policy)


def create_backend(config: EngineConfig) -> CheckpointBackend:
    """Instantiate the backend named by config.checkpoint_backend."""
    kind = config.checkpoint_backend.lower()
    if kind == "memory":
        return MemoryCheckpointBackend()
    if kind == "file":
        return FileCheckpointBackend(config.checkpoint_dir)
    if kind == "http":
        if not config.checkpoint_url:
            raise ValueError("checkpoint_backend 'http' requires checkpoint_url")
        return HttpCheckpointBackend(
            config.checkpoint_url,
            api_key=config.checkpoint_api_key,
            timeout=config.checkpoint_timeout_seconds,
        )
    raise ValueError(f"Unknown checkpoint backend: {config.checkpoint_backend}")
