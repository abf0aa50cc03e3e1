"""
Checkpoint Backends - Where checkpoints physically live.

Three implementations share one async interface:

- MemoryCheckpointBackend: volatile dict, used in tests and as the fallback
  when the durable backend is unreachable.
- FileCheckpointBackend: one JSON file per checkpoint under a directory per
  thread, written atomically.
- HttpCheckpointBackend: a REST checkpoint service reached over httpx.

Backends are dumb: they do not retry or validate sequencing. The
CheckpointStore in front of them does both.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import quote

import httpx

from proposal_engine.errors import BackendUnavailableError
from proposal_engine.schemas.checkpoint import Checkpoint
from proposal_engine.utils.io import atomic_write

logger = logging.getLogger(__name__)


class CheckpointBackend(ABC):
    """Async persistence interface for checkpoints keyed by (thread_id, sequence)."""

    name: str = "backend"
    durable: bool = True

    async def connect(self) -> None:
        """Verify the backend is reachable. Raise if it is not."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def read_latest(self, thread_id: str) -> Checkpoint | None:
        """Return the checkpoint with the highest sequence, or None."""

    @abstractmethod
    async def read_all(self, thread_id: str) -> list[Checkpoint]:
        """Return every checkpoint of the thread in ascending sequence order."""

    @abstractmethod
    async def write(self, checkpoint: Checkpoint) -> None:
        """Upsert a checkpoint. Writing the same (thread_id, sequence) twice is safe."""


class MemoryCheckpointBackend(CheckpointBackend):
    """Volatile in-process storage. State does not survive a restart."""

    name = "memory"
    durable = False

    def __init__(self) -> None:
        self._threads: dict[str, dict[int, Checkpoint]] = {}

    async def read_latest(self, thread_id: str) -> Checkpoint | None:
        history = self._threads.get(thread_id)
        if not history:
            return None
        return history[max(history)]

    async def read_all(self, thread_id: str) -> list[Checkpoint]:
        history = self._threads.get(thread_id, {})
        return [history[seq] for seq in sorted(history)]

    async def write(self, checkpoint: Checkpoint) -> None:
        self._threads.setdefault(checkpoint.thread_id, {})[checkpoint.sequence] = checkpoint


class FileCheckpointBackend(CheckpointBackend):
    """
    Durable storage on the local filesystem.

    Directory structure:
        {base_path}/
            {quoted thread id}/
                00000000.json
                00000001.json
                ...
    """

    name = "file"

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)

    def _validate_thread_id(self, thread_id: str) -> None:
        if not thread_id or thread_id.strip() == "":
            raise ValueError("Thread id cannot be empty")
        if ".." in thread_id or "\x00" in thread_id:
            raise ValueError(f"Invalid thread id: path traversal detected in '{thread_id}'")

    def _thread_dir(self, thread_id: str) -> Path:
        self._validate_thread_id(thread_id)
        return self.base_path / quote(thread_id, safe="")

    def _checkpoint_path(self, thread_id: str, sequence: int) -> Path:
        return self._thread_dir(thread_id) / f"{sequence:08d}.json"

    async def connect(self) -> None:
        def _probe() -> None:
            self.base_path.mkdir(parents=True, exist_ok=True)
            probe = self.base_path / ".probe"
            with atomic_write(probe) as f:
                f.write("ok")
            probe.unlink()

        try:
            await asyncio.to_thread(_probe)
        except OSError as e:
            raise BackendUnavailableError(
                f"Checkpoint directory {self.base_path} is not writable: {e}"
            ) from e

    def _sequences(self, thread_dir: Path) -> list[int]:
        if not thread_dir.exists():
            return []
        return sorted(int(p.stem) for p in thread_dir.glob("*.json") if p.stem.isdigit())

    async def read_latest(self, thread_id: str) -> Checkpoint | None:
        thread_dir = self._thread_dir(thread_id)

        def _read() -> Checkpoint | None:
            sequences = self._sequences(thread_dir)
            if not sequences:
                return None
            path = thread_dir / f"{sequences[-1]:08d}.json"
            return Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def read_all(self, thread_id: str) -> list[Checkpoint]:
        thread_dir = self._thread_dir(thread_id)

        def _read() -> list[Checkpoint]:
            return [
                Checkpoint.model_validate_json(
                    (thread_dir / f"{seq:08d}.json").read_text(encoding="utf-8")
                )
                for seq in self._sequences(thread_dir)
            ]

        return await asyncio.to_thread(_read)

    async def write(self, checkpoint: Checkpoint) -> None:
        path = self._checkpoint_path(checkpoint.thread_id, checkpoint.sequence)

        def _write() -> None:
            with atomic_write(path) as f:
                f.write(checkpoint.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
        logger.debug(f"Saved checkpoint {checkpoint.thread_id}#{checkpoint.sequence} to {path}")


class HttpCheckpointBackend(CheckpointBackend):
    """
    Durable storage behind a REST checkpoint service.

    Endpoints:
        GET  /health
        GET  /threads/{thread_id}/checkpoints/latest     (404 when empty)
        GET  /threads/{thread_id}/checkpoints            (ascending list)
        PUT  /threads/{thread_id}/checkpoints/{sequence} (upsert)

    Non-2xx responses raise httpx.HTTPStatusError so the store's retry
    policy can tell rate limits and 5xx apart from other client errors.
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout
        )

    @staticmethod
    def _thread_path(thread_id: str) -> str:
        return f"/threads/{quote(thread_id, safe='')}/checkpoints"

    async def connect(self) -> None:
        response = await self._client.get("/health")
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def read_latest(self, thread_id: str) -> Checkpoint | None:
        response = await self._client.get(f"{self._thread_path(thread_id)}/latest")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return Checkpoint.model_validate(response.json())

    async def read_all(self, thread_id: str) -> list[Checkpoint]:
        response = await self._client.get(self._thread_path(thread_id))
        if response.status_code == 404:
            return []
        response.raise_for_status()
        checkpoints = [Checkpoint.model_validate(item) for item in response.json()]
        return sorted(checkpoints, key=lambda cp: cp.sequence)

    async def write(self, checkpoint: Checkpoint) -> None:
        response = await self._client.put(
            f"{self._thread_path(checkpoint.thread_id)}/{checkpoint.sequence}",
            json=checkpoint.model_dump(mode="json"),
        )
        response.raise_for_status()
