"""Shared fixtures for engine tests."""

import pytest

from proposal_engine.graph.executor import GraphExecutor
from proposal_engine.observability import clear_trace_context
from proposal_engine.retry import RetryPolicy
from proposal_engine.storage.backends import MemoryCheckpointBackend
from proposal_engine.storage.checkpoint_store import CheckpointStore

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0)


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture(autouse=True)
def _reset_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def store() -> CheckpointStore:
    return CheckpointStore(MemoryCheckpointBackend(), retry_policy=FAST_RETRY)


@pytest.fixture
def make_executor(store):
    """Build a GraphExecutor on the shared in-memory store with instant retries."""

    def _make(graph, **kwargs) -> GraphExecutor:
        kwargs.setdefault("retry_policy", FAST_RETRY)
        kwargs.setdefault("sleep", no_sleep)
        return GraphExecutor(graph, store, **kwargs)

    return _make
