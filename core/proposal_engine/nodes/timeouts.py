"""Time budgets for external calls made inside nodes."""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from proposal_engine.config import DEFAULT_NODE_TIMEOUT_SECONDS
from proposal_engine.errors import NodeTimeoutError

T = TypeVar("T")


async def with_timeout(
    awaitable: Awaitable[T],
    seconds: float | None = DEFAULT_NODE_TIMEOUT_SECONDS,
    what: str = "external call",
) -> T:
    """
    Await an external call under a time budget.

    Raises:
        NodeTimeoutError: The call did not finish within seconds. The error
            is transient, so the executor's retry policy applies.
    """
    if seconds is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, seconds)
    except TimeoutError as e:
        raise NodeTimeoutError(f"{what} timed out after {seconds}s") from e
