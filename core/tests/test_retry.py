"""Tests for retry classification and backoff."""

import httpx
import pytest

from proposal_engine.errors import (
    DocumentNotFoundError,
    NodeTimeoutError,
    TransientIOError,
    ValidationError,
)
from proposal_engine.retry import RetryPolicy, is_retryable, with_retry


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://checkpoints.test/health")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"{status}", request=request, response=response)


class TestIsRetryable:
    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503])
    def test_rate_limits_and_server_errors_are_retried(self, status):
        assert is_retryable(_status_error(status))

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_other_client_errors_fail_fast(self, status):
        assert not is_retryable(_status_error(status))

    def test_classification_of_engine_errors(self):
        assert is_retryable(TransientIOError("slow"))
        assert is_retryable(NodeTimeoutError("too slow"))
        assert is_retryable(httpx.ConnectError("refused"))
        assert not is_retryable(ValidationError("bad"))
        assert not is_retryable(DocumentNotFoundError("gone"))
        assert not is_retryable(PermissionError("no"))
        assert not is_retryable(ValueError("bug"))


class TestRetryPolicy:
    def test_delay_grows_exponentially_and_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=0.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_only_adds(self):
        policy = RetryPolicy(base_delay=1.0, jitter=0.5)
        for _ in range(20):
            assert 1.0 <= policy.delay_for(1) <= 1.5


@pytest.mark.asyncio
async def test_with_retry_recovers_from_transient_failures():
    calls = []
    sleeps = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransientIOError("rate limited", status_code=429)
        return "ok"

    async def record_sleep(delay):
        sleeps.append(delay)

    policy = RetryPolicy(max_attempts=4, base_delay=0.5, jitter=0.0)
    result = await with_retry(flaky, policy, sleep=record_sleep)

    assert result == "ok"
    assert len(calls) == 3
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_with_retry_gives_up_after_max_attempts():
    calls = []

    async def always_down():
        calls.append(1)
        raise TransientIOError("down")

    async def no_sleep(_):
        return None

    with pytest.raises(TransientIOError):
        await with_retry(always_down, RetryPolicy(max_attempts=3), sleep=no_sleep)
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_permanent_errors():
    calls = []

    async def missing():
        calls.append(1)
        raise DocumentNotFoundError("nope")

    with pytest.raises(DocumentNotFoundError):
        await with_retry(missing, RetryPolicy(max_attempts=5))
    assert len(calls) == 1
