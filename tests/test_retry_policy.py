import asyncio

import pytest

from errors import ErrorCode, Result
from utils import RateLimiter, RetryPolicy, attempt_with_policy


def test_backoff_doubles_and_caps():
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=5.0)
    assert [policy.backoff(i) for i in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_retryable_classification():
    assert Result.failure(ErrorCode.TIMEOUT, "slow").retryable
    assert Result.failure(ErrorCode.HTTP_5XX, "boom", status=503).retryable
    assert Result.failure(ErrorCode.CONNECTION_ERROR, "reset").retryable
    assert not Result.failure(ErrorCode.HTTP_4XX, "gone", status=404).retryable
    assert not Result.failure(ErrorCode.DNS_ERROR, "nxdomain").retryable
    assert not Result.failure(ErrorCode.NO_CONTENT, "empty").retryable


@pytest.mark.asyncio
async def test_transient_failures_are_retried_until_success():
    outcomes = [
        Result.failure(ErrorCode.HTTP_5XX, "HTTP 503", status=503),
        Result.failure(ErrorCode.HTTP_5XX, "HTTP 503", status=503),
        Result.success("page"),
    ]
    delays = []

    async def operation():
        return outcomes.pop(0)

    async def fake_sleep(delay):
        delays.append(delay)

    result, attempts = await attempt_with_policy(
        operation, RetryPolicy(max_attempts=3, base_delay=0.5), sleeper=fake_sleep
    )

    assert result.ok and result.value == "page"
    assert attempts == 3
    assert delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried():
    calls = 0

    async def operation():
        nonlocal calls
        calls += 1
        return Result.failure(ErrorCode.HTTP_4XX, "HTTP 404", status=404)

    result, attempts = await attempt_with_policy(operation, RetryPolicy(max_attempts=3, base_delay=0))

    assert not result.ok
    assert result.status == 404
    assert attempts == 1
    assert calls == 1


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    async def operation():
        return Result.failure(ErrorCode.TIMEOUT, "slow")

    result, attempts = await attempt_with_policy(operation, RetryPolicy(max_attempts=2, base_delay=0))

    assert result.error_code == ErrorCode.TIMEOUT
    assert attempts == 2


@pytest.mark.asyncio
async def test_rate_limiter_spaces_requests_per_key():
    limiter = RateLimiter(requests_per_minute=600)  # 0.1s apart

    first = await limiter.acquire("a.example")
    other_host = await limiter.acquire("b.example")
    second = await limiter.acquire("a.example")

    assert first == 0
    assert other_host == 0
    assert 0.05 < second <= 0.1


@pytest.mark.asyncio
async def test_rate_limiter_concurrent_waiters_get_distinct_slots():
    limiter = RateLimiter(requests_per_minute=1200)  # 0.05s apart

    waits = await asyncio.gather(*(limiter.acquire("same.example") for _ in range(3)))

    assert sorted(round(w, 2) for w in waits) == [0.0, 0.05, 0.1]


@pytest.mark.asyncio
async def test_rate_limiter_evicts_least_recently_used_keys():
    limiter = RateLimiter(requests_per_minute=60, max_keys=2)

    await limiter.acquire("one")
    await limiter.acquire("two")
    await limiter.acquire("three")

    assert limiter.tracked_keys == 2
    limiter.reset("three")
    assert limiter.tracked_keys == 1
    limiter.reset()
    assert limiter.tracked_keys == 0


@pytest.mark.asyncio
async def test_rate_limiter_disabled_never_waits():
    limiter = RateLimiter(requests_per_minute=0)
    assert await limiter.acquire() == 0.0
    assert await limiter.acquire() == 0.0
