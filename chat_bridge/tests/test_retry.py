import pytest

from chat_bridge.bridge.retry import RetryPolicy, RetryScheduler
from chat_bridge.domain.exceptions import ChatError

pytestmark = pytest.mark.asyncio


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _error(kind, retry_after=None):
    return ChatError(kind=kind, message=kind, backend_id="test", retry_after_seconds=retry_after)


async def test_exponential_backoff_floors():
    sleep = SleepRecorder()
    scheduler = RetryScheduler(RetryPolicy(), sleep=sleep, rand=lambda: 0.0)
    assert await scheduler.backoff(_error("server_error"))
    assert await scheduler.backoff(_error("server_error"))
    assert sleep.calls == [1.0, 2.0]
    assert scheduler.elapsed_wait_ms == 3000.0


async def test_jitter_is_bounded_by_base():
    sleep = SleepRecorder()
    scheduler = RetryScheduler(RetryPolicy(base_delay_ms=100), sleep=sleep, rand=lambda: 0.999)
    await scheduler.backoff(_error("timeout"))
    assert 0.1 <= sleep.calls[0] < 0.2


async def test_non_retryable_never_waits():
    sleep = SleepRecorder()
    scheduler = RetryScheduler(RetryPolicy(), sleep=sleep)
    assert await scheduler.backoff(_error("invalid_api_key")) is False
    assert sleep.calls == []
    assert scheduler.attempt == 0


async def test_max_attempts_exhausted():
    sleep = SleepRecorder()
    scheduler = RetryScheduler(RetryPolicy(max_attempts=2), sleep=sleep, rand=lambda: 0.0)
    results = [await scheduler.backoff(_error("network_error")) for _ in range(3)]
    assert results == [True, True, False]
    assert len(sleep.calls) == 2


async def test_rate_limit_gets_more_attempts():
    sleep = SleepRecorder()
    policy = RetryPolicy(max_attempts=1, rate_limit_max_attempts=3, max_delay_ms=10)
    scheduler = RetryScheduler(policy, sleep=sleep, rand=lambda: 0.0)
    results = [await scheduler.backoff(_error("rate_limit_exceeded")) for _ in range(4)]
    assert results == [True, True, True, False]


async def test_retry_after_overrides_computed_delay():
    sleep = SleepRecorder()
    scheduler = RetryScheduler(RetryPolicy(max_delay_ms=1000), sleep=sleep, rand=lambda: 0.0)
    await scheduler.backoff(_error("rate_limit_exceeded", retry_after=2))
    assert sleep.calls == [2.0]


async def test_computed_delay_is_capped():
    scheduler = RetryScheduler(RetryPolicy(base_delay_ms=1000, max_delay_ms=1500), rand=lambda: 0.5)
    scheduler.attempt = 4
    assert scheduler.next_delay_ms(_error("server_error")) == 1500.0


async def test_policy_from_settings():
    class Cfg:
        retry_base_delay_ms = 10
        retry_max_attempts = 2
        retry_rate_limit_max_attempts = 4
        retry_max_delay_ms = 50

    policy = RetryPolicy.from_settings(Cfg())
    assert policy == RetryPolicy(base_delay_ms=10, max_attempts=2, rate_limit_max_attempts=4, max_delay_ms=50)
