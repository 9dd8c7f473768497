import pytest

from helpers import SleepRecorder
from postcard_fulfillment.retry import backoff_delay, retry_with_backoff


def test_backoff_delay_doubles_after_first_attempt():
    assert backoff_delay(1, 1.0) == 0
    assert backoff_delay(2, 1.0) == 2.0
    assert backoff_delay(3, 1.0) == 4.0
    assert backoff_delay(4, 0.5) == 4.0


@pytest.mark.asyncio
async def test_retry_succeeds_after_failures():
    sleeps = SleepRecorder()
    calls = []
    retries = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ValueError("boom")
        return "done"

    result = await retry_with_backoff(
        flaky,
        max_attempts=3,
        base_delay=1.0,
        retry_on=(ValueError,),
        sleep=sleeps,
        on_retry=lambda attempt, exc, delay: retries.append((attempt, delay)),
    )
    assert result == "done"
    assert len(calls) == 3
    assert sleeps.calls == [2.0, 4.0]
    assert retries == [(1, 2.0), (2, 4.0)]


@pytest.mark.asyncio
async def test_retry_reraises_last_error():
    sleeps = SleepRecorder()

    async def always_fails():
        raise ValueError("nope")

    with pytest.raises(ValueError, match="nope"):
        await retry_with_backoff(always_fails, max_attempts=2, base_delay=0.1, sleep=sleeps)
    assert sleeps.calls == [0.2]


@pytest.mark.asyncio
async def test_unlisted_errors_are_not_retried():
    sleeps = SleepRecorder()
    calls = []

    async def broken():
        calls.append(1)
        raise KeyError("x")

    with pytest.raises(KeyError):
        await retry_with_backoff(broken, max_attempts=5, retry_on=(ValueError,), sleep=sleeps)
    assert calls == [1]
    assert sleeps.calls == []
