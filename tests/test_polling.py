import pytest

from polling import poll_until


@pytest.mark.asyncio
async def test_stops_at_first_ready_result(fake_sleep, sleeps):
    results = iter([None, None, "report", "later"])

    async def fetch():
        return next(results)

    outcome = await poll_until(fetch, lambda r: r is not None, max_attempts=5, interval=10, sleep=fake_sleep)

    assert outcome.ready
    assert outcome.result == "report"
    assert outcome.attempts == 3
    assert sleeps == [10, 10, 10]


@pytest.mark.asyncio
async def test_exhaustion_keeps_last_result(fake_sleep, sleeps):
    calls = []

    async def fetch():
        calls.append(1)
        return {"status": "queued"}

    pending = []
    outcome = await poll_until(
        fetch,
        lambda r: r["status"] == "completed",
        max_attempts=6,
        interval=15,
        sleep=fake_sleep,
        on_pending=lambda n, r: pending.append(n),
    )

    assert not outcome.ready
    assert outcome.result == {"status": "queued"}
    assert outcome.attempts == 6
    assert len(calls) == 6
    assert pending == [1, 2, 3, 4, 5, 6]
    assert sleeps == [15] * 6
