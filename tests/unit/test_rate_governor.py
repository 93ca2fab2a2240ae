import asyncio

import pytest

from nrql_discovery.client.rate_governor import RateGovernor
from nrql_discovery.config import FrozenConfig
from nrql_discovery.core.exceptions import QueryTimeoutError
from nrql_discovery.events import EventDispatcher, EventKind, RecordingListener
from tests.fakes import FakeClock


@pytest.mark.unit
@pytest.mark.parametrize(
    ("requests", "concurrent", "window"),
    [(0, 1, 60.0), (1, 0, 60.0), (1, 1, 0.0)],
)
def test_rejects_non_positive_limits(requests, concurrent, window):
    with pytest.raises(ValueError):
        RateGovernor(requests, concurrent, window_seconds=window)


@pytest.mark.unit
def test_from_config_uses_rate_and_concurrency_settings():
    config = FrozenConfig(
        queries_per_minute=120, max_concurrent_queries=4, window_seconds=30
    )
    governor = RateGovernor.from_config(config)

    assert governor.requests_per_window == 120
    assert governor.max_concurrent == 4
    assert governor.window_seconds == 30


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrency_never_exceeds_ceiling():
    governor = RateGovernor(1000, 2)
    active = 0
    peak = 0

    async def work():
        nonlocal active, peak
        async with governor.slot():
            active += 1
            peak = max(peak, active)
            for _ in range(3):
                await asyncio.sleep(0)
            active -= 1

    await asyncio.gather(*(work() for _ in range(8)))

    assert peak == 2
    assert governor.in_flight == 0
    assert governor.stats()["granted"] == 8


@pytest.mark.unit
@pytest.mark.asyncio
async def test_full_window_is_waited_out_not_rejected():
    clock = FakeClock()
    listener = RecordingListener()
    governor = RateGovernor(
        2,
        10,
        window_seconds=60,
        clock=clock,
        sleep=clock.sleep,
        events=EventDispatcher(listener),
    )
    grants: list[float] = []

    async def work():
        async with governor.slot():
            grants.append(clock())

    await asyncio.gather(*(work() for _ in range(5)))

    grants.sort()
    assert len(grants) == 5
    assert grants[:2] == [0.0, 0.0]
    assert all(t >= 60.0 for t in grants[2:])
    for start in grants:
        in_window = [t for t in grants if start <= t < start + 60]
        assert len(in_window) <= 2
    assert governor.stats()["budget_exhausted"] >= 1
    assert listener.of_kind(EventKind.BUDGET_EXHAUSTED)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_window_usage_expires_after_window():
    clock = FakeClock()
    governor = RateGovernor(5, 5, window_seconds=60, clock=clock, sleep=clock.sleep)

    for _ in range(3):
        async with governor.slot():
            pass
    assert governor.stats()["window_usage"] == 3

    clock.advance(60)
    assert governor.stats()["window_usage"] == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_acquire_timeout_raises_query_timeout():
    governor = RateGovernor(100, 1)
    await governor.acquire()

    with pytest.raises(QueryTimeoutError):
        await governor.acquire(timeout=0.01)

    assert governor.in_flight == 1
    governor.release()
    assert governor.in_flight == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_a_slot():
    governor = RateGovernor(100, 1)
    await governor.acquire()

    waiter = asyncio.create_task(governor.acquire())
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    governor.release()
    await governor.acquire(timeout=0.5)
    assert governor.in_flight == 1
    governor.release()


@pytest.mark.unit
def test_release_without_acquire_is_an_error():
    governor = RateGovernor(10, 1)
    with pytest.raises(RuntimeError):
        governor.release()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_slot_releases_on_exception():
    governor = RateGovernor(10, 1)

    with pytest.raises(ZeroDivisionError):
        async with governor.slot():
            1 / 0  # noqa: B018

    assert governor.in_flight == 0
    stats = governor.stats()
    assert set(stats) == {
        "in_flight",
        "window_usage",
        "requests_per_window",
        "max_concurrent",
        "granted",
        "budget_exhausted",
    }
