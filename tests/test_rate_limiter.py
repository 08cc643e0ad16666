import asyncio

import pytest

from market_gateway.models import RateLimitPolicy
from market_gateway.rate_limiter import RateLimiter, SlidingWindow, WAIT_EPSILON

from fakes import ManualClock


def make_window(max_requests=3, window_seconds=10.0):
    clock = ManualClock()
    return SlidingWindow(RateLimitPolicy("test", max_requests, window_seconds), clock, clock.sleep), clock


@pytest.mark.asyncio
async def test_admits_without_waiting_below_budget():
    window, clock = make_window(max_requests=3)
    for _ in range(3):
        assert await window.acquire() == 0.0
    assert clock.sleeps == []
    assert window.in_window() == 3


@pytest.mark.asyncio
async def test_saturated_window_waits_for_oldest_stamp():
    window, clock = make_window(max_requests=2, window_seconds=10.0)
    await window.acquire()
    clock.advance(3.0)
    await window.acquire()

    waited = await window.acquire()

    # Oldest stamp is at t=0, now is t=3: 7s left plus the epsilon
    assert waited == pytest.approx(7.0 + WAIT_EPSILON)
    assert clock.now == pytest.approx(10.0 + WAIT_EPSILON)
    assert window.in_window() == 2


@pytest.mark.asyncio
async def test_admissions_never_exceed_budget_in_any_window():
    window, clock = make_window(max_requests=3, window_seconds=10.0)
    admitted = []
    for i in range(10):
        await window.acquire()
        admitted.append(clock.now)
        clock.advance(0.5 if i % 2 else 1.5)

    for t in admitted:
        in_window = [s for s in admitted if t - 10.0 < s <= t]
        assert len(in_window) <= 3
    assert window.admitted_total == 10


@pytest.mark.asyncio
async def test_concurrent_callers_queue_instead_of_failing():
    window, clock = make_window(max_requests=2, window_seconds=5.0)

    results = await asyncio.gather(*(window.acquire() for _ in range(5)))

    # Lock is FIFO: the third caller frees both t=0 stamps, the fourth slips
    # into the gap, the fifth waits a full window again.
    wait = 5.0 + WAIT_EPSILON
    assert results == [0.0, 0.0, pytest.approx(wait), 0.0, pytest.approx(wait)]
    assert window.admitted_total == 5


@pytest.mark.asyncio
async def test_sources_have_independent_budgets(config, logger, clock):
    config['rate_limits']['okx'] = {'max_requests': 1, 'window_seconds': 60}
    limiter = RateLimiter(config, logger, clock=clock, sleep=clock.sleep)

    await limiter.acquire('okx')
    await limiter.acquire('binance')
    await limiter.acquire('binance')
    assert clock.sleeps == []

    await limiter.acquire('okx')
    assert clock.sleeps == [pytest.approx(60.0 + WAIT_EPSILON)]
    assert limiter.recorded('okx') == 1


def test_unknown_source_uses_default_policy(config, logger, clock):
    limiter = RateLimiter(config, logger, clock=clock, sleep=clock.sleep)
    assert limiter._window('somewhere').policy.max_requests == config['rate_limits']['default']['max_requests']
    assert limiter.recorded('never-seen') == 0


@pytest.mark.asyncio
async def test_stats_report_every_touched_source(limiter):
    await limiter.acquire('bybit')
    stats = limiter.stats()
    assert stats['bybit']['in_window'] == 1
    assert stats['bybit']['max_requests'] == 120
    assert stats['bybit']['admitted_total'] == 1
