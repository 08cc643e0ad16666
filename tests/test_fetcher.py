import asyncio
from unittest.mock import MagicMock

import aiohttp
import pytest

from market_gateway.errors import FetchError, ParseError, UpstreamHTTPError
from market_gateway.fetcher import FetchOrchestrator
from market_gateway.rate_limiter import RateLimiter
from market_gateway.models import DataKind, RequestDescriptor

from fakes import BlockingSleep, FakeResponse, Hang, ok, status

URL = "https://api.example.com/ticker?symbol=BTCUSDT"


def descriptor(retryable=True, parser=None, ttl=2.0):
    return RequestDescriptor(
        url=URL, source="example", cache_key=f"example:ticker:{URL}", ttl=ttl,
        kind=DataKind.TICKER, retryable=retryable, parser=parser,
    )


@pytest.mark.asyncio
async def test_success_is_cached_and_costs_one_admission(orchestrator, session, limiter, cache):
    session.add("api.example.com", ok({"price": 42}))
    desc = descriptor()

    first = await orchestrator.fetch(desc)
    second = await orchestrator.fetch(desc)

    assert first == second == {"price": 42}
    assert len(session.calls) == 1
    assert limiter.recorded("example") == 1
    assert desc.cache_key in cache


@pytest.mark.asyncio
async def test_cache_expiry_triggers_a_new_request(orchestrator, session, clock):
    session.add("api.example.com", ok({"price": 1}), ok({"price": 2}))
    desc = descriptor(ttl=2.0)

    assert await orchestrator.fetch(desc) == {"price": 1}
    clock.advance(2.5)
    assert await orchestrator.fetch(desc) == {"price": 2}
    assert len(session.calls) == 2


@pytest.mark.asyncio
async def test_429_honours_retry_after_without_spending_budget(orchestrator, session, clock):
    session.add("api.example.com",
                status(429, headers={'Retry-After': '3'}),
                status(429),
                ok({"price": 7}))

    # Single attempt allowed, yet both 429s are absorbed
    result = await orchestrator.fetch(descriptor(retryable=False))

    assert result == {"price": 7}
    assert clock.sleeps == [3.0, 5.0]
    assert orchestrator.health()["example"].rate_limited == 2


@pytest.mark.asyncio
async def test_transient_failures_exhaust_retry_schedule(orchestrator, session, clock, cache):
    session.add("api.example.com", status(503, reason="Service Unavailable"))

    with pytest.raises(FetchError) as exc:
        await orchestrator.fetch(descriptor())

    assert exc.value.attempts == 4
    assert isinstance(exc.value.cause, UpstreamHTTPError)
    assert exc.value.cause.status == 503
    assert clock.sleeps == [1.0, 2.0, 5.0]
    assert len(session.calls) == 4
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_retry_then_success(orchestrator, session, clock):
    session.add("api.example.com",
                aiohttp.ClientConnectionError("connection reset"),
                status(502),
                ok({"price": 3}))

    assert await orchestrator.fetch(descriptor()) == {"price": 3}
    assert clock.sleeps == [1.0, 2.0]
    health = orchestrator.health()["example"]
    assert health.successes == 1
    assert health.failures == 0


@pytest.mark.asyncio
async def test_non_retryable_descriptor_makes_one_attempt(orchestrator, session, clock):
    session.add("api.example.com", status(500))

    with pytest.raises(FetchError) as exc:
        await orchestrator.fetch(descriptor(retryable=False))

    assert exc.value.attempts == 1
    assert len(session.calls) == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_client_errors_are_retried_by_default(orchestrator, session, clock):
    session.add("api.example.com", status(404, reason="Not Found"), ok({"price": 1}))

    assert await orchestrator.fetch(descriptor()) == {"price": 1}
    assert len(session.calls) == 2
    assert clock.sleeps == [1.0]


@pytest.mark.asyncio
async def test_configured_fatal_status_is_not_retried(session, limiter, cache, config, logger, clock):
    config["fetch"]["fatal_statuses"] = [404]
    orchestrator = FetchOrchestrator(session, limiter, cache, config, logger, sleep=clock.sleep)
    session.add("api.example.com", status(404, reason="Not Found"))

    with pytest.raises(FetchError) as exc:
        await orchestrator.fetch(descriptor())

    assert len(session.calls) == 1
    assert exc.value.cause.status == 404
    assert orchestrator.health()["example"].failures == 1


@pytest.mark.asyncio
async def test_parser_runs_inside_each_attempt(orchestrator, session, clock):
    session.add("api.example.com", ok({"unexpected": True}), ok({"price": "9.5"}))
    desc = descriptor(parser=lambda body: float(body["price"]))

    assert await orchestrator.fetch(desc) == 9.5
    assert len(session.calls) == 2
    assert clock.sleeps == [1.0]


@pytest.mark.asyncio
async def test_persistent_parse_failure_is_reported_as_such(orchestrator, session):
    session.add("api.example.com", FakeResponse(200, invalid_json=True))

    with pytest.raises(FetchError) as exc:
        await orchestrator.fetch(descriptor())

    assert exc.value.is_parse_failure
    assert isinstance(exc.value.cause, ParseError)


@pytest.mark.asyncio
async def test_cancellation_propagates_and_caches_nothing(session, limiter, cache, config, logger, clock):
    audit = MagicMock()
    orchestrator = FetchOrchestrator(session, limiter, cache, config, logger, audit=audit, sleep=clock.sleep)
    hang = Hang()
    session.add("api.example.com", hang)

    task = asyncio.create_task(orchestrator.fetch(descriptor()))
    await hang.entered.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(cache) == 0
    row = audit.log.call_args[0][0]
    assert row[1] == "example"
    assert row[4] == "cancelled"


@pytest.mark.asyncio
async def test_fetch_all_maps_failures_to_none(orchestrator, session):
    other = "https://api.other.com/ticker"
    session.add("api.example.com", ok({"price": 1}))
    session.add("api.other.com", status(403))
    descriptors = [
        descriptor(),
        RequestDescriptor(url=other, source="other", cache_key=f"other:ticker:{other}", ttl=2.0),
    ]

    assert await orchestrator.fetch_all(descriptors) == [{"price": 1}, None]


@pytest.mark.asyncio
async def test_cancel_while_queued_on_the_limiter(session, cache, config, logger, clock):
    config['rate_limits']['example'] = {'max_requests': 1, 'window_seconds': 60}
    blocker = BlockingSleep()
    limiter = RateLimiter(config, logger, clock=clock, sleep=blocker)
    audit = MagicMock()
    orchestrator = FetchOrchestrator(session, limiter, cache, config, logger, audit=audit, sleep=clock.sleep)
    session.add("api.example.com", ok({"price": 1}))
    await limiter.acquire("example")

    task = asyncio.create_task(orchestrator.fetch(descriptor()))
    await blocker.entered.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert session.calls == []
    assert len(cache) == 0
    assert limiter.recorded("example") == 1
    assert audit.log.call_args[0][0][4] == "cancelled"

    # The window lock was released on the way out
    clock.advance(61)
    await asyncio.wait_for(limiter.acquire("example"), 1)
    assert limiter.recorded("example") == 1


@pytest.mark.asyncio
async def test_cancel_during_retry_backoff(session, limiter, cache, config, logger):
    blocker = BlockingSleep()
    orchestrator = FetchOrchestrator(session, limiter, cache, config, logger, sleep=blocker)
    session.add("api.example.com", status(503))

    task = asyncio.create_task(orchestrator.fetch(descriptor()))
    await blocker.entered.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert blocker.sleeps == [1.0]
    assert len(session.calls) == 1
    assert limiter.recorded("example") == 1
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_cancel_during_rate_limit_wait(session, limiter, cache, config, logger):
    blocker = BlockingSleep()
    audit = MagicMock()
    orchestrator = FetchOrchestrator(session, limiter, cache, config, logger, audit=audit, sleep=blocker)
    session.add("api.example.com", status(429, headers={'Retry-After': '3'}))

    task = asyncio.create_task(orchestrator.fetch(descriptor()))
    await blocker.entered.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert blocker.sleeps == [3.0]
    assert len(cache) == 0
    assert audit.log.call_args[0][0][4] == "cancelled"
