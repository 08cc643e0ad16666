import logging

import pytest
import pytest_asyncio

from market_gateway.cache import ResponseCache
from market_gateway.config import load_config
from market_gateway.fetcher import FetchOrchestrator
from market_gateway.market_engine import MarketEngine
from market_gateway.rate_limiter import RateLimiter

from fakes import FakeSession, ManualClock


@pytest.fixture
def config():
    cfg = load_config(None)
    cfg['aggregator']['sources'] = ['binance', 'bybit', 'okx']
    return cfg


@pytest.fixture
def logger():
    return logging.getLogger("market_gateway.tests")


@pytest.fixture
def clock():
    return ManualClock(start=1000.0)


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def limiter(config, logger, clock):
    return RateLimiter(config, logger, clock=clock, sleep=clock.sleep)


@pytest.fixture
def cache(clock):
    return ResponseCache(max_size=100, clock=clock)


@pytest.fixture
def orchestrator(session, limiter, cache, config, logger, clock):
    return FetchOrchestrator(session, limiter, cache, config, logger, sleep=clock.sleep)


@pytest_asyncio.fixture
async def engine(config, logger, session, limiter, cache, clock):
    eng = MarketEngine(config, logger, session=session, limiter=limiter, cache=cache, sleep=clock.sleep)
    await eng.start()
    yield eng
    await eng.shutdown()
