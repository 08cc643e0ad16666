# market_gateway/market_engine.py
import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Union

import aiohttp

from .adapters import SourceAdapter, build_adapters
from .aggregator import FanOutAggregator
from .arbitrage import analyze_arbitrage, require_positive_size
from .cache import ResponseCache
from .errors import GatewayError, SourceTimeout, UnknownSourceError
from .execution import compare_execution
from .fetcher import FetchOrchestrator
from .logger import AsyncAuditLogger
from .models import (
    AggregateResult, ArbAnalysis, DataKind, DerivativesAggregate, ExecutionRanking, FundingAggregate, OrderBook,
    Side, SourceHealth,
)
from .rate_limiter import RateLimiter


class MarketEngine:
    """
    Process-level entry point of the gateway.

    Builds the shared rate limiter, response cache, fetch orchestrator and
    source adapters once and hands them to the fan-out aggregator. The
    owner (main.py, a web app factory, a test) creates one engine and
    passes it around; there is no module-level instance.
    """
    def __init__(self, config: dict, logger: logging.Logger,
                 session: Optional[aiohttp.ClientSession] = None,
                 audit: Optional[AsyncAuditLogger] = None,
                 limiter: Optional[RateLimiter] = None,
                 cache: Optional[ResponseCache] = None,
                 sleep=asyncio.sleep):
        self.cfg = config
        self.logger = logger
        self.audit = audit
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

        self.limiter = limiter or RateLimiter(config, logger)
        self.cache = cache or ResponseCache(config['cache']['max_size'])
        self.adapters: Dict[str, SourceAdapter] = build_adapters(config)
        self.orchestrator: Optional[FetchOrchestrator] = None
        self.aggregator: Optional[FanOutAggregator] = None
        if session is not None:
            self._wire(session)

    def _wire(self, session: aiohttp.ClientSession):
        self.orchestrator = FetchOrchestrator(session, self.limiter, self.cache, self.cfg,
                                              self.logger, audit=self.audit, sleep=self._sleep)
        self.aggregator = FanOutAggregator(self.orchestrator, self.adapters, self.logger,
                                           default_timeout=self.cfg['aggregator'].get('timeout'))

    async def start(self):
        """
        Opens the HTTP session (unless one was injected) and the audit writer.
        """
        if self.aggregator is None:
            self._session = aiohttp.ClientSession()
            self._wire(self._session)
        if self.audit is not None and not self.audit.running:
            await self.audit.start()
        self.logger.info(f"📡 Gateway ready: {', '.join(self.adapters)}")
        return self

    async def shutdown(self):
        """
        Flushes the audit trail and closes the HTTP session if this engine opened it.
        """
        if self.audit is not None:
            await self.audit.stop()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self.orchestrator = None
            self.aggregator = None

    async def __aenter__(self):
        return await self.start()

    async def __aexit__(self, *exc):
        await self.shutdown()

    def _require_started(self) -> FanOutAggregator:
        if self.aggregator is None:
            raise GatewayError("MarketEngine.start() has not been called")
        return self.aggregator

    # --- inbound API ---

    async def aggregate(self, symbol: str, timeout: Optional[float] = None) -> AggregateResult:
        """
        Ticker from every configured source, plus summary and top-of-book arbitrage.
        """
        return await self._require_started().aggregate_tickers(symbol, timeout)

    async def fetch_one(self, source: str, kind: Union[DataKind, str], params: Mapping[str, Any],
                        timeout: Optional[float] = None) -> Any:
        """
        Single cached, rate-limited fetch. Returns the normalized object for `kind`.

        `timeout` bounds the whole call, 429 waits included; it defaults to
        aggregator.timeout. Past it the fetch is cancelled and SourceTimeout raised.
        """
        self._require_started()
        adapter = self.adapters.get(source)
        if adapter is None:
            raise UnknownSourceError(source)
        desc = adapter.request(DataKind(kind), params)
        if timeout is None:
            timeout = self.cfg['aggregator'].get('timeout')
        try:
            return await asyncio.wait_for(self.orchestrator.fetch(desc), timeout)
        except asyncio.TimeoutError as e:
            self.logger.warning(f"⏱️ {source}: {desc.kind.value} gave no answer within {timeout}s")
            raise SourceTimeout(f"{source}: no answer within {timeout}s") from e

    async def orderbooks(self, symbol: str, depth: Optional[int] = None,
                         timeout: Optional[float] = None) -> Dict[str, OrderBook]:
        depth = depth or self.cfg['aggregator']['orderbook_depth']
        return await self._require_started().aggregate_orderbooks(symbol, depth, timeout)

    async def funding(self, symbol: str, timeout: Optional[float] = None) -> FundingAggregate:
        return await self._require_started().aggregate_funding(symbol, timeout)

    async def derivatives(self, symbol: str, timeout: Optional[float] = None) -> DerivativesAggregate:
        """
        Funding, open interest and long/short positioning across the perpetual venues.
        """
        return await self._require_started().aggregate_derivatives(symbol, timeout)

    async def compare_execution(self, symbol: str, size: float, side: Union[Side, str],
                                depth: Optional[int] = None,
                                timeout: Optional[float] = None) -> List[ExecutionRanking]:
        books = await self.orderbooks(symbol, depth, timeout)
        return compare_execution(books, size, side, self.cfg['fees']['taker'])

    async def arbitrage_depth(self, symbol: str, size_usd: float, depth: Optional[int] = None,
                              volume_30d: float = 0, timeout: Optional[float] = None) -> ArbAnalysis:
        """
        Depth and fee aware arbitrage across the books of all sources.
        """
        require_positive_size(size_usd)
        books = await self.orderbooks(symbol, depth, timeout)
        healthy = [b for b in books.values() if b.is_healthy]
        mids = [(b.best_bid + b.best_ask) / 2 for b in healthy]
        current_price = sum(mids) / len(mids) if mids else 0.0
        return analyze_arbitrage(healthy, size_usd, current_price, volume_30d, self.cfg['fee_schedules'])

    def health(self) -> Dict[str, SourceHealth]:
        return self.orchestrator.health() if self.orchestrator else {}

    def stats(self) -> Dict[str, Any]:
        return {
            'cache': self.cache.stats(),
            'rate_limits': self.limiter.stats(),
        }
