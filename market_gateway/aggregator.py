# market_gateway/aggregator.py
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .adapters import SourceAdapter
from .arbitrage import detect_arbitrage
from .errors import AllSourcesFailedError, FetchError, SourceTimeout
from .fetcher import FetchOrchestrator
from .models import (
    AggregateResult, DataKind, DerivativesAggregate, ExchangeDerivatives, FundingAggregate, FundingRate,
    Instrument, MarketSummary, NormalizedTicker, OpenInterest, OrderBook, PositioningRatio,
    RequestDescriptor, SourceStatus,
)

FUNDING_BIAS_THRESHOLD = 0.0001
FUNDING_EXTREME = 0.0003
FUNDING_ELEVATED = 0.0001
POSITION_BIAS_THRESHOLD = 0.55


class FanOutAggregator:
    """
    Sends one logical request to every configured source at once and folds
    the outcomes into a single best-effort result. A failing source becomes
    a placeholder entry; it never fails the call on its own.
    """
    def __init__(self, orchestrator: FetchOrchestrator, adapters: Dict[str, SourceAdapter],
                 logger: logging.Logger, default_timeout: Optional[float] = None):
        self.orchestrator = orchestrator
        self.adapters = adapters
        self.logger = logger
        self.default_timeout = default_timeout

    async def _settle(self, descriptors: Dict[str, RequestDescriptor],
                      timeout: Optional[float]) -> Dict[str, Any]:
        """
        Runs every fetch concurrently and waits until all have settled or the
        deadline passes. Returns source -> payload | exception.
        """
        if timeout is None:
            timeout = self.default_timeout
        tasks = {
            name: asyncio.create_task(self.orchestrator.fetch(desc), name=f"fetch:{name}")
            for name, desc in descriptors.items()
        }
        if not tasks:
            return {}

        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=timeout)
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            raise

        if pending:
            self.logger.warning(f"⏱️ Deadline of {timeout}s hit, abandoning {len(pending)} source(s)")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: Dict[str, Any] = {}
        for name, task in tasks.items():
            if task.cancelled():
                outcomes[name] = SourceTimeout("timeout")
            elif task.exception() is not None:
                outcomes[name] = task.exception()
            else:
                outcomes[name] = task.result()
        return outcomes

    def _status_for(self, error: BaseException) -> SourceStatus:
        if isinstance(error, FetchError) and error.is_parse_failure:
            return SourceStatus.ERROR
        if isinstance(error, (FetchError, SourceTimeout)):
            return SourceStatus.OFFLINE
        return SourceStatus.ERROR

    def _failures(self, outcomes: Dict[str, Any]) -> Dict[str, str]:
        failures = {}
        for name, outcome in outcomes.items():
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, (FetchError, SourceTimeout)):
                    self.logger.error(f"{name}: unexpected {type(outcome).__name__}: {outcome}")
                failures[name] = str(outcome)
        return failures

    async def aggregate_tickers(self, symbol: str, timeout: Optional[float] = None) -> AggregateResult:
        inst = Instrument.parse(symbol)
        descriptors = {
            name: adapter.ticker_request(inst)
            for name, adapter in self.adapters.items() if DataKind.TICKER in adapter.kinds
        }
        outcomes = await self._settle(descriptors, timeout)
        failures = self._failures(outcomes)

        tickers: List[NormalizedTicker] = []
        for name in descriptors:
            outcome = outcomes[name]
            if isinstance(outcome, BaseException):
                tickers.append(NormalizedTicker.unavailable(name, self._status_for(outcome), str(outcome)))
            else:
                tickers.append(outcome)

        valid = [t for t in tickers if t.is_valid]
        summary = MarketSummary(
            avg_price=sum(t.price for t in valid) / len(valid) if valid else 0.0,
            total_volume=sum(t.volume_24h for t in valid),
            online_count=len(valid),
            total_count=len(tickers),
        )
        result = AggregateResult(
            symbol=str(inst),
            exchanges=tickers,
            arbitrage=detect_arbitrage(valid),
            summary=summary,
        )
        if tickers and not valid:
            raise AllSourcesFailedError(str(inst), failures, result)

        if failures:
            self.logger.info(f"{inst}: {summary.online_count}/{summary.total_count} sources online, "
                             f"down: {', '.join(failures)}")
        return result

    async def _fan_out(self, kind: DataKind, build: Callable[[SourceAdapter], RequestDescriptor],
                       timeout: Optional[float]) -> Tuple[Dict[str, Any], Dict[str, str]]:
        """
        One fan-out over every adapter serving `kind`.
        Returns (source -> parsed payload for the ones that answered, source -> failure reason).
        """
        descriptors = {name: build(adapter) for name, adapter in self.adapters.items() if kind in adapter.kinds}
        outcomes = await self._settle(descriptors, timeout)
        failures = self._failures(outcomes)
        results = {name: outcomes[name] for name in descriptors if name not in failures}
        return results, failures

    async def aggregate_orderbooks(self, symbol: str, depth: int = 50,
                                   timeout: Optional[float] = None) -> Dict[str, OrderBook]:
        """
        Books of every source that answered, in configuration order.
        """
        inst = Instrument.parse(symbol)
        books, failures = await self._fan_out(DataKind.ORDERBOOK, lambda a: a.orderbook_request(inst, depth), timeout)
        if failures and not books:
            raise AllSourcesFailedError(str(inst), failures)
        return books

    async def aggregate_funding(self, symbol: str, timeout: Optional[float] = None) -> FundingAggregate:
        inst = Instrument.parse(symbol)
        (rates, failures), (tickers, _) = await asyncio.gather(
            self._fan_out(DataKind.FUNDING, lambda a: a.funding_request(inst), timeout),
            self._fan_out(DataKind.TICKER, lambda a: a.ticker_request(inst), timeout),
        )
        if failures and not rates:
            raise AllSourcesFailedError(str(inst), failures)
        return summarize_funding(str(inst), list(rates.values()), list(failures), quote_volumes(tickers))

    async def aggregate_derivatives(self, symbol: str, timeout: Optional[float] = None) -> DerivativesAggregate:
        """
        Funding, open interest and long/short positioning per venue, plus the
        cross-venue totals. A venue is listed once it answered funding or open
        interest; positioning alone does not qualify it.
        """
        inst = Instrument.parse(symbol)
        (rates, funding_failures), (interest, oi_failures), (ratios, _), (tickers, _) = await asyncio.gather(
            self._fan_out(DataKind.FUNDING, lambda a: a.funding_request(inst), timeout),
            self._fan_out(DataKind.OPEN_INTEREST, lambda a: a.open_interest_request(inst), timeout),
            self._fan_out(DataKind.POSITIONING, lambda a: a.positioning_request(inst), timeout),
            self._fan_out(DataKind.TICKER, lambda a: a.ticker_request(inst), timeout),
        )
        volumes = quote_volumes(tickers)
        prices = {name: t.price for name, t in tickers.items() if t.is_valid}
        fallback_price = sum(prices.values()) / len(prices) if prices else 0.0

        rows: List[ExchangeDerivatives] = []
        for name in self.adapters:
            funding: Optional[FundingRate] = rates.get(name)
            oi: Optional[OpenInterest] = interest.get(name)
            if funding is None and oi is None:
                continue
            ratio: Optional[PositioningRatio] = ratios.get(name)
            amount = oi.amount if oi else 0.0
            value = oi.value if oi and oi.value > 0 else amount * prices.get(name, fallback_price)
            rows.append(ExchangeDerivatives(
                exchange=name,
                funding_rate=funding.rate if funding else None,
                open_interest=amount,
                open_interest_value=value,
                long_ratio=ratio.long_ratio if ratio else 0.5,
                short_ratio=ratio.short_ratio if ratio else 0.5,
                volume_24h=volumes.get(name, 0.0),
            ))

        if not rows:
            raise AllSourcesFailedError(str(inst), {**oi_failures, **funding_failures})

        avg_long = sum(r.long_ratio for r in rows) / len(rows)
        avg_short = sum(r.short_ratio for r in rows) / len(rows)
        if avg_long > POSITION_BIAS_THRESHOLD:
            position_bias = 'long_heavy'
        elif avg_short > POSITION_BIAS_THRESHOLD:
            position_bias = 'short_heavy'
        else:
            position_bias = 'balanced'

        result = DerivativesAggregate(
            symbol=str(inst),
            exchanges=rows,
            funding=summarize_funding(str(inst), list(rates.values()), list(funding_failures), volumes),
            total_open_interest=sum(r.open_interest for r in rows),
            total_open_interest_value=sum(r.open_interest_value for r in rows),
            avg_long_ratio=avg_long,
            avg_short_ratio=avg_short,
            position_bias=position_bias,
        )
        self.logger.debug(f"{inst}: derivatives from {len(rows)} venue(s), OI ${result.total_open_interest_value:,.0f}")
        return result


def quote_volumes(tickers: Dict[str, NormalizedTicker]) -> Dict[str, float]:
    """24h volume in quote currency for every valid ticker."""
    return {name: t.price * t.volume_24h for name, t in tickers.items() if t.is_valid}


def summarize_funding(symbol: str, rates: List[FundingRate], failed: List[str],
                      volumes: Dict[str, float]) -> FundingAggregate:
    mean = sum(r.rate for r in rates) / len(rates) if rates else 0.0
    total_volume = sum(volumes.get(r.exchange, 0.0) for r in rates)
    if total_volume > 0:
        weighted = sum(r.rate * volumes.get(r.exchange, 0.0) for r in rates) / total_volume
    else:
        weighted = mean

    if weighted > FUNDING_BIAS_THRESHOLD:
        bias = 'long_paying'
    elif weighted < -FUNDING_BIAS_THRESHOLD:
        bias = 'short_paying'
    else:
        bias = 'neutral'
    if abs(weighted) > FUNDING_EXTREME:
        heat = 'extreme'
    elif abs(weighted) > FUNDING_ELEVATED:
        heat = 'elevated'
    else:
        heat = 'normal'

    return FundingAggregate(
        symbol=symbol,
        rates=rates,
        failed=failed,
        mean_rate=mean,
        weighted_rate=weighted,
        bias=bias,
        heat=heat,
    )
