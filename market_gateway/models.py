# market_gateway/models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import math
import time


class SourceStatus(Enum):
    """
    Outcome of one source inside a fan-out.
    """
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"


class Side(Enum):
    BUY = "buy"
    SELL = "sell"


class LiquidityRating(Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    DANGEROUS = "dangerous"


class DataKind(Enum):
    """
    Kind of upstream data. Each kind has its own cache TTL.
    """
    TICKER = "ticker"
    ORDERBOOK = "orderbook"
    FUNDING = "funding"
    OPEN_INTEREST = "open_interest"
    POSITIONING = "positioning"


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    """Admission budget of one upstream source."""
    name: str
    max_requests: int
    window_seconds: float


@dataclass(frozen=True, slots=True)
class Instrument:
    """
    Venue-independent trading pair, e.g. BTC/USDT.
    Adapters format it into each exchange's own symbol convention.
    """
    base: str
    quote: str

    KNOWN_QUOTES = ("USDT", "USDC", "FDUSD", "BUSD", "USD", "EUR", "BTC", "ETH")

    @classmethod
    def parse(cls, symbol: str) -> "Instrument":
        raw = symbol.strip().upper()
        for sep in ("/", "-", "_"):
            if sep in raw:
                base, quote = raw.split(sep, 1)
                if base and quote:
                    return cls(base, quote)
                raise ValueError(f"Malformed symbol: {symbol!r}")
        for quote in cls.KNOWN_QUOTES:
            if raw.endswith(quote) and len(raw) > len(quote):
                return cls(raw[:-len(quote)], quote)
        raise ValueError(f"Cannot infer quote currency of {symbol!r}")

    def joined(self, sep: str = "") -> str:
        return f"{self.base}{sep}{self.quote}"

    def __str__(self) -> str:
        return self.joined("/")


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: str
    payload: Any
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


@dataclass(frozen=True, slots=True)
class RequestDescriptor:
    """
    One outbound call. Never mutated after construction.
    `parser` is the source's mapping step; it runs inside every attempt so a
    malformed body is retried like any other upstream failure.
    """
    url: str
    source: str
    cache_key: str
    ttl: float
    kind: DataKind = DataKind.TICKER
    retryable: bool = True
    parser: Optional[Callable[[Any], Any]] = None


@dataclass(frozen=True, slots=True)
class NormalizedTicker:
    """
    Common ticker shape produced once per source per aggregation call.
    Percent fields (change_24h) are always in percent units.
    """
    exchange: str
    price: float
    bid: float
    ask: float
    volume_24h: float
    change_24h: float
    high_24h: float
    low_24h: float
    timestamp: float
    status: SourceStatus = SourceStatus.ONLINE
    error: Optional[str] = None

    @classmethod
    def unavailable(cls, exchange: str, status: SourceStatus, error: Optional[str] = None) -> "NormalizedTicker":
        return cls(
            exchange=exchange, price=0.0, bid=0.0, ask=0.0, volume_24h=0.0,
            change_24h=0.0, high_24h=0.0, low_24h=0.0, timestamp=time.time(),
            status=status, error=error,
        )

    @property
    def is_valid(self) -> bool:
        return self.status is SourceStatus.ONLINE and self.price > 0


@dataclass(frozen=True, slots=True)
class OrderBookLevel:
    price: float
    size: float


@dataclass(frozen=True, slots=True)
class OrderBook:
    """
    Bids are sorted descending, asks ascending.
    """
    exchange: str
    symbol: str
    bids: List[OrderBookLevel]
    asks: List[OrderBookLevel]
    timestamp: float

    @property
    def best_bid(self) -> float:
        return self.bids[0].price if self.bids else 0.0

    @property
    def best_ask(self) -> float:
        return self.asks[0].price if self.asks else 0.0

    @property
    def spread(self) -> float:
        return self.best_ask - self.best_bid

    @property
    def spread_bps(self) -> float:
        return (self.spread / self.best_bid) * 10000 if self.best_bid > 0 else 0.0

    @property
    def imbalance(self) -> float:
        """-1..1, positive when more size rests on the bid side."""
        bid_total = sum(level.size for level in self.bids)
        ask_total = sum(level.size for level in self.asks)
        total = bid_total + ask_total
        return (bid_total - ask_total) / total if total > 0 else 0.0

    @property
    def is_healthy(self) -> bool:
        return bool(self.bids) and bool(self.asks) and self.best_bid < self.best_ask


@dataclass(frozen=True, slots=True)
class FundingRate:
    """Funding rate as a fraction per funding interval (0.0001 == 0.01%)."""
    exchange: str
    symbol: str
    rate: float
    next_funding_time: float
    timestamp: float


@dataclass(frozen=True, slots=True)
class OpenInterest:
    """
    Outstanding perpetual contracts. `amount` is in base units; `value` is
    the quote notional, 0.0 when the venue does not report it.
    """
    exchange: str
    symbol: str
    amount: float
    value: float
    timestamp: float


@dataclass(frozen=True, slots=True)
class PositioningRatio:
    """Share of accounts net long vs net short, as fractions summing to ~1."""
    exchange: str
    symbol: str
    long_ratio: float
    short_ratio: float
    timestamp: float


@dataclass(slots=True)
class ExecutionAnalysis:
    """
    Result of walking one side of a book for a requested size.
    """
    symbol: str
    side: Side
    size: float
    market_price: float
    average_price: float
    worst_price: float
    value: float
    cost: float
    fees: float
    slippage: float
    slippage_percent: float
    price_impact: float
    depth_consumed: float
    liquidity_rating: LiquidityRating
    warning: Optional[str] = None

    @property
    def filled(self) -> bool:
        return math.isfinite(self.cost) and self.average_price > 0


@dataclass(frozen=True, slots=True)
class TrueSpread:
    """Top-of-book spread net of a round trip of taker fees. Percent units."""
    spread: float
    spread_percent: float
    round_trip_fee_percent: float
    net_spread_percent: float
    is_profitable: bool
    min_move_to_profit: float


@dataclass(slots=True)
class ExecutionRanking:
    exchange: str
    analysis: ExecutionAnalysis
    rank: int


@dataclass(frozen=True, slots=True)
class ArbitrageOpportunity:
    buy_exchange: str
    buy_price: float
    sell_exchange: str
    sell_price: float
    profit: float
    profit_percent: float


@dataclass(frozen=True, slots=True)
class MarketSummary:
    avg_price: float
    total_volume: float
    online_count: int
    total_count: int


@dataclass(slots=True)
class AggregateResult:
    symbol: str
    exchanges: List[NormalizedTicker]
    arbitrage: Optional[ArbitrageOpportunity]
    summary: MarketSummary
    timestamp: float = field(default_factory=time.time)

    def by_exchange(self) -> Dict[str, NormalizedTicker]:
        return {t.exchange: t for t in self.exchanges}


@dataclass(slots=True)
class FundingAggregate:
    """
    `weighted_rate` weights each venue by its 24h quote volume and drives
    bias and heat; it equals `mean_rate` when no volume is known.
    """
    symbol: str
    rates: List[FundingRate]
    failed: List[str]
    mean_rate: float
    weighted_rate: float
    bias: str   # long_paying | short_paying | neutral
    heat: str   # extreme | elevated | normal
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class ExchangeDerivatives:
    """One venue's row of a derivatives aggregate. Missing ratios default to 0.5."""
    exchange: str
    funding_rate: Optional[float]
    open_interest: float
    open_interest_value: float
    long_ratio: float
    short_ratio: float
    volume_24h: float   # quote notional, weight of the funding rate


@dataclass(slots=True)
class DerivativesAggregate:
    symbol: str
    exchanges: List[ExchangeDerivatives]
    funding: FundingAggregate
    total_open_interest: float
    total_open_interest_value: float
    avg_long_ratio: float
    avg_short_ratio: float
    position_bias: str  # long_heavy | short_heavy | balanced
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class SlippageResult:
    """Book walk sized in quote currency (USD)."""
    average_price: float
    total_filled: float
    slippage_amount: float
    slippage_percent: float
    levels_consumed: int
    remaining_size: float


@dataclass(slots=True)
class ArbPairAnalysis:
    """
    Depth and fee aware evaluation of buying on one venue and selling on another.
    """
    buy_exchange: str
    sell_exchange: str
    buy_price: float
    sell_price: float
    raw_spread: float
    effective_spread: float
    buy_slippage: SlippageResult
    sell_slippage: SlippageResult
    buy_fee: float
    sell_fee: float
    total_fees: float
    withdrawal_fee: float
    gross_profit: float
    net_profit: float
    net_profit_percent: float
    executable: bool
    execution_notes: List[str]
    settlement_time: str
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class ArbAnalysis:
    trade_size: float
    opportunities: List[ArbPairAnalysis]
    best_opportunity: Optional[ArbPairAnalysis]
    exchange_count: int
    average_spread_bps: float
    liquidity_score: float
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class SourceHealth:
    """
    Running counters of one source, updated by the fetch orchestrator.
    """
    source: str
    requests: int = 0
    cache_hits: int = 0
    successes: int = 0
    failures: int = 0
    rate_limited: int = 0
    last_latency_ms: float = 0.0
    last_error: Optional[str] = None
    last_success_at: Optional[float] = None

    @property
    def success_ratio(self) -> float:
        done = self.successes + self.failures
        return self.successes / done if done else 1.0
