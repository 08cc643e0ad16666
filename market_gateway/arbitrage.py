# market_gateway/arbitrage.py
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .config import DEFAULT_FEE_SCHEDULES
from .models import (
    ArbAnalysis, ArbitrageOpportunity, ArbPairAnalysis, NormalizedTicker, OrderBook,
    OrderBookLevel, Side, SlippageResult,
)

DEFAULT_FEE_BPS = 10
DEFAULT_WITHDRAWAL_FEE = 0.0005
LIQUIDITY_SLIPPAGE_BAND = 0.001  # 0.1% from best ask
LIQUIDITY_SCORE_NOTIONAL = 1_000_000


def detect_arbitrage(tickers: Iterable[NormalizedTicker]) -> Optional[ArbitrageOpportunity]:
    """
    Top-of-book arbitrage: buy at the lowest ask, sell at the highest bid.
    Needs at least two online sources with a price, and the two sides must
    come from different sources. No opportunity is a normal outcome.
    """
    online = [t for t in tickers if t.is_valid]
    if len(online) < 2:
        return None

    max_bid = max(online, key=lambda t: t.bid)
    asks = [t for t in online if t.ask > 0]
    if not asks:
        return None
    min_ask = min(asks, key=lambda t: t.ask)

    if max_bid.bid <= min_ask.ask or max_bid.exchange == min_ask.exchange:
        return None

    profit = max_bid.bid - min_ask.ask
    return ArbitrageOpportunity(
        buy_exchange=min_ask.exchange,
        buy_price=min_ask.ask,
        sell_exchange=max_bid.exchange,
        sell_price=max_bid.bid,
        profit=profit,
        profit_percent=profit / min_ask.ask * 100,
    )


def calculate_slippage(levels: Sequence[OrderBookLevel], size_usd: float, side: Union[Side, str]) -> SlippageResult:
    """
    Walks `levels` until `size_usd` of quote currency is spent (buy) or raised (sell).
    """
    side = Side(side)
    if not levels:
        return SlippageResult(0.0, 0.0, 0.0, 0.0, 0, size_usd)

    best = levels[0].price
    remaining = size_usd
    value_filled = 0.0
    qty_filled = 0.0
    consumed = 0

    for level in levels:
        if remaining <= 0:
            break
        fill_value = min(remaining, level.price * level.size)
        value_filled += fill_value
        qty_filled += fill_value / level.price
        remaining -= fill_value
        consumed += 1

    average = value_filled / qty_filled if qty_filled > 0 else best
    amount = average - best if side is Side.BUY else best - average
    return SlippageResult(
        average_price=average,
        total_filled=value_filled,
        slippage_amount=abs(amount),
        slippage_percent=abs(amount / best * 100) if best > 0 else 0.0,
        levels_consumed=consumed,
        remaining_size=max(0.0, remaining),
    )


def get_fee_rate(exchange: str, liquidity: str = 'taker', volume_30d: float = 0,
                 schedules: Mapping[str, Dict[str, Any]] = DEFAULT_FEE_SCHEDULES) -> float:
    """Fee in basis points for the highest volume tier reached."""
    schedule = schedules.get(exchange)
    if not schedule:
        return DEFAULT_FEE_BPS
    tiers = schedule.get('volume_tiers')
    if tiers and volume_30d > 0:
        for tier in sorted(tiers, key=lambda t: t['volume'], reverse=True):
            if volume_30d >= tier['volume']:
                return tier[liquidity]
    return schedule[liquidity]


def require_positive_size(size_usd: float):
    if not size_usd > 0:
        raise ValueError(f"size_usd must be positive, got {size_usd}")


def analyze_arb_pair(buy_book: OrderBook, sell_book: OrderBook, size_usd: float, current_price: float,
                     volume_30d: float = 0,
                     schedules: Mapping[str, Dict[str, Any]] = DEFAULT_FEE_SCHEDULES) -> Optional[ArbPairAnalysis]:
    """
    Full cost of buying `size_usd` on one venue and selling it on another:
    depth slippage on both legs, taker fees and the withdrawal needed to
    rebalance. Returns None when either side has no book to walk.
    """
    require_positive_size(size_usd)
    if not buy_book.asks or not sell_book.bids:
        return None
    notes: List[str] = []

    buy_slip = calculate_slippage(buy_book.asks, size_usd, Side.BUY)
    sell_slip = calculate_slippage(sell_book.bids, size_usd, Side.SELL)
    if buy_slip.remaining_size > 0:
        notes.append(f"Buy book too thin: {buy_slip.remaining_size / size_usd * 100:.1f}% unfilled")
    if sell_slip.remaining_size > 0:
        notes.append(f"Sell book too thin: {sell_slip.remaining_size / size_usd * 100:.1f}% unfilled")

    buy_fee = get_fee_rate(buy_book.exchange, 'taker', volume_30d, schedules) / 10000 * size_usd
    sell_fee = get_fee_rate(sell_book.exchange, 'taker', volume_30d, schedules) / 10000 * size_usd
    total_fees = buy_fee + sell_fee

    buy_schedule = schedules.get(buy_book.exchange) or {}
    withdrawal_fee = buy_schedule.get('withdrawal_fee', DEFAULT_WITHDRAWAL_FEE) * current_price

    raw_spread = sell_book.best_bid - buy_book.best_ask
    effective_spread = sell_slip.average_price - buy_slip.average_price
    quantity = size_usd / buy_slip.average_price
    gross = quantity * effective_spread
    net = gross - total_fees - withdrawal_fee

    executable = net > 0 and buy_slip.remaining_size == 0 and sell_slip.remaining_size == 0
    if net <= 0 and raw_spread > 0:
        notes.append("Raw spread exists but fees/slippage eliminate profit")

    return ArbPairAnalysis(
        buy_exchange=buy_book.exchange,
        sell_exchange=sell_book.exchange,
        buy_price=buy_slip.average_price,
        sell_price=sell_slip.average_price,
        raw_spread=raw_spread,
        effective_spread=effective_spread,
        buy_slippage=buy_slip,
        sell_slippage=sell_slip,
        buy_fee=buy_fee,
        sell_fee=sell_fee,
        total_fees=total_fees,
        withdrawal_fee=withdrawal_fee,
        gross_profit=gross,
        net_profit=net,
        net_profit_percent=net / size_usd * 100,
        executable=executable,
        execution_notes=notes,
        settlement_time=buy_schedule.get('withdrawal_time', '~30 min'),
    )


def analyze_arbitrage(books: Sequence[OrderBook], size_usd: float, current_price: float,
                      volume_30d: float = 0,
                      schedules: Mapping[str, Dict[str, Any]] = DEFAULT_FEE_SCHEDULES) -> ArbAnalysis:
    """
    Evaluates every ordered venue pair that shows a raw cross-venue spread.
    """
    require_positive_size(size_usd)
    opportunities: List[ArbPairAnalysis] = []
    for buy_book in books:
        for sell_book in books:
            if buy_book is sell_book or buy_book.exchange == sell_book.exchange:
                continue
            if sell_book.best_bid > buy_book.best_ask > 0:
                pair = analyze_arb_pair(buy_book, sell_book, size_usd, current_price, volume_30d, schedules)
                if pair:
                    opportunities.append(pair)

    opportunities.sort(key=lambda o: o.net_profit, reverse=True)

    spreads = [ob.spread_bps for ob in books]
    average_spread = sum(spreads) / len(spreads) if spreads else 0.0

    # Deepest book measured by notional resting within 0.1% of its best ask
    max_fillable = 0.0
    for ob in books:
        limit = ob.best_ask * (1 + LIQUIDITY_SLIPPAGE_BAND)
        fillable = sum(lvl.price * lvl.size for lvl in ob.asks if lvl.price <= limit)
        max_fillable = max(max_fillable, fillable)

    return ArbAnalysis(
        trade_size=size_usd,
        opportunities=opportunities,
        best_opportunity=next((o for o in opportunities if o.executable), None),
        exchange_count=len(books),
        average_spread_bps=average_spread,
        liquidity_score=min(100.0, max_fillable / LIQUIDITY_SCORE_NOTIONAL * 100),
    )
