# market_gateway/execution.py
import math
from typing import List, Mapping, Optional, Union

from .models import (
    ExecutionAnalysis, ExecutionRanking, LiquidityRating, OrderBook, Side, TrueSpread,
)

TAKER_FEE = 0.0005  # 0.05%
MAKER_FEE = 0.0002  # 0.02%

# (upper bound on slippage %, rating), checked in order
RATING_THRESHOLDS = (
    (0.1, LiquidityRating.EXCELLENT),
    (0.5, LiquidityRating.GOOD),
    (1.0, LiquidityRating.FAIR),
    (3.0, LiquidityRating.POOR),
)


def rate_liquidity(slippage_percent: float) -> LiquidityRating:
    for bound, rating in RATING_THRESHOLDS:
        if slippage_percent < bound:
            return rating
    return LiquidityRating.DANGEROUS


def _unfillable(symbol: str, side: Side, size: float, best: float, worst: float, warning: str) -> ExecutionAnalysis:
    return ExecutionAnalysis(
        symbol=symbol, side=side, size=size,
        market_price=best, average_price=0.0, worst_price=worst,
        value=size * best, cost=math.inf, fees=0.0,
        slippage=math.inf, slippage_percent=math.inf,
        price_impact=100.0, depth_consumed=100.0,
        liquidity_rating=LiquidityRating.DANGEROUS,
        warning=warning,
    )


def analyze_execution(orderbook: OrderBook, size: float, side: Union[Side, str],
                      fee_rate: float = TAKER_FEE, symbol: Optional[str] = None) -> ExecutionAnalysis:
    """
    Walks one side of the book to price a market order of `size` (base asset).

    A buy eats asks from the lowest price up, a sell eats bids from the
    highest price down. A book too thin for the whole size yields an
    "insufficient liquidity" result with infinite cost rather than a
    partial fill.
    """
    side = Side(side)
    if size <= 0:
        raise ValueError(f"size must be positive, got {size}")
    symbol = symbol or orderbook.symbol
    levels = orderbook.asks if side is Side.BUY else orderbook.bids

    if not levels:
        return _unfillable(symbol, side, size, 0.0, 0.0, "Empty orderbook")

    best_price = levels[0].price
    remaining = size
    total_cost = 0.0
    touched = 0
    worst_price = best_price

    for level in levels:
        fill = min(remaining, level.size)
        total_cost += fill * level.price
        remaining -= fill
        worst_price = level.price
        touched += 1
        if remaining <= 0:
            break

    if remaining > 0:
        return _unfillable(symbol, side, size, best_price, worst_price,
                           f"Insufficient liquidity. Filled {size - remaining:.4f} / {size}")

    average_price = total_cost / size
    nominal = size * best_price
    # Positive slippage is always a cost to the taker.
    slippage = total_cost - nominal if side is Side.BUY else nominal - total_cost
    slippage_percent = abs(average_price - best_price) / best_price * 100
    fees = total_cost * fee_rate
    rating = rate_liquidity(slippage_percent)

    return ExecutionAnalysis(
        symbol=symbol,
        side=side,
        size=size,
        market_price=best_price,
        average_price=average_price,
        worst_price=worst_price,
        value=nominal,
        cost=slippage + fees,
        fees=fees,
        slippage=slippage,
        slippage_percent=slippage_percent,
        price_impact=abs(worst_price - best_price) / best_price * 100,
        depth_consumed=touched / len(levels) * 100,
        liquidity_rating=rating,
        warning="High slippage warning!" if rating is LiquidityRating.DANGEROUS else None,
    )


def compare_execution(books: Mapping[str, OrderBook], size: float, side: Union[Side, str],
                      fee_rate: float = TAKER_FEE) -> List[ExecutionRanking]:
    """
    Prices the same order on every venue and ranks them, best first.
    Venues that cannot fill the size rank last. Equal average prices share a rank.
    """
    side = Side(side)
    analyses = [(name, analyze_execution(book, size, side, fee_rate)) for name, book in books.items()]

    filled = [a for a in analyses if a[1].filled]
    unfilled = [a for a in analyses if not a[1].filled]
    filled.sort(key=lambda a: a[1].average_price, reverse=side is Side.SELL)

    rankings: List[ExecutionRanking] = []
    rank = 0
    previous = None
    for name, analysis in filled:
        if analysis.average_price != previous:
            rank += 1
            previous = analysis.average_price
        rankings.append(ExecutionRanking(name, analysis, rank))
    if unfilled:
        rank += 1
        rankings.extend(ExecutionRanking(name, analysis, rank) for name, analysis in unfilled)
    return rankings


def calculate_true_spread(bid: float, ask: float, taker_fee: float = TAKER_FEE) -> TrueSpread:
    """
    Spread left after paying the taker fee twice (in and out).
    Same-venue top-of-book spreads are normally eaten by fees.
    """
    if ask <= 0:
        raise ValueError(f"ask must be positive, got {ask}")
    spread = ask - bid
    spread_percent = spread / ask * 100
    round_trip = taker_fee * 2 * 100
    net = spread_percent - round_trip
    return TrueSpread(
        spread=spread,
        spread_percent=spread_percent,
        round_trip_fee_percent=round_trip,
        net_spread_percent=net,
        is_profitable=net > 0,
        min_move_to_profit=round_trip,
    )
