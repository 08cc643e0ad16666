# market_gateway/adapters.py
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Type
from urllib.parse import urlencode

from .config import cache_ttl
from .errors import ParseError, UnknownSourceError
from .models import (
    DataKind, FundingRate, Instrument, NormalizedTicker, OpenInterest, OrderBook, OrderBookLevel,
    PositioningRatio, RequestDescriptor,
)


def safe_float(value: Any, fallback: float = 0.0) -> float:
    if value is None or value == "":
        return fallback
    try:
        return float(value)
    except (TypeError, ValueError):
        return fallback


def parse_levels(rows: Iterable[Any], descending: bool) -> List[OrderBookLevel]:
    """
    [[price, size, ...], ...] -> sorted levels. Empty levels are dropped.
    """
    levels = []
    for row in rows:
        price, size = float(row[0]), float(row[1])
        if price > 0 and size > 0:
            levels.append(OrderBookLevel(price, size))
    levels.sort(key=lambda lvl: lvl.price, reverse=descending)
    return levels


def _first(items: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(items, list) or not items:
        raise ParseError(f"empty {what} list")
    return items[0]


class SourceAdapter:
    """
    One upstream exchange. Knows its URLs and maps its raw JSON into the
    normalized shapes; schema and unit differences end here.
    """
    name = ""
    kinds = (DataKind.TICKER, DataKind.ORDERBOOK, DataKind.FUNDING)

    def __init__(self, config: dict):
        self.cfg = config

    # --- per-source hooks ---

    def format_symbol(self, inst: Instrument) -> str:
        return inst.joined()

    def ticker_url(self, inst: Instrument) -> str:
        raise NotImplementedError

    def parse_ticker(self, data: Any, inst: Instrument) -> NormalizedTicker:
        raise NotImplementedError

    def orderbook_url(self, inst: Instrument, depth: int) -> str:
        raise NotImplementedError

    def parse_orderbook(self, data: Any, inst: Instrument) -> OrderBook:
        raise NotImplementedError

    def funding_url(self, inst: Instrument) -> str:
        raise NotImplementedError

    def parse_funding(self, data: Any, inst: Instrument) -> FundingRate:
        raise NotImplementedError

    def open_interest_url(self, inst: Instrument) -> str:
        raise NotImplementedError

    def parse_open_interest(self, data: Any, inst: Instrument) -> OpenInterest:
        raise NotImplementedError

    def positioning_url(self, inst: Instrument) -> str:
        raise NotImplementedError

    def parse_positioning(self, data: Any, inst: Instrument) -> PositioningRatio:
        raise NotImplementedError

    # --- descriptors ---

    def _describe(self, kind: DataKind, url: str, parser: Callable[[Any], Any],
                  retryable: bool = True) -> RequestDescriptor:
        return RequestDescriptor(
            url=url,
            source=self.name,
            cache_key=f"{self.name}:{kind.value}:{url}",
            ttl=cache_ttl(self.cfg, kind),
            kind=kind,
            retryable=retryable,
            parser=parser,
        )

    def ticker_request(self, inst: Instrument, retryable: bool = True) -> RequestDescriptor:
        return self._describe(DataKind.TICKER, self.ticker_url(inst),
                              lambda data: self.parse_ticker(data, inst), retryable)

    def orderbook_request(self, inst: Instrument, depth: int = 50, retryable: bool = True) -> RequestDescriptor:
        return self._describe(DataKind.ORDERBOOK, self.orderbook_url(inst, depth),
                              lambda data: self.parse_orderbook(data, inst), retryable)

    def funding_request(self, inst: Instrument, retryable: bool = True) -> RequestDescriptor:
        return self._describe(DataKind.FUNDING, self.funding_url(inst),
                              lambda data: self.parse_funding(data, inst), retryable)

    def open_interest_request(self, inst: Instrument, retryable: bool = True) -> RequestDescriptor:
        return self._describe(DataKind.OPEN_INTEREST, self.open_interest_url(inst),
                              lambda data: self.parse_open_interest(data, inst), retryable)

    def positioning_request(self, inst: Instrument, retryable: bool = True) -> RequestDescriptor:
        return self._describe(DataKind.POSITIONING, self.positioning_url(inst),
                              lambda data: self.parse_positioning(data, inst), retryable)

    def request(self, kind: DataKind, params: Mapping[str, Any]) -> RequestDescriptor:
        """
        Generic entry used by MarketEngine.fetch_one.
        params: symbol (required), depth (orderbook), retryable.
        """
        if kind not in self.kinds:
            raise ValueError(f"{self.name} does not serve {kind.value} data")
        inst = Instrument.parse(params['symbol'])
        retryable = bool(params.get('retryable', True))
        if kind is DataKind.ORDERBOOK:
            return self.orderbook_request(inst, int(params.get('depth', 50)), retryable)
        builders = {
            DataKind.TICKER: self.ticker_request,
            DataKind.FUNDING: self.funding_request,
            DataKind.OPEN_INTEREST: self.open_interest_request,
            DataKind.POSITIONING: self.positioning_request,
        }
        return builders[kind](inst, retryable)

    def _ticker(self, last, bid, ask, volume, change_pct, high, low) -> NormalizedTicker:
        price = safe_float(last)
        if price <= 0:
            raise ParseError(f"{self.name}: ticker without a last price")
        return NormalizedTicker(
            exchange=self.name,
            price=price,
            bid=safe_float(bid),
            ask=safe_float(ask),
            volume_24h=safe_float(volume),
            change_24h=change_pct,
            high_24h=safe_float(high),
            low_24h=safe_float(low),
            timestamp=time.time(),
        )

    def _book(self, inst: Instrument, bids: Any, asks: Any) -> OrderBook:
        if bids is None or asks is None:
            raise ParseError(f"{self.name}: orderbook without bids/asks")
        return OrderBook(
            exchange=self.name,
            symbol=str(inst),
            bids=parse_levels(bids, descending=True),
            asks=parse_levels(asks, descending=False),
            timestamp=time.time(),
        )

    def _funding(self, inst: Instrument, rate: Any, next_time_ms: Any) -> FundingRate:
        if rate is None or rate == "":
            raise ParseError(f"{self.name}: funding payload without a rate")
        return FundingRate(
            exchange=self.name,
            symbol=str(inst),
            rate=float(rate),
            next_funding_time=safe_float(next_time_ms) / 1000,
            timestamp=time.time(),
        )

    def _open_interest(self, inst: Instrument, amount: Any, value: Any = None) -> OpenInterest:
        base_amount = safe_float(amount, -1.0)
        if base_amount < 0:
            raise ParseError(f"{self.name}: open interest payload without an amount")
        return OpenInterest(
            exchange=self.name,
            symbol=str(inst),
            amount=base_amount,
            value=safe_float(value),
            timestamp=time.time(),
        )

    def _positioning(self, inst: Instrument, long_ratio: Any, short_ratio: Any) -> PositioningRatio:
        longs, shorts = safe_float(long_ratio, -1.0), safe_float(short_ratio, -1.0)
        if longs < 0 or shorts < 0:
            raise ParseError(f"{self.name}: positioning payload without long/short ratios")
        return PositioningRatio(
            exchange=self.name,
            symbol=str(inst),
            long_ratio=longs,
            short_ratio=shorts,
            timestamp=time.time(),
        )


class BinanceAdapter(SourceAdapter):
    name = "binance"
    kinds = tuple(DataKind)
    SPOT = "https://api.binance.com/api/v3"
    FUTURES = "https://fapi.binance.com/fapi/v1"

    def ticker_url(self, inst):
        return f"{self.SPOT}/ticker/24hr?{urlencode({'symbol': self.format_symbol(inst)})}"

    def parse_ticker(self, data, inst):
        if 'lastPrice' not in data:
            raise ParseError(f"binance: {data.get('msg', 'unexpected ticker payload')}")
        # priceChangePercent is already a percentage
        return self._ticker(data['lastPrice'], data.get('bidPrice'), data.get('askPrice'), data.get('volume'),
                            safe_float(data.get('priceChangePercent')), data.get('highPrice'), data.get('lowPrice'))

    def orderbook_url(self, inst, depth):
        return f"{self.SPOT}/depth?{urlencode({'symbol': self.format_symbol(inst), 'limit': depth})}"

    def parse_orderbook(self, data, inst):
        return self._book(inst, data.get('bids'), data.get('asks'))

    def funding_url(self, inst):
        return f"{self.FUTURES}/premiumIndex?{urlencode({'symbol': self.format_symbol(inst)})}"

    def parse_funding(self, data, inst):
        return self._funding(inst, data.get('lastFundingRate'), data.get('nextFundingTime'))

    def open_interest_url(self, inst):
        return f"{self.FUTURES}/openInterest?{urlencode({'symbol': self.format_symbol(inst)})}"

    def parse_open_interest(self, data, inst):
        # Base-asset amount only; the value comes from the ticker price
        return self._open_interest(inst, data.get('openInterest'))

    def positioning_url(self, inst):
        query = {'symbol': self.format_symbol(inst), 'period': '1h', 'limit': 1}
        return f"https://fapi.binance.com/futures/data/globalLongShortAccountRatio?{urlencode(query)}"

    def parse_positioning(self, data, inst):
        r = _first(data, 'binance long/short ratio')
        return self._positioning(inst, r.get('longAccount'), r.get('shortAccount'))


class BybitAdapter(SourceAdapter):
    name = "bybit"
    kinds = tuple(DataKind)
    BASE = "https://api.bybit.com/v5/market"

    def _result(self, data):
        if data.get('retCode') != 0:
            raise ParseError(f"bybit: retCode={data.get('retCode')} {data.get('retMsg', '')}")
        return data['result']

    def ticker_url(self, inst):
        return f"{self.BASE}/tickers?{urlencode({'category': 'spot', 'symbol': self.format_symbol(inst)})}"

    def parse_ticker(self, data, inst):
        t = _first(self._result(data).get('list'), 'bybit ticker')
        # price24hPcnt is a fraction
        return self._ticker(t.get('lastPrice'), t.get('bid1Price'), t.get('ask1Price'), t.get('volume24h'),
                            safe_float(t.get('price24hPcnt')) * 100, t.get('highPrice24h'), t.get('lowPrice24h'))

    def orderbook_url(self, inst, depth):
        query = {'category': 'spot', 'symbol': self.format_symbol(inst), 'limit': min(depth, 200)}
        return f"{self.BASE}/orderbook?{urlencode(query)}"

    def parse_orderbook(self, data, inst):
        result = self._result(data)
        return self._book(inst, result.get('b'), result.get('a'))

    def funding_url(self, inst):
        return f"{self.BASE}/tickers?{urlencode({'category': 'linear', 'symbol': self.format_symbol(inst)})}"

    def parse_funding(self, data, inst):
        t = _first(self._result(data).get('list'), 'bybit linear ticker')
        return self._funding(inst, t.get('fundingRate'), t.get('nextFundingTime'))

    def open_interest_url(self, inst):
        query = {'category': 'linear', 'symbol': self.format_symbol(inst), 'intervalTime': '5min', 'limit': 1}
        return f"{self.BASE}/open-interest?{urlencode(query)}"

    def parse_open_interest(self, data, inst):
        row = _first(self._result(data).get('list'), 'bybit open interest')
        return self._open_interest(inst, row.get('openInterest'))

    def positioning_url(self, inst):
        query = {'category': 'linear', 'symbol': self.format_symbol(inst), 'period': '1h', 'limit': 1}
        return f"{self.BASE}/account-ratio?{urlencode(query)}"

    def parse_positioning(self, data, inst):
        row = _first(self._result(data).get('list'), 'bybit account ratio')
        return self._positioning(inst, row.get('buyRatio'), row.get('sellRatio'))


class OkxAdapter(SourceAdapter):
    name = "okx"
    kinds = (DataKind.TICKER, DataKind.ORDERBOOK, DataKind.FUNDING, DataKind.OPEN_INTEREST)
    BASE = "https://www.okx.com/api/v5"

    def format_symbol(self, inst):
        return inst.joined("-")

    def _data(self, data):
        if data.get('code') != "0":
            raise ParseError(f"okx: code={data.get('code')} {data.get('msg', '')}")
        return data.get('data')

    def ticker_url(self, inst):
        return f"{self.BASE}/market/ticker?{urlencode({'instId': self.format_symbol(inst)})}"

    def parse_ticker(self, data, inst):
        t = _first(self._data(data), 'okx ticker')
        last, open_24h = safe_float(t.get('last')), safe_float(t.get('open24h'))
        # OKX has no change field; derive it from the 24h open.
        change = (last - open_24h) / open_24h * 100 if open_24h > 0 else 0.0
        return self._ticker(t.get('last'), t.get('bidPx'), t.get('askPx'), t.get('vol24h'),
                            change, t.get('high24h'), t.get('low24h'))

    def orderbook_url(self, inst, depth):
        return f"{self.BASE}/market/books?{urlencode({'instId': self.format_symbol(inst), 'sz': min(depth, 400)})}"

    def parse_orderbook(self, data, inst):
        book = _first(self._data(data), 'okx book')
        return self._book(inst, book.get('bids'), book.get('asks'))

    def funding_url(self, inst):
        return f"{self.BASE}/public/funding-rate?{urlencode({'instId': self.format_symbol(inst) + '-SWAP'})}"

    def parse_funding(self, data, inst):
        f = _first(self._data(data), 'okx funding')
        return self._funding(inst, f.get('fundingRate'), f.get('nextFundingTime') or f.get('fundingTime'))

    def open_interest_url(self, inst):
        query = {'instType': 'SWAP', 'instId': self.format_symbol(inst) + '-SWAP'}
        return f"{self.BASE}/public/open-interest?{urlencode(query)}"

    def parse_open_interest(self, data, inst):
        # oi is in contracts; oiCcy is the base amount
        row = _first(self._data(data), 'okx open interest')
        return self._open_interest(inst, row.get('oiCcy'), row.get('oiUsd'))


class KucoinAdapter(SourceAdapter):
    name = "kucoin"
    BASE = "https://api.kucoin.com/api/v1"
    FUTURES = "https://api-futures.kucoin.com/api/v1"

    def format_symbol(self, inst):
        return inst.joined("-")

    def _data(self, data):
        if data.get('code') != "200000":
            raise ParseError(f"kucoin: code={data.get('code')} {data.get('msg', '')}")
        if not data.get('data'):
            raise ParseError("kucoin: empty data")
        return data['data']

    def ticker_url(self, inst):
        return f"{self.BASE}/market/stats?{urlencode({'symbol': self.format_symbol(inst)})}"

    def parse_ticker(self, data, inst):
        t = self._data(data)
        # changeRate is a fraction
        return self._ticker(t.get('last'), t.get('buy'), t.get('sell'), t.get('vol'),
                            safe_float(t.get('changeRate')) * 100, t.get('high'), t.get('low'))

    def orderbook_url(self, inst, depth):
        level = "level2_20" if depth <= 20 else "level2_100"
        return f"{self.BASE}/market/orderbook/{level}?{urlencode({'symbol': self.format_symbol(inst)})}"

    def parse_orderbook(self, data, inst):
        book = self._data(data)
        return self._book(inst, book.get('bids'), book.get('asks'))

    def funding_url(self, inst):
        # Futures contracts are named XBTUSDTM, ETHUSDTM, ...
        base = "XBT" if inst.base == "BTC" else inst.base
        return f"{self.FUTURES}/funding-rate/{base}{inst.quote}M/current"

    def parse_funding(self, data, inst):
        f = self._data(data)
        next_time = safe_float(f.get('timePoint')) + safe_float(f.get('granularity'))
        return self._funding(inst, f.get('value'), next_time)


class GateioAdapter(SourceAdapter):
    name = "gateio"
    BASE = "https://api.gateio.ws/api/v4"

    def format_symbol(self, inst):
        return inst.joined("_")

    def ticker_url(self, inst):
        return f"{self.BASE}/spot/tickers?{urlencode({'currency_pair': self.format_symbol(inst)})}"

    def parse_ticker(self, data, inst):
        t = _first(data, 'gateio ticker')
        # change_percentage is already a percentage
        return self._ticker(t.get('last'), t.get('highest_bid'), t.get('lowest_ask'), t.get('base_volume'),
                            safe_float(t.get('change_percentage')), t.get('high_24h'), t.get('low_24h'))

    def orderbook_url(self, inst, depth):
        return f"{self.BASE}/spot/order_book?{urlencode({'currency_pair': self.format_symbol(inst), 'limit': depth})}"

    def parse_orderbook(self, data, inst):
        return self._book(inst, data.get('bids'), data.get('asks'))

    def funding_url(self, inst):
        return f"{self.BASE}/futures/{inst.quote.lower()}/contracts/{self.format_symbol(inst)}"

    def parse_funding(self, data, inst):
        # funding_next_apply is in seconds
        return self._funding(inst, data.get('funding_rate'), safe_float(data.get('funding_next_apply')) * 1000)


class BitgetAdapter(SourceAdapter):
    name = "bitget"
    BASE = "https://api.bitget.com/api/v2"

    def _data(self, data):
        if data.get('code') != "00000":
            raise ParseError(f"bitget: code={data.get('code')} {data.get('msg', '')}")
        return data.get('data')

    def ticker_url(self, inst):
        return f"{self.BASE}/spot/market/tickers?{urlencode({'symbol': self.format_symbol(inst)})}"

    def parse_ticker(self, data, inst):
        t = _first(self._data(data), 'bitget ticker')
        # change24h is a fraction
        return self._ticker(t.get('lastPr'), t.get('bidPr'), t.get('askPr'), t.get('baseVolume'),
                            safe_float(t.get('change24h')) * 100, t.get('high24h'), t.get('low24h'))

    def orderbook_url(self, inst, depth):
        query = {'symbol': self.format_symbol(inst), 'type': 'step0', 'limit': min(depth, 150)}
        return f"{self.BASE}/spot/market/orderbook?{urlencode(query)}"

    def parse_orderbook(self, data, inst):
        book = self._data(data)
        if not isinstance(book, dict):
            raise ParseError("bitget: orderbook payload is not an object")
        return self._book(inst, book.get('bids'), book.get('asks'))

    def funding_url(self, inst):
        query = {'symbol': self.format_symbol(inst), 'productType': f"{inst.quote.lower()}-futures"}
        return f"{self.BASE}/mix/market/current-fund-rate?{urlencode(query)}"

    def parse_funding(self, data, inst):
        f = _first(self._data(data), 'bitget funding')
        return self._funding(inst, f.get('fundingRate'), f.get('nextUpdate'))


ADAPTERS: Dict[str, Type[SourceAdapter]] = {
    cls.name: cls
    for cls in (BinanceAdapter, BybitAdapter, OkxAdapter, KucoinAdapter, GateioAdapter, BitgetAdapter)
}


def build_adapters(config: dict, names: Optional[Iterable[str]] = None) -> Dict[str, SourceAdapter]:
    """
    Instantiates one adapter per configured source, keeping configuration order.
    """
    names = list(names if names is not None else config['aggregator']['sources'])
    adapters = {}
    for name in names:
        if name not in ADAPTERS:
            raise UnknownSourceError(name)
        adapters[name] = ADAPTERS[name](config)
    return adapters
