"""
Test doubles for the HTTP layer and the clock.

FakeSession mimics the slice of aiohttp.ClientSession the gateway uses:
`session.get(url, ...)` returning an async context manager around a
response with `status`, `headers`, `reason` and `await json()`.
"""

import asyncio
from typing import Any, Dict, List, Optional


class ManualClock:
    """
    Monotonic clock that only moves when told to. `sleep` advances it
    instantly and records the requested delay.
    """
    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class BlockingSleep:
    """
    Sleep that records the delay and then never returns, so a test can
    cancel the caller while it is parked in a wait.
    """
    def __init__(self):
        self.sleeps: List[float] = []
        self.entered = asyncio.Event()

    async def __call__(self, seconds: float):
        self.sleeps.append(seconds)
        self.entered.set()
        await asyncio.sleep(3600)


class FakeResponse:
    def __init__(self, status: int = 200, body: Any = None, headers: Optional[Dict[str, str]] = None,
                 reason: str = "", invalid_json: bool = False):
        self.status = status
        self.body = body
        self.headers = headers or {}
        self.reason = reason or ("OK" if status == 200 else "")
        self.invalid_json = invalid_json

    async def json(self, content_type=None):
        if self.invalid_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self.body


def ok(body: Any) -> FakeResponse:
    return FakeResponse(200, body)


def status(code: int, **kwargs) -> FakeResponse:
    return FakeResponse(code, None, **kwargs)


class Hang:
    """Response that never arrives. `entered` is set once a request is waiting on it."""
    def __init__(self):
        self.entered = asyncio.Event()

    async def __call__(self):
        self.entered.set()
        await asyncio.sleep(3600)


class _RequestContext:
    def __init__(self, item: Any):
        self._item = item

    async def __aenter__(self):
        item = self._item
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = await item()
        return item

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """
    Routes by URL fragment. Each route holds a script of responses that is
    consumed in order; the last item repeats forever. Unrouted URLs get 404.
    """
    def __init__(self):
        self.routes: List[List[Any]] = []
        self.calls: List[str] = []
        self.closed = False

    def add(self, fragment: str, *items: Any) -> "FakeSession":
        self.routes.append([fragment, list(items)])
        return self

    def get(self, url: str, headers=None, timeout=None):
        self.calls.append(url)
        for fragment, items in self.routes:
            if fragment in url:
                item = items.pop(0) if len(items) > 1 else items[0]
                return _RequestContext(item)
        return _RequestContext(FakeResponse(404, reason="Not Found"))

    def calls_to(self, fragment: str) -> int:
        return sum(1 for url in self.calls if fragment in url)

    async def close(self):
        self.closed = True


# --- upstream payloads ---

def binance_ticker(last, bid, ask, volume=1000.0, change_pct=1.5):
    return {
        'symbol': 'BTCUSDT', 'lastPrice': str(last), 'bidPrice': str(bid), 'askPrice': str(ask),
        'volume': str(volume), 'priceChangePercent': str(change_pct),
        'highPrice': str(last * 1.02), 'lowPrice': str(last * 0.98),
    }


def bybit_ticker(last, bid, ask, volume=500.0, change_fraction=0.015):
    return {
        'retCode': 0, 'retMsg': 'OK',
        'result': {'category': 'spot', 'list': [{
            'symbol': 'BTCUSDT', 'lastPrice': str(last), 'bid1Price': str(bid), 'ask1Price': str(ask),
            'volume24h': str(volume), 'price24hPcnt': str(change_fraction),
            'highPrice24h': str(last * 1.02), 'lowPrice24h': str(last * 0.98),
        }]},
    }


def okx_ticker(last, bid, ask, volume=250.0, open_24h=None):
    return {
        'code': '0', 'msg': '',
        'data': [{
            'instId': 'BTC-USDT', 'last': str(last), 'bidPx': str(bid), 'askPx': str(ask),
            'vol24h': str(volume), 'open24h': str(open_24h or last),
            'high24h': str(last * 1.02), 'low24h': str(last * 0.98),
        }],
    }


def binance_book(bids, asks):
    return {'lastUpdateId': 1, 'bids': [[str(p), str(s)] for p, s in bids],
            'asks': [[str(p), str(s)] for p, s in asks]}


def bybit_book(bids, asks):
    return {'retCode': 0, 'retMsg': 'OK', 'result': {
        's': 'BTCUSDT', 'b': [[str(p), str(s)] for p, s in bids], 'a': [[str(p), str(s)] for p, s in asks]}}


def okx_book(bids, asks):
    return {'code': '0', 'msg': '', 'data': [{
        'bids': [[str(p), str(s), '0', '1'] for p, s in bids],
        'asks': [[str(p), str(s), '0', '1'] for p, s in asks]}]}


def binance_funding(rate):
    return {'symbol': 'BTCUSDT', 'lastFundingRate': str(rate), 'nextFundingTime': 1700003600000}


def bybit_funding(rate):
    return {'retCode': 0, 'retMsg': 'OK', 'result': {'category': 'linear', 'list': [
        {'symbol': 'BTCUSDT', 'fundingRate': str(rate), 'nextFundingTime': '1700003600000'}]}}


def okx_funding(rate):
    return {'code': '0', 'msg': '', 'data': [
        {'instId': 'BTC-USDT-SWAP', 'fundingRate': str(rate), 'nextFundingTime': '1700003600000'}]}


def binance_open_interest(amount):
    return {'symbol': 'BTCUSDT', 'openInterest': str(amount), 'time': 1700000000000}


def bybit_open_interest(amount):
    return {'retCode': 0, 'retMsg': 'OK', 'result': {'category': 'linear', 'symbol': 'BTCUSDT', 'list': [
        {'openInterest': str(amount), 'timestamp': '1700000000000'}]}}


def okx_open_interest(contracts, amount, value):
    return {'code': '0', 'msg': '', 'data': [{
        'instType': 'SWAP', 'instId': 'BTC-USDT-SWAP',
        'oi': str(contracts), 'oiCcy': str(amount), 'oiUsd': str(value), 'ts': '1700000000000'}]}


def binance_positioning(long_ratio, short_ratio):
    return [{'symbol': 'BTCUSDT', 'longShortRatio': str(long_ratio / short_ratio),
             'longAccount': str(long_ratio), 'shortAccount': str(short_ratio), 'timestamp': 1700000000000}]


def bybit_positioning(buy_ratio, sell_ratio):
    return {'retCode': 0, 'retMsg': 'OK', 'result': {'list': [
        {'symbol': 'BTCUSDT', 'buyRatio': str(buy_ratio), 'sellRatio': str(sell_ratio), 'timestamp': '1700000000000'}]}}
