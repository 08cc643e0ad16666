# market_gateway/config.py
import copy
import os
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .models import DataKind, RateLimitPolicy

# Requests per window, per upstream source.
# Sources without an entry use 'default'.
DEFAULT_RATE_LIMITS: Dict[str, Dict[str, float]] = {
    'binance': {'max_requests': 1200, 'window_seconds': 60},
    'bybit': {'max_requests': 120, 'window_seconds': 60},
    'okx': {'max_requests': 60, 'window_seconds': 60},
    'kraken': {'max_requests': 15, 'window_seconds': 60},
    'coinbase': {'max_requests': 10, 'window_seconds': 60},
    'kucoin': {'max_requests': 100, 'window_seconds': 60},
    'bitget': {'max_requests': 60, 'window_seconds': 60},
    'gateio': {'max_requests': 200, 'window_seconds': 60},
    'deribit': {'max_requests': 100, 'window_seconds': 60},
    'default': {'max_requests': 30, 'window_seconds': 60},
}

# Freshness window per data kind, in seconds.
DEFAULT_CACHE_TTL: Dict[str, float] = {
    'ticker': 2.0,
    'orderbook': 1.0,
    'funding': 30.0,
    'open_interest': 60.0,
    'positioning': 60.0,
}

# Taker/maker fees in basis points, tiered by 30d volume in USD.
DEFAULT_FEE_SCHEDULES: Dict[str, Dict[str, Any]] = {
    'binance': {
        'maker': 10, 'taker': 10,
        'volume_tiers': [
            {'volume': 0, 'maker': 10, 'taker': 10},
            {'volume': 1_000_000, 'maker': 9, 'taker': 10},
            {'volume': 5_000_000, 'maker': 8, 'taker': 9},
            {'volume': 20_000_000, 'maker': 7, 'taker': 8},
            {'volume': 100_000_000, 'maker': 5, 'taker': 6},
        ],
        'withdrawal_fee': 0.0005, 'withdrawal_time': '~30 min (on-chain)',
    },
    'bybit': {
        'maker': 10, 'taker': 10,
        'volume_tiers': [
            {'volume': 0, 'maker': 10, 'taker': 10},
            {'volume': 2_500_000, 'maker': 8, 'taker': 10},
            {'volume': 10_000_000, 'maker': 6, 'taker': 8},
        ],
        'withdrawal_fee': 0.0005, 'withdrawal_time': '~30 min (on-chain)',
    },
    'okx': {
        'maker': 8, 'taker': 10,
        'volume_tiers': [
            {'volume': 0, 'maker': 8, 'taker': 10},
            {'volume': 5_000_000, 'maker': 6, 'taker': 8},
            {'volume': 25_000_000, 'maker': 4, 'taker': 6},
        ],
        'withdrawal_fee': 0.0004, 'withdrawal_time': '~20 min (on-chain)',
    },
    'kucoin': {'maker': 10, 'taker': 10, 'withdrawal_fee': 0.0005, 'withdrawal_time': '~30 min (on-chain)'},
    'gateio': {'maker': 15, 'taker': 15, 'withdrawal_fee': 0.001, 'withdrawal_time': '~30 min (on-chain)'},
    'bitget': {'maker': 10, 'taker': 10, 'withdrawal_fee': 0.0006, 'withdrawal_time': '~30 min (on-chain)'},
    'kraken': {
        'maker': 16, 'taker': 26,
        'volume_tiers': [
            {'volume': 0, 'maker': 16, 'taker': 26},
            {'volume': 50_000, 'maker': 14, 'taker': 24},
            {'volume': 100_000, 'maker': 12, 'taker': 22},
            {'volume': 1_000_000, 'maker': 8, 'taker': 18},
        ],
        'withdrawal_fee': 0.00015, 'withdrawal_time': '~15 min (on-chain)',
    },
}

DEFAULT_CONFIG: Dict[str, Any] = {
    'rate_limits': DEFAULT_RATE_LIMITS,
    'cache': {
        'max_size': 1000,
        'ttl': DEFAULT_CACHE_TTL,
    },
    'fees': {
        'taker': 0.0005,  # 0.05%
        'maker': 0.0002,  # 0.02%
    },
    'fee_schedules': DEFAULT_FEE_SCHEDULES,
    'fetch': {
        'retry_delays': [1.0, 2.0, 5.0],
        'rate_limit_default_wait': 5.0,
        'request_timeout': 10.0,
        'user_agent': 'market-gateway/1.0',
        # Opt-in: statuses listed here fail without retry. Empty retries every non-2xx.
        'fatal_statuses': [],
    },
    'aggregator': {
        'sources': ['binance', 'bybit', 'okx', 'kucoin', 'gateio', 'bitget'],
        'timeout': 8.0,
        'orderbook_depth': 50,
    },
    'logging': {
        'level': 'INFO',
    },
    'audit': {
        'enabled': False,
        'fetch_log': 'logs/fetches.csv',
    },
    'dashboard': {
        'supported_symbols': ['BTC/USDT', 'ETH/USDT', 'SOL/USDT', 'XRP/USDT', 'DOGE/USDT'],
        'refresh_seconds': 2.0,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: Optional[str] = "config.yaml") -> Dict[str, Any]:
    """
    Reads the YAML file (if present) on top of DEFAULT_CONFIG and validates the result.
    """
    raw: Dict[str, Any] = {}
    if path and os.path.exists(path):
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigError(f"{path}: top level must be a mapping")
    config = _deep_merge(DEFAULT_CONFIG, raw)
    validate_config(config)
    return config


def validate_config(config: Dict[str, Any]) -> None:
    limits = config.get('rate_limits') or {}
    if 'default' not in limits:
        raise ConfigError("rate_limits must define a 'default' entry")
    for name, entry in limits.items():
        try:
            if int(entry['max_requests']) <= 0 or float(entry['window_seconds']) <= 0:
                raise ConfigError(f"rate_limits.{name}: values must be positive")
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"rate_limits.{name}: expected max_requests and window_seconds ({e})") from e

    cache = config['cache']
    if int(cache['max_size']) <= 0:
        raise ConfigError("cache.max_size must be positive")
    for kind in DataKind:
        if kind.value not in cache['ttl']:
            raise ConfigError(f"cache.ttl is missing an entry for '{kind.value}'")

    fees = config['fees']
    for side in ('taker', 'maker'):
        if not 0 <= float(fees[side]) < 1:
            raise ConfigError(f"fees.{side} must be a fraction, got {fees[side]}")

    delays = config['fetch']['retry_delays']
    if any(float(d) < 0 for d in delays):
        raise ConfigError("fetch.retry_delays must not be negative")

    if not config['aggregator']['sources']:
        raise ConfigError("aggregator.sources must list at least one source")


def rate_limit_policy(config: Dict[str, Any], source: str) -> RateLimitPolicy:
    limits = config['rate_limits']
    entry = limits.get(source, limits['default'])
    return RateLimitPolicy(source, int(entry['max_requests']), float(entry['window_seconds']))


def cache_ttl(config: Dict[str, Any], kind: DataKind) -> float:
    return float(config['cache']['ttl'][kind.value])
