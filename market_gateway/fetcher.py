# market_gateway/fetcher.py
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp

from .cache import ResponseCache
from .errors import (
    Fatal, FetchError, Ok, Outcome, ParseError, RateLimited, Retryable, UpstreamHTTPError,
)
from .logger import AsyncAuditLogger
from .models import RequestDescriptor, SourceHealth
from .rate_limiter import RateLimiter


class FetchOrchestrator:
    """
    Produces the payload of a RequestDescriptor.

    Pipeline per call, strictly in order: cache lookup -> rate-limit admission
    -> HTTP GET -> parse -> cache store. A cache hit costs no upstream quota.
    HTTP 429 waits out the upstream's Retry-After hint and repeats the same
    attempt; every other failure consumes one slot of the retry budget.
    """
    def __init__(self, session: aiohttp.ClientSession, limiter: RateLimiter, cache: ResponseCache,
                 config: dict, logger: logging.Logger, audit: Optional[AsyncAuditLogger] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.session = session
        self.limiter = limiter
        self.cache = cache
        self.logger = logger
        self.audit = audit
        self._sleep = sleep

        fetch_cfg = config['fetch']
        self.retry_delays: List[float] = [float(d) for d in fetch_cfg['retry_delays']]
        self.rate_limit_default_wait = float(fetch_cfg['rate_limit_default_wait'])
        self.fatal_statuses = set(fetch_cfg.get('fatal_statuses', []))
        self.timeout = aiohttp.ClientTimeout(total=float(fetch_cfg['request_timeout']))
        self.headers = {
            'Accept': 'application/json',
            'User-Agent': fetch_cfg['user_agent'],
        }
        self._health: Dict[str, SourceHealth] = {}

    def _source_health(self, source: str) -> SourceHealth:
        if source not in self._health:
            self._health[source] = SourceHealth(source)
        return self._health[source]

    async def fetch(self, desc: RequestDescriptor) -> Any:
        health = self._source_health(desc.source)
        health.requests += 1

        cached = self.cache.get(desc.cache_key)
        if cached is not None:
            health.cache_hits += 1
            return cached

        max_attempts = 1 + len(self.retry_delays) if desc.retryable else 1
        attempts = 0
        last_cause: Optional[BaseException] = None
        started = time.monotonic()

        try:
            while attempts < max_attempts:
                await self.limiter.acquire(desc.source)
                outcome = await self._attempt(desc)

                if isinstance(outcome, Ok):
                    self.cache.set(desc.cache_key, outcome.payload, desc.ttl)
                    self._record(desc, health, started, attempts + 1, None)
                    return outcome.payload

                if isinstance(outcome, RateLimited):
                    # Does not consume retry budget.
                    health.rate_limited += 1
                    self.logger.warning(f"🚦 {desc.source} returned 429, retrying in {outcome.retry_after:.1f}s")
                    await self._sleep(outcome.retry_after)
                    continue

                attempts += 1
                last_cause = outcome.cause
                if isinstance(outcome, Fatal):
                    self.logger.warning(f"❌ {desc.source} fatal failure, not retrying: {outcome.cause}")
                    break

                self.logger.warning(f"⚠️ {desc.source} attempt {attempts}/{max_attempts} failed: {outcome.cause}")
                if attempts < max_attempts:
                    await self._sleep(self.retry_delays[attempts - 1])
        except asyncio.CancelledError:
            self._audit(desc, 'cancelled', attempts, started)
            raise

        self._record(desc, health, started, attempts, last_cause)
        raise FetchError(desc.source, desc.cache_key, attempts, last_cause)

    async def _attempt(self, desc: RequestDescriptor) -> Outcome:
        """
        One HTTP round trip, classified into a tagged outcome.
        """
        try:
            async with self.session.get(desc.url, headers=self.headers, timeout=self.timeout) as resp:
                if resp.status == 429:
                    return RateLimited(self._retry_after(resp.headers.get('Retry-After')))
                if not 200 <= resp.status < 300:
                    error = UpstreamHTTPError(resp.status, resp.reason or "")
                    if resp.status in self.fatal_statuses:
                        return Fatal(error)
                    return Retryable(error)
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return Retryable(e)
        except ValueError as e:
            return Retryable(ParseError(f"Invalid JSON from {desc.source}: {e}"))

        if desc.parser is None:
            return Ok(body)
        try:
            return Ok(desc.parser(body))
        except ParseError as e:
            return Retryable(e)
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as e:
            return Retryable(ParseError(f"Unexpected {desc.kind.value} shape from {desc.source}: {e!r}"))

    def _retry_after(self, header: Optional[str]) -> float:
        if header:
            try:
                return max(0.0, float(header))
            except ValueError:
                pass
        return self.rate_limit_default_wait

    def _record(self, desc: RequestDescriptor, health: SourceHealth, started: float,
                attempts: int, error: Optional[BaseException]):
        health.last_latency_ms = (time.monotonic() - started) * 1000
        if error is None:
            health.successes += 1
            health.last_success_at = time.time()
            self._audit(desc, 'ok', attempts, started)
        else:
            health.failures += 1
            health.last_error = str(error)
            self._audit(desc, 'failed', attempts, started)

    def _audit(self, desc: RequestDescriptor, outcome: str, attempts: int, started: float):
        if self.audit is None:
            return
        self.audit.log([
            datetime.now(timezone.utc).isoformat(), desc.source, desc.kind.value, desc.cache_key,
            outcome, attempts, round((time.monotonic() - started) * 1000, 1),
        ])

    async def fetch_all(self, descriptors: Sequence[RequestDescriptor]) -> List[Optional[Any]]:
        """
        Fetches every descriptor concurrently; failed ones come back as None.
        """
        results = await asyncio.gather(*(self.fetch(d) for d in descriptors), return_exceptions=True)
        out: List[Optional[Any]] = []
        for desc, res in zip(descriptors, results):
            if isinstance(res, BaseException):
                self.logger.debug(f"{desc.source}: {res}")
                out.append(None)
            else:
                out.append(res)
        return out

    def health(self) -> Dict[str, SourceHealth]:
        return dict(self._health)
