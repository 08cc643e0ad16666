# market_gateway/rate_limiter.py
import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict

from .config import rate_limit_policy
from .models import RateLimitPolicy

# Added to every computed wait so the oldest stamp has left the window on wake-up.
WAIT_EPSILON = 0.01


class SlidingWindow:
    """
    Admission window of a single source.
    Keeps the timestamps of admitted requests inside the trailing window.
    """
    def __init__(self, policy: RateLimitPolicy, clock: Callable[[], float],
                 sleep: Callable[[float], Awaitable[None]]):
        self.policy = policy
        self._clock = clock
        self._sleep = sleep
        self._stamps: Deque[float] = deque()
        self._lock = asyncio.Lock()
        self.admitted_total = 0

    def _prune(self, now: float):
        cutoff = now - self.policy.window_seconds
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()

    def wait_time(self) -> float:
        """Seconds until a slot frees up, 0 if one is available now."""
        now = self._clock()
        self._prune(now)
        if len(self._stamps) < self.policy.max_requests:
            return 0.0
        return self.policy.window_seconds - (now - self._stamps[0]) + WAIT_EPSILON

    async def acquire(self) -> float:
        """
        Reserves one slot, suspending while the window is saturated.
        Returns the total time spent waiting.
        """
        waited = 0.0
        # Held across the sleep: waiters are admitted one by one, in arrival order.
        async with self._lock:
            while True:
                delay = self.wait_time()
                if delay <= 0:
                    self._stamps.append(self._clock())
                    self.admitted_total += 1
                    return waited
                await self._sleep(delay)
                waited += delay

    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._stamps)


class RateLimiter:
    """
    Per-source admission control. Queues callers instead of rejecting them:
    acquire() always returns eventually, holding a reserved slot.
    """
    def __init__(self, config: dict, logger: logging.Logger,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.cfg = config
        self.logger = logger
        self._clock = clock
        self._sleep = sleep
        self._windows: Dict[str, SlidingWindow] = {}

    def _window(self, source: str) -> SlidingWindow:
        window = self._windows.get(source)
        if window is None:
            window = SlidingWindow(rate_limit_policy(self.cfg, source), self._clock, self._sleep)
            self._windows[source] = window
        return window

    async def acquire(self, source: str):
        window = self._window(source)
        waited = await window.acquire()
        if waited > 0:
            self.logger.debug(f"⏳ {source}: rate budget saturated, waited {waited:.2f}s")

    def recorded(self, source: str) -> int:
        """Admissions of `source` still inside its window."""
        window = self._windows.get(source)
        return window.in_window() if window else 0

    def stats(self) -> Dict[str, dict]:
        return {
            name: {
                'in_window': w.in_window(),
                'max_requests': w.policy.max_requests,
                'window_seconds': w.policy.window_seconds,
                'admitted_total': w.admitted_total,
            }
            for name, w in self._windows.items()
        }
