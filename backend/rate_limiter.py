"""
Per-key request rate limiting.

Each key (a provider id, or "tmdb") allows at most ``concurrent`` grants in
any window of ``duration_seconds``. Waiters for one key are served in
arrival order; different keys never block each other.
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Optional

from cancellation import CancellationToken, guarded

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENT = 1
DEFAULT_DURATION_SECONDS = 1.0
TMDB_LIMITER_KEY = "tmdb"


@dataclass(frozen=True)
class RateConfig:
    """At most ``concurrent`` requests per ``duration_seconds``."""
    concurrent: int = DEFAULT_CONCURRENT
    duration_seconds: float = DEFAULT_DURATION_SECONDS

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "RateConfig":
        """Build from a provider ``api_rate`` document (tolerates missing keys)."""
        data = data or {}
        concurrent = int(data.get("concurrent") or DEFAULT_CONCURRENT)
        duration = float(data.get("duration_seconds") or DEFAULT_DURATION_SECONDS)
        return cls(concurrent=max(1, concurrent), duration_seconds=max(0.0, duration))


class _KeyWindow:
    """Sliding window of grant timestamps for one key."""

    def __init__(self, config: RateConfig):
        self.config = config
        self._grants: deque[float] = deque()
        # asyncio.Lock wakes waiters in FIFO order
        self._lock = asyncio.Lock()

    def _delay(self, now: float) -> float:
        window = self.config.duration_seconds
        while self._grants and now - self._grants[0] >= window:
            self._grants.popleft()
        if len(self._grants) < self.config.concurrent:
            return 0.0
        return window - (now - self._grants[0])

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                delay = self._delay(time.monotonic())
                if delay <= 0:
                    break
                await asyncio.sleep(delay)
            # Only recorded once the wait succeeded, a cancelled waiter costs nothing
            self._grants.append(time.monotonic())


class RateLimiter:
    """Process-wide registry of per-key limiters."""

    def __init__(self):
        self._windows: dict[str, _KeyWindow] = {}

    def configure(self, key: str, concurrent: int, duration_seconds: float) -> None:
        """Register a key or update its rate."""
        config = RateConfig(concurrent=max(1, int(concurrent)), duration_seconds=max(0.0, float(duration_seconds)))
        window = self._windows.get(key)
        if window is None:
            self._windows[key] = _KeyWindow(config)
            logger.debug(f"[{key}] Rate limiter configured: {config.concurrent} request(s) per {config.duration_seconds}s")
        elif window.config != config:
            window.config = config
            logger.debug(f"[{key}] Rate limiter updated: {config.concurrent} request(s) per {config.duration_seconds}s")

    def get_config(self, key: str) -> RateConfig:
        window = self._windows.get(key)
        return window.config if window else RateConfig()

    async def acquire(self, key: str, cancel_token: Optional[CancellationToken] = None) -> None:
        """Wait until ``key`` has a free slot."""
        window = self._windows.get(key)
        if window is None:
            self.configure(key, DEFAULT_CONCURRENT, DEFAULT_DURATION_SECONDS)
            window = self._windows[key]
        await guarded(window.acquire(), cancel_token)
