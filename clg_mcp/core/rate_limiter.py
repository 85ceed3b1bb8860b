"""
Rate Limiter implementation for tool invocations.
This module provides a sliding-window request limit per client key.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict

from cachetools import TTLCache

from clg_mcp.error_handling.exceptions import RateLimitError

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Sliding one-minute window limiter keyed by client (e.g. remote address).
    Exceeding the limit is always reported as a RateLimitError, never silently allowed.
    """

    def __init__(
        self,
        requests_per_minute: int = 30,
        max_clients: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum number of requests allowed per minute per key
            max_clients: Maximum number of client windows tracked at once
            clock: Monotonic time source, injectable for tests
        """
        self.requests_per_minute = requests_per_minute
        self.window_size = 60
        self._clock = clock

        # Request tracking. A client's window expires one window after its last request.
        self._request_times: TTLCache = TTLCache(maxsize=max_clients, ttl=self.window_size, timer=clock)
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RateLimiter":
        rate_config = config.get('rate_limit', {})
        limiter = cls(
            requests_per_minute=rate_config.get('requests_per_minute', 30),
            max_clients=rate_config.get('max_clients', 10000),
        )
        logger.info(f"Rate limiter initialized: {limiter.requests_per_minute} requests per minute")
        return limiter

    def _cleanup_old_requests(self, key: str, now: float) -> Deque[float]:
        """Drop requests outside the time window and return the key's window."""
        window = self._request_times.get(key)
        if window is None:
            return deque()
        while window and now - window[0] >= self.window_size:
            window.popleft()
        return window

    async def acquire(self, key: str = "default") -> None:
        """
        Record a request for `key`.

        Raises:
            RateLimitError: If the key already used its quota for the current window
        """
        async with self._lock:
            now = self._clock()
            window = self._cleanup_old_requests(key, now)
            if len(window) >= self.requests_per_minute:
                retry_after = window[0] + self.window_size - now
                logger.warning(f"Rate limit exceeded for {key}")
                raise RateLimitError(
                    f"Rate limit exceeded: {self.requests_per_minute} requests per minute",
                    retry_after=round(max(0.0, retry_after), 3),
                )
            window.append(now)
            # Re-insert to restart the entry's expiry
            self._request_times[key] = window

    async def get_remaining_requests(self, key: str = "default") -> int:
        """Number of requests `key` may still make in the current window."""
        async with self._lock:
            window = self._cleanup_old_requests(key, self._clock())
            if not window:
                self._request_times.pop(key, None)
            return self.requests_per_minute - len(window)

    def tracked_clients(self) -> int:
        """Number of client windows currently held."""
        self._request_times.expire()
        return len(self._request_times)

    async def reset(self, key: str = "default") -> None:
        async with self._lock:
            self._request_times.pop(key, None)

    async def close(self) -> None:
        """Close the rate limiter and cleanup resources."""
        async with self._lock:
            self._request_times.clear()
