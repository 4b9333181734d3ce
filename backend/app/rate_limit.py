"""
Simple in-memory fixed-window rate limiter for the extraction endpoint.

Counters reset on server restart. In production, use Redis.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Terlalu banyak permintaan. Coba lagi dalam beberapa saat."
RATE_WINDOW_SECONDS = 60.0


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Allow `limit` requests per client per window."""

    def __init__(
        self,
        limit: int = 10,
        window_seconds: float = RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._last_prune = clock()

    def check(self, client_id: str) -> bool:
        """Count one request; False when the client is over the limit."""
        now = self._clock()
        self._prune(now)

        window = self._windows.get(client_id)
        if window is None or now > window.reset_at:
            self._windows[client_id] = _Window(count=1, reset_at=now + self.window_seconds)
            return True

        if window.count >= self.limit:
            logger.warning(f"METRIC rate_limited client={client_id}")
            return False

        window.count += 1
        return True

    def _prune(self, now: float) -> None:
        if now - self._last_prune < self.window_seconds:
            return
        expired = [key for key, window in self._windows.items() if now > window.reset_at]
        for key in expired:
            del self._windows[key]
        self._last_prune = now


def client_address(request: Request) -> str:
    """x-forwarded-for, then x-real-ip, then the peer address."""
    forwarded: Optional[str] = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter(limit: int = 10) -> RateLimiter:
    """Get or create the process-wide RateLimiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(limit=limit)
    return _rate_limiter


def reset_rate_limiter() -> None:
    global _rate_limiter
    _rate_limiter = None
