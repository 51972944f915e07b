# src/app/middleware/rate_limiting.py
import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from fastapi import Request, Response
from src.core.config import settings
from src.core.errors import RateLimitExceededError

logger = logging.getLogger(settings.APP_NAME)


@dataclass
class WindowState:
    hits: int
    limit: int
    reset_in: float

    @property
    def allowed(self) -> bool:
        return self.hits <= self.limit

    @property
    def remaining(self) -> int:
        return max(self.limit - self.hits, 0)


class FixedWindowLimiter:
    """Counts hits per key in fixed windows that start at the key's first hit."""

    def __init__(self, max_requests: int, window_seconds: float):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._last_sweep: Optional[float] = None

    def hit(self, key: str, now: Optional[float] = None) -> WindowState:
        now = time.monotonic() if now is None else now
        self._sweep(now)
        start, hits = self._windows.get(key, (now, 0))
        if now - start >= self.window_seconds:
            start, hits = now, 0
        hits += 1
        self._windows[key] = (start, hits)
        return WindowState(hits=hits, limit=self.max_requests, reset_in=start + self.window_seconds - now)

    def _sweep(self, now: float) -> None:
        # Drops expired windows, at most once per window length
        if self._last_sweep is not None and now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        expired = [key for key, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for key in expired:
            del self._windows[key]

    @property
    def tracked_keys(self) -> int:
        return len(self._windows)

    def reset(self) -> None:
        self._windows.clear()
        self._last_sweep = None


class SlowDown:
    """
    Delays requests once a key passes `delay_after` hits in the window:
    base_delay_ms * 2^(hits - delay_after), exponent capped at 10, total capped at max_delay_ms.
    """

    MAX_EXPONENT = 10

    def __init__(self, delay_after: int, window_seconds: float, base_delay_ms: int, max_delay_ms: int):
        self.delay_after = delay_after
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.counter = FixedWindowLimiter(delay_after, window_seconds)

    def delay_ms(self, hits: int) -> int:
        if hits <= self.delay_after:
            return 0
        exponent = min(hits - self.delay_after, self.MAX_EXPONENT)
        return min(self.base_delay_ms * 2 ** exponent, self.max_delay_ms)

    def hit(self, key: str, now: Optional[float] = None) -> int:
        return self.delay_ms(self.counter.hit(key, now).hits)

    def reset(self) -> None:
        self.counter.reset()


# Process-wide limiters, keyed by client address
general_limiter = FixedWindowLimiter(settings.RATE_LIMIT_MAX_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS)
auth_failure_limiter = FixedWindowLimiter(settings.AUTH_FAILURE_MAX_ATTEMPTS, settings.RATE_LIMIT_WINDOW_SECONDS)
bulk_limiter = FixedWindowLimiter(settings.BULK_RATE_LIMIT_MAX_REQUESTS, settings.BULK_RATE_LIMIT_WINDOW_SECONDS)
speed_limiter = SlowDown(
    delay_after=settings.SLOW_DOWN_AFTER,
    window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    base_delay_ms=settings.SLOW_DOWN_BASE_DELAY_MS,
    max_delay_ms=settings.SLOW_DOWN_MAX_DELAY_MS,
)


def reset_limiters() -> None:
    for limiter in (general_limiter, auth_failure_limiter, bulk_limiter, speed_limiter):
        limiter.reset()


def client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _set_rate_limit_headers(response: Response, state: WindowState) -> None:
    response.headers["RateLimit-Limit"] = str(state.limit)
    response.headers["RateLimit-Remaining"] = str(state.remaining)
    response.headers["RateLimit-Reset"] = str(math.ceil(state.reset_in))


def _window_description(limit: int, window_seconds: float) -> str:
    if window_seconds % 3600 == 0:
        return f"{limit} requests per {int(window_seconds // 3600)} hour(s)"
    return f"{limit} requests per {int(window_seconds // 60)} minutes"


# --- FastAPI dependencies ---

async def enforce_rate_limit(request: Request, response: Response) -> None:
    state = general_limiter.hit(client_key(request))
    _set_rate_limit_headers(response, state)
    if not state.allowed:
        logger.warning(f"Rate limit exceeded for {client_key(request)} on {request.method} {request.url.path}")
        raise RateLimitExceededError(
            "Too many requests from this IP, please try again later",
            details=f"Rate limit: {_window_description(general_limiter.max_requests, general_limiter.window_seconds)}",
            retry_after=math.ceil(state.reset_in),
        )

async def apply_slow_down(request: Request) -> None:
    delay = speed_limiter.hit(client_key(request))
    if delay:
        logger.info(f"Slowing down {client_key(request)} by {delay}ms")
        await asyncio.sleep(delay / 1000)

async def enforce_bulk_rate_limit(request: Request, response: Response) -> None:
    state = bulk_limiter.hit(client_key(request))
    _set_rate_limit_headers(response, state)
    if not state.allowed:
        logger.warning(f"Bulk operation rate limit exceeded for {client_key(request)}")
        raise RateLimitExceededError(
            "Too many bulk operations, please try again later",
            details=f"Rate limit: {_window_description(bulk_limiter.max_requests, bulk_limiter.window_seconds)}",
            code="BULK_OPERATION_RATE_LIMIT_EXCEEDED",
            retry_after=math.ceil(state.reset_in),
        )
