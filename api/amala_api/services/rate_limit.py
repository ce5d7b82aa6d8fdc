from __future__ import annotations

from dataclasses import dataclass
import math
import threading
import time
from typing import Callable, Protocol

from fastapi import Depends
from starlette.requests import Request

from amala_api.core.config import Settings, get_settings
from amala_api.services.repository import get_repository

SUBMISSION_KEY_PREFIX = "locations:post"
REVIEW_KEY_PREFIX = "reviews:post"


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_after_millis: int

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.reset_after_millis / 1000))


class CounterStore(Protocol):
    async def increment(self, key: str, window_millis: int) -> int: ...

    async def reset_after_millis(self, key: str) -> int: ...


class InMemoryCounterStore:
    """Fixed-window counters in a process-wide dict; one lock guards every key."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, *, max_keys: int = 10_000) -> None:
        self._clock = clock
        self._max_keys = max_keys
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[int, float]] = {}

    async def increment(self, key: str, window_millis: int) -> int:
        now = self._clock()
        with self._lock:
            count, expires_at = self._windows.get(key, (0, now))
            if expires_at <= now:
                count, expires_at = 0, now + window_millis / 1000.0
            count += 1
            self._windows[key] = (count, expires_at)
            if len(self._windows) > self._max_keys:
                self._prune(now)
            return count

    async def reset_after_millis(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
        if window is None:
            return 0
        return max(0, math.ceil((window[1] - now) * 1000))

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._windows.items() if expires_at <= now]
        for key in expired:
            del self._windows[key]
        overflow = len(self._windows) - self._max_keys
        if overflow > 0:
            oldest = sorted(self._windows.items(), key=lambda item: item[1][1])[:overflow]
            for key, _ in oldest:
                del self._windows[key]


class PostgresCounterStore:
    def __init__(self, repository) -> None:
        self.repository = repository

    async def increment(self, key: str, window_millis: int) -> int:
        return await self.repository.increment_rate_counter(key, window_millis)

    async def reset_after_millis(self, key: str) -> int:
        return await self.repository.rate_counter_reset_after_millis(key)


class SubmissionRateLimiter:
    def __init__(self, store: CounterStore, *, limit: int = 10, window_millis: int = 60_000) -> None:
        if limit < 1 or window_millis < 1:
            raise ValueError("limit and window_millis must be positive")
        self.store = store
        self.limit = limit
        self.window_millis = window_millis

    async def allow(self, key: str, limit: int | None = None, window_millis: int | None = None) -> RateLimitDecision:
        limit = limit or self.limit
        window_millis = window_millis or self.window_millis
        count = await self.store.increment(key, window_millis)
        reset_after = await self.store.reset_after_millis(key)
        return RateLimitDecision(
            allowed=count <= limit,
            remaining=max(0, limit - count),
            reset_after_millis=reset_after,
        )


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def submission_key(request: Request) -> str:
    return f"{SUBMISSION_KEY_PREFIX}:{client_ip(request)}"


def review_key(request: Request) -> str:
    return f"{REVIEW_KEY_PREFIX}:{client_ip(request)}"


_MEMORY_COUNTERS = InMemoryCounterStore()


def get_rate_limiter(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> SubmissionRateLimiter:
    if settings.rate_limit_backend == "postgres":
        store: CounterStore = PostgresCounterStore(repository)
    else:
        store = _MEMORY_COUNTERS
    return SubmissionRateLimiter(
        store,
        limit=settings.submission_rate_limit,
        window_millis=settings.submission_rate_window_ms,
    )
