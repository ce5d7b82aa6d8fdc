import asyncio

import pytest
from starlette.requests import Request

from amala_api.services.rate_limit import (
    InMemoryCounterStore,
    RateLimitDecision,
    SubmissionRateLimiter,
    client_ip,
    review_key,
    submission_key,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _request(headers: dict[str, str] | None = None, client: tuple[str, int] | None = ("10.0.0.9", 5123)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/locations",
        "headers": [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_eleventh_call_in_window_is_denied_and_window_resets() -> None:
    clock = FakeClock()
    limiter = SubmissionRateLimiter(InMemoryCounterStore(clock), limit=10, window_millis=60_000)

    async def scenario() -> tuple[list[RateLimitDecision], RateLimitDecision, RateLimitDecision]:
        allowed = [await limiter.allow("locations:post:1.2.3.4") for _ in range(10)]
        denied = await limiter.allow("locations:post:1.2.3.4")
        clock.now += 60.0
        after_window = await limiter.allow("locations:post:1.2.3.4")
        return allowed, denied, after_window

    allowed, denied, after_window = asyncio.run(scenario())

    assert all(decision.allowed for decision in allowed)
    assert [decision.remaining for decision in allowed] == [9, 8, 7, 6, 5, 4, 3, 2, 1, 0]
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.reset_after_millis == 60_000
    assert denied.retry_after_seconds == 60
    assert after_window.allowed is True
    assert after_window.remaining == 9


def test_keys_are_counted_independently() -> None:
    limiter = SubmissionRateLimiter(InMemoryCounterStore(FakeClock()), limit=1, window_millis=1_000)

    async def scenario() -> list[bool]:
        return [
            (await limiter.allow("a")).allowed,
            (await limiter.allow("b")).allowed,
            (await limiter.allow("a")).allowed,
        ]

    assert asyncio.run(scenario()) == [True, True, False]


def test_reset_after_counts_down_with_the_clock() -> None:
    clock = FakeClock()
    store = InMemoryCounterStore(clock)

    async def scenario() -> tuple[int, int, int]:
        await store.increment("key", 60_000)
        first = await store.reset_after_millis("key")
        clock.now += 15.0
        later = await store.reset_after_millis("key")
        missing = await store.reset_after_millis("other")
        return first, later, missing

    assert asyncio.run(scenario()) == (60_000, 45_000, 0)


def test_per_call_limit_override() -> None:
    limiter = SubmissionRateLimiter(InMemoryCounterStore(FakeClock()), limit=10, window_millis=60_000)

    async def scenario() -> list[bool]:
        return [(await limiter.allow("k", limit=2)).allowed for _ in range(3)]

    assert asyncio.run(scenario()) == [True, True, False]


def test_limiter_rejects_non_positive_configuration() -> None:
    with pytest.raises(ValueError):
        SubmissionRateLimiter(InMemoryCounterStore(), limit=0)


def test_retry_after_is_at_least_one_second() -> None:
    assert RateLimitDecision(allowed=False, remaining=0, reset_after_millis=0).retry_after_seconds == 1
    assert RateLimitDecision(allowed=False, remaining=0, reset_after_millis=1_001).retry_after_seconds == 2


def test_client_ip_prefers_forwarded_header() -> None:
    assert client_ip(_request({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})) == "203.0.113.7"
    assert client_ip(_request({"X-Real-IP": "198.51.100.4"})) == "198.51.100.4"
    assert client_ip(_request()) == "10.0.0.9"
    assert client_ip(_request(client=None)) == "unknown"
    assert submission_key(_request({"X-Forwarded-For": "203.0.113.7"})) == "locations:post:203.0.113.7"
    assert review_key(_request({"X-Real-IP": "198.51.100.4"})) == "reviews:post:198.51.100.4"


def test_live_windows_beyond_max_keys_evict_the_oldest() -> None:
    clock = FakeClock()
    store = InMemoryCounterStore(clock, max_keys=2)

    async def scenario() -> tuple[int, int, int]:
        for key in ("first", "second", "third"):
            await store.increment(key, 60_000)
            clock.now += 1.0
        return (
            await store.reset_after_millis("first"),
            await store.reset_after_millis("second"),
            await store.reset_after_millis("third"),
        )

    first, second, third = asyncio.run(scenario())

    assert len(store._windows) == 2
    assert first == 0
    assert second == 58_000
    assert third == 59_000
