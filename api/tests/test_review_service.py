from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from amala_api.schemas.locations import ReviewSubmitRequest
from amala_api.services.analytics import AnalyticsSink
from amala_api.services.moderation import ModerationStateMachine, collect_moderation_stats
from amala_api.services.rate_limit import InMemoryCounterStore, SubmissionRateLimiter
from amala_api.services.repository import RepositoryNotFoundError
from amala_api.services.reviews import (
    InvalidReviewTransitionError,
    ReviewRateLimitedError,
    ReviewService,
    summarize_ratings,
)
from amala_api.services.store import InMemoryLocationRepository

FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _seed(repository: InMemoryLocationRepository, name: str = "Amala Joint", status: str = "approved") -> str:
    created = asyncio.run(
        repository.create_location({"name": name, "address": "12 Allen Ave, Ikeja", "status": status})
    )
    return created["id"]


def _service(repository: InMemoryLocationRepository, *, limit: int = 10) -> ReviewService:
    return ReviewService(
        repository,
        rate_limiter=SubmissionRateLimiter(InMemoryCounterStore(), limit=limit, window_millis=60_000),
        rate_limit=limit,
        clock=lambda: FIXED_NOW,
        analytics=AnalyticsSink(repository),
    )


def _submit(service: ReviewService, location_id: str, rating: int, *, key: str = "reviews:post:1.2.3.4") -> dict:
    return asyncio.run(
        service.submit(
            location_id,
            ReviewSubmitRequest(rating=rating, text="  Soft amala, great ewedu  "),
            key,
            user_id="user-1",
            author="Tolu",
        )
    )


def test_submitted_review_is_pending_and_not_listed() -> None:
    repository = InMemoryLocationRepository()
    location_id = _seed(repository)

    review = _submit(_service(repository), location_id, 4)

    assert review["status"] == "pending"
    assert review["source"] == "user-submitted"
    assert review["author"] == "Tolu"
    assert review["user_id"] == "user-1"
    assert review["text"] == "Soft amala, great ewedu"
    assert review["date_posted"] == FIXED_NOW
    assert asyncio.run(repository.list_reviews(location_id)) == []
    assert repository.analytics_events[-1]["event_type"] == "review_submitted"


def test_review_for_missing_location_is_not_found() -> None:
    repository = InMemoryLocationRepository()

    with pytest.raises(RepositoryNotFoundError):
        _submit(_service(repository), "missing-id", 5)

    assert repository.reviews == {}


def test_review_submission_is_rate_limited_per_key() -> None:
    repository = InMemoryLocationRepository()
    location_id = _seed(repository)
    service = _service(repository, limit=2)

    _submit(service, location_id, 5)
    _submit(service, location_id, 4)
    with pytest.raises(ReviewRateLimitedError) as excinfo:
        _submit(service, location_id, 3)
    _submit(service, location_id, 3, key="reviews:post:5.6.7.8")

    assert excinfo.value.decision.remaining == 0
    assert len(repository.reviews) == 3


def test_approving_reviews_recomputes_location_rating() -> None:
    repository = InMemoryLocationRepository()
    location_id = _seed(repository)
    service = _service(repository)
    first = _submit(service, location_id, 5)
    second = _submit(service, location_id, 4)
    third = _submit(service, location_id, 2)

    approved = asyncio.run(service.approve(first["id"], actor_id="mod-1", reason=" verified "))
    asyncio.run(service.approve(second["id"], actor_id="mod-1"))
    asyncio.run(service.reject(third["id"], actor_id="mod-1", reason="spam"))

    assert approved["status"] == "approved"
    assert approved["moderated_by"] == "mod-1"
    assert approved["moderated_at"] == FIXED_NOW
    assert approved["moderation_reason"] == "verified"
    location = asyncio.run(repository.get_location(location_id))
    assert (location["rating"], location["review_count"]) == (4.5, 2)
    assert [review["id"] for review in asyncio.run(repository.list_reviews(location_id))] == [
        first["id"],
        second["id"],
    ]
    events = asyncio.run(repository.list_moderation_events(location_id))
    assert [(event["action"], event["review_id"]) for event in events] == [
        ("review_approve", first["id"]),
        ("review_approve", second["id"]),
        ("review_reject", third["id"]),
    ]
    assert [event["event_type"] for event in repository.analytics_events[-3:]] == [
        "review_approve",
        "review_approve",
        "review_reject",
    ]


def test_rejecting_leaves_rating_untouched() -> None:
    repository = InMemoryLocationRepository()
    location_id = _seed(repository)
    asyncio.run(repository.update_location(location_id, {"rating": 4.4, "review_count": 212}))
    service = _service(repository)
    review = _submit(service, location_id, 1)

    rejected = asyncio.run(service.reject(review["id"], actor_id="mod-1"))

    assert rejected["status"] == "rejected"
    assert rejected["moderation_reason"] is None
    location = asyncio.run(repository.get_location(location_id))
    assert (location["rating"], location["review_count"]) == (4.4, 212)


def test_moderated_review_cannot_be_moderated_again() -> None:
    repository = InMemoryLocationRepository()
    location_id = _seed(repository)
    service = _service(repository)
    review = _submit(service, location_id, 5)
    asyncio.run(service.approve(review["id"], actor_id="mod-1"))

    with pytest.raises(InvalidReviewTransitionError) as excinfo:
        asyncio.run(service.reject(review["id"], actor_id="mod-2"))

    assert excinfo.value.from_status == "approved"
    assert asyncio.run(repository.get_review(review["id"]))["status"] == "approved"

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(service.approve("missing-review", actor_id="mod-1"))


def test_summarize_ratings_rounds_to_one_decimal() -> None:
    summary = summarize_ratings([{"rating": 5}, {"rating": 4}, {"rating": 4}])

    assert summary is not None
    assert (summary.rating, summary.review_count) == (4.3, 3)
    assert summarize_ratings([]) is None


def test_moderation_history_filters_by_actor_and_window() -> None:
    repository = InMemoryLocationRepository()
    first = _seed(repository, "Amala Joint", status="pending")
    second = _seed(repository, "Iya Oyo", status="pending")
    third = _seed(repository, "Mama Cass", status="pending")
    asyncio.run(ModerationStateMachine(repository, clock=lambda: FIXED_NOW - timedelta(days=40)).approve(first, actor_id="mod-1"))
    asyncio.run(ModerationStateMachine(repository, clock=lambda: FIXED_NOW - timedelta(hours=2)).approve(second, actor_id="mod-1"))
    asyncio.run(ModerationStateMachine(repository, clock=lambda: FIXED_NOW).reject(third, "closed", actor_id="mod-2"))
    since = FIXED_NOW - timedelta(days=30)

    recent, recent_total = asyncio.run(repository.list_moderation_history(since=since))
    mine, mine_total = asyncio.run(repository.list_moderation_history(actor_id="mod-1"))
    page, page_total = asyncio.run(repository.list_moderation_history(limit=1, offset=1))

    assert [event["location_id"] for event in recent] == [third, second]
    assert recent_total == 2
    assert [event["location_id"] for event in mine] == [second, first]
    assert mine_total == 2
    assert [event["location_id"] for event in page] == [second]
    assert page_total == 3


def test_moderation_stats_counts_statuses_and_actions() -> None:
    repository = InMemoryLocationRepository()
    pending_id = _seed(repository, "Amala Joint", status="pending")
    approved_id = _seed(repository, "Iya Oyo", status="pending")
    service = _service(repository)
    review = _submit(service, approved_id, 5)
    _submit(service, approved_id, 3)
    now = datetime.now(timezone.utc)
    asyncio.run(ModerationStateMachine(repository, clock=lambda: now).approve(approved_id, actor_id="mod-1"))
    asyncio.run(ReviewService(repository, rate_limiter=service.rate_limiter, clock=lambda: now).approve(review["id"], actor_id="mod-1"))

    stats = asyncio.run(collect_moderation_stats(repository, days=30, now=now + timedelta(minutes=1)))

    assert stats.locations == {"pending": 1, "approved": 1}
    assert stats.reviews == {"pending": 1, "approved": 1}
    assert (stats.actions_last_day, stats.actions_last_week, stats.actions_in_range) == (2, 2, 2)
    assert stats.approval_rate == 50.0
    assert asyncio.run(repository.get_location(pending_id))["status"] == "pending"
