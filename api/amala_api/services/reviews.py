from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from fastapi import Depends
from opentelemetry import trace

from amala_api.core.config import Settings, get_settings
from amala_api.schemas.locations import ReviewSubmitRequest
from amala_api.services.analytics import (
    REVIEW_MODERATION_EVENT_TYPES,
    REVIEW_SUBMITTED,
    AnalyticsSink,
    get_analytics_sink,
)
from amala_api.services.rate_limit import RateLimitDecision, SubmissionRateLimiter, get_rate_limiter
from amala_api.services.repository import RepositoryConflictError, get_repository

USER_REVIEW_SOURCE = "user-submitted"
ANONYMOUS_AUTHOR = "Anonymous"

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class ReviewRateLimitedError(Exception):
    def __init__(self, decision: RateLimitDecision) -> None:
        super().__init__("too many reviews, try again later")
        self.decision = decision


class InvalidReviewTransitionError(Exception):
    def __init__(self, review_id: str, from_status: str | None, to_status: str) -> None:
        super().__init__(f"cannot move review {review_id} from {from_status} to {to_status}")
        self.review_id = review_id
        self.from_status = from_status
        self.to_status = to_status


@dataclass(slots=True)
class RatingSummary:
    rating: float
    review_count: int


def summarize_ratings(reviews: list[dict[str, Any]]) -> RatingSummary | None:
    ratings = [review["rating"] for review in reviews if isinstance(review.get("rating"), int)]
    if not ratings:
        return None
    return RatingSummary(rating=round(sum(ratings) / len(ratings), 1), review_count=len(ratings))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReviewService:
    """Takes user reviews in as ``pending`` and moves them through moderation.

    Only approved reviews count towards a location's rating, so the rating is
    recomputed whenever a review is approved.
    """

    def __init__(
        self,
        repository,
        *,
        rate_limiter: SubmissionRateLimiter,
        rate_limit: int = 10,
        rate_window_millis: int = 60_000,
        clock: Callable[[], datetime] = _utcnow,
        analytics: AnalyticsSink | None = None,
    ) -> None:
        self.repository = repository
        self.rate_limiter = rate_limiter
        self.rate_limit = rate_limit
        self.rate_window_millis = rate_window_millis
        self.clock = clock
        self.analytics = analytics

    async def submit(
        self,
        location_id: str,
        request: ReviewSubmitRequest,
        client_key: str,
        *,
        user_id: str,
        author: str | None = None,
    ) -> dict[str, Any]:
        with tracer.start_as_current_span("reviews.submit") as span:
            span.set_attribute("location.id", location_id)
            decision = await self.rate_limiter.allow(client_key, self.rate_limit, self.rate_window_millis)
            if not decision.allowed:
                logger.info("review rate limited key=%s reset_after_ms=%s", client_key, decision.reset_after_millis)
                raise ReviewRateLimitedError(decision)

            await self.repository.get_location(location_id)
            created = await self.repository.create_review(
                location_id,
                {
                    "author": author or ANONYMOUS_AUTHOR,
                    "rating": request.rating,
                    "text": request.text,
                    "photos": request.photos,
                    "source": USER_REVIEW_SOURCE,
                    "status": "pending",
                    "user_id": user_id,
                    "date_posted": self.clock(),
                },
            )
            logger.info("review submitted review_id=%s location_id=%s user_id=%s", created["id"], location_id, user_id)
            await self._emit(
                REVIEW_SUBMITTED,
                {"review_id": created["id"], "location_id": location_id, "rating": request.rating},
            )
            return created

    async def approve(self, review_id: str, *, actor_id: str | None, reason: str | None = None) -> dict[str, Any]:
        updated = await self._moderate(review_id, action="approve", to_status="approved", actor_id=actor_id, reason=reason)
        await self.recompute_location_rating(updated["location_id"])
        return updated

    async def reject(self, review_id: str, *, actor_id: str | None, reason: str | None = None) -> dict[str, Any]:
        return await self._moderate(review_id, action="reject", to_status="rejected", actor_id=actor_id, reason=reason)

    async def recompute_location_rating(self, location_id: str) -> RatingSummary | None:
        approved = await self.repository.list_reviews(location_id, status="approved")
        summary = summarize_ratings(approved)
        if summary is None:
            return None
        await self.repository.update_location(
            location_id,
            {"rating": summary.rating, "review_count": summary.review_count},
        )
        logger.info(
            "location rating recomputed location_id=%s rating=%s review_count=%s",
            location_id,
            summary.rating,
            summary.review_count,
        )
        return summary

    async def _moderate(
        self,
        review_id: str,
        *,
        action: str,
        to_status: str,
        actor_id: str | None,
        reason: str | None,
    ) -> dict[str, Any]:
        with tracer.start_as_current_span(f"reviews.{action}") as span:
            span.set_attribute("review.id", review_id)
            current = await self.repository.get_review(review_id)
            from_status = current.get("status")
            if from_status != "pending":
                raise InvalidReviewTransitionError(review_id, from_status, to_status)

            reason = (reason or "").strip() or None
            moderated_at = self.clock()
            try:
                updated = await self.repository.update_review_status(
                    review_id=review_id,
                    expected_status=from_status,
                    changes={
                        "status": to_status,
                        "moderated_at": moderated_at,
                        "moderated_by": actor_id,
                        "moderation_reason": reason,
                    },
                    event={
                        "action": f"review_{action}",
                        "actor_id": actor_id,
                        "reason": reason,
                        "created_at": moderated_at,
                    },
                )
            except RepositoryConflictError as exc:
                raise InvalidReviewTransitionError(review_id, from_status, to_status) from exc

            logger.info(
                "review moderated review_id=%s location_id=%s action=%s actor_id=%s",
                review_id,
                updated["location_id"],
                action,
                actor_id,
            )
            await self._emit(
                REVIEW_MODERATION_EVENT_TYPES[action],
                {"review_id": review_id, "location_id": updated["location_id"], "actor_id": actor_id},
            )
            return updated

    async def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        if self.analytics is not None:
            await self.analytics.emit(event_type, data)


def get_review_service(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    rate_limiter: SubmissionRateLimiter = Depends(get_rate_limiter),
    analytics: AnalyticsSink = Depends(get_analytics_sink),
) -> ReviewService:
    return ReviewService(
        repository,
        rate_limiter=rate_limiter,
        rate_limit=settings.review_rate_limit,
        rate_window_millis=settings.review_rate_window_ms,
        analytics=analytics,
    )
