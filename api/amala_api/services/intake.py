from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Union

from fastapi import Depends
from opentelemetry import trace
from pydantic import ValidationError

from amala_api.core.config import Settings, get_settings
from amala_api.schemas.locations import LocationDraft, LocationSubmitRequest
from amala_api.schemas.places import PlaceDetails, PlaceReview
from amala_api.services.analytics import (
    DUPLICATE_SUBMISSION_ATTEMPTED,
    LOCATION_ENRICHED,
    LOCATION_SUBMITTED,
    AnalyticsSink,
    get_analytics_sink,
)
from amala_api.services.dedupe import DuplicateCandidate, DuplicateCheckResult, DuplicateDetector
from amala_api.services.enrichment import EnrichmentMerger
from amala_api.services.places import LookupUnavailableError, PlaceLookupClient, get_place_lookup_client
from amala_api.services.rate_limit import RateLimitDecision, SubmissionRateLimiter, get_rate_limiter
from amala_api.services.repository import get_repository

ENRICHMENT_SOURCE = "google-places-api"
MAX_IMPORTED_REVIEWS = 5
ENRICHED_FIELDS = {
    "coordinates",
    "phone",
    "website",
    "rating",
    "review_count",
    "images",
    "hours",
    "price_range",
    "service_type",
    "is_open_now",
    "place_id",
}

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class IntakeCreated:
    location: dict[str, Any]
    enriched: bool


@dataclass(slots=True)
class IntakeConflict:
    result: DuplicateCheckResult


@dataclass(slots=True)
class IntakeInvalid:
    errors: list[dict[str, Any]]


@dataclass(slots=True)
class IntakeRateLimited:
    decision: RateLimitDecision


IntakeOutcome = Union[IntakeCreated, IntakeConflict, IntakeInvalid, IntakeRateLimited]


@dataclass(slots=True)
class EnrichmentResult:
    location_id: str
    enriched: bool
    location: dict[str, Any]
    reason: str | None = None
    place_id: str | None = None
    reviews_imported: int = 0


@dataclass(slots=True)
class EnrichmentStatus:
    location_id: str
    name: str
    has_real_data: bool
    rating: float | None = None
    review_count: int | None = None
    images_count: int = 0
    enriched_at: Any = None
    enrichment_source: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IntakePipeline:
    def __init__(
        self,
        *,
        repository,
        detector: DuplicateDetector,
        merger: EnrichmentMerger,
        rate_limiter: SubmissionRateLimiter,
        lookup_client: PlaceLookupClient | None = None,
        analytics: AnalyticsSink | None = None,
        lookup_deadline_seconds: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.detector = detector
        self.merger = merger
        self.rate_limiter = rate_limiter
        self.lookup_client = lookup_client
        self.analytics = analytics
        self.lookup_deadline_seconds = lookup_deadline_seconds
        self.clock = clock

    async def submit(self, payload: Mapping[str, Any], client_key: str) -> IntakeOutcome:
        with tracer.start_as_current_span("intake.submit") as span:
            decision = await self.rate_limiter.allow(client_key)
            if not decision.allowed:
                logger.info("intake rate limited key=%s reset_after_ms=%s", client_key, decision.reset_after_millis)
                span.set_attribute("intake.outcome", "rate_limited")
                return IntakeRateLimited(decision=decision)

            try:
                submission = LocationSubmitRequest.model_validate(payload).location
            except ValidationError as exc:
                span.set_attribute("intake.outcome", "invalid")
                return IntakeInvalid(errors=exc.errors(include_url=False, include_context=False))

            corpus = await self.repository.list_all_locations()
            candidate = DuplicateCandidate(
                name=submission.name,
                address=submission.address,
                coordinates=(submission.coordinates.lat, submission.coordinates.lng),
                phone=submission.phone,
            )
            check = self.detector.detect(candidate, corpus)
            if check.is_duplicate:
                best = check.best_match
                logger.info(
                    "intake duplicate detected matched_id=%s score=%s similar=%s",
                    best.location_id if best else None,
                    best.score if best else None,
                    len(check.similar_locations),
                )
                await self._emit(
                    DUPLICATE_SUBMISSION_ATTEMPTED,
                    {
                        "name": submission.name,
                        "matched_location_id": best.location_id if best else None,
                        "similar_location_ids": [row.location_id for row in check.similar_locations[:3]],
                        "reason": check.reason,
                    },
                )
                span.set_attribute("intake.outcome", "conflict")
                return IntakeConflict(result=check)

            draft = LocationDraft.model_validate(submission.model_dump())
            details = await self._lookup(draft)
            merged = self.merger.merge(draft, details)

            document = merged.model_dump(mode="json")
            document["is_open_now"] = bool(document.get("is_open_now"))
            document["status"] = "pending"
            document["submitted_by"] = _submitter(submission.submitter_info)
            if details is not None:
                document["enriched_at"] = self.clock().isoformat()
                document["enrichment_source"] = ENRICHMENT_SOURCE

            created = await self.repository.create_location(document)
            logger.info(
                "location submitted location_id=%s enriched=%s review_flags=%s",
                created["id"],
                details is not None,
                len(check.moderation_reasons),
            )
            await self._emit(
                LOCATION_SUBMITTED,
                {
                    "location_id": created["id"],
                    "name": created.get("name"),
                    "enriched": details is not None,
                    "discovery_source": created.get("discovery_source"),
                },
            )
            span.set_attribute("intake.outcome", "created")
            return IntakeCreated(location=created, enriched=details is not None)

    async def enrich_location(self, location_id: str) -> EnrichmentResult:
        with tracer.start_as_current_span("intake.enrich_location") as span:
            span.set_attribute("location.id", location_id)
            record = await self.repository.get_location(location_id)
            if self.lookup_client is None:
                return EnrichmentResult(
                    location_id=location_id,
                    enriched=False,
                    location=record,
                    reason="lookup_not_configured",
                )

            draft = LocationDraft.model_validate(record)
            details = await self._lookup(draft)
            if details is None:
                return EnrichmentResult(
                    location_id=location_id,
                    enriched=False,
                    location=record,
                    reason="place_not_found",
                )

            merged = self.merger.merge(draft, details)
            changes = merged.model_dump(mode="json", include=ENRICHED_FIELDS)
            changes["is_open_now"] = bool(changes.get("is_open_now"))
            changes["enriched_at"] = self.clock().isoformat()
            changes["enrichment_source"] = ENRICHMENT_SOURCE

            updated = await self.repository.update_location(location_id, changes)
            reviews = [_review_document(review) for review in details.reviews[:MAX_IMPORTED_REVIEWS] if review.rating]
            imported = await self.repository.replace_reviews_by_source(location_id, ENRICHMENT_SOURCE, reviews)

            logger.info(
                "location enriched location_id=%s place_id=%s images=%s reviews=%s",
                location_id,
                details.id,
                len(updated.get("images") or []),
                imported,
            )
            await self._emit(LOCATION_ENRICHED, {"location_id": location_id, "place_id": details.id})
            return EnrichmentResult(
                location_id=location_id,
                enriched=True,
                location=updated,
                place_id=details.id,
                reviews_imported=imported,
            )

    async def enrichment_status(self, location_id: str) -> EnrichmentStatus:
        record = await self.repository.get_location(location_id)
        images = record.get("images") or []
        return EnrichmentStatus(
            location_id=location_id,
            name=str(record.get("name") or ""),
            has_real_data=has_real_data(record),
            rating=record.get("rating"),
            review_count=record.get("review_count"),
            images_count=len(images),
            enriched_at=record.get("enriched_at"),
            enrichment_source=record.get("enrichment_source"),
        )

    async def _lookup(self, draft: LocationDraft) -> PlaceDetails | None:
        if self.lookup_client is None:
            return None
        bias = (draft.coordinates.lat, draft.coordinates.lng) if draft.coordinates is not None else None
        query = f"{draft.name}, {draft.address}"
        with tracer.start_as_current_span("intake.lookup"):
            try:
                return await asyncio.wait_for(
                    self.lookup_client.lookup(query, bias=bias),
                    timeout=self.lookup_deadline_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning("places lookup timed out deadline_s=%s", self.lookup_deadline_seconds)
            except LookupUnavailableError as exc:
                logger.warning("places lookup unavailable error=%s", exc)
            except Exception:
                logger.exception("places lookup failed unexpectedly")
        return None

    async def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        if self.analytics is not None:
            await self.analytics.emit(event_type, data)


def has_real_data(record: Mapping[str, Any]) -> bool:
    rating = record.get("rating") or 0
    review_count = record.get("review_count") or 0
    images = record.get("images") or []
    has_real_image = any(isinstance(url, str) and "placeholder" not in url for url in images)
    return rating > 0 and review_count > 0 and has_real_image


def _submitter(info) -> str | None:
    if info is None:
        return None
    return info.email or info.name


def _review_document(review: PlaceReview) -> dict[str, Any]:
    author = review.author_attribution
    return {
        "author": (author.display_name if author and author.display_name else "Anonymous"),
        "rating": review.rating,
        "text": review.text.text if review.text else None,
        "author_photo": author.photo_uri if author else None,
        "publish_time_description": review.relative_publish_time_description,
        "status": "approved",
        "date_posted": review.publish_time,
    }


def get_intake_pipeline(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    rate_limiter: SubmissionRateLimiter = Depends(get_rate_limiter),
    lookup_client: PlaceLookupClient | None = Depends(get_place_lookup_client),
    analytics: AnalyticsSink = Depends(get_analytics_sink),
) -> IntakePipeline:
    return IntakePipeline(
        repository=repository,
        detector=DuplicateDetector(
            duplicate_threshold=settings.dedupe_duplicate_threshold,
            review_threshold=settings.dedupe_review_threshold,
            min_name_similarity=settings.dedupe_min_name_similarity,
            near_radius_meters=settings.dedupe_near_radius_meters,
            far_radius_meters=settings.dedupe_far_radius_meters,
        ),
        merger=EnrichmentMerger(
            photo_url_template=settings.places_photo_url_template,
            max_photos=settings.places_max_photos,
        ),
        rate_limiter=rate_limiter,
        lookup_client=lookup_client,
        analytics=analytics,
        lookup_deadline_seconds=settings.lookup_deadline_seconds,
    )
