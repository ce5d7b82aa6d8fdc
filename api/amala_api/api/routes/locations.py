from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.requests import Request

from amala_api.core.security import get_human_principal
from amala_api.schemas.locations import (
    DuplicateConflictOut,
    EnrichmentResultOut,
    EnrichmentStatusOut,
    LocationFilter,
    LocationOut,
    ReviewOut,
    ReviewSubmitRequest,
    SimilarLocationOut,
)
from amala_api.services.dedupe import SimilarLocation
from amala_api.services.intake import (
    IntakeConflict,
    IntakeCreated,
    IntakeInvalid,
    IntakePipeline,
    IntakeRateLimited,
    get_intake_pipeline,
)
from amala_api.services.rate_limit import review_key, submission_key
from amala_api.services.repository import (
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)
from amala_api.services.reviews import ReviewRateLimitedError, ReviewService, get_review_service

router = APIRouter()

MULTI_VALUE_PARAMS = {"price_range", "cuisine"}
CONFLICT_PREVIEW_SIZE = 3


@router.post("", response_model=LocationOut, status_code=status.HTTP_201_CREATED)
async def submit_location(
    request: Request,
    payload: dict[str, Any] = Body(...),
    pipeline: IntakePipeline = Depends(get_intake_pipeline),
):
    try:
        outcome = await pipeline.submit(payload, submission_key(request))
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    if isinstance(outcome, IntakeRateLimited):
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "detail": "too many submissions, try again later",
                "retry_after_seconds": outcome.decision.retry_after_seconds,
            },
            headers={
                "Retry-After": str(outcome.decision.retry_after_seconds),
                "X-RateLimit-Remaining": str(outcome.decision.remaining),
            },
        )
    if isinstance(outcome, IntakeInvalid):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": jsonable_encoder(outcome.errors)},
        )
    if isinstance(outcome, IntakeConflict):
        body = DuplicateConflictOut(
            reason=outcome.result.reason,
            similar_locations=[_similar_out(row) for row in outcome.result.similar_locations[:CONFLICT_PREVIEW_SIZE]],
            moderation_reasons=outcome.result.moderation_reasons,
        )
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=jsonable_encoder(body))

    assert isinstance(outcome, IntakeCreated)
    return LocationOut(**outcome.location)


@router.get("", response_model=list[LocationOut])
async def list_locations(request: Request, repository=Depends(get_repository)) -> list[LocationOut]:
    filters = _parse_filter(request)
    try:
        rows = await repository.list_locations(filters)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [LocationOut(**row) for row in rows]


@router.get("/{location_id}", response_model=LocationOut)
async def get_location(location_id: str, repository=Depends(get_repository)) -> LocationOut:
    try:
        row = await repository.get_location(location_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return LocationOut(**row)


@router.get("/{location_id}/reviews", response_model=list[ReviewOut])
async def list_location_reviews(
    location_id: str,
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[ReviewOut]:
    try:
        await repository.get_location(location_id)
        rows = await repository.list_reviews(location_id, status="approved")
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return [ReviewOut(**row) for row in rows[:limit]]


@router.post("/{location_id}/reviews", response_model=ReviewOut, status_code=status.HTTP_201_CREATED)
async def submit_location_review(
    location_id: str,
    payload: ReviewSubmitRequest,
    request: Request,
    principal=Depends(get_human_principal),
    service: ReviewService = Depends(get_review_service),
):
    try:
        principal.require_scopes({"submission:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await service.submit(
            location_id,
            payload,
            review_key(request),
            user_id=principal.actor_id or principal.subject,
            author=principal.display_name,
        )
    except ReviewRateLimitedError as exc:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "detail": str(exc),
                "retry_after_seconds": exc.decision.retry_after_seconds,
            },
            headers={
                "Retry-After": str(exc.decision.retry_after_seconds),
                "X-RateLimit-Remaining": str(exc.decision.remaining),
            },
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return ReviewOut(**row)


@router.post("/{location_id}/enrich", response_model=EnrichmentResultOut)
async def enrich_location(
    location_id: str,
    principal=Depends(get_human_principal),
    pipeline: IntakePipeline = Depends(get_intake_pipeline),
) -> EnrichmentResultOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await pipeline.enrich_location(location_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return EnrichmentResultOut(
        location_id=result.location_id,
        enriched=result.enriched,
        reason=result.reason,
        place_id=result.place_id,
        reviews_imported=result.reviews_imported,
        location=LocationOut(**result.location),
    )


@router.get("/{location_id}/enrich", response_model=EnrichmentStatusOut)
async def get_enrichment_status(
    location_id: str,
    pipeline: IntakePipeline = Depends(get_intake_pipeline),
) -> EnrichmentStatusOut:
    try:
        summary = await pipeline.enrichment_status(location_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return EnrichmentStatusOut(
        location_id=summary.location_id,
        name=summary.name,
        has_real_data=summary.has_real_data,
        rating=summary.rating,
        review_count=summary.review_count,
        images_count=summary.images_count,
        enriched_at=summary.enriched_at,
        enrichment_source=summary.enrichment_source,
    )


def _parse_filter(request: Request) -> LocationFilter:
    params = request.query_params
    raw: dict[str, Any] = {}
    for key in params.keys():
        raw[key] = params.getlist(key) if key in MULTI_VALUE_PARAMS else params.get(key)
    try:
        return LocationFilter.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=jsonable_encoder(exc.errors(include_url=False, include_context=False)),
        ) from exc


def _similar_out(row: SimilarLocation) -> SimilarLocationOut:
    document = row.document
    return SimilarLocationOut(
        id=row.location_id,
        name=document.get("name"),
        address=document.get("address"),
        coordinates=document.get("coordinates") if isinstance(document.get("coordinates"), dict) else None,
        status=document.get("status"),
        score=row.score,
        distance_meters=row.distance_meters,
        components=row.components,
    )
