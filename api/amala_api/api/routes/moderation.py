from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status

from amala_api.core.security import get_human_principal
from amala_api.schemas.locations import LocationOut
from amala_api.schemas.moderation import (
    ApproveRequest,
    BulkApproveRequest,
    BulkModerationItemOut,
    BulkModerationOut,
    BulkRejectRequest,
    ModeratedReviewOut,
    ModerationEventOut,
    ModerationHistoryOut,
    ModerationStatsOut,
    RejectRequest,
    ReopenRequest,
    ReviewModerationRequest,
    StatusCountsOut,
)
from amala_api.services.moderation import (
    BulkModerationItem,
    InvalidTransitionError,
    ModerationStateMachine,
    collect_moderation_stats,
    get_moderation_state_machine,
)
from amala_api.services.repository import (
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)
from amala_api.services.reviews import InvalidReviewTransitionError, ReviewService, get_review_service

router = APIRouter()


@router.get("/pending", response_model=list[LocationOut])
async def list_pending_locations(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[LocationOut]:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_locations_by_status("pending", limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [LocationOut(**row) for row in rows]


@router.post("/locations/{location_id}/approve", response_model=LocationOut)
async def approve_location(
    location_id: str,
    payload: ApproveRequest | None = None,
    principal=Depends(get_human_principal),
    machine: ModerationStateMachine = Depends(get_moderation_state_machine),
) -> LocationOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    notes = payload.notes if payload else None
    try:
        row = await machine.approve(location_id, actor_id=principal.actor_id, notes=notes)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc

    return LocationOut(**row)


@router.post("/locations/{location_id}/reject", response_model=LocationOut)
async def reject_location(
    location_id: str,
    payload: RejectRequest,
    principal=Depends(get_human_principal),
    machine: ModerationStateMachine = Depends(get_moderation_state_machine),
) -> LocationOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await machine.reject(location_id, payload.reason, actor_id=principal.actor_id, notes=payload.notes)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc

    return LocationOut(**row)


@router.post("/locations/{location_id}/reopen", response_model=LocationOut)
async def reopen_location(
    location_id: str,
    payload: ReopenRequest | None = None,
    principal=Depends(get_human_principal),
    machine: ModerationStateMachine = Depends(get_moderation_state_machine),
) -> LocationOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await machine.reopen(location_id, actor_id=principal.actor_id, reason=payload.reason if payload else None)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc

    return LocationOut(**row)


@router.post("/bulk/approve", response_model=BulkModerationOut)
async def bulk_approve_locations(
    payload: BulkApproveRequest,
    principal=Depends(get_human_principal),
    machine: ModerationStateMachine = Depends(get_moderation_state_machine),
) -> BulkModerationOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    results = await machine.bulk_approve(payload.location_ids, actor_id=principal.actor_id, notes=payload.notes)
    return _bulk_out(results)


@router.post("/bulk/reject", response_model=BulkModerationOut)
async def bulk_reject_locations(
    payload: BulkRejectRequest,
    principal=Depends(get_human_principal),
    machine: ModerationStateMachine = Depends(get_moderation_state_machine),
) -> BulkModerationOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        results = await machine.bulk_reject(
            payload.location_ids,
            payload.reason,
            actor_id=principal.actor_id,
            notes=payload.notes,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _bulk_out(results)


@router.get("/locations/{location_id}/events", response_model=list[ModerationEventOut])
async def list_moderation_events(
    location_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> list[ModerationEventOut]:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        await repository.get_location(location_id)
        rows = await repository.list_moderation_events(location_id)
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc

    return [ModerationEventOut(**row) for row in rows]


@router.post("/reviews/{review_id}/approve", response_model=ModeratedReviewOut)
async def approve_review(
    review_id: str,
    payload: ReviewModerationRequest | None = None,
    principal=Depends(get_human_principal),
    service: ReviewService = Depends(get_review_service),
) -> ModeratedReviewOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await service.approve(review_id, actor_id=principal.actor_id, reason=payload.reason if payload else None)
    except InvalidReviewTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc

    return ModeratedReviewOut(**row)


@router.post("/reviews/{review_id}/reject", response_model=ModeratedReviewOut)
async def reject_review(
    review_id: str,
    payload: ReviewModerationRequest | None = None,
    principal=Depends(get_human_principal),
    service: ReviewService = Depends(get_review_service),
) -> ModeratedReviewOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await service.reject(review_id, actor_id=principal.actor_id, reason=payload.reason if payload else None)
    except InvalidReviewTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc

    return ModeratedReviewOut(**row)


@router.get("/history", response_model=ModerationHistoryOut)
async def list_moderation_history(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    actor_id: str | None = Query(default=None, min_length=1),
    days: int = Query(default=30, ge=1, le=365),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> ModerationHistoryOut:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    since = datetime.now(timezone.utc) - timedelta(days=days)
    try:
        rows, total = await repository.list_moderation_history(
            actor_id=actor_id,
            since=since,
            limit=limit,
            offset=offset,
        )
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc

    return ModerationHistoryOut(
        items=[ModerationEventOut(**row) for row in rows],
        limit=limit,
        offset=offset,
        total=total,
        has_more=offset + len(rows) < total,
    )


@router.get("/stats", response_model=ModerationStatsOut)
async def get_moderation_stats(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    days: int = Query(default=30, ge=1, le=365),
) -> ModerationStatsOut:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        stats = await collect_moderation_stats(repository, days=days)
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc

    return ModerationStatsOut(
        days=stats.days,
        locations=_status_counts(stats.locations),
        reviews=_status_counts(stats.reviews),
        actions_last_day=stats.actions_last_day,
        actions_last_week=stats.actions_last_week,
        actions_in_range=stats.actions_in_range,
        approval_rate=stats.approval_rate,
    )


def _bulk_out(results: list[BulkModerationItem]) -> BulkModerationOut:
    items = [
        BulkModerationItemOut(
            location_id=item.location_id,
            ok=item.ok,
            status=item.status,
            error=item.error,
            detail=item.detail,
        )
        for item in results
    ]
    succeeded = sum(1 for item in items if item.ok)
    return BulkModerationOut(succeeded=succeeded, failed=len(items) - succeeded, results=items)


def _repository_http_error(exc: RepositoryError) -> HTTPException:
    if isinstance(exc, RepositoryUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _status_counts(counts: dict[str, int]) -> StatusCountsOut:
    return StatusCountsOut(
        pending=counts.get("pending", 0),
        approved=counts.get("approved", 0),
        rejected=counts.get("rejected", 0),
        total=sum(counts.values()),
    )
