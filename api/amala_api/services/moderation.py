from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable

from fastapi import Depends
from opentelemetry import trace

from amala_api.services.analytics import MODERATION_EVENT_TYPES, AnalyticsSink, get_analytics_sink
from amala_api.services.repository import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    get_repository,
)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"approved", "rejected"},
    "approved": set(),
    "rejected": set(),
}
REOPENABLE_STATUSES = {"approved", "rejected"}

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class InvalidTransitionError(Exception):
    def __init__(self, location_id: str, from_status: str | None, to_status: str) -> None:
        super().__init__(f"cannot move location {location_id} from {from_status} to {to_status}")
        self.location_id = location_id
        self.from_status = from_status
        self.to_status = to_status


@dataclass(slots=True)
class BulkModerationItem:
    location_id: str
    ok: bool
    status: str | None = None
    error: str | None = None
    detail: str | None = None


@dataclass(slots=True)
class ModerationStats:
    days: int
    locations: dict[str, int]
    reviews: dict[str, int]
    actions_last_day: int
    actions_last_week: int
    actions_in_range: int

    @property
    def approval_rate(self) -> float:
        total = sum(self.locations.values()) + sum(self.reviews.values())
        if not total:
            return 0.0
        approved = self.locations.get("approved", 0) + self.reviews.get("approved", 0)
        return round(approved / total * 100, 1)


def validate_transition(location_id: str, from_status: str | None, to_status: str) -> None:
    if to_status not in ALLOWED_TRANSITIONS.get(from_status or "", set()):
        raise InvalidTransitionError(location_id, from_status, to_status)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ModerationStateMachine:
    """Moves locations out of ``pending`` and records an audit event per change.

    Approved and rejected are terminal for ordinary moderation. ``reopen`` is the
    separate admin path back to pending; callers must check ``admin:write``.
    """

    def __init__(
        self,
        repository,
        *,
        clock: Callable[[], datetime] = _utcnow,
        analytics: AnalyticsSink | None = None,
    ) -> None:
        self.repository = repository
        self.clock = clock
        self.analytics = analytics

    async def approve(self, location_id: str, *, actor_id: str | None = None, notes: str | None = None) -> dict[str, Any]:
        return await self._transition(
            location_id,
            action="approve",
            to_status="approved",
            actor_id=actor_id,
            notes=notes,
            extra_changes={},
        )

    async def reject(
        self,
        location_id: str,
        reason: str,
        *,
        actor_id: str | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        reason = (reason or "").strip()
        if not reason:
            raise ValueError("rejection reason is required")
        return await self._transition(
            location_id,
            action="reject",
            to_status="rejected",
            actor_id=actor_id,
            notes=notes,
            reason=reason,
            extra_changes={"rejection_reason": reason},
        )

    async def reopen(self, location_id: str, *, actor_id: str | None, reason: str | None = None) -> dict[str, Any]:
        with tracer.start_as_current_span("moderation.reopen") as span:
            span.set_attribute("location.id", location_id)
            current = await self.repository.get_location(location_id)
            from_status = current.get("status")
            if from_status not in REOPENABLE_STATUSES:
                raise InvalidTransitionError(location_id, from_status, "pending")
            return await self._apply(
                location_id,
                action="reopen",
                from_status=from_status,
                to_status="pending",
                actor_id=actor_id,
                notes=None,
                reason=reason,
                extra_changes={"rejection_reason": None},
            )

    async def bulk_approve(
        self,
        location_ids: list[str],
        *,
        actor_id: str | None = None,
        notes: str | None = None,
    ) -> list[BulkModerationItem]:
        return await self._bulk(location_ids, lambda location_id: self.approve(location_id, actor_id=actor_id, notes=notes))

    async def bulk_reject(
        self,
        location_ids: list[str],
        reason: str,
        *,
        actor_id: str | None = None,
        notes: str | None = None,
    ) -> list[BulkModerationItem]:
        if not (reason or "").strip():
            raise ValueError("rejection reason is required")
        return await self._bulk(
            location_ids,
            lambda location_id: self.reject(location_id, reason, actor_id=actor_id, notes=notes),
        )

    async def _bulk(self, location_ids: list[str], action) -> list[BulkModerationItem]:
        results: list[BulkModerationItem] = []
        for location_id in location_ids:
            try:
                updated = await action(location_id)
            except RepositoryNotFoundError as exc:
                results.append(BulkModerationItem(location_id=location_id, ok=False, error="not_found", detail=str(exc)))
            except InvalidTransitionError as exc:
                results.append(
                    BulkModerationItem(
                        location_id=location_id,
                        ok=False,
                        status=exc.from_status,
                        error="invalid_transition",
                        detail=str(exc),
                    )
                )
            except RepositoryError as exc:
                logger.warning("bulk moderation repository failure location_id=%s error=%s", location_id, exc)
                results.append(
                    BulkModerationItem(location_id=location_id, ok=False, error="repository_error", detail=str(exc))
                )
            except Exception:
                logger.exception("bulk moderation failed location_id=%s", location_id)
                results.append(BulkModerationItem(location_id=location_id, ok=False, error="internal_error"))
            else:
                results.append(BulkModerationItem(location_id=location_id, ok=True, status=updated.get("status")))
        return results

    async def _transition(
        self,
        location_id: str,
        *,
        action: str,
        to_status: str,
        actor_id: str | None,
        notes: str | None,
        extra_changes: dict[str, Any],
        reason: str | None = None,
    ) -> dict[str, Any]:
        with tracer.start_as_current_span(f"moderation.{action}") as span:
            span.set_attribute("location.id", location_id)
            current = await self.repository.get_location(location_id)
            from_status = current.get("status")
            validate_transition(location_id, from_status, to_status)
            return await self._apply(
                location_id,
                action=action,
                from_status=from_status,
                to_status=to_status,
                actor_id=actor_id,
                notes=notes,
                reason=reason,
                extra_changes=extra_changes,
            )

    async def _apply(
        self,
        location_id: str,
        *,
        action: str,
        from_status: str,
        to_status: str,
        actor_id: str | None,
        notes: str | None,
        reason: str | None,
        extra_changes: dict[str, Any],
    ) -> dict[str, Any]:
        moderated_at = self.clock()
        changes = {
            "status": to_status,
            "moderated_at": moderated_at.isoformat(),
            "moderated_by": actor_id,
            "moderation_notes": notes,
            **extra_changes,
        }
        event = {
            "action": action,
            "actor_id": actor_id,
            "reason": reason,
            "notes": notes,
            "created_at": moderated_at,
        }
        try:
            updated = await self.repository.apply_status_change(
                location_id=location_id,
                expected_status=from_status,
                changes=changes,
                event=event,
            )
        except RepositoryConflictError as exc:
            # Another moderator changed the record between read and write.
            raise InvalidTransitionError(location_id, from_status, to_status) from exc

        logger.info(
            "location moderated location_id=%s action=%s from_status=%s to_status=%s actor_id=%s",
            location_id,
            action,
            from_status,
            to_status,
            actor_id,
        )
        if self.analytics is not None:
            await self.analytics.emit(
                MODERATION_EVENT_TYPES[action],
                {"location_id": location_id, "actor_id": actor_id, "from_status": from_status},
            )
        return updated


async def collect_moderation_stats(repository, *, days: int, now: datetime | None = None) -> ModerationStats:
    """Counts records created in the last ``days`` days and recent moderator actions."""
    now = now or _utcnow()
    since = now - timedelta(days=days)
    return ModerationStats(
        days=days,
        locations=await repository.count_locations_by_status(since=since),
        reviews=await repository.count_reviews_by_status(since=since),
        actions_last_day=await repository.count_moderation_events(since=now - timedelta(days=1)),
        actions_last_week=await repository.count_moderation_events(since=now - timedelta(days=7)),
        actions_in_range=await repository.count_moderation_events(since=since),
    )


def get_moderation_state_machine(
    repository=Depends(get_repository),
    analytics: AnalyticsSink = Depends(get_analytics_sink),
) -> ModerationStateMachine:
    return ModerationStateMachine(repository, analytics=analytics)
