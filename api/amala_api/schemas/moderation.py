from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from amala_api.schemas.locations import ReviewOut

ModerationAction = Literal["approve", "reject", "reopen", "review_approve", "review_reject"]
BulkErrorCode = Literal["not_found", "invalid_transition", "repository_error", "internal_error"]


class ApproveRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=1000)


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    notes: str | None = Field(default=None, max_length=1000)


class ReopenRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class BulkApproveRequest(BaseModel):
    location_ids: list[str] = Field(min_length=1, max_length=100)
    notes: str | None = Field(default=None, max_length=1000)


class BulkRejectRequest(BaseModel):
    location_ids: list[str] = Field(min_length=1, max_length=100)
    reason: str = Field(min_length=1, max_length=500)
    notes: str | None = Field(default=None, max_length=1000)


class BulkModerationItemOut(BaseModel):
    location_id: str
    ok: bool
    status: str | None = None
    error: BulkErrorCode | None = None
    detail: str | None = None


class BulkModerationOut(BaseModel):
    succeeded: int
    failed: int
    results: list[BulkModerationItemOut] = Field(default_factory=list)


class ModerationEventOut(BaseModel):
    id: str
    location_id: str
    review_id: str | None = None
    action: ModerationAction
    from_status: str | None = None
    to_status: str
    actor_id: str | None = None
    reason: str | None = None
    notes: str | None = None
    created_at: datetime


class ReviewModerationRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class ModeratedReviewOut(ReviewOut):
    user_id: str | None = None
    moderated_at: datetime | None = None
    moderated_by: str | None = None
    moderation_reason: str | None = None


class ModerationHistoryOut(BaseModel):
    items: list[ModerationEventOut] = Field(default_factory=list)
    limit: int
    offset: int
    total: int
    has_more: bool


class StatusCountsOut(BaseModel):
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    total: int = 0


class ModerationStatsOut(BaseModel):
    days: int
    locations: StatusCountsOut
    reviews: StatusCountsOut
    actions_last_day: int
    actions_last_week: int
    actions_in_range: int
    approval_rate: float
