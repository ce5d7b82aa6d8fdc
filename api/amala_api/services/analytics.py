from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import Depends

from amala_api.services.repository import get_repository

LOCATION_SUBMITTED = "location_submitted"
DUPLICATE_SUBMISSION_ATTEMPTED = "duplicate_submission_attempted"
LOCATION_ENRICHED = "location_enriched"
REVIEW_SUBMITTED = "review_submitted"
MODERATION_EVENT_TYPES = {
    "approve": "mod_approve",
    "reject": "mod_reject",
    "reopen": "mod_reopen",
}
REVIEW_MODERATION_EVENT_TYPES = {
    "approve": "review_approve",
    "reject": "review_reject",
}

logger = logging.getLogger(__name__)


class AnalyticsSink:
    """Records product analytics events; a failed write never reaches the caller."""

    def __init__(self, repository) -> None:
        self.repository = repository

    async def emit(self, event_type: str, data: dict[str, Any]) -> None:
        payload = {"timestamp": time.time(), **data}
        try:
            await self.repository.record_analytics_event(event_type, payload)
        except Exception:
            logger.exception("analytics event dropped event_type=%s", event_type)


def get_analytics_sink(repository=Depends(get_repository)) -> AnalyticsSink:
    return AnalyticsSink(repository)
