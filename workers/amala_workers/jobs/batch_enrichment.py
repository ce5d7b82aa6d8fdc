from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass
import logging
from typing import Any, Literal

BatchStatus = Literal["enriched", "not_enriched", "skipped", "failed"]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchEnrichmentResult:
    location_id: str | None
    status: BatchStatus
    reason: str | None = None


def needs_enrichment(location: dict[str, Any]) -> bool:
    rating = location.get("rating") or 0
    review_count = location.get("review_count") or 0
    images = location.get("images") or []
    has_real_image = any(isinstance(url, str) and "placeholder" not in url for url in images)
    return not (rating > 0 and review_count > 0 and has_real_image)


async def iter_batch_enrichment(
    locations: Iterable[dict[str, Any]] | AsyncIterable[dict[str, Any]],
    *,
    enrich: Callable[[str], Awaitable[dict[str, Any]]],
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    delay_seconds: float = 1.0,
) -> AsyncIterator[BatchEnrichmentResult]:
    """Re-enrich records one at a time, yielding one result per record.

    ``sleep`` runs between consecutive lookups only; skipped records never wait.
    """
    lookups_started = 0
    async for location in _as_async(locations):
        location_id = _as_text(location.get("id")) if isinstance(location, dict) else None
        if location_id is None:
            yield BatchEnrichmentResult(location_id=None, status="failed", reason="missing_id")
            continue
        if not needs_enrichment(location):
            yield BatchEnrichmentResult(location_id=location_id, status="skipped", reason="has_real_data")
            continue

        if lookups_started and delay_seconds > 0:
            await sleep(delay_seconds)
        lookups_started += 1

        try:
            payload = await enrich(location_id)
        except Exception as exc:  # one record must not stop the batch
            logger.exception("batch enrichment failed location_id=%s", location_id)
            yield BatchEnrichmentResult(location_id=location_id, status="failed", reason=exc.__class__.__name__)
            continue

        if payload.get("enriched"):
            yield BatchEnrichmentResult(location_id=location_id, status="enriched")
        else:
            yield BatchEnrichmentResult(
                location_id=location_id,
                status="not_enriched",
                reason=_as_text(payload.get("reason")),
            )


async def _as_async(items: Iterable[Any] | AsyncIterable[Any]) -> AsyncIterator[Any]:
    if isinstance(items, AsyncIterable):
        async for item in items:
            yield item
    else:
        for item in items:
            yield item


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
