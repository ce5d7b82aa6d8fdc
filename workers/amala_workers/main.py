from __future__ import annotations

import asyncio
from collections import Counter
import logging

from opentelemetry import trace

from amala_workers.core.config import Settings, get_settings
from amala_workers.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from amala_workers.jobs.batch_enrichment import iter_batch_enrichment
from amala_workers.services.location_client import LocationApiClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_batch_enrichment(
    settings: Settings,
    *,
    client: LocationApiClient | None = None,
    sleep=asyncio.sleep,
) -> dict[str, int]:
    client = client or LocationApiClient(
        settings.api_base_url,
        settings.api_token,
        timeout_seconds=settings.request_timeout_seconds,
    )
    totals: Counter[str] = Counter()
    with tracer.start_as_current_span("worker.batch_enrichment") as span:
        async for result in iter_batch_enrichment(
            client.iter_all_locations(page_size=settings.page_size),
            enrich=client.enrich_location,
            sleep=sleep,
            delay_seconds=settings.enrich_delay_seconds,
        ):
            totals[result.status] += 1
            logger.info(
                "batch enrichment result location_id=%s status=%s reason=%s",
                result.location_id,
                result.status,
                result.reason,
            )
        for status, count in totals.items():
            span.set_attribute(f"batch.{status}", count)

    summary = {status: totals.get(status, 0) for status in ("enriched", "not_enriched", "skipped", "failed")}
    logger.info(
        "batch enrichment finished enriched=%s not_enriched=%s skipped=%s failed=%s",
        summary["enriched"],
        summary["not_enriched"],
        summary["skipped"],
        summary["failed"],
    )
    return summary


async def main() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    try:
        await run_batch_enrichment(settings)
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(main())
