from __future__ import annotations

import asyncio
from typing import Any

from amala_workers.jobs.batch_enrichment import BatchEnrichmentResult, iter_batch_enrichment, needs_enrichment

REAL_DATA = {
    "id": "loc-real",
    "rating": 4.5,
    "review_count": 30,
    "images": ["https://cdn.example.com/amala.jpg"],
}


def _collect(locations: Any, enrich, sleeps: list[float], delay_seconds: float = 1.0) -> list[BatchEnrichmentResult]:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    async def run() -> list[BatchEnrichmentResult]:
        return [
            result
            async for result in iter_batch_enrichment(
                locations,
                enrich=enrich,
                sleep=fake_sleep,
                delay_seconds=delay_seconds,
            )
        ]

    return asyncio.run(run())


def test_needs_enrichment() -> None:
    assert needs_enrichment(REAL_DATA) is False
    assert needs_enrichment({**REAL_DATA, "images": ["/img/placeholder.png"]}) is True
    assert needs_enrichment({**REAL_DATA, "review_count": 0}) is True
    assert needs_enrichment({"id": "bare"}) is True


def test_batch_waits_only_between_lookups() -> None:
    calls: list[str] = []
    sleeps: list[float] = []

    async def enrich(location_id: str) -> dict[str, Any]:
        calls.append(location_id)
        return {"enriched": location_id != "loc-3", "reason": None if location_id != "loc-3" else "place_not_found"}

    results = _collect(
        [{"id": "loc-1"}, REAL_DATA, {"id": "loc-2"}, {"id": "loc-3"}],
        enrich,
        sleeps,
        delay_seconds=1.5,
    )

    assert calls == ["loc-1", "loc-2", "loc-3"]
    assert sleeps == [1.5, 1.5]
    assert [(result.location_id, result.status, result.reason) for result in results] == [
        ("loc-1", "enriched", None),
        ("loc-real", "skipped", "has_real_data"),
        ("loc-2", "enriched", None),
        ("loc-3", "not_enriched", "place_not_found"),
    ]


def test_batch_continues_after_a_failure() -> None:
    sleeps: list[float] = []

    async def enrich(location_id: str) -> dict[str, Any]:
        if location_id == "loc-1":
            raise RuntimeError("api down")
        return {"enriched": True}

    results = _collect([{"id": "loc-1"}, {"name": "no id"}, {"id": "loc-2"}], enrich, sleeps)

    assert [(result.location_id, result.status, result.reason) for result in results] == [
        ("loc-1", "failed", "RuntimeError"),
        (None, "failed", "missing_id"),
        ("loc-2", "enriched", None),
    ]
    assert sleeps == [1.0]


def test_batch_accepts_async_iterables_and_zero_delay() -> None:
    sleeps: list[float] = []

    async def source():
        for index in range(3):
            yield {"id": f"loc-{index}"}

    async def enrich(location_id: str) -> dict[str, Any]:
        return {"enriched": True}

    results = _collect(source(), enrich, sleeps, delay_seconds=0)

    assert [result.status for result in results] == ["enriched", "enriched", "enriched"]
    assert sleeps == []
