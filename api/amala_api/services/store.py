from __future__ import annotations

from collections import Counter
import copy
from datetime import datetime, timezone
from itertools import count
from typing import Any, Iterable
from uuid import uuid4

from amala_api.schemas.locations import LocationFilter
from amala_api.services.repository import (
    LOCATION_COLUMNS,
    RepositoryConflictError,
    RepositoryNotFoundError,
)


class InMemoryLocationRepository:
    """Process-local repository for local bootstrap and tests."""

    def __init__(self) -> None:
        self.locations: dict[str, dict[str, Any]] = {}
        self.moderation_events: list[dict[str, Any]] = []
        self.reviews: dict[str, dict[str, Any]] = {}
        self.analytics_events: list[dict[str, Any]] = []
        self._event_ids = count(1)
        self._sequence = count(1)

    async def close(self) -> None:
        return None

    async def list_all_locations(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(location) for location in self._ordered()]

    async def list_locations(self, filters: LocationFilter) -> list[dict[str, Any]]:
        matched = [location for location in self._ordered() if matches_filter(location, filters)]
        if filters.sort_by == "name_asc":
            matched.sort(key=lambda row: (str(row.get("name", "")).lower(), row["id"]))
        elif filters.sort_by == "name_desc":
            matched.sort(key=lambda row: row["id"])
            matched.sort(key=lambda row: str(row.get("name", "")).lower(), reverse=True)
        else:
            matched.reverse()
        window = matched[filters.offset : filters.offset + filters.limit]
        return [copy.deepcopy(location) for location in window]

    async def list_locations_by_status(self, status: str, *, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        matched = [location for location in self._ordered() if location.get("status") == status]
        return [copy.deepcopy(location) for location in matched[offset : offset + limit]]

    async def get_location(self, location_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._require(location_id))

    async def create_location(self, document: dict[str, Any]) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        location_id = str(uuid4())
        stored = {
            **{key: value for key, value in copy.deepcopy(document).items() if key not in LOCATION_COLUMNS},
            "id": location_id,
            "status": document.get("status") or "pending",
            "created_at": now,
            "updated_at": now,
            "_sequence": next(self._sequence),
        }
        self.locations[location_id] = stored
        return self._public(stored)

    async def update_location(self, location_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        stored = self._require(location_id)
        stored.update({key: copy.deepcopy(value) for key, value in changes.items() if key not in LOCATION_COLUMNS})
        stored["updated_at"] = datetime.now(timezone.utc)
        return self._public(stored)

    async def apply_status_change(
        self,
        *,
        location_id: str,
        expected_status: str,
        changes: dict[str, Any],
        event: dict[str, Any],
    ) -> dict[str, Any]:
        stored = self._require(location_id)
        if stored.get("status") != expected_status:
            raise RepositoryConflictError(f"location status is {stored.get('status')}, expected {expected_status}")
        stored.update({key: copy.deepcopy(value) for key, value in changes.items() if key not in LOCATION_COLUMNS})
        stored["status"] = changes["status"]
        stored["updated_at"] = datetime.now(timezone.utc)
        self.moderation_events.append(
            {
                "id": str(next(self._event_ids)),
                "location_id": location_id,
                "review_id": None,
                "action": event["action"],
                "from_status": expected_status,
                "to_status": changes["status"],
                "actor_id": event.get("actor_id"),
                "reason": event.get("reason"),
                "notes": event.get("notes"),
                "created_at": event.get("created_at") or datetime.now(timezone.utc),
            }
        )
        return self._public(stored)

    async def list_moderation_events(self, location_id: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(event) for event in self.moderation_events if event["location_id"] == location_id]

    async def replace_reviews_by_source(self, location_id: str, source: str, reviews: list[dict[str, Any]]) -> int:
        self._require(location_id)
        self.reviews = {
            review_id: review
            for review_id, review in self.reviews.items()
            if not (review["location_id"] == location_id and review["source"] == source)
        }
        now = datetime.now(timezone.utc)
        for review in reviews:
            review_id = str(uuid4())
            self.reviews[review_id] = {
                "status": "approved",
                "photos": [],
                **copy.deepcopy(review),
                "id": review_id,
                "location_id": location_id,
                "source": source,
                "created_at": now,
            }
        return len(reviews)

    async def list_reviews(self, location_id: str, *, status: str = "approved") -> list[dict[str, Any]]:
        return [
            copy.deepcopy(review)
            for review in self.reviews.values()
            if review["location_id"] == location_id and review.get("status") == status
        ]

    async def create_review(self, location_id: str, review: dict[str, Any]) -> dict[str, Any]:
        self._require(location_id)
        now = datetime.now(timezone.utc)
        review_id = str(uuid4())
        stored = {
            "status": "pending",
            "photos": [],
            "date_posted": now,
            **copy.deepcopy(review),
            "id": review_id,
            "location_id": location_id,
            "created_at": now,
        }
        self.reviews[review_id] = stored
        return copy.deepcopy(stored)

    async def get_review(self, review_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._require_review(review_id))

    async def update_review_status(
        self,
        *,
        review_id: str,
        expected_status: str,
        changes: dict[str, Any],
        event: dict[str, Any],
    ) -> dict[str, Any]:
        stored = self._require_review(review_id)
        if stored.get("status") != expected_status:
            raise RepositoryConflictError(f"review status is {stored.get('status')}, expected {expected_status}")
        stored.update(copy.deepcopy(changes))
        self.moderation_events.append(
            {
                "id": str(next(self._event_ids)),
                "location_id": stored["location_id"],
                "review_id": review_id,
                "action": event["action"],
                "from_status": expected_status,
                "to_status": changes["status"],
                "actor_id": event.get("actor_id"),
                "reason": event.get("reason"),
                "notes": event.get("notes"),
                "created_at": event.get("created_at") or datetime.now(timezone.utc),
            }
        )
        return copy.deepcopy(stored)

    async def list_moderation_history(
        self,
        *,
        actor_id: str | None = None,
        since: datetime | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        matched = [
            event
            for event in self.moderation_events
            if (not actor_id or event.get("actor_id") == actor_id) and (since is None or event["created_at"] >= since)
        ]
        matched.sort(key=lambda event: (event["created_at"], int(event["id"])), reverse=True)
        return [copy.deepcopy(event) for event in matched[offset : offset + limit]], len(matched)

    async def count_locations_by_status(self, *, since: datetime | None = None) -> dict[str, int]:
        return _count_statuses(self.locations.values(), since)

    async def count_reviews_by_status(self, *, since: datetime | None = None) -> dict[str, int]:
        return _count_statuses(self.reviews.values(), since)

    async def count_moderation_events(self, *, since: datetime | None = None) -> int:
        return sum(1 for event in self.moderation_events if since is None or event["created_at"] >= since)

    async def record_analytics_event(self, event_type: str, payload: dict[str, Any]) -> None:
        self.analytics_events.append({"event_type": event_type, "payload": copy.deepcopy(payload)})

    def _require(self, location_id: str) -> dict[str, Any]:
        stored = self.locations.get(location_id)
        if stored is None:
            raise RepositoryNotFoundError("location not found")
        return stored

    def _require_review(self, review_id: str) -> dict[str, Any]:
        stored = self.reviews.get(review_id)
        if stored is None:
            raise RepositoryNotFoundError("review not found")
        return stored

    def _ordered(self) -> list[dict[str, Any]]:
        rows = sorted(self.locations.values(), key=lambda row: row["_sequence"])
        return [self._public(row) for row in rows]

    @staticmethod
    def _public(stored: dict[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in stored.items() if key != "_sequence"}


def _count_statuses(rows: Iterable[dict[str, Any]], since: datetime | None) -> dict[str, int]:
    counts = Counter(row.get("status") for row in rows if since is None or row["created_at"] >= since)
    return dict(counts)


def matches_filter(location: dict[str, Any], filters: LocationFilter) -> bool:
    status = filters.effective_status()
    if status and location.get("status") != status:
        return False

    if filters.search:
        needle = filters.search.strip().lower()
        haystack = " ".join(
            str(location.get(key) or "") for key in ("name", "address", "description")
        ).lower()
        if needle not in haystack:
            return False

    if filters.open_now is not None and bool(location.get("is_open_now")) != filters.open_now:
        return False
    if filters.service_type and filters.service_type != "all" and location.get("service_type") != filters.service_type:
        return False
    if filters.price_range and location.get("price_range") not in filters.price_range:
        return False
    if filters.cuisine:
        wanted = {item.strip().lower() for item in filters.cuisine if item.strip()}
        if not wanted & {str(item).lower() for item in location.get("cuisine") or []}:
            return False

    if filters.has_bounds:
        coordinates = location.get("coordinates") or {}
        lat, lng = coordinates.get("lat"), coordinates.get("lng")
        if lat is None or lng is None:
            return False
        if not filters.south <= lat <= filters.north:
            return False
        if filters.west <= filters.east:
            if not filters.west <= lng <= filters.east:
                return False
        elif not (lng >= filters.west or lng <= filters.east):
            return False

    return True
