from __future__ import annotations

from typing import Any
from urllib.parse import quote

from amala_api.schemas.locations import LocationDraft, PriceRange, ServiceType, dedupe_urls
from amala_api.schemas.places import PlaceDetails
from amala_api.services.hours import hours_from_periods

PHOTO_MAX_WIDTH = 400
PRICE_LADDER: dict[str, PriceRange] = {
    "PRICE_LEVEL_FREE": "$",
    "PRICE_LEVEL_INEXPENSIVE": "$",
    "PRICE_LEVEL_MODERATE": "$$",
    "PRICE_LEVEL_EXPENSIVE": "$$$",
}
LEGACY_PRICE_LADDER: dict[int, PriceRange] = {0: "$", 1: "$", 2: "$$", 3: "$$$"}


class EnrichmentMerger:
    """Overlays third-party place details onto a location draft.

    The submitted draft is the base. Coordinates are only filled when the draft
    has none; everything else follows the per-field policy in ``merge``. Merging
    the same details twice gives the same draft.
    """

    def __init__(self, *, photo_url_template: str, max_photos: int = 5) -> None:
        self.photo_url_template = photo_url_template
        self.max_photos = max_photos

    def merge(self, draft: LocationDraft, details: PlaceDetails | None) -> LocationDraft:
        if details is None:
            return draft

        changes: dict[str, Any] = {}
        if draft.coordinates is None and details.location is not None:
            changes["coordinates"] = {"lat": details.location.latitude, "lng": details.location.longitude}

        changes["phone"] = details.phone or draft.phone
        changes["website"] = details.website_uri or draft.website
        changes["rating"] = details.rating if details.rating is not None else draft.rating
        changes["review_count"] = (
            details.user_rating_count if details.user_rating_count is not None else draft.review_count
        )
        changes["images"] = dedupe_urls([*draft.images, *self.photo_urls(details, draft.name)])

        if details.regular_opening_hours is not None:
            hours = hours_from_periods(details.regular_opening_hours.periods)
            if hours is not None:
                changes["hours"] = hours

        changes["price_range"] = map_price_level(details.price_level) or draft.price_range
        changes["service_type"] = infer_service_type(details) or draft.service_type

        open_now = details.open_now
        if open_now is None:
            open_now = draft.is_open_now if draft.is_open_now is not None else False
        changes["is_open_now"] = open_now
        changes["place_id"] = details.id or draft.place_id

        # Submission-only fields (submitter_info) are dropped here.
        return LocationDraft.model_validate({**draft.model_dump(), **_dump_nested(changes)})

    def photo_urls(self, details: PlaceDetails, location_name: str) -> list[str]:
        display_name = details.display_name.text if details.display_name and details.display_name.text else None
        name = display_name or location_name
        urls: list[str] = []
        for photo in details.photos[: self.max_photos]:
            urls.append(
                self.photo_url_template.format(
                    reference=quote(photo.name, safe="/"),
                    max_width=PHOTO_MAX_WIDTH,
                    location_name=quote(name, safe=""),
                )
            )
        return urls


def map_price_level(price_level: str | int | None) -> PriceRange | None:
    if price_level is None:
        return None
    if isinstance(price_level, int):
        return LEGACY_PRICE_LADDER.get(price_level, "$$$$")
    return PRICE_LADDER.get(price_level, "$$$$")


def infer_service_type(details: PlaceDetails) -> ServiceType | None:
    tags = [tag.lower() for tag in details.types]
    if not tags:
        return None
    if any("takeaway" in tag or "delivery" in tag for tag in tags):
        return "takeaway"
    if "restaurant" in tags:
        if details.dine_in and not details.takeout and not details.delivery:
            return "dine-in"
        return "both"
    return None


def _dump_nested(changes: dict[str, Any]) -> dict[str, Any]:
    dumped: dict[str, Any] = {}
    for key, value in changes.items():
        if key == "hours":
            dumped[key] = {day: hours.model_dump() for day, hours in value.items()}
        else:
            dumped[key] = value
    return dumped
