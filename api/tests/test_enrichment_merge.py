from __future__ import annotations

from typing import Any

import pytest

from amala_api.core.config import Settings
from amala_api.schemas.locations import WEEKDAYS, DayHours, LocationDraft
from amala_api.schemas.places import PlaceDetails
from amala_api.services.enrichment import EnrichmentMerger, infer_service_type, map_price_level

PHOTO_TEMPLATE = Settings().places_photo_url_template


def _draft(**overrides: Any) -> LocationDraft:
    values: dict[str, Any] = {
        "name": "Mama Cass Amala",
        "address": "12 Allen Ave, Ikeja",
        "coordinates": {"lat": 6.6018, "lng": 3.3515},
        "phone": "+2348000000000",
        "images": ["https://cdn.example.com/front.jpg"],
    }
    values.update(overrides)
    return LocationDraft.model_validate(values)


def _details(**overrides: Any) -> PlaceDetails:
    payload: dict[str, Any] = {
        "id": "ChIJ-mama-cass",
        "displayName": {"text": "Mama Cass", "languageCode": "en"},
        "location": {"latitude": 6.6021, "longitude": 3.3519},
        "rating": 4.4,
        "userRatingCount": 212,
        "nationalPhoneNumber": "0803 123 4567",
        "websiteUri": "https://mamacass.example.com",
        "priceLevel": "PRICE_LEVEL_EXPENSIVE",
        "types": ["restaurant", "food"],
        "dineIn": True,
        "takeout": True,
        "currentOpeningHours": {"openNow": True},
        "regularOpeningHours": {
            "openNow": False,
            "periods": [
                {"open": {"day": 1, "hour": 9, "minute": 0}, "close": {"day": 1, "hour": 22, "minute": 30}},
                {"open": {"day": 6, "hour": 10, "minute": 0}, "close": {"day": 6, "hour": 23, "minute": 0}},
            ],
        },
        "photos": [{"name": f"places/ChIJ-mama-cass/photos/p{index}"} for index in range(7)],
    }
    payload.update(overrides)
    return PlaceDetails.model_validate(payload)


def _merger() -> EnrichmentMerger:
    return EnrichmentMerger(photo_url_template=PHOTO_TEMPLATE, max_photos=5)


def test_merge_without_details_returns_draft_unchanged() -> None:
    draft = _draft()
    assert _merger().merge(draft, None) is draft


def test_merge_overlays_place_details() -> None:
    merged = _merger().merge(_draft(), _details())

    assert merged.phone == "0803 123 4567"
    assert merged.website == "https://mamacass.example.com"
    assert merged.rating == 4.4
    assert merged.review_count == 212
    assert merged.price_range == "$$$"
    assert merged.service_type == "both"
    assert merged.is_open_now is True
    assert merged.place_id == "ChIJ-mama-cass"


def test_merge_never_moves_submitted_coordinates() -> None:
    merged = _merger().merge(_draft(), _details())

    assert merged.coordinates is not None
    assert (merged.coordinates.lat, merged.coordinates.lng) == (6.6018, 3.3515)


def test_merge_fills_missing_coordinates() -> None:
    merged = _merger().merge(_draft(coordinates=None), _details())

    assert merged.coordinates is not None
    assert (merged.coordinates.lat, merged.coordinates.lng) == (6.6021, 3.3519)


def test_merge_caps_photos_and_keeps_submitted_images_first() -> None:
    merged = _merger().merge(_draft(), _details())

    assert len(merged.images) == 6
    assert merged.images[0] == "https://cdn.example.com/front.jpg"
    assert merged.images[1] == (
        "/api/proxy/google-photo?photoreference=places/ChIJ-mama-cass/photos/p0&maxwidth=400&locationName=Mama%20Cass"
    )


def test_merge_hours_cover_every_weekday() -> None:
    merged = _merger().merge(_draft(), _details())

    assert set(merged.hours) == set(WEEKDAYS)
    assert merged.hours["monday"].model_dump() == {"open": "09:00", "close": "22:30", "is_open": True}
    assert merged.hours["saturday"].model_dump() == {"open": "10:00", "close": "23:00", "is_open": True}
    assert merged.hours["tuesday"].is_open is False


def test_single_digit_hours_are_zero_padded() -> None:
    assert DayHours(open="8:00", close="20:00").model_dump() == {"open": "08:00", "close": "20:00", "is_open": False}

    draft = _draft(hours={"monday": {"open": "9:30", "close": "7:05", "is_open": True}})
    assert (draft.hours["monday"].open, draft.hours["monday"].close) == ("09:30", "07:05")

    with pytest.raises(ValueError):
        DayHours(open="24:00", close="20:00")


def test_merge_keeps_draft_values_when_details_are_sparse() -> None:
    draft = _draft(price_range="$", service_type="dine-in", rating=3.0)
    merged = _merger().merge(draft, PlaceDetails.model_validate({"id": "ChIJ-bare"}))

    assert merged.phone == "+2348000000000"
    assert merged.price_range == "$"
    assert merged.service_type == "dine-in"
    assert merged.rating == 3.0
    assert merged.hours == draft.hours
    assert merged.is_open_now is False


def test_merge_is_idempotent() -> None:
    merger = _merger()
    details = _details()

    once = merger.merge(_draft(), details)
    twice = merger.merge(once, details)

    assert twice.model_dump() == once.model_dump()


@pytest.mark.parametrize(
    ("price_level", "expected"),
    [
        ("PRICE_LEVEL_FREE", "$"),
        ("PRICE_LEVEL_INEXPENSIVE", "$"),
        ("PRICE_LEVEL_MODERATE", "$$"),
        ("PRICE_LEVEL_EXPENSIVE", "$$$"),
        ("PRICE_LEVEL_VERY_EXPENSIVE", "$$$$"),
        ("PRICE_LEVEL_UNSPECIFIED", "$$$$"),
        (None, None),
        (0, "$"),
        (2, "$$"),
        (4, "$$$$"),
    ],
)
def test_map_price_level(price_level: Any, expected: str | None) -> None:
    assert map_price_level(price_level) == expected


def test_infer_service_type_rules() -> None:
    assert infer_service_type(PlaceDetails.model_validate({"types": ["meal_takeaway", "restaurant"]})) == "takeaway"
    assert infer_service_type(PlaceDetails.model_validate({"types": ["meal_delivery"]})) == "takeaway"
    assert (
        infer_service_type(PlaceDetails.model_validate({"types": ["restaurant"], "dineIn": True, "takeout": False}))
        == "dine-in"
    )
    assert infer_service_type(PlaceDetails.model_validate({"types": ["restaurant"]})) == "both"
    assert infer_service_type(PlaceDetails.model_validate({"types": ["cafe"]})) is None
    assert infer_service_type(PlaceDetails.model_validate({})) is None
