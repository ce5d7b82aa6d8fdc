from __future__ import annotations

from typing import Any

import pytest

from amala_api.services.dedupe import (
    DuplicateCandidate,
    DuplicateDetector,
    haversine_meters,
    normalize_address,
    normalize_name,
)

MAMA_CASS = {
    "id": "loc-1",
    "name": "Mama Cass Amala",
    "address": "12 Allen Ave, Ikeja",
    "coordinates": {"lat": 6.6018, "lng": 3.3515},
    "phone": "+2348031234567",
    "status": "approved",
}


def _candidate(**overrides: Any) -> DuplicateCandidate:
    values: dict[str, Any] = {
        "name": "Mama Cass Amala",
        "address": "12 Allen Ave, Ikeja",
        "coordinates": (6.60185, 3.35155),
    }
    values.update(overrides)
    return DuplicateCandidate(**values)


def test_same_name_within_ten_meters_is_duplicate() -> None:
    result = DuplicateDetector().detect(_candidate(), [MAMA_CASS])

    assert result.is_duplicate is True
    assert len(result.similar_locations) >= 1
    assert result.similar_locations[0].location_id == "loc-1"
    assert result.reason is not None and result.reason.startswith("Duplicate detected: ")
    assert "High confidence duplicate match - likely exact duplicate" in result.moderation_reasons
    assert "Exact name match found" in result.moderation_reasons
    assert "Name and location both within tolerance of an existing approved record" in result.moderation_reasons
    assert "1 location(s) within 50m radius" in result.moderation_reasons


def test_identical_name_five_km_away_is_not_duplicate() -> None:
    far_away = _candidate(coordinates=(6.6018 + 0.045, 3.3515))

    result = DuplicateDetector().detect(far_away, [MAMA_CASS])

    assert result.is_duplicate is False
    assert result.reason is None
    # Still surfaced for human review.
    assert [row.location_id for row in result.similar_locations] == ["loc-1"]
    assert result.similar_locations[0].geo_score == 0.0
    assert "Potential duplicate - requires human review" in result.moderation_reasons


def test_shared_building_with_different_tenant_is_not_duplicate() -> None:
    tenant = _candidate(name="Bukka Hut Grill", coordinates=(6.6018, 3.3515))

    result = DuplicateDetector().detect(tenant, [MAMA_CASS])

    assert result.is_duplicate is False
    assert "Shares location with an existing record but names differ" in result.moderation_reasons


def test_empty_corpus_is_unique() -> None:
    result = DuplicateDetector().detect(_candidate(), [])

    assert result.is_duplicate is False
    assert result.similar_locations == []
    assert result.moderation_reasons == []


def test_malformed_corpus_entries_are_skipped() -> None:
    corpus: list[Any] = [None, "junk", {"name": "No Id Amala"}, {"id": "x-1"}, MAMA_CASS]

    result = DuplicateDetector().detect(_candidate(), corpus)

    assert result.is_duplicate is True
    assert [row.location_id for row in result.similar_locations] == ["loc-1"]


def test_record_without_coordinates_is_compared_on_name_and_address() -> None:
    no_pin = {key: value for key, value in MAMA_CASS.items() if key != "coordinates"}
    no_pin["id"] = "loc-nopin"

    result = DuplicateDetector().detect(_candidate(), [no_pin])

    assert result.is_duplicate is True
    assert result.similar_locations[0].geo_score is None
    assert "Existing record without coordinates compared on name and address only" in result.moderation_reasons


def test_record_without_coordinates_needs_strong_address_match() -> None:
    no_pin = {
        "id": "loc-nopin",
        "name": "Mama Cass Amala",
        "address": "40 Herbert Macaulay Way, Yaba",
        "status": "approved",
    }

    result = DuplicateDetector().detect(_candidate(), [no_pin])

    assert result.is_duplicate is False


def test_nan_coordinates_are_treated_as_missing() -> None:
    nan_pin = {**MAMA_CASS, "id": "loc-nan", "coordinates": {"lat": float("nan"), "lng": 3.3515}}

    result = DuplicateDetector().detect(_candidate(), [nan_pin])

    assert result.similar_locations[0].location_id == "loc-nan"
    assert result.similar_locations[0].geo_score is None


def test_ranking_prefers_higher_composite_then_name() -> None:
    nearby_similar = {
        "id": "loc-2",
        "name": "Mama Cass Amala Kitchen",
        "address": "12 Allen Ave, Ikeja",
        "coordinates": {"lat": 6.6019, "lng": 3.3516},
        "status": "pending",
    }

    result = DuplicateDetector().detect(_candidate(), [nearby_similar, MAMA_CASS])

    assert [row.location_id for row in result.similar_locations] == ["loc-1", "loc-2"]
    assert result.best_match is not None
    assert result.best_match.location_id == "loc-1"
    assert "Multiple similar locations found (2)" in result.moderation_reasons


def test_phone_collision_is_flagged() -> None:
    elsewhere = _candidate(name="Different Place", address="3 Broad Street, Lagos Island", coordinates=(6.45, 3.39), phone="+234 803 123 4567")

    result = DuplicateDetector().detect(elsewhere, [MAMA_CASS])

    assert result.is_duplicate is False
    assert "Phone number already exists in database" in result.moderation_reasons


def test_geo_score_is_linear_between_radii() -> None:
    detector = DuplicateDetector()

    assert detector.geo_score(0.0) == 1.0
    assert detector.geo_score(25.0) == 1.0
    assert detector.geo_score(137.5) == pytest.approx(0.5)
    assert detector.geo_score(250.0) == 0.0
    assert detector.geo_score(5000.0) == 0.0


def test_haversine_one_degree_of_longitude_at_equator() -> None:
    assert haversine_meters((0.0, 0.0), (0.0, 1.0)) == pytest.approx(111_195, rel=1e-3)
    assert haversine_meters((6.6018, 3.3515), (6.6018, 3.3515)) == 0.0


def test_normalization_strips_diacritics_punctuation_and_street_words() -> None:
    assert normalize_name("  Àmàlà   Spot! ") == "amala spot"
    assert normalize_address("12 Allen Avenue, Ikeja") == "12 allen ikeja"
    assert normalize_address("12 Allen Ave., Ikeja") == "12 allen ikeja"
