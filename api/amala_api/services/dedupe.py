from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
import logging
import math
import re
from typing import Any
import unicodedata

from rapidfuzz import fuzz

EARTH_RADIUS_METERS = 6_371_000.0
GEO_WEIGHT = 0.50
NAME_WEIGHT = 0.35
ADDRESS_WEIGHT = 0.15
NO_GEO_MIN_SIMILARITY = 0.9
NEARBY_RADIUS_METERS = 50.0
NAME_TOLERANCE = 0.85
AMBIGUITY_DELTA = 0.03

_PUNCT_RE = re.compile(r"[^\w\s]|_")
_SPACE_RE = re.compile(r"\s+")
_DIGITS_RE = re.compile(r"\D+")
_STREET_WORDS = {
    "street",
    "st",
    "road",
    "rd",
    "avenue",
    "ave",
    "lane",
    "ln",
    "close",
    "crescent",
    "way",
}

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DuplicateCandidate:
    name: str
    address: str
    coordinates: tuple[float, float] | None = None
    phone: str | None = None


@dataclass(slots=True)
class CorpusSnapshot:
    location_id: str
    name: str
    address: str
    coordinates: tuple[float, float] | None
    phone: str | None
    status: str | None
    document: Mapping[str, Any]


@dataclass(slots=True)
class SimilarLocation:
    location_id: str
    score: float
    name_similarity: float
    address_similarity: float
    geo_score: float | None
    distance_meters: float | None
    is_match: bool
    document: Mapping[str, Any]

    @property
    def components(self) -> dict[str, float]:
        components = {
            "name_similarity": round(self.name_similarity, 4),
            "address_similarity": round(self.address_similarity, 4),
        }
        if self.geo_score is not None:
            components["geo_score"] = round(self.geo_score, 4)
        return components


@dataclass(slots=True)
class DuplicateCheckResult:
    is_duplicate: bool
    reason: str | None = None
    similar_locations: list[SimilarLocation] = field(default_factory=list)
    moderation_reasons: list[str] = field(default_factory=list)

    @property
    def best_match(self) -> SimilarLocation | None:
        if not self.is_duplicate:
            return None
        return next((row for row in self.similar_locations if row.is_match), None)


class DuplicateDetector:
    def __init__(
        self,
        *,
        duplicate_threshold: float = 0.75,
        review_threshold: float = 0.45,
        min_name_similarity: float = 0.6,
        near_radius_meters: float = 25.0,
        far_radius_meters: float = 250.0,
    ) -> None:
        if far_radius_meters <= near_radius_meters:
            raise ValueError("far_radius_meters must exceed near_radius_meters")
        self.duplicate_threshold = duplicate_threshold
        self.review_threshold = review_threshold
        self.min_name_similarity = min_name_similarity
        self.near_radius_meters = near_radius_meters
        self.far_radius_meters = far_radius_meters

    def detect(self, candidate: DuplicateCandidate, corpus: Sequence[Any]) -> DuplicateCheckResult:
        snapshots = [snapshot for snapshot in (_snapshot(entry) for entry in corpus) if snapshot is not None]
        if not snapshots:
            return DuplicateCheckResult(is_duplicate=False)

        scored = [self.score(candidate, snapshot) for snapshot in snapshots]
        ranked = sorted(scored, key=lambda row: (-row.score, -row.name_similarity, row.location_id))
        similar = [row for row in ranked if row.score >= self.review_threshold]
        matches = [row for row in similar if row.is_match]

        is_duplicate = bool(matches)
        reason = _duplicate_reason(matches[0]) if is_duplicate else None
        moderation_reasons = self._moderation_reasons(candidate, snapshots, ranked, similar)
        return DuplicateCheckResult(
            is_duplicate=is_duplicate,
            reason=reason,
            similar_locations=similar,
            moderation_reasons=moderation_reasons,
        )

    def score(self, candidate: DuplicateCandidate, existing: CorpusSnapshot) -> SimilarLocation:
        name_similarity = text_similarity(normalize_name(candidate.name), normalize_name(existing.name))
        address_similarity = text_similarity(
            normalize_address(candidate.address),
            normalize_address(existing.address),
        )

        distance: float | None = None
        geo_score: float | None = None
        if candidate.coordinates is not None and existing.coordinates is not None:
            distance = haversine_meters(candidate.coordinates, existing.coordinates)
            geo_score = self.geo_score(distance)

        if geo_score is None:
            composite = (NAME_WEIGHT * name_similarity + ADDRESS_WEIGHT * address_similarity) / (
                NAME_WEIGHT + ADDRESS_WEIGHT
            )
            is_match = name_similarity >= NO_GEO_MIN_SIMILARITY and address_similarity >= NO_GEO_MIN_SIMILARITY
        else:
            composite = GEO_WEIGHT * geo_score + NAME_WEIGHT * name_similarity + ADDRESS_WEIGHT * address_similarity
            is_match = True

        is_match = (
            is_match and composite >= self.duplicate_threshold and name_similarity >= self.min_name_similarity
        )
        return SimilarLocation(
            location_id=existing.location_id,
            score=round(composite, 4),
            name_similarity=name_similarity,
            address_similarity=address_similarity,
            geo_score=geo_score,
            distance_meters=round(distance, 1) if distance is not None else None,
            is_match=is_match,
            document=existing.document,
        )

    def geo_score(self, distance_meters: float) -> float:
        if distance_meters <= self.near_radius_meters:
            return 1.0
        if distance_meters >= self.far_radius_meters:
            return 0.0
        span = self.far_radius_meters - self.near_radius_meters
        return 1.0 - (distance_meters - self.near_radius_meters) / span

    def _moderation_reasons(
        self,
        candidate: DuplicateCandidate,
        snapshots: list[CorpusSnapshot],
        ranked: list[SimilarLocation],
        similar: list[SimilarLocation],
    ) -> list[str]:
        reasons: list[str] = []
        if similar:
            best = similar[0].score
            if best > 0.95:
                reasons.append("High confidence duplicate match - likely exact duplicate")
            elif best > 0.85:
                reasons.append("Strong duplicate match - manual verification recommended")
            else:
                reasons.append("Potential duplicate - requires human review")
        if len(similar) > 1:
            reasons.append(f"Multiple similar locations found ({len(similar)})")

        by_id = {snapshot.location_id: snapshot for snapshot in snapshots}
        candidate_name = normalize_name(candidate.name)
        if candidate_name and any(normalize_name(by_id[row.location_id].name) == candidate_name for row in similar):
            reasons.append("Exact name match found")

        if any(
            by_id[row.location_id].status == "approved"
            and row.geo_score is not None
            and row.geo_score > 0
            and row.name_similarity >= NAME_TOLERANCE
            for row in ranked
        ):
            reasons.append("Name and location both within tolerance of an existing approved record")

        nearby = sum(
            1 for row in ranked if row.distance_meters is not None and row.distance_meters <= NEARBY_RADIUS_METERS
        )
        if nearby:
            reasons.append(f"{nearby} location(s) within {NEARBY_RADIUS_METERS:.0f}m radius")

        if any(
            row.distance_meters is not None
            and row.distance_meters <= self.near_radius_meters
            and row.name_similarity < self.min_name_similarity
            for row in ranked
        ):
            reasons.append("Shares location with an existing record but names differ")

        phone_digits = normalize_phone(candidate.phone)
        if phone_digits and any(normalize_phone(snapshot.phone) == phone_digits for snapshot in snapshots):
            reasons.append("Phone number already exists in database")

        if any(row.geo_score is None for row in similar):
            reasons.append("Existing record without coordinates compared on name and address only")

        if len(similar) > 1 and abs(similar[0].score - similar[1].score) <= AMBIGUITY_DELTA:
            reasons.append("Multiple close matches with near-equal scores")

        return _dedupe_text_list(reasons)


def haversine_meters(origin: tuple[float, float], target: tuple[float, float]) -> float:
    lat1, lng1 = origin
    lat2, lng2 = target
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lng2 - lng1)
    a = math.sin(delta_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def normalize_name(value: str | None) -> str:
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    without_punct = _PUNCT_RE.sub(" ", stripped.casefold())
    return _SPACE_RE.sub(" ", without_punct).strip()


def normalize_address(value: str | None) -> str:
    tokens = normalize_name(value).split()
    return " ".join(token for token in tokens if token not in _STREET_WORDS)


def normalize_phone(value: str | None) -> str | None:
    if not value:
        return None
    digits = _DIGITS_RE.sub("", value)
    return digits if len(digits) >= 7 else None


def text_similarity(left: str, right: str) -> float:
    if not left or not right:
        return 0.0
    return fuzz.token_set_ratio(left, right) / 100.0


def _snapshot(entry: Any) -> CorpusSnapshot | None:
    if not isinstance(entry, Mapping):
        logger.warning("dedupe skipped corpus entry reason=not_a_mapping type=%s", type(entry).__name__)
        return None
    location_id = _coerce_text(entry.get("id"))
    name = _coerce_text(entry.get("name"))
    if not location_id or not name:
        logger.warning("dedupe skipped corpus entry reason=missing_identity id=%s", location_id)
        return None
    return CorpusSnapshot(
        location_id=location_id,
        name=name,
        address=_coerce_text(entry.get("address")) or "",
        coordinates=_coordinates(entry.get("coordinates")),
        phone=_coerce_text(entry.get("phone")),
        status=_coerce_text(entry.get("status")),
        document=entry,
    )


def _coordinates(raw: Any) -> tuple[float, float] | None:
    if not isinstance(raw, Mapping):
        return None
    try:
        lat = float(raw["lat"])
        lng = float(raw["lng"])
    except (KeyError, TypeError, ValueError):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    return lat, lng


def _duplicate_reason(match: SimilarLocation) -> str:
    signals: list[str] = []
    if match.name_similarity >= NO_GEO_MIN_SIMILARITY:
        signals.append("very similar name")
    else:
        signals.append(f"similar name ({match.name_similarity:.0%})")
    if match.address_similarity >= 0.8:
        signals.append("similar address")
    if match.distance_meters is not None:
        signals.append(f"{match.distance_meters:.0f}m away")
    return "Duplicate detected: " + ", ".join(signals)


def _coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _dedupe_text_list(values: list[str]) -> list[str]:
    seen: set[str] = set()
    deduped: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        deduped.append(value)
    return deduped
