from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

LocationStatus = Literal["pending", "approved", "rejected"]
ReviewStatus = Literal["pending", "approved", "rejected"]
ServiceType = Literal["dine-in", "takeaway", "both"]
PriceRange = Literal["$", "$$", "$$$", "$$$$"]
DietaryOption = Literal["vegan", "vegetarian", "gluten-free", "halal", "kosher"]
FeatureOption = Literal["wheelchair-accessible", "parking", "wifi", "outdoor-seating"]
DiscoverySource = Literal[
    "user-submitted",
    "web-scraping",
    "social-media",
    "directory",
    "google-places-api",
    "autonomous-discovery",
]
SortBy = Literal["default", "name_asc", "name_desc"]

WEEKDAYS: tuple[str, ...] = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_TIME_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")
_PHONE_RE = re.compile(r"^\+?[\d\s\-()]{7,20}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_WHITESPACE_RE = re.compile(r"\s+")


class Coordinates(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class DayHours(BaseModel):
    open: str
    close: str
    is_open: bool = False

    @field_validator("open", "close")
    @classmethod
    def validate_time(cls, value: str) -> str:
        if not _TIME_RE.match(value):
            raise ValueError("invalid time format (HH:MM)")
        hour, minute = value.split(":")
        return f"{int(hour):02d}:{minute}"


def default_weekly_hours() -> dict[str, DayHours]:
    weekday = {"open": "08:00", "close": "20:00", "is_open": False}
    return {
        "monday": DayHours(**weekday),
        "tuesday": DayHours(**weekday),
        "wednesday": DayHours(**weekday),
        "thursday": DayHours(**weekday),
        "friday": DayHours(**weekday),
        "saturday": DayHours(open="09:00", close="19:00", is_open=False),
        "sunday": DayHours(open="10:00", close="18:00", is_open=False),
    }


class LocationDraft(BaseModel):
    """Location fields before the repository assigns identity and workflow state.

    Used both for fresh submissions and for stored records being re-enriched.
    Hours always carry the seven weekdays; missing days take the default schedule.
    """

    model_config = ConfigDict(extra="ignore")

    name: str
    address: str
    description: str | None = None
    coordinates: Coordinates | None = None
    phone: str | None = None
    website: str | None = None
    email: str | None = None
    price_info: str | None = None
    source_url: str | None = None
    cuisine: list[str] = Field(default_factory=lambda: ["nigerian"])
    dietary: list[DietaryOption] = Field(default_factory=list)
    features: list[FeatureOption] = Field(default_factory=list)
    service_type: ServiceType = "both"
    price_range: PriceRange = "$$"
    rating: float | None = Field(default=None, ge=0, le=5)
    review_count: int | None = Field(default=None, ge=0)
    images: list[str] = Field(default_factory=list)
    hours: dict[str, DayHours] = Field(default_factory=default_weekly_hours)
    is_open_now: bool | None = None
    place_id: str | None = None
    discovery_source: DiscoverySource = "user-submitted"

    @field_validator("hours", mode="before")
    @classmethod
    def complete_hours(cls, value: Any) -> Any:
        if value is None:
            return default_weekly_hours()
        if not isinstance(value, dict):
            return value
        unknown = sorted(set(value) - set(WEEKDAYS))
        if unknown:
            raise ValueError(f"unknown weekday keys: {unknown}")
        defaults = default_weekly_hours()
        return {day: value.get(day, defaults[day]) for day in WEEKDAYS}

    @field_validator("images")
    @classmethod
    def dedupe_images(cls, value: list[str]) -> list[str]:
        return dedupe_urls(value)

    @field_validator("cuisine")
    @classmethod
    def normalize_cuisine(cls, value: list[str]) -> list[str]:
        seen: set[str] = set()
        normalized: list[str] = []
        for item in value:
            key = item.strip().lower()
            if key and key not in seen:
                seen.add(key)
                normalized.append(key)
        return normalized


class SubmitterInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    email: str | None = None


class LocationSubmission(LocationDraft):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=2, max_length=100)
    address: str = Field(min_length=5, max_length=200)
    description: str | None = Field(default=None, max_length=500)
    coordinates: Coordinates
    price_info: str | None = Field(default=None, max_length=100)
    cuisine: list[str] = Field(default_factory=lambda: ["nigerian"], min_length=1, max_length=10)
    rating: float | None = Field(default=None, ge=1, le=5)
    submitter_info: SubmitterInfo | None = None

    @field_validator("name", "address", mode="before")
    @classmethod
    def collapse_whitespace(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _WHITESPACE_RE.sub(" ", value.strip())
        return value

    @field_validator("description", "price_info", mode="before")
    @classmethod
    def strip_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("phone", mode="before")
    @classmethod
    def validate_phone(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        if not isinstance(value, str) or not _PHONE_RE.match(value):
            raise ValueError("invalid phone number format")
        return _WHITESPACE_RE.sub("", value)

    @field_validator("website", "source_url", mode="before")
    @classmethod
    def validate_url(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        if not isinstance(value, str) or not _is_http_url(value):
            raise ValueError("invalid URL")
        return value.lower()

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        if not isinstance(value, str) or not _EMAIL_RE.match(value.strip()):
            raise ValueError("invalid email format")
        return value.strip().lower()

    @field_validator("images", mode="before")
    @classmethod
    def validate_image_urls(cls, value: Any) -> Any:
        if isinstance(value, list):
            for item in value:
                if not isinstance(item, str) or not _is_http_url(item):
                    raise ValueError("invalid image URL")
        return value


class LocationSubmitRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    location: LocationSubmission


class LocationOut(BaseModel):
    id: str
    name: str
    address: str
    description: str | None = None
    coordinates: Coordinates | None = None
    phone: str | None = None
    website: str | None = None
    email: str | None = None
    price_info: str | None = None
    source_url: str | None = None
    cuisine: list[str] = Field(default_factory=list)
    dietary: list[str] = Field(default_factory=list)
    features: list[str] = Field(default_factory=list)
    service_type: ServiceType = "both"
    price_range: PriceRange = "$$"
    rating: float | None = None
    review_count: int | None = None
    images: list[str] = Field(default_factory=list)
    hours: dict[str, DayHours] = Field(default_factory=default_weekly_hours)
    is_open_now: bool = False
    place_id: str | None = None
    enriched_at: datetime | None = None
    enrichment_source: str | None = None
    status: LocationStatus = "pending"
    discovery_source: str = "user-submitted"
    submitted_by: str | None = None
    moderation_notes: str | None = None
    rejection_reason: str | None = None
    moderated_at: datetime | None = None
    moderated_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SimilarLocationOut(BaseModel):
    id: str
    name: str | None = None
    address: str | None = None
    coordinates: Coordinates | None = None
    status: str | None = None
    score: float
    distance_meters: float | None = None
    components: dict[str, float] = Field(default_factory=dict)


class DuplicateConflictOut(BaseModel):
    error: str = "duplicate_location"
    reason: str | None = None
    similar_locations: list[SimilarLocationOut] = Field(default_factory=list)
    moderation_reasons: list[str] = Field(default_factory=list)


class LocationFilter(BaseModel):
    """Query parameters accepted by the location listing; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    status: LocationStatus | None = None
    include_all: bool = False
    search: str | None = Field(default=None, min_length=1, max_length=100)
    open_now: bool | None = None
    service_type: Literal["dine-in", "takeaway", "both", "all"] | None = None
    price_range: list[PriceRange] = Field(default_factory=list)
    cuisine: list[str] = Field(default_factory=list)
    north: float | None = Field(default=None, ge=-90, le=90)
    south: float | None = Field(default=None, ge=-90, le=90)
    east: float | None = Field(default=None, ge=-180, le=180)
    west: float | None = Field(default=None, ge=-180, le=180)
    sort_by: SortBy = "default"
    limit: int = Field(default=100, ge=1, le=500)
    offset: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_bounds(self) -> "LocationFilter":
        values = (self.north, self.south, self.east, self.west)
        if any(value is not None for value in values) and any(value is None for value in values):
            raise ValueError("bounds require north, south, east and west together")
        if self.north is not None and self.south is not None and self.south > self.north:
            raise ValueError("south must not exceed north")
        return self

    @property
    def has_bounds(self) -> bool:
        return self.north is not None

    def effective_status(self) -> LocationStatus | None:
        if self.include_all:
            return self.status
        return self.status or "approved"


class ReviewOut(BaseModel):
    id: str
    location_id: str
    author: str
    rating: int
    text: str | None = None
    author_photo: str | None = None
    publish_time_description: str | None = None
    source: str | None = None
    status: ReviewStatus = "approved"
    photos: list[str] = Field(default_factory=list)
    date_posted: datetime | None = None


class ReviewSubmitRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rating: int = Field(ge=1, le=5)
    text: str | None = Field(default=None, max_length=1000)
    photos: list[str] = Field(default_factory=list, max_length=5)

    @field_validator("text", mode="before")
    @classmethod
    def strip_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("photos")
    @classmethod
    def validate_photos(cls, value: list[str]) -> list[str]:
        for item in value:
            if not _is_http_url(item):
                raise ValueError("invalid photo URL")
        return dedupe_urls(value)


class EnrichmentStatusOut(BaseModel):
    location_id: str
    name: str
    has_real_data: bool
    rating: float | None = None
    review_count: int | None = None
    images_count: int = 0
    enriched_at: datetime | None = None
    enrichment_source: str | None = None


class EnrichmentResultOut(BaseModel):
    location_id: str
    enriched: bool
    reason: str | None = None
    place_id: str | None = None
    reviews_imported: int = 0
    location: LocationOut


def dedupe_urls(urls: list[str]) -> list[str]:
    seen: set[str] = set()
    deduped: list[str] = []
    for url in urls:
        if url in seen:
            continue
        seen.add(url)
        deduped.append(url)
    return deduped


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value.strip())
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)
