from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _PlacesModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LocalizedText(_PlacesModel):
    text: str | None = None
    language_code: str | None = Field(default=None, alias="languageCode")


class LatLng(_PlacesModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class OpeningHoursPoint(_PlacesModel):
    day: int | None = Field(default=None, ge=0, le=6)
    hour: int | None = Field(default=None, ge=0, le=24)
    minute: int | None = Field(default=None, ge=0, le=59)
    # Legacy Places responses send "HHMM".
    time: str | None = None


class OpeningHoursPeriod(_PlacesModel):
    open: OpeningHoursPoint | None = None
    close: OpeningHoursPoint | None = None


class OpeningHours(_PlacesModel):
    open_now: bool | None = Field(default=None, alias="openNow")
    periods: list[OpeningHoursPeriod] = Field(default_factory=list)
    weekday_descriptions: list[str] = Field(default_factory=list, alias="weekdayDescriptions")


class AuthorAttribution(_PlacesModel):
    display_name: str | None = Field(default=None, alias="displayName")
    uri: str | None = None
    photo_uri: str | None = Field(default=None, alias="photoUri")


class PlacePhoto(_PlacesModel):
    # Resource name: places/{place_id}/photos/{photo_reference}
    name: str
    width_px: int | None = Field(default=None, alias="widthPx")
    height_px: int | None = Field(default=None, alias="heightPx")


class PlaceReview(_PlacesModel):
    name: str | None = None
    rating: int | None = Field(default=None, ge=1, le=5)
    text: LocalizedText | None = None
    relative_publish_time_description: str | None = Field(default=None, alias="relativePublishTimeDescription")
    publish_time: str | None = Field(default=None, alias="publishTime")
    author_attribution: AuthorAttribution | None = Field(default=None, alias="authorAttribution")


class PlaceDetails(_PlacesModel):
    """Subset of a Places API (New) place resource used for enrichment."""

    id: str | None = None
    display_name: LocalizedText | None = Field(default=None, alias="displayName")
    formatted_address: str | None = Field(default=None, alias="formattedAddress")
    location: LatLng | None = None
    rating: float | None = Field(default=None, ge=0, le=5)
    user_rating_count: int | None = Field(default=None, ge=0, alias="userRatingCount")
    national_phone_number: str | None = Field(default=None, alias="nationalPhoneNumber")
    international_phone_number: str | None = Field(default=None, alias="internationalPhoneNumber")
    website_uri: str | None = Field(default=None, alias="websiteUri")
    price_level: str | int | None = Field(default=None, alias="priceLevel")
    types: list[str] = Field(default_factory=list)
    dine_in: bool | None = Field(default=None, alias="dineIn")
    takeout: bool | None = None
    delivery: bool | None = None
    regular_opening_hours: OpeningHours | None = Field(default=None, alias="regularOpeningHours")
    current_opening_hours: OpeningHours | None = Field(default=None, alias="currentOpeningHours")
    photos: list[PlacePhoto] = Field(default_factory=list)
    reviews: list[PlaceReview] = Field(default_factory=list)

    @property
    def phone(self) -> str | None:
        return self.national_phone_number or self.international_phone_number

    @property
    def open_now(self) -> bool | None:
        for hours in (self.current_opening_hours, self.regular_opening_hours):
            if hours is not None and hours.open_now is not None:
                return hours.open_now
        return None


class SearchTextResponse(_PlacesModel):
    places: list[PlaceDetails] = Field(default_factory=list)
