from __future__ import annotations

import logging
from typing import Any

import httpx
from fastapi import Depends
from pydantic import ValidationError

from amala_api.core.config import Settings, get_settings
from amala_api.schemas.places import PlaceDetails, SearchTextResponse

SEARCH_FIELD_MASK = "places.id,places.displayName,places.formattedAddress,places.location"
DETAILS_FIELD_MASK = ",".join(
    [
        "id",
        "displayName",
        "formattedAddress",
        "location",
        "rating",
        "userRatingCount",
        "priceLevel",
        "websiteUri",
        "nationalPhoneNumber",
        "internationalPhoneNumber",
        "regularOpeningHours",
        "currentOpeningHours",
        "types",
        "dineIn",
        "takeout",
        "delivery",
        "photos",
        "reviews",
    ]
)

logger = logging.getLogger(__name__)


class LookupUnavailableError(Exception):
    pass


class PlaceLookupClient:
    """Thin async adapter over Places API (New): text search plus place details."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://places.googleapis.com/v1",
        timeout_seconds: float = 8.0,
        search_radius_meters: float = 500.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.search_radius_meters = search_radius_meters
        self._api_key = api_key
        self._client = client

    async def find_place_id(self, query: str, *, bias: tuple[float, float] | None = None) -> str | None:
        body: dict[str, Any] = {"textQuery": query, "pageSize": 1}
        if bias is not None:
            body["locationBias"] = {
                "circle": {
                    "center": {"latitude": bias[0], "longitude": bias[1]},
                    "radius": self.search_radius_meters,
                }
            }
        payload = await self._request(
            "POST",
            f"{self.base_url}/places:searchText",
            field_mask=SEARCH_FIELD_MASK,
            json=body,
        )
        try:
            result = SearchTextResponse.model_validate(payload)
        except ValidationError as exc:
            raise LookupUnavailableError("unparseable places search response") from exc
        for place in result.places:
            if place.id:
                return place.id
        return None

    async def get_place_details(self, place_id: str) -> PlaceDetails | None:
        payload = await self._request(
            "GET",
            f"{self.base_url}/places/{place_id}",
            field_mask=DETAILS_FIELD_MASK,
            allow_not_found=True,
        )
        if payload is None:
            return None
        try:
            return PlaceDetails.model_validate(payload)
        except ValidationError as exc:
            raise LookupUnavailableError("unparseable place details response") from exc

    async def lookup(self, query: str, *, bias: tuple[float, float] | None = None) -> PlaceDetails | None:
        place_id = await self.find_place_id(query, bias=bias)
        if place_id is None:
            logger.info("places lookup no match query_length=%s", len(query))
            return None
        return await self.get_place_details(place_id)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        field_mask: str,
        json: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> dict[str, Any] | None:
        headers = {
            "X-Goog-Api-Key": self._api_key,
            "X-Goog-FieldMask": field_mask,
        }
        try:
            if self._client is not None:
                response = await self._client.request(method, url, headers=headers, json=json)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.request(method, url, headers=headers, json=json)
        except httpx.HTTPError as exc:
            raise LookupUnavailableError(f"places request failed: {exc.__class__.__name__}") from exc

        if allow_not_found and response.status_code == 404:
            return None
        if response.status_code < 200 or response.status_code >= 300:
            raise LookupUnavailableError(f"places request returned status={response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise LookupUnavailableError("places response is not JSON") from exc
        if not isinstance(payload, dict):
            raise LookupUnavailableError("places response is not an object")
        return payload


def get_place_lookup_client(settings: Settings = Depends(get_settings)) -> PlaceLookupClient | None:
    if not settings.places_api_key:
        return None
    return PlaceLookupClient(
        api_key=settings.places_api_key,
        base_url=settings.places_base_url,
        timeout_seconds=settings.places_timeout_seconds,
        search_radius_meters=settings.places_search_radius_meters,
    )
