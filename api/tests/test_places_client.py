from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from amala_api.core.config import Settings
from amala_api.services.places import LookupUnavailableError, PlaceLookupClient, get_place_lookup_client

DETAILS = {
    "id": "ChIJ-mama-cass",
    "displayName": {"text": "Mama Cass", "languageCode": "en"},
    "location": {"latitude": 6.6021, "longitude": 3.3519},
    "rating": 4.4,
    "userRatingCount": 212,
    "priceLevel": "PRICE_LEVEL_MODERATE",
    "regularOpeningHours": {"openNow": True, "periods": [{"open": {"day": 1, "hour": 9, "minute": 0}}]},
    "unknownField": "ignored",
}


def _run_lookup(handler, query: str = "Mama Cass Amala, Ikeja", bias=(6.6018, 3.3515)):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            places = PlaceLookupClient(api_key="test-key", base_url="https://places.test/v1", client=client)
            return await places.lookup(query, bias=bias)

    return asyncio.run(scenario())


def test_lookup_searches_then_fetches_details() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("places:searchText"):
            return httpx.Response(200, json={"places": [{"id": "ChIJ-mama-cass"}]})
        return httpx.Response(200, json=DETAILS)

    details = _run_lookup(handler)

    assert details is not None
    assert details.id == "ChIJ-mama-cass"
    assert details.price_level == "PRICE_LEVEL_MODERATE"
    assert details.open_now is True
    assert details.regular_opening_hours is not None
    assert details.regular_opening_hours.periods[0].open.hour == 9

    search, fetch = seen
    assert search.method == "POST"
    assert search.headers["X-Goog-Api-Key"] == "test-key"
    assert search.headers["X-Goog-FieldMask"].startswith("places.id")
    body = json.loads(search.content)
    assert body["textQuery"] == "Mama Cass Amala, Ikeja"
    assert body["locationBias"]["circle"]["center"] == {"latitude": 6.6018, "longitude": 3.3515}
    assert fetch.method == "GET"
    assert fetch.url.path == "/v1/places/ChIJ-mama-cass"
    assert "regularOpeningHours" in fetch.headers["X-Goog-FieldMask"]


def test_lookup_without_bias_omits_location_bias() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={})

    assert _run_lookup(handler, bias=None) is None
    assert "locationBias" not in bodies[0]


def test_no_search_match_returns_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"places": []})

    assert _run_lookup(handler) is None


def test_missing_place_details_returns_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"places": [{"id": "ChIJ-gone"}]})
        return httpx.Response(404, json={"error": {"status": "NOT_FOUND"}})

    assert _run_lookup(handler) is None


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, json={"error": "backend"}),
        httpx.Response(403, json={"error": {"status": "PERMISSION_DENIED"}}),
        httpx.Response(200, content=b"<html>oops</html>"),
        httpx.Response(200, json=["not", "an", "object"]),
    ],
)
def test_bad_responses_raise_lookup_unavailable(response: httpx.Response) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    with pytest.raises(LookupUnavailableError):
        _run_lookup(handler)


def test_transport_errors_raise_lookup_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(LookupUnavailableError):
        _run_lookup(handler)


def test_lookup_client_requires_api_key() -> None:
    with pytest.raises(ValueError):
        PlaceLookupClient(api_key="")
    assert get_place_lookup_client(Settings(places_api_key=None)) is None
    assert isinstance(get_place_lookup_client(Settings(places_api_key="key")), PlaceLookupClient)
