from __future__ import annotations

from typing import Any

import httpx


class LocationApiClient:
    def __init__(
        self,
        base_url: str,
        api_token: str | None,
        *,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self._client = client

    async def list_locations(self, *, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        response = await self._request(
            "GET",
            "/locations",
            params={"include_all": "true", "limit": limit, "offset": offset},
        )
        return response.json()

    async def iter_all_locations(self, *, page_size: int = 100):
        offset = 0
        while True:
            page = await self.list_locations(limit=page_size, offset=offset)
            for location in page:
                yield location
            if len(page) < page_size:
                return
            offset += page_size

    async def enrich_location(self, location_id: str) -> dict[str, Any]:
        response = await self._request("POST", f"/locations/{location_id}/enrich")
        return response.json()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._client is not None:
            response = await self._client.request(method, url, headers=self.headers, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.request(method, url, headers=self.headers, **kwargs)
        response.raise_for_status()
        return response
