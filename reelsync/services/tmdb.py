"""Client for The Movie Database (TMDb) listing, detail and credit endpoints."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from ..config import Settings
from ..errors import (
    ConfigurationError,
    MalformedResponseError,
    RemoteApiError,
    TransportError,
)
from ..models import CatalogEntity, Credits, PageResult, Trailer

logger = logging.getLogger(__name__)

MISSING_API_KEY_MESSAGE = "API key not set. Please set your TMDb API key (TMDB_API_KEY)."


class TMDBClient:
    """Issues TMDb requests and turns every failure into a ``SyncError``.

    The HTTP client is owned by the caller; its timeout is the per-request
    deadline and no retries are attempted here.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    @property
    def is_configured(self) -> bool:
        return self._settings.tmdb_configured

    @property
    def image_base_url(self) -> str:
        return self._settings.tmdb_image_base_url

    async def fetch_popular(self, page: int = 1) -> PageResult:
        payload = await self._get("/movie/popular", {"page": page})
        return PageResult.from_payload(payload)

    async def search(self, query: str, page: int = 1) -> PageResult:
        payload = await self._get(
            "/search/movie", {"query": query, "page": page, "include_adult": "false"}
        )
        return PageResult.from_payload(payload)

    async def fetch_details(self, external_id: int) -> CatalogEntity:
        """Fetch the full record of one movie, including runtime and genres."""

        payload = await self._get(f"/movie/{external_id}")
        return CatalogEntity.from_tmdb_payload(
            payload, genre_names={}, image_base_url=self.image_base_url
        )

    async def fetch_genres(self) -> dict[int, str]:
        payload = await self._get("/genre/movie/list")
        genres = payload.get("genres")
        if not isinstance(genres, list):
            raise MalformedResponseError("Invalid JSON response for genres")
        mapping: dict[int, str] = {}
        for entry in genres:
            if not isinstance(entry, dict):
                continue
            genre_id = entry.get("id")
            name = entry.get("name")
            if isinstance(genre_id, int) and isinstance(name, str) and name:
                mapping[genre_id] = name
        return mapping

    async def fetch_trailer(self, external_id: int) -> Trailer | None:
        payload = await self._get(f"/movie/{external_id}/videos")
        videos = payload.get("results")
        if not isinstance(videos, list):
            raise MalformedResponseError("Invalid JSON response for trailers")
        trailer = Trailer.select(
            external_id, [video for video in videos if isinstance(video, dict)]
        )
        if trailer is None:
            logger.info("No trailer found for movie %s", external_id)
        return trailer

    async def fetch_credits(self, external_id: int) -> Credits:
        payload = await self._get(f"/movie/{external_id}/credits")
        return Credits.from_payload(
            external_id, payload, image_base_url=self.image_base_url
        )

    async def _get(
        self, path: str, params: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        if not self.is_configured:
            raise ConfigurationError(MISSING_API_KEY_MESSAGE)

        query: dict[str, Any] = {
            "api_key": self._settings.tmdb_api_key,
            "language": self._settings.tmdb_language,
        }
        if params:
            query.update(params)

        try:
            response = await self._client.get(path, params=query)
        except httpx.TimeoutException as exc:
            raise TransportError(f"Network error: request to {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Network error: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            logger.debug("Unparseable TMDb body for %s: %s", path, response.text[:200])
            if response.status_code >= 400:
                raise TransportError(
                    f"Network error: TMDb returned HTTP {response.status_code} for {path}"
                ) from exc
            raise MalformedResponseError("Invalid JSON response") from exc
        if not isinstance(payload, dict):
            raise MalformedResponseError("Invalid JSON response")

        if "status_code" in payload and "status_message" in payload:
            status = payload.get("status_code")
            raise RemoteApiError(
                f"API Error: {payload.get('status_message')}",
                status_code=status if isinstance(status, int) else None,
            )
        if response.status_code >= 400:
            raise TransportError(
                f"Network error: TMDb returned HTTP {response.status_code} for {path}"
            )
        return payload
