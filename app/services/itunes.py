"""Movie search against the iTunes Search API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..config import Settings
from ..models import MediaType, SearchResult

logger = logging.getLogger(__name__)


class ITunesClient:
    """General movie catalog keyed on iTunes track ids."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    async def search_movies(self, query: str, *, limit: int = 15) -> list[SearchResult]:
        params = {
            "term": query,
            "media": "movie",
            "entity": "movie",
            "country": self._settings.itunes_country,
            "lang": self._settings.itunes_language,
            "limit": limit,
        }
        try:
            response = await self._client.get("/search", params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("iTunes search failed for %s: %s", query, exc)
            return []

        results: list[SearchResult] = []
        for entry in data.get("results") or []:
            if not isinstance(entry, dict):
                continue
            result = self._entry_to_result(entry)
            if result is not None:
                results.append(result)
        return results

    @staticmethod
    def _entry_to_result(entry: dict[str, Any]) -> SearchResult | None:
        track_id = entry.get("trackId")
        title = str(entry.get("trackName") or "").strip()
        if track_id is None or not title:
            return None
        release_date = entry.get("releaseDate")
        artwork = entry.get("artworkUrl100")
        poster = artwork.replace("100x100bb", "600x900bb") if isinstance(artwork, str) else ""
        backup = artwork.replace("100x100bb", "400x600bb") if isinstance(artwork, str) else None
        return SearchResult(
            id=f"itunes-{track_id}",
            external_id=track_id,
            source="itunes",
            title=title,
            type=MediaType.MOVIE,
            year=release_date[:4] if isinstance(release_date, str) else "",
            description=str(
                entry.get("longDescription") or entry.get("shortDescription") or ""
            ),
            poster_url=poster,
            backup_poster_url=backup,
        )
