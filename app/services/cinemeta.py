"""Helper client for searching Cinemeta-compatible movie catalogs."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any
from urllib.parse import quote

import httpx

from ..config import Settings
from ..models import MediaType, SearchResult

logger = logging.getLogger(__name__)


class CinemetaClient:
    """Wrapper around the Cinemeta catalog search endpoint."""

    _SEARCH_PATH = "/catalog/{type}/top/search={query}.json"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient) -> None:
        self._client = http_client
        self._base_url = self._normalize_base_url(str(settings.cinemeta_api_url))

    async def search_movies(self, query: str) -> list[SearchResult]:
        """Return movie candidates for ``query``; failures yield an empty list."""

        normalized_query = (query or "").strip()
        if not normalized_query or not self._base_url:
            return []

        path = self._SEARCH_PATH.format(
            type="movie",
            query=quote(normalized_query, safe=""),
        )
        url = f"{self._base_url}{path}"

        response: httpx.Response | None = None
        max_attempts = 2
        for attempt in range(1, max_attempts + 1):
            try:
                response = await self._client.get(url)
                response.raise_for_status()
                break
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code if exc.response else None
                if status == 402 and attempt < max_attempts:
                    await asyncio.sleep(0.1)
                    continue
                logger.warning("Cinemeta search failed for %s: %s", normalized_query, exc)
                return []
            except httpx.HTTPError as exc:
                logger.warning("Cinemeta search failed for %s: %s", normalized_query, exc)
                return []
        else:
            return []

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Unexpected non-JSON Cinemeta response for %s", normalized_query)
            return []
        metas = payload.get("metas") if isinstance(payload, dict) else None
        if not isinstance(metas, list):
            return []

        results: list[SearchResult] = []
        for meta in metas:
            if not isinstance(meta, dict):
                continue
            result = self._meta_to_result(meta)
            if result is not None:
                results.append(result)
        return results

    def _meta_to_result(self, meta: dict[str, Any]) -> SearchResult | None:
        external_id = str(meta.get("imdb_id") or meta.get("id") or "").strip()
        title = str(meta.get("name") or "").strip()
        if not external_id or not title:
            return None
        poster = self._ensure_url(meta.get("poster"))
        year = self._parse_year(meta.get("releaseInfo") or meta.get("year"))
        return SearchResult(
            id=f"cinemeta-{external_id}",
            external_id=external_id,
            source="cinemeta",
            title=title,
            type=MediaType.MOVIE,
            year=str(year) if year else "",
            description=str(meta.get("description") or ""),
            poster_url=poster or "",
            backup_poster_url=poster.replace("large", "medium") if poster else None,
        )

    @staticmethod
    def _parse_year(value: Any) -> int | None:
        if isinstance(value, int):
            return value
        if not value:
            return None
        text = str(value)
        match = re.search(r"(19|20|21)\d{2}", text)
        if not match:
            return None
        try:
            year = int(match.group(0))
        except ValueError:
            return None
        if 1900 <= year <= 2100:
            return year
        return None

    @staticmethod
    def _ensure_url(value: Any) -> str | None:
        if isinstance(value, str) and value.startswith("http"):
            return value
        return None

    @staticmethod
    def _normalize_base_url(value: str | None) -> str | None:
        if not value:
            return None
        normalized = value.strip()
        if not normalized:
            return None
        normalized = normalized.rstrip("/")
        lowered = normalized.lower()
        for suffix in ("/manifest.json", "/manifest"):
            if lowered.endswith(suffix):
                normalized = normalized[: -len(suffix)].rstrip("/")
                break
        return normalized or None
