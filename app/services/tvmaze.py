"""Series search and episode listings from TVMaze."""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Any

import httpx

from ..config import Settings
from ..models import MediaType, SearchResult, Season

logger = logging.getLogger(__name__)

HTML_TAG_RE = re.compile(r"<[^>]*>")


class TVMazeClient:
    """Thin wrapper around the public TVMaze API."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    async def search_series(self, query: str) -> list[SearchResult]:
        try:
            response = await self._client.get("/search/shows", params={"q": query})
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("TVMaze search failed for %s: %s", query, exc)
            return []
        if not isinstance(data, list):
            return []

        results: list[SearchResult] = []
        for entry in data:
            show = entry.get("show") if isinstance(entry, dict) else None
            if not isinstance(show, dict):
                continue
            result = self._show_to_result(show)
            if result is not None:
                results.append(result)
        return results

    async def fetch_seasons(self, show_id: int | str) -> list[Season]:
        """Count episodes per season number from the flat episode list.

        Errors propagate so callers can decide how to degrade.
        """

        response = await self._client.get(f"/shows/{show_id}/episodes")
        response.raise_for_status()
        episodes = response.json()
        if not isinstance(episodes, list):
            return []

        counts: Counter[int] = Counter()
        for episode in episodes:
            if not isinstance(episode, dict):
                continue
            season_number = episode.get("season")
            if isinstance(season_number, int):
                counts[season_number] += 1
        return [
            Season(season_number=number, episode_count=counts[number])
            for number in sorted(counts)
        ]

    @staticmethod
    def _show_to_result(show: dict[str, Any]) -> SearchResult | None:
        show_id = show.get("id")
        title = str(show.get("name") or "").strip()
        if show_id is None or not title:
            return None
        premiered = show.get("premiered")
        summary = show.get("summary")
        image = show.get("image") or {}
        return SearchResult(
            id=f"tvmaze-{show_id}",
            external_id=show_id,
            source="tvmaze",
            title=title,
            type=MediaType.SERIES,
            year=premiered[:4] if isinstance(premiered, str) else "",
            description=HTML_TAG_RE.sub("", summary) if isinstance(summary, str) else "",
            poster_url=image.get("original") or "",
            backup_poster_url=image.get("medium"),
        )
