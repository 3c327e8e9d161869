"""Concurrent title search across the movie and series providers."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Awaitable, Iterable, Sequence

from ..config import Settings
from ..models import MediaType, SearchResult
from .cinemeta import CinemetaClient
from .itunes import ITunesClient
from .tvmaze import TVMazeClient

logger = logging.getLogger(__name__)

SOURCE_PRIORITY: dict[str, int] = {
    "itunes": 3,
    "tvmaze": 2,
    "cinemeta": 1,
    "manual": 0,
}


class SearchAggregator:
    """Fan a query out to every provider and fold the answers together."""

    def __init__(
        self,
        settings: Settings,
        itunes: ITunesClient,
        cinemeta: CinemetaClient,
        tvmaze: TVMazeClient,
    ):
        self._settings = settings
        self._itunes = itunes
        self._cinemeta = cinemeta
        self._tvmaze = tvmaze

    async def search(self, query: str) -> list[SearchResult]:
        """Return merged movie and series candidates for ``query``.

        Each provider is bounded by the configured timeout; a provider that
        fails or times out simply contributes nothing.
        """

        normalized = (query or "").strip()
        if not normalized:
            return []

        itunes_results, cinemeta_results, series_results = await asyncio.gather(
            self._bounded("itunes", self._itunes.search_movies(normalized)),
            self._bounded("cinemeta", self._cinemeta.search_movies(normalized)),
            self._bounded("tvmaze", self._tvmaze.search_series(normalized)),
        )
        movies = self.merge_movies(cinemeta_results, itunes_results)
        return self.interleave(series_results, movies)

    async def _bounded(
        self, provider: str, call: Awaitable[list[SearchResult]]
    ) -> list[SearchResult]:
        try:
            return await asyncio.wait_for(
                call, timeout=self._settings.search_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("%s search timed out", provider)
        except Exception:
            logger.exception("%s search failed", provider)
        return []

    @staticmethod
    def merge_movies(*batches: Iterable[SearchResult]) -> list[SearchResult]:
        """Collapse movies sharing a title and year; later batches win.

        A replaced entry keeps its original position in the list.
        """

        merged: dict[tuple[str, str], SearchResult] = {}
        for batch in batches:
            for result in batch:
                merged[result.merge_key()] = result
        return list(merged.values())

    @staticmethod
    def interleave(
        series: Sequence[SearchResult], movies: Sequence[SearchResult]
    ) -> list[SearchResult]:
        combined: list[SearchResult] = []
        for index in range(max(len(series), len(movies))):
            if index < len(series):
                combined.append(series[index])
            if index < len(movies):
                combined.append(movies[index])
        return combined

    @staticmethod
    def score(result: SearchResult) -> float:
        """Heuristic quality score used only to order results for display."""

        value = float(SOURCE_PRIORITY.get(result.source, 0))
        if result.poster_url:
            value += 2
        if result.backup_poster_url:
            value += 1
        value += min(len(result.description) / 80, 3)
        if result.year:
            value += 1
        return value

    def rank(self, results: Iterable[SearchResult]) -> list[SearchResult]:
        return sorted(results, key=self.score, reverse=True)

    async def fetch_details(self, result: SearchResult) -> SearchResult:
        """Attach the season breakdown to TVMaze series; other results pass through."""

        if result.source != "tvmaze" or result.type != MediaType.SERIES:
            return result
        if result.external_id is None:
            return result
        try:
            seasons = await self._tvmaze.fetch_seasons(result.external_id)
        except Exception as exc:
            logger.warning("Failed to load episodes for %s: %s", result.title, exc)
            return result
        return result.model_copy(update={"seasons": seasons})

    @staticmethod
    def manual_result(
        title: str, media_type: MediaType, year: str | int | None = None
    ) -> SearchResult:
        """Build a candidate for a title no provider knows about."""

        cleaned = title.strip()
        if not cleaned:
            raise ValueError("A title is required")
        return SearchResult(
            id=f"manual-{uuid.uuid4().hex}",
            source="manual",
            title=cleaned,
            type=media_type,
            year=str(year) if year else str(datetime.utcnow().year),
            description="Añadido manualmente",
        )
