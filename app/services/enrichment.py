"""Background enrichment of freshly added media items."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from ..config import Settings
from ..models import MediaItem
from ..utils import extract_json_object
from .openrouter import OpenRouterClient
from .store import MediaStore
from .youtube import (
    TrailerValidator,
    YouTubeClient,
    canonical_youtube_url,
    extract_youtube_urls,
)

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str, str]


@dataclass(slots=True)
class EnrichmentResult:
    """What a completed enrichment found for one title."""

    trailer_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class EnrichmentPipeline:
    """Looks up a trailer and localized metadata for new items.

    Both lookups run concurrently and write their own partial update as soon
    as they finish. The ``is_enriched`` latch is written once both have
    settled, whatever their outcome.
    """

    def __init__(
        self,
        settings: Settings,
        store: MediaStore,
        ai: OpenRouterClient,
        youtube: YouTubeClient,
        validator: TrailerValidator,
    ):
        self._settings = settings
        self._store = store
        self._ai = ai
        self._youtube = youtube
        self._validator = validator
        self._jobs: dict[str, asyncio.Task[None]] = {}
        self._cache: dict[CacheKey, EnrichmentResult] = {}

    @property
    def pending(self) -> frozenset[str]:
        return frozenset(self._jobs)

    def schedule(self, item: MediaItem) -> asyncio.Task[None] | None:
        """Start enriching ``item`` in the background."""

        if item.is_enriched:
            return None
        existing = self._jobs.get(item.id)
        if existing and not existing.done():
            return existing

        async def _runner() -> None:
            try:
                await self.enrich(item)
            except Exception as exc:
                logger.exception("Enrichment for %s failed: %s", item.id, exc)
            finally:
                self._jobs.pop(item.id, None)

        task = asyncio.create_task(_runner())
        self._jobs[item.id] = task
        return task

    async def wait_idle(self) -> None:
        while self._jobs:
            await asyncio.gather(*list(self._jobs.values()), return_exceptions=True)

    async def stop(self) -> None:
        jobs = list(self._jobs.values())
        self._jobs.clear()
        for task in jobs:
            task.cancel()
        for task in jobs:
            with suppress(asyncio.CancelledError):
                await task

    async def enrich(self, item: MediaItem) -> None:
        if item.is_enriched:
            return
        logger.info("Enriching %s (%s)", item.title, item.id)
        cached = self._cache.get(self.cache_key(item))
        result = EnrichmentResult()

        outcomes = await asyncio.gather(
            self._apply_trailer(item, result, cached),
            self._apply_metadata(item, result, cached),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                logger.warning("Enrichment step for %s failed: %s", item.id, outcome)

        if result.trailer_url or result.metadata:
            self._cache[self.cache_key(item)] = result
        try:
            await self._store.update_item(item.id, {"is_enriched": True})
        except KeyError:
            logger.info("Item %s was removed before enrichment finished", item.id)
        logger.info("Enrichment finished for %s", item.title)

    @staticmethod
    def cache_key(item: MediaItem) -> CacheKey:
        return item.title.lower().strip(), item.year, item.type.value

    async def _apply_trailer(
        self,
        item: MediaItem,
        result: EnrichmentResult,
        cached: EnrichmentResult | None,
    ) -> None:
        if cached is not None and cached.trailer_url:
            url: str | None = cached.trailer_url
        else:
            url = await self.find_trailer(item)
        if not url:
            return
        result.trailer_url = url
        await self._store.update_item(item.id, {"trailer_url": url})

    async def _apply_metadata(
        self,
        item: MediaItem,
        result: EnrichmentResult,
        cached: EnrichmentResult | None,
    ) -> None:
        if cached is not None and cached.metadata:
            changes = dict(cached.metadata)
        else:
            changes = await self.localize_metadata(item)
        if not changes:
            return
        result.metadata = changes
        await self._store.update_item(item.id, changes)

    async def find_trailer(self, item: MediaItem) -> str | None:
        """Direct video search first, then grounded AI attempts with validation."""

        phrase = self._settings.trailer_search_phrase
        direct_query = " ".join(part for part in (phrase, item.title, item.year) if part)
        url = await self._youtube.search_video(direct_query)
        if url:
            logger.info("Trailer for %s found via YouTube search", item.title)
            return url

        if not self._ai.configured:
            return None

        for attempt, query in enumerate(self._trailer_queries(item), start=1):
            logger.info(
                "Trailer attempt %s/%s for %s", attempt, self._settings.trailer_attempts, item.title
            )
            prompt = (
                f'Find a real, working YouTube trailer for "{item.title}" ({item.year}).\n'
                f"Search the web exactly for: {query}\n"
                'Return JSON: {"potentialUrls": ["url1"]}'
            )
            try:
                reply = await self._ai.prompt(prompt, web_search=True)
            except Exception as exc:
                logger.warning("Trailer attempt %s for %s failed: %s", attempt, item.title, exc)
                continue
            for candidate in extract_youtube_urls(reply):
                if await self._validator.validate(candidate):
                    return canonical_youtube_url(candidate)
        return None

    def _trailer_queries(self, item: MediaItem) -> list[str]:
        year = f" {item.year}" if item.year else ""
        queries = [
            f'{self._settings.trailer_search_phrase} "{item.title}"{year} youtube',
            f'trailer official "{item.title}"{year} youtube',
            f'trailer "{item.title}" movie youtube',
        ]
        return queries[: self._settings.trailer_attempts]

    async def localize_metadata(self, item: MediaItem) -> dict[str, Any]:
        """Ask the model for the localized title and synopsis."""

        if not self._ai.configured:
            return {}
        language = self._settings.metadata_language
        prompt = (
            f'Translate the metadata for the {item.type.value} "{item.title}" '
            f"({item.year}) to {language}.\n"
            f"- localizedTitle must be the official release title in {language}, "
            "without words such as Trailer, Teaser, Review or Official.\n"
            "- Keep the title unchanged when it is the same in both languages.\n"
            f"- localizedDescription is a concise synopsis in {language}.\n"
            'Respond with JSON: {"localizedTitle": "...", "localizedDescription": "..."}'
        )
        try:
            reply = await self._ai.prompt(prompt)
            payload = extract_json_object(reply)
        except Exception as exc:
            logger.warning("Metadata localization for %s failed: %s", item.title, exc)
            return {}

        changes: dict[str, Any] = {}
        title = payload.get("localizedTitle")
        if (
            isinstance(title, str)
            and title.strip()
            and title.strip() != item.title
            and "trailer" not in title.lower()
        ):
            changes["title"] = title.strip()
            changes["original_title"] = item.title
        description = payload.get("localizedDescription")
        if isinstance(description, str) and description.strip():
            changes["description"] = description.strip()
        return changes
