"""YouTube video search and oEmbed-based link validation."""

from __future__ import annotations

import logging
import re

import httpx

from ..config import Settings

logger = logging.getLogger(__name__)

YOUTUBE_URL_RE = re.compile(
    r"(?:https?://)?(?:www\.)?(?:youtube\.com/watch\?v=|youtu\.be/)([a-zA-Z0-9_-]{11})"
)
VIDEO_ID_RE = re.compile(r"(?:v=|/)([a-zA-Z0-9_-]{11})")


def extract_youtube_urls(text: str) -> list[str]:
    """Return every YouTube video URL found in ``text`` in order of appearance."""

    urls: list[str] = []
    for match in YOUTUBE_URL_RE.finditer(text or ""):
        url = match.group(0)
        if url not in urls:
            urls.append(url)
    return urls


def canonical_youtube_url(url: str) -> str | None:
    match = VIDEO_ID_RE.search(url or "")
    if not match:
        return None
    return f"https://www.youtube.com/watch?v={match.group(1)}"


class YouTubeClient:
    """Direct lookups against the YouTube Data API v3."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    @property
    def configured(self) -> bool:
        return bool(self._settings.youtube_api_key)

    async def search_video(self, query: str) -> str | None:
        """Return the best video URL for ``query`` or ``None``."""

        if not self.configured:
            return None
        params = {
            "part": "snippet",
            "q": query,
            "type": "video",
            "maxResults": 1,
            "key": self._settings.youtube_api_key,
        }
        try:
            response = await self._client.get("/search", params=params)
        except httpx.HTTPError as exc:
            logger.warning("YouTube search failed for %r: %s", query, exc)
            return None
        if response.status_code >= 400:
            logger.warning(
                "YouTube search for %r failed (%s); is the Data API enabled for the key?",
                query,
                response.status_code,
            )
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning("Unexpected non-JSON YouTube response for %r", query)
            return None

        for entry in data.get("items") or []:
            video_id = (entry.get("id") or {}).get("videoId")
            if isinstance(video_id, str) and video_id:
                return f"https://www.youtube.com/watch?v={video_id}"
        return None


class TrailerValidator:
    """Confirms a video URL resolves to a live video through noembed."""

    def __init__(self, http_client: httpx.AsyncClient):
        self._client = http_client

    async def validate(self, url: str) -> bool:
        canonical = canonical_youtube_url(url)
        if canonical is None:
            return False
        try:
            response = await self._client.get("/embed", params={"url": canonical})
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Trailer validation unavailable for %s: %s", canonical, exc)
            return False
        if not isinstance(data, dict) or data.get("error") or not data.get("title"):
            logger.info("Rejected trailer candidate %s", canonical)
            return False
        logger.info("Verified trailer %s (%s)", canonical, data.get("title"))
        return True
