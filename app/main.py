"""Entry point for the Watch Whisper HTTP API."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import Field, ValidationError

from .classifier import CollectionTab
from .config import settings
from .database import Database
from .models import CamelModel, MediaItem, MediaType, SearchResult, Season
from .services.assistant import Assistant, extract_recommendations, strip_recommendations
from .services.cinemeta import CinemetaClient
from .services.enrichment import EnrichmentPipeline
from .services.itunes import ITunesClient
from .services.openrouter import OpenRouterClient
from .services.search import SearchAggregator
from .services.store import MediaStore
from .services.tracker import WatchTracker
from .services.tvmaze import TVMazeClient
from .services.youtube import TrailerValidator, YouTubeClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


class AddItemRequest(CamelModel):
    result: SearchResult
    watched_by: list[str] = Field(default_factory=list)


class ManualItemRequest(CamelModel):
    title: str = Field(min_length=1)
    type: MediaType = MediaType.MOVIE
    year: str | None = None


class ItemPatch(CamelModel):
    """Editable item fields; only the fields sent are applied."""

    title: str | None = None
    original_title: str | None = None
    description: str | None = None
    year: str | None = None
    poster_url: str | None = None
    backup_poster_url: str | None = None
    release_date: str | None = None
    platforms: list[str] | None = None
    seasons: list[Season] | None = None
    rating: int | dict[str, Any] | None = None
    trailer_url: str | None = None


class WatchedRequest(CamelModel):
    watched: bool = True


class EpisodeRequest(CamelModel):
    season: int = Field(ge=0)
    episode: int = Field(ge=1)


class PlatformRequest(CamelModel):
    platform: str = Field(min_length=1)


class AssistantRequest(CamelModel):
    message: str = Field(min_length=1)


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    search_timeout = httpx.Timeout(settings.search_timeout_seconds, connect=2.0)
    openrouter_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.openrouter_api_url),
            timeout=httpx.Timeout(60.0, connect=10.0),
        )
    )
    youtube_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.youtube_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    noembed_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.noembed_url),
            timeout=httpx.Timeout(10.0, connect=5.0),
        )
    )
    itunes_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(base_url=str(settings.itunes_api_url), timeout=search_timeout)
    )
    cinemeta_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=search_timeout)
    )
    tvmaze_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tvmaze_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    store = MediaStore(database.session_factory)
    openrouter = OpenRouterClient(settings, openrouter_http)
    tvmaze = TVMazeClient(settings, tvmaze_http)
    search = SearchAggregator(
        settings,
        ITunesClient(settings, itunes_http),
        CinemetaClient(settings, cinemeta_http),
        tvmaze,
    )
    pipeline = EnrichmentPipeline(
        settings,
        store,
        openrouter,
        YouTubeClient(settings, youtube_http),
        TrailerValidator(noembed_http),
    )
    tracker = WatchTracker(settings, store, search, pipeline)
    assistant = Assistant(settings, openrouter, tracker, search)

    fastapi_app.state.database = database
    fastapi_app.state.store = store
    fastapi_app.state.search = search
    fastapi_app.state.pipeline = pipeline
    fastapi_app.state.tracker = tracker
    fastapi_app.state.assistant = assistant
    await tracker.start()
    # Items saved before a restart may never have finished enriching.
    for item in tracker.items:
        pipeline.schedule(item)

    try:
        yield
    finally:
        await tracker.stop()
        await pipeline.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Shared watch tracking with AI-assisted enrichment",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_tracker(app: FastAPI) -> WatchTracker:
    tracker = getattr(app.state, "tracker", None)
    if not isinstance(tracker, WatchTracker):
        raise RuntimeError("Watch tracker not initialised")
    return tracker


def get_search(app: FastAPI) -> SearchAggregator:
    search = getattr(app.state, "search", None)
    if not isinstance(search, SearchAggregator):
        raise RuntimeError("Search aggregator not initialised")
    return search


def get_assistant(app: FastAPI) -> Assistant:
    assistant = getattr(app.state, "assistant", None)
    if not isinstance(assistant, Assistant):
        raise RuntimeError("Assistant not initialised")
    return assistant


def register_routes(fastapi_app: FastAPI) -> None:
    def _serialise(item: MediaItem) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        payload = item.model_dump(mode="json", by_alias=True)
        payload["tab"] = tracker.classifier.classify(item).value
        payload["progressPercent"] = tracker.status_model.progress_percent(item)
        return payload

    def _require(item_id: str) -> MediaItem:
        try:
            return get_tracker(fastapi_app).require(item_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Item not found") from exc

    def _run(action, *args, **kwargs) -> MediaItem:
        try:
            return action(*args, **kwargs)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Item not found") from exc
        except (ValueError, ValidationError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/users")
    async def list_users() -> list[dict[str, Any]]:
        return [user.model_dump(by_alias=True) for user in settings.users]

    @fastapi_app.get("/api/items")
    async def list_items(
        tab: CollectionTab | None = None,
        media_type: MediaType | None = Query(default=None, alias="type"),
        user: str | None = None,
    ) -> list[dict[str, Any]]:
        tracker = get_tracker(fastapi_app)
        if user is not None and user not in settings.user_ids:
            raise HTTPException(status_code=400, detail=f"Unknown user {user}")
        if tab is None:
            items = [
                item
                for item in tracker.items
                if media_type is None or item.type == media_type
            ]
        else:
            items = tracker.view(tab, media_type=media_type, user_id=user)
        return [_serialise(item) for item in items]

    @fastapi_app.get("/api/items/{item_id}")
    async def get_item(item_id: str) -> dict[str, Any]:
        return _serialise(_require(item_id))

    @fastapi_app.get("/api/counts")
    async def counts() -> dict[str, int]:
        totals = get_tracker(fastapi_app).counts()
        return {tab.value: count for tab, count in totals.items()}

    @fastapi_app.get("/api/search")
    async def search(q: str = Query(min_length=1)) -> list[dict[str, Any]]:
        aggregator = get_search(fastapi_app)
        results = await aggregator.search(q)
        payload: list[dict[str, Any]] = []
        for result in results:
            entry = result.model_dump(mode="json", by_alias=True)
            entry["score"] = aggregator.score(result)
            payload.append(entry)
        return payload

    @fastapi_app.post("/api/items")
    async def add_item(request: AddItemRequest) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        unknown = set(request.watched_by) - set(settings.user_ids)
        if unknown:
            raise HTTPException(
                status_code=400, detail=f"Unknown users: {', '.join(sorted(unknown))}"
            )
        item = await tracker.add_from_result(request.result, watched_by=request.watched_by)
        return {"created": item is not None, "item": _serialise(item) if item else None}

    @fastapi_app.post("/api/items/manual")
    async def add_manual_item(request: ManualItemRequest) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        try:
            item = await tracker.add_manual(request.title, request.type, request.year)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"created": item is not None, "item": _serialise(item) if item else None}

    @fastapi_app.patch("/api/items/{item_id}")
    async def patch_item(item_id: str, patch: ItemPatch) -> dict[str, Any]:
        changes = patch.model_dump(exclude_unset=True)
        if not changes:
            return _serialise(_require(item_id))
        tracker = get_tracker(fastapi_app)
        return _serialise(_run(tracker.update_item, item_id, changes))

    @fastapi_app.post("/api/items/{item_id}/platforms")
    async def toggle_platform(item_id: str, request: PlatformRequest) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        return _serialise(_run(tracker.toggle_platform, item_id, request.platform))

    @fastapi_app.post("/api/items/{item_id}/users/{user_id}/watched")
    async def set_watched(
        item_id: str, user_id: str, request: WatchedRequest
    ) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        item = _require(item_id)
        if item.type == MediaType.SERIES:
            if not request.watched:
                raise HTTPException(
                    status_code=400,
                    detail="Series progress is cleared episode by episode",
                )
            return _serialise(_run(tracker.mark_fully_watched, item_id, [user_id]))
        return _serialise(
            _run(tracker.set_movie_watched, item_id, user_id, request.watched)
        )

    @fastapi_app.post("/api/items/{item_id}/users/{user_id}/episodes")
    async def toggle_episode(
        item_id: str, user_id: str, request: EpisodeRequest
    ) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        return _serialise(
            _run(
                tracker.toggle_episode,
                item_id,
                user_id,
                request.season,
                request.episode,
            )
        )

    @fastapi_app.post("/api/items/{item_id}/users/{user_id}/seasons/{season_number}")
    async def toggle_season(
        item_id: str, user_id: str, season_number: int
    ) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        return _serialise(_run(tracker.toggle_season, item_id, user_id, season_number))

    @fastapi_app.delete("/api/items/{item_id}")
    async def delete_item(item_id: str) -> dict[str, str]:
        tracker = get_tracker(fastapi_app)
        _run(tracker.delete, item_id)
        return {"deleted": item_id}

    @fastapi_app.post("/api/assistant")
    async def ask_assistant(request: AssistantRequest) -> dict[str, Any]:
        reply = await get_assistant(fastapi_app).ask(request.message)
        return {
            "reply": strip_recommendations(reply),
            "recommendations": [
                {"title": entry.title, "year": entry.year, "type": entry.type.value}
                for entry in extract_recommendations(reply)
            ],
        }

    @fastapi_app.get("/api/export")
    async def export_items() -> JSONResponse:
        payload = get_tracker(fastapi_app).export_items()
        return JSONResponse(
            payload,
            headers={
                "Content-Disposition": 'attachment; filename="watchwhisper-backup.json"'
            },
        )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
