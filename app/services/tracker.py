"""Local view of the shared collection with optimistic, background persistence."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from contextlib import suppress
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

from ..classifier import CollectionClassifier, CollectionTab
from ..config import Settings
from ..models import MediaItem, MediaType, SearchResult, User
from ..watch_status import WatchStatusModel
from .enrichment import EnrichmentPipeline
from .search import SearchAggregator
from .store import UPDATABLE_FIELDS, ChangeEvent, MediaStore

logger = logging.getLogger(__name__)


class WatchTracker:
    """Holds the collection snapshot callers read and mutate.

    Mutations are applied locally first and written to the store in the
    background. Store change notifications replace the snapshot, except for
    items that still have a local write in flight.
    """

    def __init__(
        self,
        settings: Settings,
        store: MediaStore,
        search: SearchAggregator,
        pipeline: EnrichmentPipeline,
    ):
        self._settings = settings
        self._store = store
        self._search = search
        self._pipeline = pipeline
        self._status = WatchStatusModel(settings.users)
        self._classifier = CollectionClassifier(settings.users, self._status)
        self._items: list[MediaItem] = []
        self._in_flight: Counter[str] = Counter()
        self._writes: set[asyncio.Task[None]] = set()
        self._pending_adds: set[tuple[str, str]] = set()
        self._selected_id: str | None = None
        self._queue: asyncio.Queue[ChangeEvent] | None = None
        self._listener: asyncio.Task[None] | None = None

    @property
    def users(self) -> tuple[User, ...]:
        return self._status.users

    @property
    def status_model(self) -> WatchStatusModel:
        return self._status

    @property
    def classifier(self) -> CollectionClassifier:
        return self._classifier

    @property
    def items(self) -> tuple[MediaItem, ...]:
        return tuple(self._items)

    async def load(self) -> None:
        self.apply_remote_snapshot(await self._store.list_items())

    async def start(self) -> None:
        """Load the snapshot and follow store change notifications."""

        await self.load()
        if self._listener is not None:
            return
        self._queue = self._store.subscribe()
        self._listener = asyncio.create_task(self._follow_changes(self._queue))

    async def stop(self) -> None:
        """Stop following the store once every pending write has landed."""

        await self.flush()
        if self._listener is not None:
            self._listener.cancel()
            with suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None
        if self._queue is not None:
            self._store.unsubscribe(self._queue)
            self._queue = None

    async def flush(self) -> None:
        """Wait for every background write issued so far."""

        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    async def _follow_changes(self, queue: asyncio.Queue[ChangeEvent]) -> None:
        while True:
            await queue.get()
            # Coalesce bursts into a single reload.
            while not queue.empty():
                queue.get_nowait()
            try:
                await self.load()
            except Exception as exc:
                logger.exception("Reloading the collection failed: %s", exc)

    def apply_remote_snapshot(self, items: Sequence[MediaItem]) -> None:
        """Adopt the store snapshot, keeping local versions of in-flight items."""

        local = {item.id: item for item in self._items}
        merged: list[MediaItem] = []
        seen: set[str] = set()
        for item in items:
            seen.add(item.id)
            if self._in_flight[item.id] > 0:
                # Absent locally means a delete is still on its way.
                if item.id in local:
                    merged.append(local[item.id])
                continue
            merged.append(item)
        for item_id, item in local.items():
            if item_id not in seen and self._in_flight[item_id] > 0:
                merged.append(item)
        merged.sort(key=lambda entry: entry.added_at, reverse=True)
        self._items = merged

    def get(self, item_id: str) -> MediaItem | None:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def require(self, item_id: str) -> MediaItem:
        item = self.get(item_id)
        if item is None:
            raise KeyError(f"Media item {item_id} not found")
        return item

    def select(self, item_id: str | None) -> MediaItem | None:
        self._selected_id = item_id
        return self.selected

    @property
    def selected(self) -> MediaItem | None:
        """The open item, re-resolved from the current snapshot."""

        if self._selected_id is None:
            return None
        return self.get(self._selected_id)

    def find_duplicate(self, title: str, year: str) -> MediaItem | None:
        for item in self._items:
            if item.dedupe_key() == (title, year):
                return item
        return None

    def find_by_title(self, title: str) -> MediaItem | None:
        """Case-insensitive exact match on the title or the original title."""

        wanted = title.strip().casefold()
        for item in self._items:
            if item.title.casefold() == wanted:
                return item
            if item.original_title and item.original_title.casefold() == wanted:
                return item
        return None

    async def add_from_result(
        self, result: SearchResult, watched_by: Iterable[str] = ()
    ) -> MediaItem | None:
        """Create an item from a search candidate.

        Returns ``None`` for duplicates and when the store rejects the insert,
        in which case the optimistic entry is removed again.
        """

        key = (result.title, result.year)
        if key in self._pending_adds or self.find_duplicate(*key) is not None:
            logger.info("Skipping duplicate %s (%s)", result.title, result.year)
            return None

        self._pending_adds.add(key)
        try:
            return await self._create_from_result(result, watched_by)
        finally:
            self._pending_adds.discard(key)

    async def _create_from_result(
        self, result: SearchResult, watched_by: Iterable[str]
    ) -> MediaItem | None:
        detailed = await self._search.fetch_details(result)
        # A snapshot may have delivered the same title during the lookup.
        if self.find_duplicate(result.title, result.year) is not None:
            logger.info("Skipping duplicate %s (%s)", result.title, result.year)
            return None

        now = datetime.utcnow()
        item = MediaItem(
            id=uuid.uuid4().hex,
            title=detailed.title,
            type=detailed.type,
            description=detailed.description,
            year=detailed.year,
            poster_url=detailed.poster_url,
            backup_poster_url=detailed.backup_poster_url,
            seasons=detailed.seasons,
            trailer_url=detailed.trailer_url,
            added_at=now,
        )
        targets = [user_id for user_id in watched_by if user_id in self._status.user_ids]
        if targets:
            item = self._status.mark_fully_watched(item, targets, now=now)

        self._items.insert(0, item)
        self._in_flight[item.id] += 1
        try:
            await self._store.insert_item(item)
        except Exception as exc:
            logger.exception("Saving %s failed, discarding it: %s", item.title, exc)
            self._items = [entry for entry in self._items if entry.id != item.id]
            return None
        finally:
            self._release(item.id)

        self._pipeline.schedule(item)
        return item

    async def add_manual(
        self, title: str, media_type: MediaType, year: str | int | None = None
    ) -> MediaItem | None:
        return await self.add_from_result(
            self._search.manual_result(title, media_type, year)
        )

    def toggle_episode(
        self, item_id: str, user_id: str, season_number: int, episode_number: int
    ) -> MediaItem:
        self._check_user(user_id)
        return self._mutate_status(
            item_id,
            lambda item: self._status.toggle_episode(
                item, user_id, season_number, episode_number
            ),
        )

    def toggle_season(self, item_id: str, user_id: str, season_number: int) -> MediaItem:
        self._check_user(user_id)
        return self._mutate_status(
            item_id,
            lambda item: self._status.toggle_season(item, user_id, season_number),
        )

    def set_movie_watched(
        self, item_id: str, user_id: str, watched: bool, *, now: datetime | None = None
    ) -> MediaItem:
        self._check_user(user_id)
        return self._mutate_status(
            item_id,
            lambda item: self._status.set_movie_watched(item, user_id, watched, now=now),
        )

    def mark_fully_watched(
        self, item_id: str, user_ids: Iterable[str], *, now: datetime | None = None
    ) -> MediaItem:
        targets = list(user_ids)
        for user_id in targets:
            self._check_user(user_id)
        return self._mutate_status(
            item_id,
            lambda item: self._status.mark_fully_watched(item, targets, now=now),
        )

    def update_item(self, item_id: str, changes: Mapping[str, Any]) -> MediaItem:
        """Apply arbitrary field edits (rating, platforms, release date...)."""

        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        item = self.require(item_id)
        updated = MediaItem.model_validate({**item.model_dump(), **changes})
        self._replace(updated)
        persisted = {field: getattr(updated, field) for field in changes}
        self._persist(item_id, lambda: self._store.update_item(item_id, persisted))
        return updated

    def set_rating(self, item_id: str, rating: Any) -> MediaItem:
        return self.update_item(item_id, {"rating": rating})

    def toggle_platform(self, item_id: str, platform: str) -> MediaItem:
        item = self.require(item_id)
        name = platform.strip()
        if not name:
            raise ValueError("Platform name may not be empty")
        if name in item.platforms:
            platforms = [entry for entry in item.platforms if entry != name]
        else:
            platforms = [*item.platforms, name]
        return self.update_item(item_id, {"platforms": platforms})

    def delete(self, item_id: str) -> None:
        self.require(item_id)
        self._items = [item for item in self._items if item.id != item_id]
        self._persist(item_id, lambda: self._store.delete_item(item_id))

    def view(
        self,
        tab: CollectionTab,
        *,
        media_type: MediaType | None = None,
        user_id: str | None = None,
    ) -> list[MediaItem]:
        return self._classifier.view(
            self._items, tab, media_type=media_type, user_id=user_id
        )

    def counts(self) -> dict[CollectionTab, int]:
        return self._classifier.counts(self._items)

    def export_items(self) -> list[dict[str, Any]]:
        """JSON-ready backup of the whole collection."""

        return [item.model_dump(mode="json", by_alias=True) for item in self._items]

    def _check_user(self, user_id: str) -> None:
        if user_id not in self._status.user_ids:
            raise ValueError(f"Unknown user {user_id}")

    def _mutate_status(
        self, item_id: str, mutation: Callable[[MediaItem], MediaItem]
    ) -> MediaItem:
        updated = mutation(self.require(item_id))
        self._replace(updated)
        changes = {
            "user_status": updated.user_status,
            "collection_id": updated.collection_id,
        }
        self._persist(item_id, lambda: self._store.update_item(item_id, changes))
        return updated

    def _replace(self, updated: MediaItem) -> None:
        self._items = [
            updated if item.id == updated.id else item for item in self._items
        ]

    def _persist(self, item_id: str, write: Callable[[], Awaitable[None]]) -> None:
        self._in_flight[item_id] += 1

        async def _runner() -> None:
            try:
                await write()
            except Exception as exc:
                # The next store snapshot brings the item back in line.
                logger.exception("Saving changes to %s failed: %s", item_id, exc)
            finally:
                self._release(item_id)

        task = asyncio.create_task(_runner())
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    def _release(self, item_id: str) -> None:
        self._in_flight[item_id] -= 1
        if self._in_flight[item_id] <= 0:
            del self._in_flight[item_id]
