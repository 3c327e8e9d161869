"""Per-user watch progress aggregation and watch-state mutations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from .models import (
    CollectionType,
    MediaItem,
    MediaType,
    User,
    WatchInfo,
    all_episode_keys,
    episode_key,
)


@dataclass(slots=True, frozen=True)
class UserProgress:
    """Progress of one user on one item."""

    user_id: str
    started: bool
    finished: bool
    watched_episodes: int = 0
    total_episodes: int = 0

    @property
    def percent(self) -> float:
        if self.total_episodes <= 0:
            return 100.0 if self.finished else 0.0
        return min(self.watched_episodes / self.total_episodes, 1.0) * 100


@dataclass(slots=True, frozen=True)
class StatusCounts:
    """Number of configured users who started and finished an item."""

    started: int
    finished: int
    total_users: int


class WatchStatusModel:
    """Aggregates and mutates watch state for a fixed, injected user set.

    Every mutation returns a new :class:`MediaItem`; callers decide how the
    result is published and persisted.
    """

    def __init__(self, users: Sequence[User]):
        if not users:
            raise ValueError("At least one user must be configured")
        self._users = tuple(users)
        self._user_ids = tuple(user.id for user in users)

    @property
    def users(self) -> tuple[User, ...]:
        return self._users

    @property
    def user_ids(self) -> tuple[str, ...]:
        return self._user_ids

    def user_progress(self, item: MediaItem, user_id: str) -> UserProgress:
        status = item.user_status.get(user_id)
        if item.type == MediaType.MOVIE:
            watched = bool(status and status.watched)
            return UserProgress(user_id=user_id, started=watched, finished=watched)

        total = item.total_episodes
        watched_count = len(status.watched_episodes) if status else 0
        return UserProgress(
            user_id=user_id,
            started=watched_count > 0,
            finished=total > 0 and watched_count >= total,
            watched_episodes=watched_count,
            total_episodes=total,
        )

    def status_counts(self, item: MediaItem) -> StatusCounts:
        started = 0
        finished = 0
        # Keys outside the configured user set are ignored on purpose.
        for user_id in self._user_ids:
            progress = self.user_progress(item, user_id)
            if progress.started:
                started += 1
            if progress.finished:
                finished += 1
        return StatusCounts(
            started=started, finished=finished, total_users=len(self._user_ids)
        )

    def progress_percent(self, item: MediaItem) -> float:
        """Share of configured users with any watch activity on the item."""

        counts = self.status_counts(item)
        return counts.started / counts.total_users * 100

    def has_activity(self, item: MediaItem, user_id: str) -> bool:
        return self.user_progress(item, user_id).started

    def derive_collection(self, item: MediaItem) -> CollectionType:
        for user_id in self._user_ids:
            status = item.user_status.get(user_id)
            if status is not None and status.has_activity(item.type):
                return CollectionType.WATCHED
        return CollectionType.WATCHLIST

    def toggle_episode(
        self, item: MediaItem, user_id: str, season_number: int, episode_number: int
    ) -> MediaItem:
        key = episode_key(season_number, episode_number)
        status = item.status_for(user_id)
        episodes = set(status.watched_episodes)
        if key in episodes:
            episodes.remove(key)
        else:
            episodes.add(key)
        return self._apply_status(
            item, user_id, status.model_copy(update={"watched_episodes": episodes})
        )

    def toggle_season(
        self, item: MediaItem, user_id: str, season_number: int
    ) -> MediaItem:
        season = next(
            (entry for entry in item.seasons if entry.season_number == season_number),
            None,
        )
        if season is None or season.episode_count <= 0:
            return item

        season_keys = set(season.episode_keys())
        status = item.status_for(user_id)
        episodes = set(status.watched_episodes)
        if season_keys <= episodes:
            episodes -= season_keys
        else:
            episodes |= season_keys
        return self._apply_status(
            item, user_id, status.model_copy(update={"watched_episodes": episodes})
        )

    def set_movie_watched(
        self,
        item: MediaItem,
        user_id: str,
        watched: bool,
        *,
        now: datetime | None = None,
    ) -> MediaItem:
        status = item.status_for(user_id)
        if watched:
            watched_at = status.date or now or datetime.utcnow()
        else:
            watched_at = None
        return self._apply_status(
            item,
            user_id,
            status.model_copy(update={"watched": watched, "date": watched_at}),
        )

    def mark_fully_watched(
        self,
        item: MediaItem,
        user_ids: Iterable[str],
        *,
        now: datetime | None = None,
    ) -> MediaItem:
        """Mark the movie watched, or every known episode of the series."""

        timestamp = now or datetime.utcnow()
        every_episode = all_episode_keys(item.seasons)
        updated = item
        for user_id in user_ids:
            status = updated.status_for(user_id)
            changes: dict[str, object] = {"watched": True, "date": timestamp}
            if item.type == MediaType.SERIES:
                changes["watched_episodes"] = set(status.watched_episodes) | every_episode
            updated = updated.with_user_status(user_id, status.model_copy(update=changes))
        return updated.model_copy(
            update={"collection_id": self.derive_collection(updated)}
        )

    def _apply_status(
        self, item: MediaItem, user_id: str, status: WatchInfo
    ) -> MediaItem:
        updated = item.with_user_status(user_id, status)
        return updated.model_copy(
            update={"collection_id": self.derive_collection(updated)}
        )
