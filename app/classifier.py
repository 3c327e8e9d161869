"""Derive the collection tab each item belongs to."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Sequence

from .models import MediaItem, MediaType, User
from .watch_status import WatchStatusModel


class CollectionTab(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "inprogress"
    FINISHED = "finished"
    DISCARDED = "discarded"


class CollectionClassifier:
    """Partitions items into four disjoint tabs driven by per-user progress."""

    def __init__(self, users: Sequence[User], status_model: WatchStatusModel | None = None):
        self._status = status_model or WatchStatusModel(users)

    @property
    def status_model(self) -> WatchStatusModel:
        return self._status

    def classify(self, item: MediaItem) -> CollectionTab:
        if item.is_discarded:
            return CollectionTab.DISCARDED
        counts = self._status.status_counts(item)
        if counts.started == 0:
            return CollectionTab.PENDING
        if counts.finished == counts.total_users:
            return CollectionTab.FINISHED
        return CollectionTab.IN_PROGRESS

    def counts(self, items: Iterable[MediaItem]) -> dict[CollectionTab, int]:
        totals = {tab: 0 for tab in CollectionTab}
        for item in items:
            totals[self.classify(item)] += 1
        return totals

    def view(
        self,
        items: Iterable[MediaItem],
        tab: CollectionTab,
        *,
        media_type: MediaType | None = None,
        user_id: str | None = None,
    ) -> list[MediaItem]:
        """Return the items of ``tab`` narrowed by the secondary filters."""

        selected: list[MediaItem] = []
        for item in items:
            if self.classify(item) != tab:
                continue
            if media_type is not None and item.type != media_type:
                continue
            # Pending means nobody started, so the user filter cannot narrow it.
            if (
                user_id is not None
                and tab != CollectionTab.PENDING
                and not self._status.has_activity(item, user_id)
            ):
                continue
            selected.append(item)
        selected.sort(key=lambda entry: entry.added_at, reverse=True)
        return selected
