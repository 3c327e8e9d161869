"""Persistent media item store with push-based change notification."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Mapping

from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import MediaItemRecord
from ..models import MediaItem, Season, WatchInfo, rating_from_code

logger = logging.getLogger(__name__)

ChangeKind = Literal["insert", "update", "delete"]

UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {
        "title",
        "original_title",
        "type",
        "description",
        "year",
        "poster_url",
        "backup_poster_url",
        "release_date",
        "platforms",
        "seasons",
        "rating",
        "trailer_url",
        "is_enriched",
        "collection_id",
        "user_status",
    }
)
_COLUMN_FOR_FIELD = {"platforms": "platform"}


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """A committed change to the media collection."""

    kind: ChangeKind
    item_id: str


class MediaStore:
    """Stores media items and notifies subscribers after every commit.

    Updates are partial: only the named fields are written, every other
    column is left untouched.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._subscribers: set[asyncio.Queue[ChangeEvent]] = set()

    async def list_items(self) -> list[MediaItem]:
        """Return every stored item, most recently added first."""

        async with self._session_factory() as session:
            stmt = select(MediaItemRecord).order_by(MediaItemRecord.added_at.desc())
            result = await session.execute(stmt)
            records = result.scalars().all()
        items: list[MediaItem] = []
        for record in records:
            try:
                items.append(self._record_to_item(record))
            except ValidationError as exc:
                logger.warning("Stored item %s could not be validated: %s", record.id, exc)
        return items

    async def get_item(self, item_id: str) -> MediaItem | None:
        async with self._session_factory() as session:
            record = await session.get(MediaItemRecord, item_id)
            if record is None:
                return None
            return self._record_to_item(record)

    async def insert_item(self, item: MediaItem) -> None:
        values = self._column_values(
            {field: getattr(item, field) for field in UPDATABLE_FIELDS}
        )
        async with self._session_factory() as session:
            session.add(
                MediaItemRecord(
                    id=item.id,
                    added_at=item.added_at,
                    updated_at=datetime.utcnow(),
                    **values,
                )
            )
            await session.commit()
        self._notify(ChangeEvent("insert", item.id))

    async def update_item(self, item_id: str, changes: Mapping[str, Any]) -> None:
        """Write only the named fields of an existing item."""

        if not changes:
            return
        values = self._column_values(changes)
        async with self._session_factory() as session:
            result = await session.execute(
                update(MediaItemRecord)
                .where(MediaItemRecord.id == item_id)
                .values(**values, updated_at=datetime.utcnow())
            )
            await session.commit()
        if result.rowcount == 0:
            raise KeyError(f"Media item {item_id} not found")
        self._notify(ChangeEvent("update", item_id))

    async def delete_item(self, item_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(MediaItemRecord).where(MediaItemRecord.id == item_id)
            )
            await session.commit()
        self._notify(ChangeEvent("delete", item_id))

    def subscribe(self) -> asyncio.Queue[ChangeEvent]:
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ChangeEvent]) -> None:
        self._subscribers.discard(queue)

    def _notify(self, event: ChangeEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    @classmethod
    def _column_values(cls, changes: Mapping[str, Any]) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for field, value in changes.items():
            if field not in UPDATABLE_FIELDS:
                raise ValueError(f"Field {field!r} cannot be updated")
            values[_COLUMN_FOR_FIELD.get(field, field)] = cls._serialise_value(field, value)
        return values

    @staticmethod
    def _serialise_value(field: str, value: Any) -> Any:
        if value is None:
            return None
        if field == "platforms":
            if isinstance(value, str):
                return value or None
            joined = ",".join(str(entry) for entry in value)
            return joined or None
        if field == "seasons":
            return [
                Season.model_validate(season).model_dump(mode="json", by_alias=True)
                for season in value
            ]
        if field == "rating":
            if isinstance(value, int):
                return rating_from_code(value).to_code()
            return value.to_code()
        if field == "user_status":
            return {
                str(user_id): WatchInfo.model_validate(status).model_dump(
                    mode="json", by_alias=True
                )
                for user_id, status in value.items()
            }
        if isinstance(value, Enum):
            return value.value
        return value

    @staticmethod
    def _record_to_item(record: MediaItemRecord) -> MediaItem:
        return MediaItem.model_validate(
            {
                "id": record.id,
                "title": record.title,
                "original_title": record.original_title,
                "type": record.type,
                "description": record.description or "",
                "year": record.year or "",
                "poster_url": record.poster_url or "",
                "backup_poster_url": record.backup_poster_url,
                "release_date": record.release_date,
                "platforms": record.platform,
                "seasons": record.seasons or [],
                "rating": record.rating,
                "trailer_url": record.trailer_url,
                "is_enriched": bool(record.is_enriched),
                "added_at": record.added_at,
                "collection_id": record.collection_id or "watchlist",
                "user_status": record.user_status or {},
            }
        )
