"""Pydantic models describing tracked media and search candidates."""

from __future__ import annotations

import re
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Iterable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel


EPISODE_KEY_RE = re.compile(r"^S(\d+)_E(\d+)$")
RATING_DISCARDED_CODE = 9
RATING_LABELS: dict[int, str] = {
    1: "bad",
    2: "good",
    3: "great",
    4: "masterpiece",
}

SearchSource = Literal["itunes", "cinemeta", "tvmaze", "manual"]


class MediaType(str, Enum):
    MOVIE = "movie"
    SERIES = "series"


class CollectionType(str, Enum):
    """Denormalised collection flag stored alongside each item."""

    WATCHLIST = "watchlist"
    WATCHED = "watched"


class CamelModel(BaseModel):
    """Base model accepting both snake_case names and camelCase aliases."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class User(CamelModel):
    """One member of the fixed user set."""

    id: str
    name: str


def episode_key(season_number: int, episode_number: int) -> str:
    """Return the ``S<season>_E<episode>`` key used to track series progress."""

    return f"S{season_number}_E{episode_number}"


def parse_episode_key(key: str) -> tuple[int, int] | None:
    match = EPISODE_KEY_RE.match(key)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def episode_sort_key(key: str) -> tuple[int, int, str]:
    parsed = parse_episode_key(key)
    if parsed is None:
        return (1_000_000, 0, key)
    return (parsed[0], parsed[1], key)


class Season(CamelModel):
    season_number: int = Field(ge=0)
    episode_count: int = Field(default=0, ge=0)

    def episode_keys(self) -> list[str]:
        return [
            episode_key(self.season_number, episode)
            for episode in range(1, self.episode_count + 1)
        ]


def all_episode_keys(seasons: Iterable[Season]) -> set[str]:
    """Return every episode key derived from a season breakdown."""

    keys: set[str] = set()
    for season in seasons:
        keys.update(season.episode_keys())
    return keys


class Unrated(CamelModel):
    kind: Literal["unrated"] = "unrated"

    def to_code(self) -> int | None:
        return None


class Rated(CamelModel):
    kind: Literal["rated"] = "rated"
    score: int = Field(ge=1, le=4)

    @property
    def label(self) -> str:
        return RATING_LABELS[self.score]

    def to_code(self) -> int | None:
        return self.score


class Discarded(CamelModel):
    """Terminal rating that removes the item from progress tracking."""

    kind: Literal["discarded"] = "discarded"

    def to_code(self) -> int | None:
        return RATING_DISCARDED_CODE


Rating = Annotated[Union[Unrated, Rated, Discarded], Field(discriminator="kind")]


def rating_from_code(code: int | None) -> Unrated | Rated | Discarded:
    """Translate the legacy integer rating (``9`` = discarded) into a variant."""

    if code is None or code == 0:
        return Unrated()
    if code == RATING_DISCARDED_CODE:
        return Discarded()
    if 1 <= code <= 4:
        return Rated(score=code)
    raise ValueError(f"Unsupported rating code: {code}")


class WatchInfo(CamelModel):
    """A single user's relationship to a single item."""

    watched: bool = False
    date: datetime | None = None
    watched_episodes: set[str] = Field(default_factory=set)

    @field_validator("watched_episodes", mode="before")
    @classmethod
    def _coerce_episodes(cls, value: object) -> object:
        if value is None:
            return set()
        return value

    @field_serializer("watched_episodes")
    def _serialise_episodes(self, value: set[str]) -> list[str]:
        return sorted(value, key=episode_sort_key)

    def has_activity(self, media_type: MediaType) -> bool:
        if media_type == MediaType.MOVIE:
            return self.watched
        return bool(self.watched_episodes)


class MediaItem(CamelModel):
    """A watchable title tracked by the shared collection."""

    id: str
    title: str
    type: MediaType
    original_title: str | None = None
    description: str = ""
    year: str = ""
    poster_url: str = ""
    backup_poster_url: str | None = None
    release_date: str | None = None
    platforms: list[str] = Field(default_factory=list)
    seasons: list[Season] = Field(default_factory=list)
    rating: Rating = Field(default_factory=Unrated)
    trailer_url: str | None = None
    is_enriched: bool = False
    added_at: datetime = Field(default_factory=datetime.utcnow)
    collection_id: CollectionType = CollectionType.WATCHLIST
    user_status: dict[str, WatchInfo] = Field(default_factory=dict)

    @field_validator("rating", mode="before")
    @classmethod
    def _parse_rating_code(cls, value: object) -> object:
        if value is None or (isinstance(value, int) and not isinstance(value, bool)):
            return rating_from_code(value)
        return value

    @field_validator("platforms", mode="before")
    @classmethod
    def _parse_platforms(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            raw_values = value.split(",")
        elif isinstance(value, Iterable):
            raw_values = [str(part) for part in value]
        else:
            raise TypeError("platforms must be a string or iterable of strings")
        cleaned: list[str] = []
        for entry in raw_values:
            name = entry.strip()
            if name and name not in cleaned:
                cleaned.append(name)
        return cleaned

    @field_validator("release_date", mode="before")
    @classmethod
    def _parse_release_date(cls, value: object) -> object:
        if value is None:
            return None
        if isinstance(value, date):
            return value.isoformat()
        text = str(value).strip()
        if not text:
            return None
        date.fromisoformat(text)
        return text

    @field_validator("year", mode="before")
    @classmethod
    def _coerce_year(cls, value: object) -> object:
        if value is None:
            return ""
        return str(value).strip()

    @field_serializer("rating")
    def _serialise_rating(self, value: Any) -> int | None:
        return value.to_code()

    @property
    def is_discarded(self) -> bool:
        return isinstance(self.rating, Discarded)

    @property
    def total_episodes(self) -> int:
        return sum(season.episode_count for season in self.seasons)

    def status_for(self, user_id: str) -> WatchInfo:
        """Return the user's watch info, an empty record when absent."""

        status = self.user_status.get(user_id)
        if status is None:
            return WatchInfo()
        return status

    def with_user_status(self, user_id: str, status: WatchInfo) -> "MediaItem":
        user_status = {**self.user_status, user_id: status}
        return self.model_copy(update={"user_status": user_status})

    def dedupe_key(self) -> tuple[str, str]:
        return self.title, self.year


class SearchResult(CamelModel):
    """Ephemeral candidate produced by the search aggregator."""

    id: str
    external_id: str | int | None = None
    source: SearchSource
    title: str
    type: MediaType
    year: str = ""
    description: str = ""
    poster_url: str = ""
    backup_poster_url: str | None = None
    seasons: list[Season] = Field(default_factory=list)
    trailer_url: str | None = None

    @field_validator("year", mode="before")
    @classmethod
    def _coerce_year(cls, value: object) -> object:
        if value is None:
            return ""
        return str(value).strip()

    def merge_key(self) -> tuple[str, str]:
        """Normalised ``(title, year)`` used to collapse duplicate movies."""

        return self.title.lower().strip(), self.year
