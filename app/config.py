"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .models import User


DEFAULT_USERS: tuple[User, ...] = (
    User(id="u1", name="Jesús"),
    User(id="u2", name="Julia"),
)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Watch Whisper", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    users: Annotated[tuple[User, ...], NoDecode] = Field(
        default=DEFAULT_USERS, alias="USERS"
    )

    openrouter_api_key: str | None = Field(
        default=None, alias="OPENROUTER_API_KEY"
    )
    openrouter_model: str = Field(
        default="google/gemini-2.5-flash", alias="OPENROUTER_MODEL"
    )
    openrouter_api_url: HttpUrl = Field(
        default="https://openrouter.ai/api/v1", alias="OPENROUTER_API_URL"
    )

    youtube_api_key: str | None = Field(default=None, alias="YOUTUBE_API_KEY")
    youtube_api_url: HttpUrl = Field(
        default="https://www.googleapis.com/youtube/v3", alias="YOUTUBE_API_URL"
    )
    noembed_url: HttpUrl = Field(
        default="https://noembed.com", alias="NOEMBED_URL"
    )

    itunes_api_url: HttpUrl = Field(
        default="https://itunes.apple.com", alias="ITUNES_API_URL"
    )
    itunes_country: str = Field(default="ES", alias="ITUNES_COUNTRY")
    itunes_language: str = Field(default="es_es", alias="ITUNES_LANGUAGE")
    cinemeta_api_url: HttpUrl = Field(
        default="https://v3-cinemeta.strem.io", alias="CINEMETA_API_URL"
    )
    tvmaze_api_url: HttpUrl = Field(
        default="https://api.tvmaze.com", alias="TVMAZE_API_URL"
    )

    search_timeout_seconds: float = Field(
        default=3.0, alias="SEARCH_TIMEOUT", gt=0, le=30
    )
    trailer_attempts: int = Field(default=3, alias="TRAILER_ATTEMPTS", ge=0, le=10)
    metadata_language: str = Field(
        default="Spanish (Spain)", alias="METADATA_LANGUAGE"
    )
    trailer_search_phrase: str = Field(
        default="trailer oficial español", alias="TRAILER_SEARCH_PHRASE"
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./watchwhisper.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("users", mode="before")
    @classmethod
    def _parse_users(cls, value: object) -> tuple[User, ...]:
        """Accept ``id:Name`` pairs separated by commas or explicit user objects."""

        if value is None or value == "":
            return DEFAULT_USERS
        if isinstance(value, str):
            raw_values: list[object] = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = list(value)
        else:
            raise TypeError("USERS must be a string or iterable of users")

        users: list[User] = []
        seen: set[str] = set()
        for entry in raw_values:
            if isinstance(entry, User):
                user = entry
            elif isinstance(entry, dict):
                user = User.model_validate(entry)
            else:
                text = str(entry).strip()
                if not text:
                    continue
                user_id, _, name = text.partition(":")
                user_id = user_id.strip()
                if not user_id:
                    raise ValueError("User ids may not be empty")
                user = User(id=user_id, name=name.strip() or user_id)
            if user.id in seen:
                raise ValueError("Duplicate user ids configured")
            seen.add(user.id)
            users.append(user)
        if not users:
            return DEFAULT_USERS
        return tuple(users)

    @property
    def user_ids(self) -> tuple[str, ...]:
        return tuple(user.id for user in self.users)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
