"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_SOURCE_PRIORITY: tuple[str, ...] = (
    "imdb",
    "tmdb",
    "tvdb",
    "musicbrainz",
    "trakt",
)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="MediaMesh", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./mediamesh.db", alias="DATABASE_URL"
    )

    identity_source_priority: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_SOURCE_PRIORITY,
        alias="IDENTITY_SOURCE_PRIORITY",
    )
    admin_user_ids: Annotated[tuple[int, ...], NoDecode] = Field(
        default=(), alias="ADMIN_USER_IDS"
    )

    smart_list_item_limit: int = Field(
        default=500, alias="SMART_LIST_ITEM_LIMIT", ge=1, le=5_000
    )
    smart_refresh_timeout_seconds: float = Field(
        default=30.0, alias="SMART_REFRESH_TIMEOUT", gt=0
    )
    smart_refresh_interval_seconds: int = Field(
        default=3_600, alias="SMART_REFRESH_INTERVAL", ge=0
    )
    catalog_search_url: HttpUrl | None = Field(
        default=None, alias="CATALOG_SEARCH_URL"
    )

    list_page_size_max: int = Field(
        default=200, alias="LIST_PAGE_SIZE_MAX", ge=1, le=1_000
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("identity_source_priority", mode="before")
    @classmethod
    def _parse_source_priority(cls, value: object) -> tuple[str, ...]:
        """Normalise the external reference preference order."""

        if value is None:
            return DEFAULT_SOURCE_PRIORITY
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError(
                "IDENTITY_SOURCE_PRIORITY must be a string or iterable of strings"
            )

        cleaned: list[str] = []
        for entry in raw_values:
            source = entry.lower()
            if not source:
                continue
            if source not in cleaned:
                cleaned.append(source)
        if not cleaned:
            return DEFAULT_SOURCE_PRIORITY
        return tuple(cleaned)

    @field_validator("admin_user_ids", mode="before")
    @classmethod
    def _parse_admin_ids(cls, value: object) -> tuple[int, ...]:
        if value is None or value == "":
            return ()
        if isinstance(value, int):
            return (value,)
        if isinstance(value, str):
            raw_values: Iterable[object] = value.split(",")
        elif isinstance(value, Iterable):
            raw_values = value
        else:
            raise TypeError("ADMIN_USER_IDS must be a string or iterable of ids")

        ids: list[int] = []
        for entry in raw_values:
            text = str(entry).strip()
            if not text:
                continue
            try:
                user_id = int(text)
            except ValueError as exc:
                raise ValueError("ADMIN_USER_IDS must contain integers") from exc
            if user_id not in ids:
                ids.append(user_id)
        return tuple(ids)

    def source_rank(self, source: str) -> int:
        """Return the preference rank of an external reference source."""

        try:
            return self.identity_source_priority.index(source.lower())
        except ValueError:
            return len(self.identity_source_priority)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
