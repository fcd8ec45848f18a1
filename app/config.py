"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .models import DEFAULT_TARGET_TYPES, EpisodeType, SyncOptions, parse_episode_types


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="CanonSync", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./canonsync.db", alias="DATABASE_URL"
    )

    listing_base_url: HttpUrl = Field(
        default="https://www.animefillerlist.com", alias="LISTING_BASE_URL"
    )

    plex_url: HttpUrl | None = Field(default=None, alias="PLEX_URL")
    plex_token: str | None = Field(default=None, alias="PLEX_TOKEN")
    plex_section_id: str | None = Field(default=None, alias="PLEX_SECTION_ID")
    library_max_connections: int = Field(
        default=4, alias="LIBRARY_MAX_CONNECTIONS", ge=1, le=64
    )

    freshness_ttl_seconds: int = Field(
        default=604_800, alias="FRESHNESS_TTL", ge=0
    )
    sync_concurrency: int = Field(default=4, alias="SYNC_CONCURRENCY", ge=1, le=64)
    sync_timeout_seconds: float | None = Field(
        default=None, alias="SYNC_TIMEOUT", gt=0
    )
    sync_retry_limit: int = Field(default=3, alias="SYNC_RETRY_LIMIT", ge=0, le=20)
    sync_retry_backoff_seconds: float = Field(
        default=1.0, alias="SYNC_RETRY_BACKOFF", ge=0
    )
    sync_retry_backoff_max_seconds: float = Field(
        default=30.0, alias="SYNC_RETRY_BACKOFF_MAX", ge=0
    )
    remove_filler: bool = Field(default=False, alias="REMOVE_FILLER")
    canon_types: Annotated[frozenset[EpisodeType], NoDecode] = Field(
        default=DEFAULT_TARGET_TYPES, alias="CANON_TYPES"
    )
    collection_name_template: str = Field(
        default="{title} (Canon)", alias="COLLECTION_NAME"
    )
    sync_interval_seconds: int = Field(default=0, alias="SYNC_INTERVAL", ge=0)

    match_auto_threshold: float = Field(
        default=0.92, alias="MATCH_AUTO_THRESHOLD", ge=0.0, le=1.0
    )
    match_suggest_threshold: float = Field(
        default=0.75, alias="MATCH_SUGGEST_THRESHOLD", ge=0.0, le=1.0
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("canon_types", mode="before")
    @classmethod
    def _parse_canon_types(cls, value: object) -> frozenset[EpisodeType]:
        """Normalise episode type selections from environment values."""

        return parse_episode_types(value) or DEFAULT_TARGET_TYPES

    @field_validator("collection_name_template")
    @classmethod
    def _check_collection_template(cls, value: str) -> str:
        if "{title}" not in value:
            raise ValueError("COLLECTION_NAME must contain a {title} placeholder")
        return value

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        if self.match_suggest_threshold > self.match_auto_threshold:
            raise ValueError(
                "MATCH_SUGGEST_THRESHOLD must not exceed MATCH_AUTO_THRESHOLD"
            )
        return self

    @property
    def plex_configured(self) -> bool:
        return bool(self.plex_url and self.plex_token and self.plex_section_id)

    def sync_options(self) -> SyncOptions:
        """Return the default per-run options derived from these settings."""

        return SyncOptions(
            target_types=self.canon_types,
            remove_filler=self.remove_filler,
            concurrency=self.sync_concurrency,
            timeout_seconds=self.sync_timeout_seconds,
            retry_limit=self.sync_retry_limit,
            retry_backoff_seconds=self.sync_retry_backoff_seconds,
            retry_backoff_max_seconds=self.sync_retry_backoff_max_seconds,
            collection_name_template=self.collection_name_template,
        )

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
