"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Hero Pool", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./heropool.db", alias="DATABASE_URL"
    )

    hero_policy_path: str | None = Field(default=None, alias="HERO_POLICY_PATH")
    hero_pipeline_enabled: bool | None = Field(
        default=None, alias="HERO_PIPELINE_ENABLED"
    )
    hero_session_cache_size: int = Field(
        default=16, alias="HERO_SESSION_CACHE_SIZE", ge=1, le=1_000
    )
    catalog_seed_path: str | None = Field(default=None, alias="CATALOG_SEED_PATH")

    tmdb_access_token: str | None = Field(
        default=None,
        alias="TMDB_ACCESS_TOKEN",
        validation_alias=AliasChoices("TMDB_ACCESS_TOKEN", "TMDB_READ_TOKEN"),
    )
    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_timeout_seconds: float = Field(
        default=10.0, alias="TMDB_TIMEOUT_SECONDS", ge=1, le=120
    )
    tmdb_cache_ttl_hours: int = Field(
        default=24, alias="TMDB_CACHE_TTL_HOURS", ge=1, le=24 * 30
    )
    tmdb_cache_max_entries: int = Field(
        default=200, alias="TMDB_CACHE_MAX_ENTRIES", ge=1, le=100_000
    )
    tmdb_cache_path: str | None = Field(default=None, alias="TMDB_CACHE_PATH")

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator(
        "hero_policy_path",
        "tmdb_access_token",
        "tmdb_api_key",
        "tmdb_cache_path",
        "catalog_seed_path",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        """Treat empty environment values as unset."""

        if isinstance(value, str) and not value.strip():
            return None
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("hero_pipeline_enabled", mode="before")
    @classmethod
    def _parse_feature_flag(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def tmdb_enabled(self) -> bool:
        """Return whether any TMDB credential has been configured."""

        return bool(self.tmdb_access_token or self.tmdb_api_key)

    @property
    def tmdb_credential(self) -> str | None:
        """Return the credential used for TMDB requests, preferring bearer tokens."""

        return self.tmdb_access_token or self.tmdb_api_key

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
