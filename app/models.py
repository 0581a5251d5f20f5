"""Pydantic models describing catalog items and hero pool payloads."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .policy import PoolKind
from .utils import parse_timestamp

MediaKind = Literal["movie", "show"]
HeroType = Literal["movie", "tv"]
CacheSource = Literal["session", "durable"]
PoolSource = Literal["fresh", "cache", "stale"]

KIND_TO_MEDIA: dict[str, MediaKind] = {"movies": "movie", "series": "show"}


class ApiModel(BaseModel):
    """Base model serialising to the camelCase JSON used by the frontend."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CatalogEpisode(ApiModel):
    index: int | None = None
    title: str | None = None


class CatalogSeason(ApiModel):
    index: int | None = None
    title: str | None = None
    episodes: list[CatalogEpisode] = Field(default_factory=list)


class CatalogItem(ApiModel):
    """A media entry as exported from the Plex library."""

    id: str = Field(validation_alias=AliasChoices("id", "ratingKey", "plexId"))
    kind: MediaKind = Field(validation_alias=AliasChoices("kind", "type"))
    title: str = ""
    year: int | None = None
    rating: float | None = None
    audience_rating: float | None = None
    vote_count: int | None = None
    genres: list[str] = Field(default_factory=list)
    added_at: int = Field(
        default=0, validation_alias=AliasChoices("addedAt", "added_at", "plexAddedAt")
    )
    summary: str | None = None
    tagline: str | None = None
    content_rating: str | None = None
    duration: float | None = None
    guid: str | None = None
    tmdb_id: str | None = None
    imdb_id: str | None = None
    tvdb_id: str | None = None
    thumb: str | None = None
    art: str | None = None
    seasons: list[CatalogSeason] = Field(default_factory=list)

    @field_validator("id", "tmdb_id", "tvdb_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("kind", mode="before")
    @classmethod
    def _normalise_kind(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"movie", "movies"}:
                return "movie"
            if lowered in {"show", "shows", "series", "tv"}:
                return "show"
        return value

    @field_validator("genres", mode="before")
    @classmethod
    def _flatten_genres(cls, value: object) -> list[str]:
        """Accept plain strings or Plex-style ``{"tag": ...}`` objects."""

        if not isinstance(value, (list, tuple)):
            return []
        genres: list[str] = []
        for entry in value:
            if isinstance(entry, dict):
                entry = entry.get("tag") or entry.get("name")
            if entry is None:
                continue
            genres.append(str(entry))
        return genres

    @field_validator("added_at", mode="before")
    @classmethod
    def _parse_added_at(cls, value: object) -> int:
        return parse_timestamp(value)

    @field_validator("year", mode="before")
    @classmethod
    def _parse_year(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip()
            return int(stripped) if stripped.isdigit() else None
        return value

    def external_ids(self) -> dict[str, str]:
        """Return known external identifiers, including those embedded in ``guid``."""

        ids: dict[str, str] = {}
        if self.guid:
            ids.update(parse_guid(self.guid))
        if self.tmdb_id:
            ids["tmdb"] = self.tmdb_id
        if self.imdb_id:
            ids["imdb"] = self.imdb_id
        if self.tvdb_id:
            ids["tvdb"] = self.tvdb_id
        return ids


def parse_guid(guid: str) -> dict[str, str]:
    """Extract provider ids from Plex guids such as ``tmdb://603``."""

    trimmed = guid.strip()
    if not trimmed:
        return {}
    scheme, separator, rest = trimmed.partition("://")
    if not separator:
        return {"imdb": trimmed} if trimmed.startswith("tt") else {}
    tail = rest.split("?", 1)[0].strip("/").split("/")[-1]
    if not tail:
        return {}
    scheme = scheme.lower()
    ids: dict[str, str] = {}
    if "imdb" in scheme:
        ids["imdb"] = tail
    if "themoviedb" in scheme or scheme == "tmdb":
        ids["tmdb"] = tail
    if "thetvdb" in scheme or scheme == "tvdb":
        ids["tvdb"] = tail
    return ids


class HeroCta(ApiModel):
    kind: MediaKind
    id: str
    label: str
    target: str


class HeroItem(ApiModel):
    """Canonical hero entry produced by the normalizer."""

    model_config = ConfigDict(frozen=True)

    id: str
    pool_slot: str
    type: HeroType
    title: str = ""
    tagline: str = ""
    overview: str = ""
    year: int | None = None
    runtime: int | None = None
    rating: float | None = None
    vote_count: int | None = None
    genres: list[str] = Field(default_factory=list)
    certification: str | None = None
    backdrops: list[str] = Field(default_factory=list)
    poster: str | None = None
    seasons: int | None = None
    episodes: int | None = None
    cta: HeroCta
    ids: dict[str, str] = Field(default_factory=dict)
    source: Literal["tmdb", "catalog"] = "catalog"


class HistoryEntry(ApiModel):
    item_id: str = Field(validation_alias=AliasChoices("itemId", "item_id", "id"))
    timestamp: int = Field(validation_alias=AliasChoices("timestamp", "ts"))


class HeroPool(ApiModel):
    """A built pool for one kind. Rebuilds replace the whole value."""

    kind: PoolKind
    items: list[HeroItem] = Field(default_factory=list)
    slot_summary: dict[str, int] = Field(default_factory=dict)
    plan: dict[str, int] = Field(default_factory=dict)
    updated_at: int
    expires_at: int
    policy_hash: str
    history: list[HistoryEntry] = Field(default_factory=list)
    total_candidates: int = 0


class CacheEntry(ApiModel):
    """A pool read from one storage tier, with validity flags computed at read time."""

    pool: HeroPool
    source: CacheSource
    is_expired: bool
    matches_policy: bool


class EnrichmentMeta(ApiModel):
    enabled: bool


class PoolMeta(ApiModel):
    source: PoolSource
    plan: dict[str, int] = Field(default_factory=dict)
    total_candidates: int = 0
    selection_count: int = 0
    enrichment: EnrichmentMeta


class RotationPlan(ApiModel):
    start_index: int = 0
    order: list[str] = Field(default_factory=list)
    interval_minutes: int
    below_minimum: bool = False


class PoolResult(ApiModel):
    """Response returned by the pipeline for ``get_pool``."""

    kind: PoolKind
    items: list[HeroItem]
    updated_at: int
    expires_at: int
    policy_hash: str
    slot_summary: dict[str, int]
    from_cache: bool
    matches_policy: bool = True
    is_expired: bool = False
    meta: PoolMeta
    rotation: RotationPlan

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
