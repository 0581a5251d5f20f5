"""Utilities for resolving metadata from The Movie Database (TMDB)."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal

import httpx

from ..config import Settings
from ..models import CatalogItem
from ..utils import coerce_number, now_ms, parse_year

logger = logging.getLogger(__name__)

IMAGE_BASE_URL = "https://image.tmdb.org/t/p"
POSTER_SIZE = "w500"
BACKDROP_SIZE = "original"
MAX_BACKDROPS = 6
FALLBACK_LANGUAGE = "en-US"
CERTIFICATION_COUNTRIES = ("US", "GB", "DE")
API_KEY_RE = re.compile(r"^[0-9a-f]{32}$", re.IGNORECASE)
APPEND_TO_RESPONSE = "images,release_dates,content_ratings,external_ids"

MediaType = Literal["movie", "tv"]


class MetadataProviderError(RuntimeError):
    """Raised internally when TMDB cannot satisfy a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class EpisodeDetail:
    episode_number: int | None
    name: str
    overview: str
    runtime: int | None
    air_date: str | None
    still: str | None


@dataclass(slots=True)
class SeasonDetail:
    tv_id: int
    season_number: int
    name: str
    overview: str
    air_date: str | None
    poster: str | None
    episodes: list[EpisodeDetail] = field(default_factory=list)

    @property
    def episode_count(self) -> int:
        return len(self.episodes)


@dataclass(slots=True)
class EnrichedDetail:
    """Normalized view of a TMDB movie or TV record."""

    type: MediaType
    id: int
    title: str
    tagline: str
    overview: str
    year: int | None
    runtime: int | None
    rating: float | None
    vote_count: int | None
    genres: list[str]
    certification: str | None
    poster: str | None
    backdrops: list[str]
    seasons: int | None = None
    episodes: int | None = None
    imdb_id: str | None = None
    tvdb_id: str | None = None


@dataclass(slots=True)
class EnrichmentResult:
    data: EnrichedDetail
    resolved_id: int
    fetched_at: int
    source: Literal["cache", "network"]


class EnrichmentCache:
    """In-process TTL cache of raw TMDB payloads, optionally mirrored to a JSON file.

    A corrupt or unwritable cache file disables persistence for the rest of the
    process; the in-memory cache keeps working.
    """

    def __init__(
        self,
        *,
        ttl_ms: int,
        max_entries: int,
        path: str | Path | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._ttl_ms = ttl_ms
        self._max_entries = max(1, max_entries)
        self._path = Path(path) if path else None
        self._clock = clock
        self._lock = threading.Lock()
        self._flush_lock = asyncio.Lock()
        self._dirty = False
        self._entries: OrderedDict[str, tuple[int, Any]] = OrderedDict()
        self._load()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def persistent(self) -> bool:
        return self._path is not None

    def get(self, key: str) -> tuple[Any, int] | None:
        """Return ``(payload, fetched_at)`` for a live entry, pruning it when stale."""

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            fetched_at, payload = entry
            if self._clock() - fetched_at > self._ttl_ms:
                del self._entries[key]
                return None
            return payload, fetched_at

    def set(self, key: str, payload: Any) -> int:
        fetched_at = self._clock()
        with self._lock:
            self._entries[key] = (fetched_at, payload)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
            self._dirty = True
        return fetched_at

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._dirty = True

    async def flush(self) -> None:
        """Write pending changes to the cache file on a worker thread.

        Concurrent callers share one write; a flush that finds nothing new returns at once.
        """

        if self._path is None:
            return
        async with self._flush_lock:
            with self._lock:
                if not self._dirty:
                    return
                self._dirty = False
                snapshot = dict(self._entries)
            await asyncio.to_thread(self._persist, snapshot)

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("cache file does not contain an object")
        except (OSError, ValueError) as exc:
            logger.warning(
                "TMDB cache file %s is unreadable, continuing in memory only: %s",
                self._path,
                exc,
            )
            self._path = None
            return

        now = self._clock()
        entries: list[tuple[str, int, Any]] = []
        for key, value in raw.items():
            if not isinstance(value, dict) or not isinstance(value.get("payload"), dict):
                continue
            fetched_at = coerce_number(value.get("fetchedAt"))
            if fetched_at is None or now - fetched_at > self._ttl_ms:
                continue
            entries.append((key, int(fetched_at), value.get("payload")))
        entries.sort(key=lambda entry: entry[1])
        for key, fetched_at, payload in entries[-self._max_entries :]:
            self._entries[key] = (fetched_at, payload)

    def _persist(self, snapshot: dict[str, tuple[int, Any]]) -> None:
        path = self._path
        if path is None:
            return
        document = {
            key: {"fetchedAt": fetched_at, "payload": payload}
            for key, (fetched_at, payload) in snapshot.items()
        }
        temp_path = path.with_name(f"{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(document), encoding="utf-8")
            os.replace(temp_path, path)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning(
                "Unable to persist TMDB cache to %s, continuing in memory only: %s",
                path,
                exc,
            )
            self._path = None


class TMDBClient:
    """Client resolving catalog items to TMDB records and fetching enriched details."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        cache: EnrichmentCache | None = None,
        max_retries: int = 3,
        retry_base_delay: float = 0.3,
        max_retry_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        credential = settings.tmdb_credential
        if not credential:
            raise ValueError("TMDB credentials are required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client
        self._credential = credential
        self._use_api_key = bool(API_KEY_RE.match(credential))
        if cache is None:
            cache = EnrichmentCache(
                ttl_ms=settings.tmdb_cache_ttl_hours * 60 * 60 * 1000,
                max_entries=settings.tmdb_cache_max_entries,
                path=settings.tmdb_cache_path,
            )
        self._cache = cache
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._max_retry_delay = max_retry_delay
        self._sleep = sleep

    @property
    def cache(self) -> EnrichmentCache:
        return self._cache

    async def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Issue an authenticated GET, retrying rate limits and server errors."""

        query = dict(params or {})
        headers = {"Accept": "application/json"}
        if self._use_api_key:
            query["api_key"] = self._credential
        else:
            headers["Authorization"] = f"Bearer {self._credential}"

        attempt = 0
        while True:
            try:
                response = await self._client.get(path, params=query, headers=headers)
            except httpx.HTTPError as exc:
                raise MetadataProviderError(
                    f"TMDB request {path} failed: {exc.__class__.__name__}"
                ) from exc

            status = response.status_code
            if status == 429 or status >= 500:
                if attempt < self._max_retries:
                    delay = self._retry_delay(response, attempt)
                    attempt += 1
                    logger.info(
                        "TMDB returned %s for %s. Retrying in %.2fs (attempt %s/%s)",
                        status,
                        path,
                        delay,
                        attempt,
                        self._max_retries,
                    )
                    await self._sleep(delay)
                    continue
                raise MetadataProviderError(
                    f"TMDB request {path} failed after {attempt} retries ({status})",
                    status,
                )
            if status >= 400:
                raise MetadataProviderError(f"TMDB request {path} failed ({status})", status)
            try:
                payload = response.json()
            except ValueError as exc:
                raise MetadataProviderError(f"TMDB returned invalid JSON for {path}") from exc
            if not isinstance(payload, dict):
                raise MetadataProviderError(f"TMDB returned an unexpected payload for {path}")
            return payload

    def _retry_delay(self, response: httpx.Response, attempt: int) -> float:
        retry_after = coerce_number(response.headers.get("Retry-After"))
        if retry_after is not None and retry_after >= 0:
            return retry_after
        return min(self._max_retry_delay, self._retry_base_delay * (2**attempt))

    async def fetch_details_for_item(
        self, item: CatalogItem, *, language: str | None = None
    ) -> EnrichmentResult | None:
        """Resolve ``item`` to a TMDB record and return its enriched detail.

        Failures are logged and reported as ``None`` so callers can fall back
        to catalog-only data.
        """

        media_type: MediaType = "tv" if item.kind == "show" else "movie"
        resolved_id = await self.resolve_id(item, media_type, language=language)
        if resolved_id is None:
            logger.debug("No TMDB match for %s (%s)", item.title, item.id)
            return None
        if media_type == "tv":
            return await self.get_tv_enriched(resolved_id, language=language)
        return await self.get_movie_enriched(resolved_id, language=language)

    async def resolve_id(
        self, item: CatalogItem, media_type: MediaType, *, language: str | None = None
    ) -> int | None:
        """Resolve a TMDB id via known id, external id lookup, then title search."""

        external = item.external_ids()
        known = external.get("tmdb")
        if known and known.isdigit():
            return int(known)

        lookups = [("imdb_id", external.get("imdb"))]
        if media_type == "tv":
            lookups.append(("tvdb_id", external.get("tvdb")))
        for source, value in lookups:
            if not value:
                continue
            try:
                found = await self._find_by_external_id(value, source, media_type)
            except MetadataProviderError as exc:
                logger.warning("TMDB lookup by %s %s failed: %s", source, value, exc)
                continue
            if found is not None:
                return found

        if not item.title.strip():
            return None
        try:
            return await self._search(item.title, media_type, item.year, language)
        except MetadataProviderError as exc:
            logger.warning("TMDB search for %s failed: %s", item.title, exc)
            return None

    async def _find_by_external_id(
        self, value: str, source: str, media_type: MediaType
    ) -> int | None:
        cache_key = f"find:{source}:{value}"
        cached = self._cached(cache_key)
        if cached is not None:
            payload = cached[0]
        else:
            payload = await self.get(f"/find/{value}", {"external_source": source})
            await self._remember(cache_key, payload)
        results = payload.get("movie_results" if media_type == "movie" else "tv_results")
        return _first_result_id(results)

    async def _search(
        self, title: str, media_type: MediaType, year: int | None, language: str | None
    ) -> int | None:
        params: dict[str, Any] = {
            "query": title,
            "include_adult": "false",
            "language": language or FALLBACK_LANGUAGE,
            "page": 1,
        }
        if year:
            params["year" if media_type == "movie" else "first_air_date_year"] = year
        cache_key = f"search:{media_type}:{title.casefold()}:{year or ''}:{params['language']}"
        cached = self._cached(cache_key)
        if cached is not None:
            payload = cached[0]
        else:
            payload = await self.get(f"/search/{media_type}", params)
            await self._remember(cache_key, payload)
        return _first_result_id(payload.get("results"))

    async def get_movie_enriched(
        self, movie_id: int, *, language: str | None = None
    ) -> EnrichmentResult | None:
        return await self._get_enriched("movie", movie_id, language or FALLBACK_LANGUAGE)

    async def get_tv_enriched(
        self, tv_id: int, *, language: str | None = None
    ) -> EnrichmentResult | None:
        return await self._get_enriched("tv", tv_id, language or FALLBACK_LANGUAGE)

    async def get_season_enriched(
        self, tv_id: int, season_number: int, *, language: str | None = None
    ) -> SeasonDetail | None:
        lang = language or FALLBACK_LANGUAGE
        cache_key = f"tv:{tv_id}:season:{season_number}:{lang}"
        cached = self._cached(cache_key)
        if cached is not None:
            payload = cached[0]
        else:
            try:
                payload = await self.get(
                    f"/tv/{tv_id}/season/{season_number}", {"language": lang}
                )
            except MetadataProviderError as exc:
                logger.warning(
                    "TMDB season %s for show %s unavailable: %s", season_number, tv_id, exc
                )
                return None
            await self._remember(cache_key, payload)
        return _parse_season(tv_id, season_number, payload)

    async def _get_enriched(
        self, media_type: MediaType, tmdb_id: int, language: str
    ) -> EnrichmentResult | None:
        fetched = await self._fetch_payload(media_type, tmdb_id, language)
        if fetched is None:
            return None
        payload, fetched_at, source = fetched
        try:
            detail = _parse_detail(media_type, tmdb_id, payload, language)
        except (AttributeError, TypeError, ValueError) as exc:
            logger.warning("TMDB %s %s returned a malformed payload: %s", media_type, tmdb_id, exc)
            return None

        if not detail.backdrops and language != FALLBACK_LANGUAGE:
            fallback = await self._fetch_payload(media_type, tmdb_id, FALLBACK_LANGUAGE)
            if fallback is not None:
                detail.backdrops = _collect_backdrops(fallback[0])

        return EnrichmentResult(
            data=detail, resolved_id=tmdb_id, fetched_at=fetched_at, source=source
        )

    async def _fetch_payload(
        self, media_type: MediaType, tmdb_id: int, language: str
    ) -> tuple[dict[str, Any], int, Literal["cache", "network"]] | None:
        cache_key = f"{media_type}:{tmdb_id}:{language}"
        cached = self._cached(cache_key)
        if cached is not None:
            return cached[0], cached[1], "cache"
        params = {
            "language": language,
            "append_to_response": APPEND_TO_RESPONSE,
            "include_image_language": f"{language.split('-')[0]},null,en",
        }
        try:
            payload = await self.get(f"/{media_type}/{tmdb_id}", params)
        except MetadataProviderError as exc:
            logger.warning("TMDB %s %s unavailable: %s", media_type, tmdb_id, exc)
            return None
        fetched_at = await self._remember(cache_key, payload)
        return payload, fetched_at, "network"

    def _cached(self, cache_key: str) -> tuple[dict[str, Any], int] | None:
        cached = self._cache.get(cache_key)
        if cached is None or not isinstance(cached[0], dict):
            return None
        return cached

    async def _remember(self, cache_key: str, payload: dict[str, Any]) -> int:
        fetched_at = self._cache.set(cache_key, payload)
        await self._cache.flush()
        return fetched_at


def _first_result_id(results: Any) -> int | None:
    if not isinstance(results, list):
        return None
    for result in results:
        if isinstance(result, dict):
            value = coerce_number(result.get("id"))
            if value is not None:
                return int(value)
    return None


def _image_url(path: Any, size: str) -> str | None:
    if not isinstance(path, str) or not path.strip():
        return None
    if path.startswith("http"):
        return path
    return f"{IMAGE_BASE_URL}/{size}{path}"


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _positive_int(value: Any) -> int | None:
    number = coerce_number(value)
    if number is None or number <= 0:
        return None
    return int(round(number))


def _collect_backdrops(payload: dict[str, Any]) -> list[str]:
    backdrops = _mapping(payload.get("images")).get("backdrops")
    urls: list[str] = []
    if isinstance(backdrops, list):
        ranked = sorted(
            (entry for entry in backdrops if isinstance(entry, dict)),
            key=lambda entry: coerce_number(entry.get("vote_average")) or 0.0,
            reverse=True,
        )
        for entry in ranked:
            url = _image_url(entry.get("file_path"), BACKDROP_SIZE)
            if url and url not in urls:
                urls.append(url)
            if len(urls) >= MAX_BACKDROPS:
                break
    if not urls:
        url = _image_url(payload.get("backdrop_path"), BACKDROP_SIZE)
        if url:
            urls.append(url)
    return urls


def _certification_countries(language: str) -> list[str]:
    country = language.split("-")[-1].upper() if language else ""
    countries = [country] if country else []
    for fallback in CERTIFICATION_COUNTRIES:
        if fallback not in countries:
            countries.append(fallback)
    return countries


def _select_certification(
    media_type: MediaType, payload: dict[str, Any], language: str
) -> str | None:
    ratings: dict[str, str] = {}
    if media_type == "movie":
        for entry in _list(_mapping(payload.get("release_dates")).get("results")):
            if not isinstance(entry, dict):
                continue
            for release in _list(entry.get("release_dates")):
                certification = _text(_mapping(release).get("certification"))
                if certification:
                    ratings.setdefault(str(entry.get("iso_3166_1", "")).upper(), certification)
                    break
    else:
        for entry in _list(_mapping(payload.get("content_ratings")).get("results")):
            if not isinstance(entry, dict):
                continue
            rating = _text(entry.get("rating"))
            if rating:
                ratings.setdefault(str(entry.get("iso_3166_1", "")).upper(), rating)
    for country in _certification_countries(language):
        if country in ratings:
            return ratings[country]
    return None


def _tv_runtime(payload: dict[str, Any]) -> int | None:
    runtimes = [
        value
        for value in (_positive_int(entry) for entry in _list(payload.get("episode_run_time")))
        if value
    ]
    if runtimes:
        return round(sum(runtimes) / len(runtimes))
    for key in ("last_episode_to_air", "next_episode_to_air"):
        episode = payload.get(key)
        if isinstance(episode, dict):
            runtime = _positive_int(episode.get("runtime"))
            if runtime:
                return runtime
    return None


def _parse_detail(
    media_type: MediaType, tmdb_id: int, payload: dict[str, Any], language: str
) -> EnrichedDetail:
    external = payload.get("external_ids")
    external = external if isinstance(external, dict) else {}
    genres = [
        _text(genre.get("name"))
        for genre in _list(payload.get("genres"))
        if isinstance(genre, dict) and _text(genre.get("name"))
    ]
    rating = coerce_number(payload.get("vote_average"))
    detail = EnrichedDetail(
        type=media_type,
        id=tmdb_id,
        title=_text(payload.get("title") if media_type == "movie" else payload.get("name")),
        tagline=_text(payload.get("tagline")),
        overview=_text(payload.get("overview")),
        year=parse_year(
            payload.get("release_date") if media_type == "movie" else payload.get("first_air_date")
        ),
        runtime=_positive_int(payload.get("runtime")) if media_type == "movie" else _tv_runtime(payload),
        rating=round(rating, 1) if rating else None,
        vote_count=_positive_int(payload.get("vote_count")),
        genres=genres,
        certification=_select_certification(media_type, payload, language),
        poster=_image_url(payload.get("poster_path"), POSTER_SIZE),
        backdrops=_collect_backdrops(payload),
        imdb_id=_text(payload.get("imdb_id") or external.get("imdb_id")) or None,
        tvdb_id=str(external["tvdb_id"]) if external.get("tvdb_id") else None,
    )
    if media_type == "tv":
        detail.seasons = _positive_int(payload.get("number_of_seasons"))
        detail.episodes = _positive_int(payload.get("number_of_episodes"))
    return detail


def _parse_season(tv_id: int, season_number: int, payload: dict[str, Any]) -> SeasonDetail:
    episodes = [
        EpisodeDetail(
            episode_number=_positive_int(entry.get("episode_number")),
            name=_text(entry.get("name")),
            overview=_text(entry.get("overview")),
            runtime=_positive_int(entry.get("runtime")),
            air_date=entry.get("air_date") or None,
            still=_image_url(entry.get("still_path"), BACKDROP_SIZE),
        )
        for entry in _list(payload.get("episodes"))
        if isinstance(entry, dict)
    ]
    return SeasonDetail(
        tv_id=tv_id,
        season_number=season_number,
        name=_text(payload.get("name")),
        overview=_text(payload.get("overview")),
        air_date=payload.get("air_date") or None,
        poster=_image_url(payload.get("poster_path"), POSTER_SIZE),
        episodes=episodes,
    )
