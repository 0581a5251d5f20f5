"""Tests for the TMDB enrichment client."""

from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest

from app.config import Settings
from app.models import CatalogItem
from app.services.tmdb import EnrichmentCache, TMDBClient

API_KEY = "0123456789abcdef0123456789abcdef"
BASE_URL = "https://api.example.com/3"
NOW = 1_700_000_000_000

MOVIE_PAYLOAD = {
    "id": 603,
    "title": "The Matrix",
    "tagline": "Welcome to the Real World.",
    "overview": "A hacker learns the truth about his reality.",
    "release_date": "1999-03-30",
    "runtime": 136,
    "vote_average": 8.216,
    "vote_count": 24000,
    "genres": [{"id": 28, "name": "Action"}, {"id": 878, "name": "Science Fiction"}],
    "poster_path": "/poster.jpg",
    "backdrop_path": "/fallback.jpg",
    "images": {
        "backdrops": [
            {"file_path": "/low.jpg", "vote_average": 1.0},
            {"file_path": "/high.jpg", "vote_average": 5.5},
        ]
    },
    "release_dates": {
        "results": [
            {"iso_3166_1": "DE", "release_dates": [{"certification": "16"}]},
            {
                "iso_3166_1": "US",
                "release_dates": [{"certification": ""}, {"certification": "R"}],
            },
        ]
    },
    "external_ids": {"imdb_id": "tt0133093"},
}

TV_PAYLOAD = {
    "id": 1399,
    "name": "Game of Thrones",
    "overview": "Seven noble families fight for control.",
    "first_air_date": "2011-04-17",
    "episode_run_time": [60, 50],
    "vote_average": 8.4,
    "vote_count": 21000,
    "number_of_seasons": 8,
    "number_of_episodes": 73,
    "genres": [{"name": "Drama"}],
    "content_ratings": {"results": [{"iso_3166_1": "US", "rating": "TV-MA"}]},
    "external_ids": {"tvdb_id": 121361, "imdb_id": "tt0944947"},
}


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def build_settings(**overrides: str) -> Settings:
    data = {"TMDB_API_KEY": API_KEY, "TMDB_ACCESS_TOKEN": ""}
    data.update(overrides)
    return Settings(_env_file=None, **data)


def build_client(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    settings: Settings | None = None,
    cache: EnrichmentCache | None = None,
    sleeps: list[float] | None = None,
) -> tuple[TMDBClient, httpx.AsyncClient]:
    async def fake_sleep(delay: float) -> None:
        if sleeps is not None:
            sleeps.append(delay)

    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url=BASE_URL
    )
    client = TMDBClient(
        settings or build_settings(),
        http_client,
        cache=cache,
        sleep=fake_sleep,
    )
    return client, http_client


def movie(**values) -> CatalogItem:
    values.setdefault("id", "m1")
    values.setdefault("title", "The Matrix")
    return CatalogItem(kind="movie", **values)


@pytest.mark.anyio("asyncio")
async def test_known_tmdb_id_fetches_details_with_api_key() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        assert request.url.path == "/3/movie/603"
        return httpx.Response(200, json=MOVIE_PAYLOAD)

    client, http_client = build_client(handler)
    async with http_client:
        result = await client.fetch_details_for_item(movie(guid="tmdb://603"))

    assert result is not None
    assert result.resolved_id == 603
    assert result.source == "network"
    detail = result.data
    assert detail.title == "The Matrix"
    assert detail.year == 1999
    assert detail.runtime == 136
    assert detail.rating == 8.2
    assert detail.genres == ["Action", "Science Fiction"]
    assert detail.certification == "R"
    assert detail.poster == "https://image.tmdb.org/t/p/w500/poster.jpg"
    assert detail.backdrops == [
        "https://image.tmdb.org/t/p/original/high.jpg",
        "https://image.tmdb.org/t/p/original/low.jpg",
    ]
    assert detail.imdb_id == "tt0133093"

    params = requests[0].url.params
    assert params["api_key"] == API_KEY
    assert params["language"] == "en-US"
    assert "images" in params["append_to_response"]
    assert "Authorization" not in requests[0].headers


@pytest.mark.anyio("asyncio")
async def test_bearer_token_is_sent_as_header() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=MOVIE_PAYLOAD)

    client, http_client = build_client(
        handler, settings=build_settings(TMDB_ACCESS_TOKEN="read-token", TMDB_API_KEY="")
    )
    async with http_client:
        await client.get_movie_enriched(603)

    assert requests[0].headers["Authorization"] == "Bearer read-token"
    assert "api_key" not in requests[0].url.params


@pytest.mark.anyio("asyncio")
async def test_imdb_id_resolves_through_find_endpoint() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path == "/3/find/tt0133093":
            assert request.url.params["external_source"] == "imdb_id"
            return httpx.Response(200, json={"movie_results": [{"id": 603}]})
        return httpx.Response(200, json=MOVIE_PAYLOAD)

    client, http_client = build_client(handler)
    async with http_client:
        result = await client.fetch_details_for_item(movie(imdb_id="tt0133093"))

    assert result is not None
    assert paths == ["/3/find/tt0133093", "/3/movie/603"]


@pytest.mark.anyio("asyncio")
async def test_title_search_uses_year_and_caches_results() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path == "/3/search/movie":
            assert request.url.params["query"] == "Heat"
            assert request.url.params["year"] == "1995"
            return httpx.Response(200, json={"results": [{"id": 949}, {"id": 1}]})
        assert request.url.path == "/3/movie/949"
        return httpx.Response(200, json={**MOVIE_PAYLOAD, "id": 949, "title": "Heat"})

    client, http_client = build_client(handler)
    item = movie(title="Heat", year=1995)
    async with http_client:
        first = await client.fetch_details_for_item(item)
        second = await client.fetch_details_for_item(item)

    assert first is not None and second is not None
    assert first.data.title == "Heat"
    assert second.source == "cache"
    assert paths == ["/3/search/movie", "/3/movie/949"]


@pytest.mark.anyio("asyncio")
async def test_show_resolves_by_tvdb_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/3/find/121361":
            assert request.url.params["external_source"] == "tvdb_id"
            return httpx.Response(200, json={"tv_results": [{"id": 1399}]})
        assert request.url.path == "/3/tv/1399"
        return httpx.Response(200, json=TV_PAYLOAD)

    client, http_client = build_client(handler)
    show = CatalogItem(id="s1", kind="show", title="GoT", tvdb_id=121361)
    async with http_client:
        result = await client.fetch_details_for_item(show)

    assert result is not None
    detail = result.data
    assert detail.type == "tv"
    assert detail.title == "Game of Thrones"
    assert detail.runtime == 55
    assert detail.seasons == 8
    assert detail.episodes == 73
    assert detail.certification == "TV-MA"
    assert detail.tvdb_id == "121361"
    assert detail.backdrops == []


@pytest.mark.anyio("asyncio")
async def test_rate_limit_is_retried_with_retry_after() -> None:
    calls = 0
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            return httpx.Response(429, headers={"Retry-After": "1"})
        return httpx.Response(200, json=MOVIE_PAYLOAD)

    client, http_client = build_client(handler, sleeps=sleeps)
    async with http_client:
        result = await client.get_movie_enriched(603)

    assert result is not None
    assert calls == 2
    assert sleeps == [1.0]


@pytest.mark.anyio("asyncio")
async def test_server_errors_exhaust_retries_and_degrade() -> None:
    calls = 0
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503)

    client, http_client = build_client(handler, sleeps=sleeps)
    async with http_client:
        result = await client.fetch_details_for_item(movie(guid="tmdb://603"))

    assert result is None
    assert calls == 4
    assert sleeps == pytest.approx([0.3, 0.6, 1.2])


@pytest.mark.anyio("asyncio")
async def test_client_errors_are_not_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(404, json={"status_message": "not found"})

    client, http_client = build_client(handler)
    async with http_client:
        result = await client.fetch_details_for_item(movie(title="Unknown", year=2001))

    assert result is None
    assert calls == 1


@pytest.mark.anyio("asyncio")
async def test_missing_localized_backdrops_fall_back_to_english() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["language"] == "de-DE":
            payload = {key: value for key, value in MOVIE_PAYLOAD.items() if key not in {"images", "backdrop_path"}}
            return httpx.Response(200, json={**payload, "title": "Matrix"})
        return httpx.Response(200, json={**MOVIE_PAYLOAD, "images": {}, "backdrop_path": "/en.jpg"})

    client, http_client = build_client(handler)
    async with http_client:
        result = await client.get_movie_enriched(603, language="de-DE")

    assert result is not None
    assert result.data.title == "Matrix"
    assert result.data.certification == "16"
    assert result.data.backdrops == ["https://image.tmdb.org/t/p/original/en.jpg"]


@pytest.mark.anyio("asyncio")
async def test_season_details() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/3/tv/1399/season/1"
        return httpx.Response(
            200,
            json={
                "name": "Season 1",
                "air_date": "2011-04-17",
                "episodes": [
                    {"episode_number": 1, "name": "Winter Is Coming", "runtime": 62},
                    {"episode_number": 2, "name": "The Kingsroad", "still_path": "/still.jpg"},
                ],
            },
        )

    client, http_client = build_client(handler)
    async with http_client:
        season = await client.get_season_enriched(1399, 1)

    assert season is not None
    assert season.name == "Season 1"
    assert season.episode_count == 2
    assert season.episodes[0].runtime == 62
    assert season.episodes[1].still == "https://image.tmdb.org/t/p/original/still.jpg"


@pytest.mark.anyio("asyncio")
async def test_cache_persists_to_disk(tmp_path) -> None:
    path = tmp_path / "tmdb-cache.json"
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json=MOVIE_PAYLOAD)

    cache = EnrichmentCache(ttl_ms=60_000, max_entries=10, path=path, clock=lambda: NOW)
    client, http_client = build_client(handler, cache=cache)
    async with http_client:
        await client.get_movie_enriched(603)

    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["movie:603:en-US"]["fetchedAt"] == NOW

    reloaded = EnrichmentCache(ttl_ms=60_000, max_entries=10, path=path, clock=lambda: NOW + 1)
    client, http_client = build_client(handler, cache=reloaded)
    async with http_client:
        result = await client.get_movie_enriched(603)

    assert result is not None
    assert result.source == "cache"
    assert calls == 1

    expired = EnrichmentCache(ttl_ms=60_000, max_entries=10, path=path, clock=lambda: NOW + 120_000)
    assert len(expired) == 0


def test_corrupt_cache_file_disables_persistence(tmp_path) -> None:
    path = tmp_path / "tmdb-cache.json"
    path.write_text("{broken", encoding="utf-8")

    cache = EnrichmentCache(ttl_ms=60_000, max_entries=10, path=path)
    cache.set("movie:1:en-US", {"id": 1})

    assert cache.persistent is False
    assert cache.get("movie:1:en-US") is not None
    assert path.read_text(encoding="utf-8") == "{broken"


def test_cache_evicts_oldest_entries() -> None:
    cache = EnrichmentCache(ttl_ms=60_000, max_entries=2)

    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    assert cache.get("a") is None
    assert len(cache) == 2


def test_client_requires_credentials() -> None:
    settings = build_settings(TMDB_API_KEY="")
    with pytest.raises(ValueError):
        TMDBClient(settings, httpx.AsyncClient(base_url=BASE_URL))


@pytest.mark.anyio("asyncio")
async def test_cache_writes_happen_on_flush(tmp_path) -> None:
    path = tmp_path / "tmdb-cache.json"
    cache = EnrichmentCache(ttl_ms=60_000, max_entries=10, path=path, clock=lambda: NOW)

    cache.set("movie:1:en-US", {"id": 1})
    written_before_flush = path.exists()
    await cache.flush()
    document = json.loads(path.read_text(encoding="utf-8"))
    mtime = path.stat().st_mtime_ns
    await cache.flush()

    assert written_before_flush is False
    assert document == {"movie:1:en-US": {"fetchedAt": NOW, "payload": {"id": 1}}}
    assert path.stat().st_mtime_ns == mtime


@pytest.mark.anyio("asyncio")
async def test_unwritable_cache_path_keeps_working_in_memory(tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=MOVIE_PAYLOAD)

    cache = EnrichmentCache(ttl_ms=60_000, max_entries=10, path=blocker / "tmdb-cache.json")
    client, http_client = build_client(handler, cache=cache)
    async with http_client:
        first = await client.get_movie_enriched(603)
        second = await client.get_movie_enriched(603)

    assert cache.persistent is False
    assert first is not None and first.source == "network"
    assert second is not None and second.source == "cache"


@pytest.mark.anyio("asyncio")
async def test_cache_file_entries_with_non_object_payloads_are_skipped(tmp_path) -> None:
    path = tmp_path / "tmdb-cache.json"
    path.write_text(
        json.dumps(
            {
                "search:movie:x::en-US": {"fetchedAt": NOW, "payload": []},
                "movie:7:en-US": {"fetchedAt": NOW, "payload": "junk"},
                "movie:603:en-US": {"fetchedAt": NOW, "payload": MOVIE_PAYLOAD},
            }
        ),
        encoding="utf-8",
    )
    requests: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request.url.path)
        return httpx.Response(200, json={"results": [{"id": 603}]})

    cache = EnrichmentCache(ttl_ms=60_000, max_entries=10, path=path, clock=lambda: NOW)
    client, http_client = build_client(handler, cache=cache)
    async with http_client:
        result = await client.fetch_details_for_item(CatalogItem(id="1", kind="movie", title="X"))

    assert len(cache) == 2
    assert requests == ["/3/search/movie"]
    assert result is not None
    assert result.resolved_id == 603
    assert result.source == "cache"


@pytest.mark.anyio("asyncio")
async def test_non_object_payload_in_memory_is_treated_as_a_miss() -> None:
    cache = EnrichmentCache(ttl_ms=60_000, max_entries=10)
    cache.set("search:movie:x::en-US", ["unexpected"])
    cache.set("movie:603:en-US", "unexpected")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/3/search/movie":
            return httpx.Response(200, json={"results": [{"id": 603}]})
        return httpx.Response(200, json=MOVIE_PAYLOAD)

    client, http_client = build_client(handler, cache=cache)
    async with http_client:
        result = await client.fetch_details_for_item(CatalogItem(id="1", kind="movie", title="X"))

    assert result is not None
    assert result.source == "network"
    assert result.data.title == "The Matrix"


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    "failure",
    [
        httpx.ReadTimeout("timed out"),
        httpx.ConnectError("connection refused"),
    ],
)
async def test_transport_failures_degrade_to_none(failure: httpx.HTTPError) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise failure

    client, http_client = build_client(handler)
    async with http_client:
        result = await client.fetch_details_for_item(movie(guid="tmdb://603"))

    assert result is None
    assert len(client.cache) == 0


@pytest.mark.anyio("asyncio")
async def test_non_json_body_degrades_to_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    client, http_client = build_client(handler)
    async with http_client:
        result = await client.fetch_details_for_item(movie(guid="tmdb://603"))

    assert result is None
    assert len(client.cache) == 0
