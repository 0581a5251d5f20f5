"""Tests for hero item normalization."""

from __future__ import annotations

from app.models import CatalogItem
from app.policy import DEFAULT_POLICY, TextClampPolicy
from app.services.normalizer import (
    catalog_rating,
    certification_from_content_rating,
    clamp_text,
    minutes_from_duration,
    normalize_image,
    normalize_item,
)
from app.services.tmdb import EnrichedDetail


def make_detail(**overrides) -> EnrichedDetail:
    values = {
        "type": "movie",
        "id": 603,
        "title": "The Matrix",
        "tagline": "Welcome to the Real World.",
        "overview": "A hacker learns the truth.",
        "year": 1999,
        "runtime": 136,
        "rating": 8.2,
        "vote_count": 24000,
        "genres": ["Action", "Science Fiction"],
        "certification": "R",
        "poster": "https://image.tmdb.org/t/p/w500/poster.jpg",
        "backdrops": [
            "https://image.tmdb.org/t/p/original/a.jpg",
            "https://image.tmdb.org/t/p/original/a.jpg",
            "https://image.tmdb.org/t/p/original/b.jpg",
        ],
        "imdb_id": "tt0133093",
    }
    values.update(overrides)
    return EnrichedDetail(**values)


def test_catalog_only_item_uses_catalog_fields() -> None:
    item = CatalogItem.model_validate(
        {
            "ratingKey": 42,
            "type": "movie",
            "title": "  Local Movie  ",
            "year": "2004",
            "audienceRating": 7.46,
            "genres": [{"tag": "Drama"}, "drama", "Crime", "Mystery", "Thriller"],
            "summary": "Something happens.",
            "contentRating": "de/16",
            "duration": 5_400_000,
            "guid": "imdb://tt1234567",
            "thumb": "./library/thumb.jpg",
            "art": "//images.example.com/art.jpg",
        }
    )

    hero = normalize_item(item, None, slot="random", text_clamp=DEFAULT_POLICY.text_clamp)

    assert hero.id == "42"
    assert hero.type == "movie"
    assert hero.pool_slot == "random"
    assert hero.title == "Local Movie"
    assert hero.tagline == ""
    assert hero.overview == "Something happens."
    assert hero.year == 2004
    assert hero.runtime == 90
    assert hero.rating == 7.5
    assert hero.genres == ["Drama", "Crime", "Mystery"]
    assert hero.certification == "16"
    assert hero.backdrops == ["https://images.example.com/art.jpg", "library/thumb.jpg"]
    assert hero.poster == "library/thumb.jpg"
    assert hero.ids == {"local": "42", "imdb": "tt1234567"}
    assert hero.source == "catalog"
    assert hero.cta.kind == "movie"
    assert hero.cta.target == "#/movie/42"
    assert hero.cta.label == "View movie details"
    assert hero.seasons is None


def test_enrichment_takes_precedence() -> None:
    item = CatalogItem(
        id="m1", kind="movie", title="Matrix", rating=6.0, genres=["Drama"], thumb="thumb.jpg"
    )

    hero = normalize_item(item, make_detail(), slot="topRated", text_clamp=DEFAULT_POLICY.text_clamp)

    assert hero.title == "The Matrix"
    assert hero.tagline == "Welcome to the Real World."
    assert hero.rating == 8.2
    assert hero.runtime == 136
    assert hero.genres == ["Action", "Science Fiction"]
    assert hero.certification == "R"
    assert hero.backdrops == [
        "https://image.tmdb.org/t/p/original/a.jpg",
        "https://image.tmdb.org/t/p/original/b.jpg",
    ]
    assert hero.poster == "https://image.tmdb.org/t/p/w500/poster.jpg"
    assert hero.ids == {"local": "m1", "tmdb": "603", "imdb": "tt0133093"}
    assert hero.source == "tmdb"


def test_blank_enrichment_fields_fall_back_to_catalog() -> None:
    item = CatalogItem(
        id="m2",
        kind="movie",
        title="Catalog Title",
        summary="Catalog summary",
        genres=["Comedy"],
        art="art.jpg",
    )
    detail = make_detail(title="", overview="", genres=[], backdrops=[], poster=None)

    hero = normalize_item(item, detail, slot="new", text_clamp=DEFAULT_POLICY.text_clamp)

    assert hero.title == "Catalog Title"
    assert hero.overview == "Catalog summary"
    assert hero.genres == ["Comedy"]
    assert hero.backdrops == ["art.jpg"]
    assert hero.poster == "art.jpg"


def test_text_is_clamped_to_policy_limits() -> None:
    item = CatalogItem(id="m3", kind="movie", title="A" * 50, summary="word " * 100)
    limits = TextClampPolicy(title=10, subtitle=20, summary=30)

    hero = normalize_item(item, None, slot="random", text_clamp=limits)

    assert hero.title == "A" * 10
    assert len(hero.overview) <= 30
    assert not hero.overview.endswith(" ")


def test_show_counts_seasons_and_episodes_from_catalog() -> None:
    item = CatalogItem.model_validate(
        {
            "id": "s1",
            "kind": "series",
            "title": "Local Show",
            "seasons": [
                {"index": 1, "episodes": [{"index": 1}, {"index": 2}]},
                {"index": 2, "episodes": [{"index": 1}]},
            ],
        }
    )

    hero = normalize_item(item, None, slot="random", text_clamp=DEFAULT_POLICY.text_clamp)
    enriched = normalize_item(
        item,
        make_detail(type="tv", seasons=5, episodes=50),
        slot="random",
        text_clamp=DEFAULT_POLICY.text_clamp,
    )

    assert hero.type == "tv"
    assert hero.seasons == 2
    assert hero.episodes == 3
    assert hero.cta.target == "#/show/s1"
    assert hero.cta.label == "View show details"
    assert enriched.seasons == 5
    assert enriched.episodes == 50


def test_helpers() -> None:
    assert clamp_text("  hello world  ", 5) == "hello"
    assert clamp_text(None, 5) == ""
    assert minutes_from_duration(95) == 95
    assert minutes_from_duration(0) is None
    assert certification_from_content_rating("PG-13") == "PG-13"
    assert certification_from_content_rating("  ") is None
    assert normalize_image("../secret.jpg") is None
    assert normalize_image("https://cdn.example.com/a.jpg") == "https://cdn.example.com/a.jpg"
    assert catalog_rating(CatalogItem(id="x", kind="movie", rating=12.3)) == 10
    assert catalog_rating(CatalogItem(id="y", kind="movie", rating=0, audience_rating=0)) is None
