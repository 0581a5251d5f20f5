"""Merge catalog entries and optional TMDB detail into canonical hero items."""

from __future__ import annotations

import logging
from typing import Iterable

from ..models import CatalogItem, HeroCta, HeroItem
from ..policy import TextClampPolicy
from ..utils import clamp, coerce_number, dedupe_strings, parse_year
from .tmdb import EnrichedDetail

logger = logging.getLogger(__name__)

MAX_GENRES = 3
CTA_LABELS = {"movie": "View movie details", "show": "View show details"}


def clamp_text(value: str | None, limit: int) -> str:
    """Trim ``value`` and cut it to at most ``limit`` characters."""

    text = (value or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit].rstrip()


def catalog_rating(item: CatalogItem) -> float | None:
    """Return the first positive rating, rounded to one decimal and clamped to 0..10."""

    for candidate in (item.rating, item.audience_rating):
        number = coerce_number(candidate)
        if number is not None and number > 0:
            return clamp(round(number, 1), 0, 10)
    return None


def catalog_genres(item: CatalogItem) -> list[str]:
    return dedupe_strings(item.genres, limit=MAX_GENRES)


def minutes_from_duration(value: float | None) -> int | None:
    """Convert a catalog duration to minutes; values above 1000 are milliseconds."""

    number = coerce_number(value)
    if number is None or number <= 0:
        return None
    if number > 1000:
        return max(1, round(number / 60_000))
    return round(number)


def certification_from_content_rating(value: str | None) -> str | None:
    """Reduce Plex content ratings such as ``de/16`` to ``16``."""

    text = (value or "").strip()
    if not text:
        return None
    return text.rsplit("/", 1)[-1].strip() or None


def normalize_image(value: str | None) -> str | None:
    if not isinstance(value, str):
        return None
    candidate = value.strip().replace("\\", "/")
    if not candidate:
        return None
    if candidate.startswith("//"):
        return f"https:{candidate}"
    if candidate.startswith(("http://", "https://", "data:")):
        return candidate
    if ".." in candidate.split("/"):
        return None
    while candidate.startswith("./"):
        candidate = candidate[2:]
    return candidate


def dedupe_images(values: Iterable[str | None]) -> list[str]:
    seen: set[str] = set()
    images: list[str] = []
    for value in values:
        image = normalize_image(value)
        if image and image not in seen:
            seen.add(image)
            images.append(image)
    return images


def _episode_total(item: CatalogItem) -> int | None:
    if not item.seasons:
        return None
    return sum(len(season.episodes) for season in item.seasons)


def normalize_item(
    item: CatalogItem,
    detail: EnrichedDetail | None,
    *,
    slot: str,
    text_clamp: TextClampPolicy,
) -> HeroItem:
    """Build the canonical hero entry for ``item`` assigned to ``slot``."""

    media_kind = item.kind
    genres = dedupe_strings(detail.genres, limit=MAX_GENRES) if detail else []
    if not genres:
        genres = catalog_genres(item)

    backdrops = dedupe_images(detail.backdrops) if detail else []
    if not backdrops:
        backdrops = dedupe_images([item.art, item.thumb, detail.poster if detail else None])
        if not backdrops:
            logger.debug("No backdrops resolved for %s (%s)", item.title, item.id)

    posters = dedupe_images([detail.poster if detail else None, item.thumb, item.art])

    ids = {"local": item.id, **item.external_ids()}
    if detail is not None:
        ids.setdefault("tmdb", str(detail.id))
        if detail.imdb_id:
            ids.setdefault("imdb", detail.imdb_id)
        if detail.tvdb_id:
            ids.setdefault("tvdb", detail.tvdb_id)

    seasons: int | None = None
    episodes: int | None = None
    if media_kind == "show":
        seasons = (detail.seasons if detail else None) or (len(item.seasons) or None)
        episodes = (detail.episodes if detail else None) or _episode_total(item)

    return HeroItem(
        id=item.id,
        pool_slot=slot,
        type="tv" if media_kind == "show" else "movie",
        title=clamp_text((detail.title if detail else "") or item.title, text_clamp.title),
        tagline=clamp_text(
            (detail.tagline if detail else "") or item.tagline, text_clamp.subtitle
        ),
        overview=clamp_text(
            (detail.overview if detail else "") or item.summary, text_clamp.summary
        ),
        year=(detail.year if detail else None) or parse_year(item.year),
        runtime=(detail.runtime if detail else None) or minutes_from_duration(item.duration),
        rating=(detail.rating if detail else None) or catalog_rating(item),
        vote_count=(detail.vote_count if detail else None) or item.vote_count,
        genres=genres,
        certification=(detail.certification if detail else None)
        or certification_from_content_rating(item.content_rating),
        backdrops=backdrops,
        poster=posters[0] if posters else None,
        seasons=seasons,
        episodes=episodes,
        cta=HeroCta(
            kind=media_kind,
            id=item.id,
            label=CTA_LABELS[media_kind],
            target=f"#/{media_kind}/{item.id}",
        ),
        ids=ids,
        source="tmdb" if detail is not None else "catalog",
    )
