"""Read access to the exported Plex catalog."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import MediaItem
from ..models import CatalogItem, MediaKind

logger = logging.getLogger(__name__)


class CatalogUnavailableError(RuntimeError):
    """Raised when the catalog cannot be read at all."""


def _to_catalog_item(row: MediaItem) -> CatalogItem:
    return CatalogItem.model_validate(
        {
            "id": row.id,
            "kind": row.kind,
            "title": row.title or "",
            "year": row.year,
            "rating": row.rating,
            "audience_rating": row.audience_rating,
            "vote_count": row.vote_count,
            "genres": row.genres or [],
            "added_at": row.added_at,
            "summary": row.summary,
            "tagline": row.tagline,
            "content_rating": row.content_rating,
            "duration": row.duration,
            "guid": row.guid,
            "tmdb_id": row.tmdb_id,
            "imdb_id": row.imdb_id,
            "tvdb_id": row.tvdb_id,
            "thumb": row.thumb,
            "art": row.art,
            "seasons": row.seasons or [],
        }
    )


class MediaRepository:
    """List and import catalog items stored in ``media_items``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_by_kind(self, kind: MediaKind) -> list[CatalogItem]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(MediaItem).where(MediaItem.kind == kind).order_by(MediaItem.id)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            raise CatalogUnavailableError(f"Unable to read {kind} catalog") from exc

        items: list[CatalogItem] = []
        for row in rows:
            try:
                items.append(_to_catalog_item(row))
            except ValidationError as exc:
                logger.warning("Skipping malformed catalog row %s: %s", row.id, exc.error_count())
        return items

    async def get_by_id(self, item_id: str) -> CatalogItem | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(MediaItem, item_id)
        except SQLAlchemyError as exc:
            raise CatalogUnavailableError(f"Unable to read catalog item {item_id}") from exc
        if row is None:
            return None
        return _to_catalog_item(row)

    async def count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count()).select_from(MediaItem))
            return int(result.scalar_one())

    async def import_items(self, entries: Iterable[CatalogItem | Mapping[str, Any]]) -> int:
        """Upsert catalog entries and return how many were stored."""

        items: list[CatalogItem] = []
        for entry in entries:
            if isinstance(entry, CatalogItem):
                items.append(entry)
                continue
            try:
                items.append(CatalogItem.model_validate(entry))
            except ValidationError as exc:
                logger.warning("Skipping invalid catalog entry: %s", exc.error_count())

        async with self._session_factory() as session:
            for item in items:
                await session.merge(
                    MediaItem(
                        id=item.id,
                        kind=item.kind,
                        title=item.title,
                        year=item.year,
                        rating=item.rating,
                        audience_rating=item.audience_rating,
                        vote_count=item.vote_count,
                        genres=list(item.genres),
                        added_at=str(item.added_at) if item.added_at else None,
                        summary=item.summary,
                        tagline=item.tagline,
                        content_rating=item.content_rating,
                        duration=item.duration,
                        guid=item.guid,
                        tmdb_id=item.tmdb_id,
                        imdb_id=item.imdb_id,
                        tvdb_id=item.tvdb_id,
                        thumb=item.thumb,
                        art=item.art,
                        seasons=[season.model_dump() for season in item.seasons],
                    )
                )
            await session.commit()
        logger.info("Imported %s catalog items", len(items))
        return len(items)

    async def import_file(self, path: str | Path) -> int:
        """Import a JSON export holding a list of items or ``{"items": [...]}``."""

        contents = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
        document = json.loads(contents)
        if isinstance(document, dict):
            document = document.get("items", [])
        if not isinstance(document, list):
            raise ValueError(f"Catalog export {path} does not contain a list of items")
        return await self.import_items(entry for entry in document if isinstance(entry, dict))
