"""Two-tier storage for built hero pools."""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from typing import Protocol

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import HeroPoolRecord
from ..models import CacheEntry, CacheSource, HeroPool, HistoryEntry
from ..policy import PoolKind
from ..utils import now_ms

logger = logging.getLogger(__name__)

KEY_PREFIX = "heroPool"
SESSION_SUFFIX = "session"


class StorageError(RuntimeError):
    """Raised by a storage tier when the backing store fails."""


class KeyValueTier(Protocol):
    name: CacheSource

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemoryTier:
    """Process-local LRU tier used as the fast session cache."""

    name: CacheSource = "session"

    def __init__(self, capacity: int = 16):
        self._capacity = max(1, capacity)
        self._values: OrderedDict[str, str] = OrderedDict()

    def __len__(self) -> int:
        return len(self._values)

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value
        self._values.move_to_end(key)
        while len(self._values) > self._capacity:
            self._values.popitem(last=False)

    async def remove(self, key: str) -> None:
        self._values.pop(key, None)


class DatabaseTier:
    """Durable tier backed by the ``hero_pools`` table."""

    name: CacheSource = "durable"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> str | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(HeroPoolRecord.payload).where(HeroPoolRecord.key == key)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to read {key}") from exc

    async def set(self, key: str, value: str) -> None:
        try:
            meta = json.loads(value)
        except ValueError:
            meta = {}
        if not isinstance(meta, dict):
            meta = {}
        record = HeroPoolRecord(
            key=key,
            kind=meta.get("kind"),
            policy_hash=meta.get("policyHash"),
            payload=value,
            expires_at=meta.get("expiresAt"),
            updated_at=meta.get("updatedAt"),
        )
        try:
            async with self._session_factory() as session:
                await session.merge(record)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to write {key}") from exc

    async def remove(self, key: str) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(delete(HeroPoolRecord).where(HeroPoolRecord.key == key))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to delete {key}") from exc


def durable_key(kind: PoolKind) -> str:
    return f"{KEY_PREFIX}:{kind}"


def session_key(kind: PoolKind) -> str:
    return f"{KEY_PREFIX}:{kind}:{SESSION_SUFFIX}"


class HeroPoolStorage:
    """Write pools to both tiers and read them back, session tier first.

    Reads never modify either tier. Storage failures are logged and treated
    as cache misses (reads) or ignored (writes).
    """

    def __init__(self, durable: KeyValueTier, session: KeyValueTier):
        self._durable = durable
        self._session = session

    def _tiers(self, kind: PoolKind) -> list[tuple[KeyValueTier, str]]:
        return [(self._session, session_key(kind)), (self._durable, durable_key(kind))]

    async def store_pool(self, kind: PoolKind, pool: HeroPool) -> None:
        payload = pool.model_dump_json(by_alias=True)
        for tier, key in reversed(self._tiers(kind)):
            try:
                await tier.set(key, payload)
            except StorageError as exc:
                logger.warning("Failed to store %s hero pool in %s tier: %s", kind, tier.name, exc)

    async def invalidate_pool(self, kind: PoolKind) -> None:
        for tier, key in self._tiers(kind):
            try:
                await tier.remove(key)
            except StorageError as exc:
                logger.warning(
                    "Failed to invalidate %s hero pool in %s tier: %s", kind, tier.name, exc
                )

    async def _read(self, kind: PoolKind) -> tuple[HeroPool, CacheSource] | None:
        for tier, key in self._tiers(kind):
            try:
                raw = await tier.get(key)
            except StorageError as exc:
                logger.warning("Failed to read %s hero pool from %s tier: %s", kind, tier.name, exc)
                continue
            if not raw:
                continue
            try:
                pool = HeroPool.model_validate_json(raw)
            except ValidationError as exc:
                logger.warning(
                    "Ignoring corrupt %s hero pool in %s tier: %s",
                    kind,
                    tier.name,
                    exc.error_count(),
                )
                continue
            return pool, tier.name
        return None

    async def get_stored_pool(
        self,
        kind: PoolKind,
        *,
        policy_hash: str,
        now: int | None = None,
        allow_expired: bool = False,
        grace_ms: int | None = 0,
    ) -> CacheEntry | None:
        """Return the stored pool when it matches ``policy_hash`` and is still usable.

        Expired entries are only returned with ``allow_expired`` and while
        ``now`` is before ``expires_at + grace_ms``. A ``grace_ms`` of ``None``
        accepts an expired pool of any age.
        """

        found = await self._read(kind)
        if found is None:
            return None
        pool, source = found
        timestamp = now_ms() if now is None else now
        matches_policy = pool.policy_hash == policy_hash
        is_expired = timestamp >= pool.expires_at
        if not matches_policy:
            return None
        if is_expired and not allow_expired:
            return None
        if is_expired and grace_ms is not None and timestamp >= pool.expires_at + grace_ms:
            return None
        return CacheEntry(
            pool=pool, source=source, is_expired=is_expired, matches_policy=matches_policy
        )

    async def load_history(self, kind: PoolKind) -> list[HistoryEntry]:
        """Return the rotation history of the stored pool regardless of its validity."""

        found = await self._read(kind)
        if found is None:
            return []
        return list(found[0].history)
