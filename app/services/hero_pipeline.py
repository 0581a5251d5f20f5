"""Coordinate policy, catalog, pool building and storage for hero requests."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from ..models import (
    KIND_TO_MEDIA,
    EnrichmentMeta,
    HeroPool,
    PoolMeta,
    PoolResult,
    PoolSource,
)
from ..policy import HeroPolicy, PolicyLoader, PoolKind
from ..utils import now_ms
from .media_repository import CatalogUnavailableError, MediaRepository
from .pool_builder import PoolBuilder, ProgressListener, compute_rotation
from .storage import HeroPoolStorage

logger = logging.getLogger(__name__)

KIND_ALIASES: dict[str, PoolKind] = {
    "movies": "movies",
    "movie": "movies",
    "series": "series",
    "shows": "series",
    "show": "series",
    "tv": "series",
}


class HeroPipelineDisabledError(RuntimeError):
    """Raised when the hero pipeline is switched off by its feature flag."""


def normalize_kind(value: str) -> PoolKind:
    kind = KIND_ALIASES.get((value or "").strip().lower())
    if kind is None:
        raise ValueError(f"Unsupported hero kind: {value}")
    return kind


@dataclass(slots=True)
class KindState:
    last_build_at: int | None = None
    last_source: PoolSource | None = None
    last_error: str | None = None
    item_count: int = 0


class HeroPipelineService:
    """Serve hero pools per kind, building at most one pool per kind at a time."""

    def __init__(
        self,
        *,
        policy_loader: PolicyLoader,
        repository: MediaRepository,
        storage: HeroPoolStorage,
        builder: PoolBuilder,
        config_flag: bool | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._policy_loader = policy_loader
        self._repository = repository
        self._storage = storage
        self._builder = builder
        self._clock = clock
        self._feature_override: bool | None = None
        self._feature_providers: list[tuple[str, Callable[[], bool | None]]] = [
            ("override", lambda: self._feature_override),
            ("config", lambda: config_flag),
        ]
        self._inflight: dict[PoolKind, asyncio.Task[HeroPool]] = {}
        self._refresh_jobs: dict[PoolKind, asyncio.Task[None]] = {}
        self._states: dict[PoolKind, KindState] = {"movies": KindState(), "series": KindState()}
        self._counters = {
            "cacheHits": 0,
            "cacheMisses": 0,
            "staleHits": 0,
            "builds": 0,
            "buildFailures": 0,
        }

    @property
    def policy_loader(self) -> PolicyLoader:
        return self._policy_loader

    def set_feature_override(self, value: bool | None) -> None:
        self._feature_override = value

    def feature_state(self) -> tuple[bool, str]:
        """Resolve the feature flag; the first provider with an opinion wins."""

        for name, provider in self._feature_providers:
            value = provider()
            if value is not None:
                return bool(value), name
        return True, "default"

    def add_progress_listener(self, listener: ProgressListener) -> Callable[[], None]:
        return self._builder.add_progress_listener(listener)

    async def start(self) -> None:
        await self._policy_loader.ensure_current()

    async def stop(self) -> None:
        """Cancel pending background rebuilds."""

        tasks = [*self._refresh_jobs.values(), *self._inflight.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._refresh_jobs.clear()
        self._inflight.clear()

    async def get_pool(self, kind: str, *, force: bool = False) -> PoolResult:
        enabled, source = self.feature_state()
        if not enabled:
            raise HeroPipelineDisabledError(f"Hero pipeline disabled by {source}")

        pool_kind = normalize_kind(kind)
        policy = await self._policy_loader.ensure_current()

        if not force:
            entry = await self._storage.get_stored_pool(
                pool_kind,
                policy_hash=policy.hash,
                now=self._clock(),
                allow_expired=True,
                grace_ms=policy.cache.grace_ms,
            )
            if entry is not None and not entry.is_expired:
                self._counters["cacheHits"] += 1
                return self._result(entry.pool, policy, from_cache=True, source="cache")
            if entry is not None:
                self._counters["staleHits"] += 1
                logger.info("Serving stale %s hero pool while rebuilding", pool_kind)
                self._schedule_rebuild(pool_kind, policy)
                return self._result(
                    entry.pool, policy, from_cache=True, source="stale", is_expired=True
                )
            self._counters["cacheMisses"] += 1

        task = self._ensure_build(pool_kind, policy)
        try:
            pool = await asyncio.shield(task)
        except CatalogUnavailableError:
            fallback = await self._storage.get_stored_pool(
                pool_kind,
                policy_hash=policy.hash,
                now=self._clock(),
                allow_expired=True,
                grace_ms=None,
            )
            if fallback is None:
                raise
            logger.warning("Catalog unavailable, serving cached %s hero pool", pool_kind)
            return self._result(
                fallback.pool,
                policy,
                from_cache=True,
                source="stale" if fallback.is_expired else "cache",
                is_expired=fallback.is_expired,
            )
        return self._result(pool, policy, from_cache=False, source="fresh")

    def _ensure_build(self, kind: PoolKind, policy: HeroPolicy) -> asyncio.Task[HeroPool]:
        existing = self._inflight.get(kind)
        if existing is not None and not existing.done():
            logger.debug("Joining in-flight %s hero build", kind)
            return existing

        task = asyncio.create_task(self._build(kind, policy))
        self._inflight[kind] = task

        def _clear(finished: asyncio.Task[HeroPool]) -> None:
            if self._inflight.get(kind) is finished:
                self._inflight.pop(kind, None)

        task.add_done_callback(_clear)
        return task

    def _schedule_rebuild(self, kind: PoolKind, policy: HeroPolicy) -> None:
        existing = self._refresh_jobs.get(kind)
        if existing and not existing.done():
            return

        async def _runner() -> None:
            try:
                await self._ensure_build(kind, policy)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Background rebuild of %s hero pool failed: %s", kind, exc)
            finally:
                self._refresh_jobs.pop(kind, None)

        self._refresh_jobs[kind] = asyncio.create_task(_runner())

    async def _build(self, kind: PoolKind, policy: HeroPolicy) -> HeroPool:
        state = self._states[kind]
        self._counters["builds"] += 1
        try:
            history = await self._storage.load_history(kind)
            catalog = await self._repository.list_by_kind(KIND_TO_MEDIA[kind])
            pool = await self._builder.build_pool(
                kind, catalog, policy, history, now=self._clock()
            )
        except Exception as exc:
            self._counters["buildFailures"] += 1
            state.last_error = str(exc)
            raise
        await self._storage.store_pool(kind, pool)
        state.last_build_at = pool.updated_at
        state.last_error = None
        state.item_count = len(pool.items)
        return pool

    def _result(
        self,
        pool: HeroPool,
        policy: HeroPolicy,
        *,
        from_cache: bool,
        source: PoolSource,
        is_expired: bool = False,
    ) -> PoolResult:
        self._states[pool.kind].last_source = source
        return PoolResult(
            kind=pool.kind,
            items=pool.items,
            updated_at=pool.updated_at,
            expires_at=pool.expires_at,
            policy_hash=pool.policy_hash,
            slot_summary=pool.slot_summary,
            from_cache=from_cache,
            matches_policy=pool.policy_hash == policy.hash,
            is_expired=is_expired,
            meta=PoolMeta(
                source=source,
                plan=pool.plan,
                total_candidates=pool.total_candidates,
                selection_count=len(pool.items),
                enrichment=EnrichmentMeta(enabled=self._builder.enrichment_enabled),
            ),
            rotation=compute_rotation(pool, policy, self._clock()),
        )

    def get_debug_snapshot(self) -> dict[str, Any]:
        """Return a JSON-serialisable view of the pipeline state."""

        enabled, source = self.feature_state()
        policy = self._policy_loader.policy
        return {
            "enabled": enabled,
            "featureSource": source,
            "policyHash": policy.hash,
            "policyLoadedAt": self._policy_loader.loaded_at,
            "policy": policy.to_document(),
            "validationIssues": self._policy_loader.get_validation_issues(),
            "enrichment": {"enabled": self._builder.enrichment_enabled},
            "counters": dict(self._counters),
            "kinds": {
                kind: {
                    "lastBuildAt": state.last_build_at,
                    "lastSource": state.last_source,
                    "lastError": state.last_error,
                    "itemCount": state.item_count,
                    "pending": kind in self._inflight and not self._inflight[kind].done(),
                }
                for kind, state in self._states.items()
            },
        }
