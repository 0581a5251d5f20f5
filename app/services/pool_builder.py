"""Quota-based hero pool selection."""

from __future__ import annotations

import asyncio
import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable, Literal, Protocol, Sequence

from ..models import (
    KIND_TO_MEDIA,
    CatalogItem,
    HeroItem,
    HeroPool,
    HistoryEntry,
    RotationPlan,
)
from ..policy import CATCH_ALL_SLOT, DiversityWeights, HeroPolicy, PoolKind, SelectionPolicy
from ..utils import DAY_MS, clamp, day_of_year, now_ms, parse_year, round_half_up, utc_year
from .normalizer import catalog_genres, catalog_rating, normalize_item
from .tmdb import EnrichedDetail, EnrichmentResult

logger = logging.getLogger(__name__)

SERIES_ROTATION_OFFSET = 7


class MetadataClient(Protocol):
    async def fetch_details_for_item(
        self, item: CatalogItem, *, language: str | None = None
    ) -> EnrichmentResult | None: ...


@dataclass(slots=True)
class ProgressEvent:
    stage: Literal["start", "slot", "done"]
    kind: PoolKind
    slot: str | None
    selected: int
    target: int
    completed: int
    total: int


ProgressListener = Callable[[ProgressEvent], None]


@dataclass(slots=True)
class Candidate:
    item: CatalogItem
    added_at: int
    year: int | None
    rating: float
    vote_count: int
    genres: list[str]
    is_new: bool
    is_old: bool

    @property
    def id(self) -> str:
        return self.item.id


def prepare_candidates(
    items: Iterable[CatalogItem], selection: SelectionPolicy, now: int
) -> list[Candidate]:
    """Parse catalog items into candidates, dropping repeated ids."""

    current_year = utc_year(now)
    seen: set[str] = set()
    candidates: list[Candidate] = []
    for item in items:
        if not item.id or item.id in seen:
            continue
        seen.add(item.id)
        year = parse_year(item.year)
        added_at = item.added_at
        candidates.append(
            Candidate(
                item=item,
                added_at=added_at,
                year=year,
                rating=catalog_rating(item) or 0.0,
                vote_count=item.vote_count or 0,
                genres=catalog_genres(item),
                is_new=added_at > 0 and now - added_at <= selection.new_window_ms,
                is_old=year is not None
                and current_year - year >= selection.old_threshold_years,
            )
        )
    return candidates


def catch_all_slot(policy: HeroPolicy) -> str:
    if CATCH_ALL_SLOT in policy.slots or not policy.slots:
        return CATCH_ALL_SLOT
    return policy.slot_order[-1]


def compute_slot_plan(pool_size: int, policy: HeroPolicy) -> dict[str, int]:
    """Allocate ``pool_size`` across slots; the catch-all slot takes the remainder."""

    catch_all = catch_all_slot(policy)
    plan: dict[str, int] = {}
    remaining = pool_size
    for name in policy.slot_order:
        if name == catch_all:
            continue
        quota = policy.slots[name].quota
        count = round_half_up(pool_size * quota) if quota > 0 else 0
        plan[name] = min(remaining, count)
        remaining -= plan[name]
    plan[catch_all] = max(0, remaining)
    return plan


@dataclass(slots=True)
class DiversityCaps:
    per_genre: int
    per_year: int


def compute_caps(pool_size: int, diversity: DiversityWeights) -> DiversityCaps:
    """Return per-genre and per-year caps; a zero weight disables its cap."""

    def _cap(weight: float) -> int:
        if weight <= 0:
            return 0
        return max(1, round_half_up(pool_size * clamp(weight * 0.5, 0.1, 0.35)))

    return DiversityCaps(per_genre=_cap(diversity.genre), per_year=_cap(diversity.year))


def rank_candidates(
    strategy: str,
    candidates: Sequence[Candidate],
    selection: SelectionPolicy,
    rng: random.Random,
) -> list[Candidate]:
    """Order candidates for a slot according to its strategy."""

    if strategy == "recent":
        return sorted(candidates, key=lambda c: (not c.is_new, -c.added_at))
    if strategy == "rating":
        return sorted(candidates, key=lambda c: (-c.rating, -c.vote_count, -c.added_at))
    if strategy == "classic":
        eligible = [
            c for c in candidates if c.is_old and c.rating >= selection.classic_min_rating
        ]
        return sorted(eligible, key=lambda c: (c.year or 0, -c.rating, -c.added_at))
    shuffled = list(candidates)
    rng.shuffle(shuffled)
    return shuffled


@dataclass
class SelectionContext:
    """Mutable state of one greedy selection run."""

    pool_size: int
    caps: DiversityCaps
    weights: DiversityWeights
    history_ids: set[str]
    selected: list[tuple[Candidate, str]] = field(default_factory=list)
    selected_ids: set[str] = field(default_factory=set)
    summary: dict[str, int] = field(default_factory=dict)
    genre_counts: Counter[str] = field(default_factory=Counter)
    year_counts: Counter[int] = field(default_factory=Counter)

    @property
    def full(self) -> bool:
        return len(self.selected) >= self.pool_size

    def over_cap(self, candidate: Candidate) -> bool:
        if self.caps.per_genre and any(
            self.genre_counts[genre] >= self.caps.per_genre for genre in candidate.genres
        ):
            return True
        return bool(
            self.caps.per_year
            and candidate.year is not None
            and self.year_counts[candidate.year] >= self.caps.per_year
        )

    def overlap_penalty(self, candidate: Candidate) -> float:
        penalty = 0.0
        if candidate.genres and self.weights.genre:
            shared = sum(1 for genre in candidate.genres if self.genre_counts[genre])
            penalty += self.weights.genre * shared / len(candidate.genres)
        if candidate.year is not None and self.weights.year and self.year_counts[candidate.year]:
            penalty += self.weights.year
        return penalty

    def deferred(self, candidate: Candidate) -> bool:
        return self.weights.anti_repeat > 0 and candidate.id in self.history_ids

    def add(self, candidate: Candidate, slot: str) -> None:
        self.selected.append((candidate, slot))
        self.selected_ids.add(candidate.id)
        self.summary[slot] = self.summary.get(slot, 0) + 1
        self.genre_counts.update(candidate.genres)
        if candidate.year is not None:
            self.year_counts[candidate.year] += 1


def select_for_slot(
    context: SelectionContext, ranked: Sequence[Candidate], slot: str, target: int
) -> int:
    """Greedily fill ``slot`` from ``ranked`` and return how many were picked.

    Over-cap candidates and recently shown items sink to the end of the
    ranking but stay eligible when nothing else is left.
    """

    context.summary.setdefault(slot, 0)
    total = len(ranked)
    remaining = [
        (index, candidate)
        for index, candidate in enumerate(ranked)
        if candidate.id not in context.selected_ids
    ]

    def _key(entry: tuple[int, Candidate]) -> tuple[bool, bool, float, int]:
        index, candidate = entry
        score = (1 - index / total) - context.overlap_penalty(candidate)
        return (
            context.over_cap(candidate),
            context.deferred(candidate),
            -score,
            index,
        )

    picked = 0
    while picked < target and remaining and not context.full:
        best = min(remaining, key=_key)
        remaining.remove(best)
        context.add(best[1], slot)
        picked += 1
    return picked


def active_history(
    history: Iterable[HistoryEntry], now: int, selection: SelectionPolicy
) -> list[HistoryEntry]:
    """Return de-duplicated history inside the window, newest first and capped."""

    cutoff = now - selection.history_window_ms
    ordered = sorted(history, key=lambda entry: entry.timestamp, reverse=True)
    seen: set[str] = set()
    active: list[HistoryEntry] = []
    for entry in ordered:
        if not entry.item_id or entry.timestamp < cutoff or entry.item_id in seen:
            continue
        seen.add(entry.item_id)
        active.append(entry)
        if len(active) >= selection.history_limit:
            break
    return active


def update_history(
    history: Iterable[HistoryEntry],
    items: Iterable[HeroItem],
    timestamp: int,
    selection: SelectionPolicy,
) -> list[HistoryEntry]:
    """Merge surfaced items into the history at ``timestamp``."""

    merged = {entry.item_id: entry for entry in history if entry.item_id}
    for item in items:
        merged[item.id] = HistoryEntry(item_id=item.id, timestamp=timestamp)
    return active_history(merged.values(), timestamp, selection)


def compute_rotation(pool: HeroPool, policy: HeroPolicy, now: int) -> RotationPlan:
    """Deterministic carousel order and daily start index for ``pool``."""

    order = sorted((item.id for item in pool.items), key=str.casefold)
    start_index = 0
    if order:
        freshness_seed = pool.updated_at // DAY_MS if pool.updated_at else 0
        offset = SERIES_ROTATION_OFFSET if pool.kind == "series" else 0
        start_index = (day_of_year(now) + freshness_seed + offset) % len(order)
    return RotationPlan(
        start_index=start_index,
        order=order,
        interval_minutes=policy.rotation.interval_minutes,
        below_minimum=len(order) < policy.rotation.min_pool_size,
    )


class PoolBuilder:
    """Build hero pools from catalog snapshots, enriching picks through TMDB."""

    def __init__(
        self,
        metadata_client: MetadataClient | None = None,
        *,
        rng: random.Random | None = None,
        enrichment_concurrency: int = 4,
        clock: Callable[[], int] = now_ms,
    ):
        self._metadata_client = metadata_client
        self._rng = rng or random.Random()
        self._concurrency = max(1, enrichment_concurrency)
        self._clock = clock
        self._listeners: list[ProgressListener] = []

    @property
    def enrichment_enabled(self) -> bool:
        return self._metadata_client is not None

    def add_progress_listener(self, listener: ProgressListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event: ProgressEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Hero progress listener failed for %s", event.kind)

    async def build_pool(
        self,
        kind: PoolKind,
        catalog_items: Iterable[CatalogItem],
        policy: HeroPolicy,
        history: Iterable[HistoryEntry] = (),
        *,
        now: int | None = None,
    ) -> HeroPool:
        timestamp = self._clock() if now is None else now
        media_kind = KIND_TO_MEDIA[kind]
        candidates = prepare_candidates(
            (item for item in catalog_items if item.kind == media_kind),
            policy.selection,
            timestamp,
        )
        pool_size = policy.pool_size(kind)
        plan = compute_slot_plan(pool_size, policy)
        recent = active_history(history, timestamp, policy.selection)
        context = SelectionContext(
            pool_size=pool_size,
            caps=compute_caps(pool_size, policy.diversity),
            weights=policy.diversity,
            history_ids={entry.item_id for entry in recent},
        )
        catch_all = catch_all_slot(policy)
        slot_names = list(plan)
        total_slots = len(slot_names)
        self._emit(ProgressEvent("start", kind, None, 0, pool_size, 0, total_slots))

        items: list[HeroItem] = []
        deficit = 0
        for position, slot in enumerate(slot_names, start=1):
            target = plan[slot] + (deficit if slot == catch_all else 0)
            strategy = policy.slots[slot].strategy if slot in policy.slots else "shuffle"
            available = [c for c in candidates if c.id not in context.selected_ids]
            ranked = rank_candidates(strategy, available, policy.selection, self._rng)
            start = len(context.selected)
            picked = select_for_slot(context, ranked, slot, target)
            if slot != catch_all:
                deficit += target - picked
            elif len(context.selected) < pool_size:
                # Fill from whatever is left when the catch-all strategy filtered candidates.
                leftovers = [c for c in candidates if c.id not in context.selected_ids]
                select_for_slot(context, leftovers, slot, pool_size - len(context.selected))
            items.extend(await self._normalize(context.selected[start:], policy))
            self._emit(
                ProgressEvent(
                    "slot",
                    kind,
                    slot,
                    context.summary.get(slot, 0),
                    target,
                    position,
                    total_slots,
                )
            )

        pool = HeroPool(
            kind=kind,
            items=items,
            slot_summary={name: context.summary.get(name, 0) for name in slot_names},
            plan=plan,
            updated_at=timestamp,
            expires_at=timestamp + policy.cache.ttl_ms,
            policy_hash=policy.hash,
            history=update_history(recent, items, timestamp, policy.selection),
            total_candidates=len(candidates),
        )
        self._emit(
            ProgressEvent("done", kind, None, len(items), pool_size, total_slots, total_slots)
        )
        logger.info(
            "Built %s hero pool with %s/%s items from %s candidates",
            kind,
            len(items),
            pool_size,
            len(candidates),
        )
        return pool

    async def _normalize(
        self, picks: Sequence[tuple[Candidate, str]], policy: HeroPolicy
    ) -> list[HeroItem]:
        details = await self._enrich([candidate.item for candidate, _ in picks], policy.language)
        return [
            normalize_item(
                candidate.item, detail, slot=slot, text_clamp=policy.text_clamp
            )
            for (candidate, slot), detail in zip(picks, details)
        ]

    async def _enrich(
        self, items: Sequence[CatalogItem], language: str
    ) -> list[EnrichedDetail | None]:
        client = self._metadata_client
        if client is None or not items:
            return [None] * len(items)

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _fetch(item: CatalogItem) -> EnrichmentResult | None:
            async with semaphore:
                return await client.fetch_details_for_item(item, language=language)

        results = await asyncio.gather(
            *(_fetch(item) for item in items), return_exceptions=True
        )
        details: list[EnrichedDetail | None] = []
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                logger.warning("Enrichment failed for %s (%s): %s", item.title, item.id, result)
                details.append(None)
            elif result is None:
                details.append(None)
            else:
                details.append(result.data)
        return details
