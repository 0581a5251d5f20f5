"""Hero pool policy models and the loader that validates policy documents."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Literal, Mapping

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .utils import coerce_number, now_ms, stable_hash

logger = logging.getLogger(__name__)

PoolKind = Literal["movies", "series"]
KINDS: tuple[PoolKind, ...] = ("movies", "series")

CATCH_ALL_SLOT = "random"
SLOT_STRATEGIES = ("recent", "rating", "classic", "shuffle")
DEFAULT_SLOT_STRATEGIES: dict[str, str] = {
    "new": "recent",
    "topRated": "rating",
    "oldButGold": "classic",
    "random": "shuffle",
}


class PolicyModel(BaseModel):
    """Base class for immutable policy sections serialised in camelCase."""

    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )


class SlotPolicy(PolicyModel):
    quota: float = Field(ge=0, le=1)
    strategy: str = "shuffle"


class DiversityWeights(PolicyModel):
    genre: float = 0.4
    year: float = 0.35
    anti_repeat: float = 0.25


class RotationPolicy(PolicyModel):
    interval_minutes: int = 360
    min_pool_size: int = 6


class TextClampPolicy(PolicyModel):
    title: int = 96
    subtitle: int = 240
    summary: int = 220


class FallbackPolicy(PolicyModel):
    prefer: PoolKind = "movies"
    allow_duplicates: bool = False


class CachePolicy(PolicyModel):
    ttl_hours: int = 24
    grace_minutes: int = 15

    @property
    def ttl_ms(self) -> int:
        return self.ttl_hours * 60 * 60 * 1000

    @property
    def grace_ms(self) -> int:
        return self.grace_minutes * 60 * 1000


class SelectionPolicy(PolicyModel):
    """Thresholds used by the slot ordering strategies and the history window."""

    new_window_days: int = 90
    old_threshold_years: int = 12
    classic_min_rating: float = 6.5
    history_window_days: int = 7
    history_limit: int = 60

    @property
    def new_window_ms(self) -> int:
        return self.new_window_days * 24 * 60 * 60 * 1000

    @property
    def history_window_ms(self) -> int:
        return self.history_window_days * 24 * 60 * 60 * 1000


def _default_slots() -> dict[str, SlotPolicy]:
    return {
        "new": SlotPolicy(quota=0.3, strategy="recent"),
        "topRated": SlotPolicy(quota=0.3, strategy="rating"),
        "oldButGold": SlotPolicy(quota=0.2, strategy="classic"),
        "random": SlotPolicy(quota=0.2, strategy="shuffle"),
    }


class HeroPolicy(PolicyModel):
    """Fully populated hero policy; every field carries a usable value."""

    pool_size_movies: int = 10
    pool_size_series: int = 10
    slots: dict[str, SlotPolicy] = Field(default_factory=_default_slots)
    diversity: DiversityWeights = Field(default_factory=DiversityWeights)
    rotation: RotationPolicy = Field(default_factory=RotationPolicy)
    text_clamp: TextClampPolicy = Field(default_factory=TextClampPolicy)
    fallback: FallbackPolicy = Field(default_factory=FallbackPolicy)
    language: str = "en-US"
    cache: CachePolicy = Field(default_factory=CachePolicy)
    selection: SelectionPolicy = Field(default_factory=SelectionPolicy)

    def pool_size(self, kind: PoolKind) -> int:
        return self.pool_size_series if kind == "series" else self.pool_size_movies

    @property
    def pool_sizes(self) -> dict[str, int]:
        return {"movies": self.pool_size_movies, "series": self.pool_size_series}

    @property
    def slot_order(self) -> list[str]:
        """Slot names in declared order with the catch-all slot last."""

        names = [name for name in self.slots if name != CATCH_ALL_SLOT]
        if CATCH_ALL_SLOT in self.slots:
            names.append(CATCH_ALL_SLOT)
        return names

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @property
    def hash(self) -> str:
        return stable_hash(self.to_document())


DEFAULT_POLICY = HeroPolicy()


class PolicySanitizer:
    """Reduce an arbitrary decoded document to a valid :class:`HeroPolicy`."""

    def __init__(self) -> None:
        self.issues: list[str] = []

    def issue(self, message: str) -> None:
        self.issues.append(message)

    def sanitize(self, raw: Any) -> HeroPolicy:
        defaults = DEFAULT_POLICY
        if not isinstance(raw, Mapping):
            self.issue("Policy payload missing or invalid, using defaults.")
            return defaults

        diversity = self._section(raw, "diversity")
        rotation = self._section(raw, "rotation")
        clamp = self._section(raw, "textClamp")
        fallback = self._section(raw, "fallback")
        cache = self._section(raw, "cache")
        selection = self._section(raw, "selection")

        return HeroPolicy(
            pool_size_movies=self.positive_int(
                raw.get("poolSizeMovies"), defaults.pool_size_movies, "poolSizeMovies"
            ),
            pool_size_series=self.positive_int(
                raw.get("poolSizeSeries"), defaults.pool_size_series, "poolSizeSeries"
            ),
            slots=self._slots(raw.get("slots")),
            diversity=DiversityWeights(
                genre=self.in_range(
                    diversity.get("genre"), 0, 1, defaults.diversity.genre, "diversity.genre"
                ),
                year=self.in_range(
                    diversity.get("year"), 0, 1, defaults.diversity.year, "diversity.year"
                ),
                anti_repeat=self.in_range(
                    diversity.get("antiRepeat"),
                    0,
                    1,
                    defaults.diversity.anti_repeat,
                    "diversity.antiRepeat",
                ),
            ),
            rotation=RotationPolicy(
                interval_minutes=self.positive_int(
                    rotation.get("intervalMinutes"),
                    defaults.rotation.interval_minutes,
                    "rotation.intervalMinutes",
                ),
                min_pool_size=self.positive_int(
                    rotation.get("minPoolSize"),
                    defaults.rotation.min_pool_size,
                    "rotation.minPoolSize",
                ),
            ),
            text_clamp=TextClampPolicy(
                title=self.positive_int(
                    clamp.get("title"), defaults.text_clamp.title, "textClamp.title"
                ),
                subtitle=self.positive_int(
                    clamp.get("subtitle"), defaults.text_clamp.subtitle, "textClamp.subtitle"
                ),
                summary=self.positive_int(
                    clamp.get("summary"), defaults.text_clamp.summary, "textClamp.summary"
                ),
            ),
            fallback=FallbackPolicy(
                prefer=self._prefer(fallback.get("prefer"), defaults.fallback.prefer),
                allow_duplicates=self._boolean(
                    fallback.get("allowDuplicates"),
                    defaults.fallback.allow_duplicates,
                    "fallback.allowDuplicates",
                ),
            ),
            language=self._language(raw.get("language"), defaults.language),
            cache=CachePolicy(
                ttl_hours=self.positive_int(
                    cache.get("ttlHours"), defaults.cache.ttl_hours, "cache.ttlHours"
                ),
                grace_minutes=self.positive_int(
                    cache.get("graceMinutes"),
                    defaults.cache.grace_minutes,
                    "cache.graceMinutes",
                    allow_zero=True,
                ),
            ),
            selection=SelectionPolicy(
                new_window_days=self.positive_int(
                    selection.get("newWindowDays"),
                    defaults.selection.new_window_days,
                    "selection.newWindowDays",
                ),
                old_threshold_years=self.positive_int(
                    selection.get("oldThresholdYears"),
                    defaults.selection.old_threshold_years,
                    "selection.oldThresholdYears",
                ),
                classic_min_rating=self.in_range(
                    selection.get("classicMinRating"),
                    0,
                    10,
                    defaults.selection.classic_min_rating,
                    "selection.classicMinRating",
                ),
                history_window_days=self.positive_int(
                    selection.get("historyWindowDays"),
                    defaults.selection.history_window_days,
                    "selection.historyWindowDays",
                ),
                history_limit=self.positive_int(
                    selection.get("historyLimit"),
                    defaults.selection.history_limit,
                    "selection.historyLimit",
                ),
            ),
        )

    def _section(self, raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
        value = raw.get(key)
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            self.issue(f"{key} must be an object, using defaults.")
            return {}
        return value

    def positive_int(
        self, value: Any, fallback: int, field: str, *, allow_zero: bool = False
    ) -> int:
        number = coerce_number(value)
        if number is not None and (number >= 0 if allow_zero else number > 0):
            # Fractions below one would floor to zero for strictly positive fields.
            if allow_zero or number >= 1:
                return int(number)
        if value is not None:
            self.issue(f"{field} invalid ({value}), using default ({fallback}).")
        return fallback

    def in_range(
        self, value: Any, lower: float, upper: float, fallback: float, field: str
    ) -> float:
        number = coerce_number(value)
        if number is not None and lower <= number <= upper:
            return number
        if value is not None:
            self.issue(f"{field} invalid ({value}), using default ({fallback}).")
        return fallback

    def _boolean(self, value: Any, fallback: bool, field: str) -> bool:
        if isinstance(value, bool):
            return value
        if value is not None:
            self.issue(f"{field} invalid ({value}), using default ({fallback}).")
        return fallback

    def _prefer(self, value: Any, fallback: PoolKind) -> PoolKind:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "movies":
                return "movies"
            if lowered in {"series", "shows"}:
                return "series"
        if value is not None:
            self.issue(f"fallback.prefer invalid ({value}), using default ({fallback}).")
        return fallback

    def _language(self, value: Any, fallback: str) -> str:
        if isinstance(value, str) and value.strip():
            return value.strip()
        if value is not None:
            self.issue(f"language missing or invalid, defaulted to {fallback}.")
        return fallback

    def _slots(self, value: Any) -> dict[str, SlotPolicy]:
        defaults = _default_slots()
        if value is None:
            return defaults
        if not isinstance(value, Mapping) or not value:
            self.issue("slots must be a non-empty object, using default slots.")
            return defaults

        slots: dict[str, SlotPolicy] = {}
        for raw_name, raw_slot in value.items():
            name = str(raw_name).strip()
            if not name:
                self.issue("slots contains an unnamed slot, ignoring it.")
                continue
            default_slot = defaults.get(name)
            default_quota = default_slot.quota if default_slot else 0.0
            default_strategy = DEFAULT_SLOT_STRATEGIES.get(name, "shuffle")
            if not isinstance(raw_slot, Mapping):
                self.issue(
                    f"slots.{name} invalid ({raw_slot}), using default ({default_quota})."
                )
                raw_slot = {}
            quota = self.in_range(
                raw_slot.get("quota"), 0, 1, default_quota, f"slots.{name}.quota"
            )
            strategy = raw_slot.get("strategy")
            if strategy is None:
                strategy = default_strategy
            elif strategy not in SLOT_STRATEGIES:
                self.issue(
                    f"slots.{name}.strategy invalid ({strategy}), using default ({default_strategy})."
                )
                strategy = default_strategy
            slots[name] = SlotPolicy(quota=quota, strategy=strategy)

        if not slots:
            return defaults

        total = sum(slot.quota for slot in slots.values())
        if CATCH_ALL_SLOT not in slots:
            remainder = round(max(0.0, 1.0 - total), 6)
            slots[CATCH_ALL_SLOT] = SlotPolicy(quota=remainder, strategy="shuffle")
            self.issue(
                f"slots.{CATCH_ALL_SLOT} missing, added catch-all slot with quota {remainder}."
            )
        elif total > 1.0 + 1e-9:
            self.issue(
                f"slot quotas sum to {round(total, 4)} (> 1), later slots will be reduced."
            )
        return slots


def sanitize_policy(raw: Any) -> tuple[HeroPolicy, list[str]]:
    """Return a valid policy for ``raw`` plus the list of corrections applied."""

    sanitizer = PolicySanitizer()
    policy = sanitizer.sanitize(raw)
    return policy, sanitizer.issues


def _is_remote(source: str) -> bool:
    return source.startswith(("http://", "https://"))


class PolicyLoader:
    """Load hero policies from a local file, a URL or an in-memory mapping.

    Loading never raises: any read or parse failure results in the built-in
    defaults and a validation issue describing what went wrong.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        source: str | Path | Mapping[str, Any] | None = None,
    ):
        self._client = http_client
        self._source = source
        self._policy = DEFAULT_POLICY
        self._issues: list[str] = []
        self._mtime_ns: int | None = None
        self.loaded_at: int | None = None

    @property
    def policy(self) -> HeroPolicy:
        return self._policy

    @property
    def source(self) -> str | Path | Mapping[str, Any] | None:
        return self._source

    def get_validation_issues(self) -> list[str]:
        return list(self._issues)

    async def load(
        self, source: str | Path | Mapping[str, Any] | None = None
    ) -> HeroPolicy:
        """Load and sanitise the policy from ``source`` (or the configured one)."""

        if source is not None:
            self._source = source
        target = self._source
        self._mtime_ns = None

        if target is None:
            policy, issues = DEFAULT_POLICY, []
        elif isinstance(target, Mapping):
            policy, issues = sanitize_policy(target)
        else:
            try:
                raw = await self._read(target)
            except (OSError, ValueError, httpx.HTTPError) as exc:
                logger.warning("Falling back to default hero policy: %s", exc)
                policy, issues = DEFAULT_POLICY, [f"Failed to load policy ({exc})"]
            else:
                policy, issues = sanitize_policy(raw)

        for message in issues:
            logger.warning("Hero policy: %s", message)
        self._policy = policy
        self._issues = issues
        self.loaded_at = now_ms()
        logger.info("Loaded hero policy %s", policy.hash[:12])
        return policy

    async def ensure_current(self, *, force: bool = False) -> HeroPolicy:
        """Reload the policy when forced or when the local file has changed."""

        if force or self.loaded_at is None:
            return await self.load()
        target = self._source
        if isinstance(target, (str, Path)) and not _is_remote(str(target)):
            mtime_ns = await asyncio.to_thread(_mtime_ns, Path(target))
            if mtime_ns != self._mtime_ns:
                logger.info("Hero policy file %s changed, reloading", target)
                return await self.load()
        return self._policy

    async def _read(self, target: str | Path) -> Any:
        location = str(target)
        if _is_remote(location):
            if self._client is None:
                raise ValueError("no HTTP client available for remote policy")
            response = await self._client.get(location, headers={"Cache-Control": "no-cache"})
            response.raise_for_status()
            return response.json()

        path = Path(location)
        contents = await asyncio.to_thread(path.read_text, encoding="utf-8")
        self._mtime_ns = await asyncio.to_thread(_mtime_ns, path)
        return json.loads(contents)


def _mtime_ns(path: Path) -> int | None:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None
