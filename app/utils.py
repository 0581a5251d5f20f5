"""Utility helpers for the hero pool service."""

from __future__ import annotations

import hashlib
import json
import math
import re
import time
from datetime import datetime, timezone
from typing import Any


YEAR_RE = re.compile(r"(19|20|21)\d{2}")
DAY_MS = 24 * 60 * 60 * 1000
EPOCH_MS_THRESHOLD = 100_000_000_000


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


def clamp(value: float, lower: float, upper: float) -> float:
    return min(upper, max(lower, value))


def round_half_up(value: float) -> int:
    """Round halves away from zero for positive values (``2.5 -> 3``)."""

    return int(math.floor(value + 0.5))


def coerce_number(value: Any) -> float | None:
    """Return ``value`` as a finite float, or ``None`` when it is not numeric."""

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_timestamp(value: Any) -> int:
    """Parse ISO strings, epoch seconds or epoch milliseconds into epoch ms.

    Unparseable values yield ``0`` so callers can treat them as "unknown".
    """

    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(moment.timestamp() * 1000)
    number = coerce_number(value)
    if number is not None:
        if number <= 0:
            return 0
        if number < EPOCH_MS_THRESHOLD:
            return int(number * 1000)
        return int(number)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return 0
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return 0


def parse_year(value: Any) -> int | None:
    """Extract a plausible release year from numbers or date-like strings."""

    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if 1800 < value < 2100:
            return int(value)
        return None
    if isinstance(value, str):
        match = YEAR_RE.search(value)
        if match:
            return int(match.group(0))
    return None


def utc_year(timestamp_ms: int) -> int:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).year


def day_of_year(timestamp_ms: int) -> int:
    """Return the zero-based UTC day of the year for ``timestamp_ms``."""

    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.timetuple().tm_yday - 1


def stable_hash(payload: Any) -> str:
    """Return a SHA-1 fingerprint of ``payload`` serialised with sorted keys."""

    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


def dedupe_strings(values: Any, *, limit: int | None = None) -> list[str]:
    """Trim, drop blanks and de-duplicate case-insensitively preserving order."""

    if not isinstance(values, (list, tuple)):
        return []
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if not text:
            continue
        key = text.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(text)
        if limit is not None and len(result) >= limit:
            break
    return result
