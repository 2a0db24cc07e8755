"""Limits and small numeric helpers shared by the sync engine."""

from __future__ import annotations

import math
from typing import Any, Iterable

DEFAULT_SAMPLES = 3
SAMPLES_MIN = 1
SAMPLES_MAX = 9

# Lowest-RTT samples kept for the median.
PICK_COUNT = 3

DEFAULT_TIMEOUT_MS = 8000
TIMEOUT_MS_MIN = 1000
TIMEOUT_MS_MAX = 30000

AUTO_SYNC_INTERVAL_SEC_MIN = 10
AUTO_SYNC_INTERVAL_SEC_MAX = 7 * 24 * 3600

DEFAULT_NTP_PORT = 123


def as_finite(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def clamp_int(value: Any, lo: int, hi: int) -> int:
    """Truncate ``value`` to an int inside ``[lo, hi]``; garbage maps to ``lo``."""
    number = as_finite(value)
    if number is None:
        return lo
    return max(lo, min(hi, math.trunc(number)))


def round_half_up(value: float) -> int:
    """Round .5 towards +infinity, as browsers and Electron do for millisecond math."""
    return math.floor(value + 0.5)


def median(values: Iterable[int]) -> int:
    ordered = sorted(values)
    if not ordered:
        raise ValueError("median() of an empty sequence")
    mid = len(ordered) // 2
    if len(ordered) % 2 == 1:
        return ordered[mid]
    return round_half_up((ordered[mid - 1] + ordered[mid]) / 2)
