"""Adjusted ("corrected") clock used by every time display.

These helpers never touch the network and hold no state. They read whatever
offset is currently persisted, so calling them once per frame is fine.
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from PySide6.QtCore import QDateTime, QTimeZone

import settings_store
from classclock.sync_config import as_finite
from classclock.sync_models import SyncSettings


def wall_clock_now_ms() -> int:
    """Unadjusted local wall clock in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def _current(settings: Optional[SyncSettings]) -> SyncSettings:
    return settings if settings is not None else settings_store.get_time_sync_settings()


def effective_offset_ms(settings: Optional[SyncSettings] = None) -> int:
    """Network offset plus manual correction, or 0 while sync is disabled."""
    settings = _current(settings)
    if not settings.enabled:
        return 0
    network = as_finite(settings.offset_ms) or 0.0
    manual = as_finite(settings.manual_offset_ms) or 0.0
    return math.trunc(network + manual)


def adjusted_now_ms(
    settings: Optional[SyncSettings] = None,
    now_ms: Optional[Callable[[], int]] = None,
) -> int:
    now = now_ms() if now_ms is not None else wall_clock_now_ms()
    return now + effective_offset_ms(settings)


def adjusted_date(settings: Optional[SyncSettings] = None) -> datetime:
    return datetime.fromtimestamp(adjusted_now_ms(settings) / 1000, tz=timezone.utc)


def adjusted_qdatetime(settings: Optional[SyncSettings] = None) -> QDateTime:
    """Same instant as :func:`adjusted_date`, as a UTC ``QDateTime`` for Qt widgets."""
    return QDateTime.fromMSecsSinceEpoch(adjusted_now_ms(settings), QTimeZone(b"UTC"))
