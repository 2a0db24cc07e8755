# settings_store.py
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict, Union

from PySide6.QtCore import QStandardPaths

from classclock.sync_models import SETTINGS_FIELDS, SyncSettings

APP_NAME = "ClassClock"
SETTINGS_FILE_NAME = "settings.json"
TIME_SYNC_KEY = "time_sync"

TimeSyncPatch = Union[Dict[str, Any], Callable[[SyncSettings], Dict[str, Any]]]


def app_config_dir() -> Path:
    """
    Return the per-user configuration directory for ClassClock,
    creating it if needed.
    """
    base = Path(QStandardPaths.writableLocation(QStandardPaths.AppConfigLocation))
    cfg = base / APP_NAME
    cfg.mkdir(parents=True, exist_ok=True)
    return cfg


def settings_path() -> Path:
    return app_config_dir() / SETTINGS_FILE_NAME


def load_settings() -> Dict[str, Any]:
    """Load settings.json, returning {} if missing or invalid."""
    path = settings_path()
    if not path.exists():
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, ValueError):
        # Broken JSON? Just ignore and start fresh.
        return {}


def save_settings(data: Dict[str, Any]) -> None:
    """Write JSON with a simple temp-file swap for safety."""
    path = settings_path()
    tmp = path.with_suffix(".tmp")

    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)

    tmp.replace(path)


def get_setting(key: str, default: Any = None) -> Any:
    return load_settings().get(key, default)


def set_setting(key: str, value: Any | None) -> None:
    data = load_settings()
    if value is None:
        data.pop(key, None)
    else:
        data[key] = value
    save_settings(data)


def get_time_sync_settings() -> SyncSettings:
    """Current time-sync section, with defaults for anything missing."""
    return SyncSettings.from_dict(get_setting(TIME_SYNC_KEY))


def update_time_sync_settings(patch: TimeSyncPatch) -> None:
    """
    Merge ``patch`` into the persisted time-sync section.

    ``patch`` is either a dict of field -> value or a callable that receives
    the current SyncSettings and returns such a dict. Unknown keys are dropped.
    """
    data = load_settings()
    current = SyncSettings.from_dict(data.get(TIME_SYNC_KEY))
    changes = patch(current) if callable(patch) else patch

    merged = current.to_dict()
    for key, value in (changes or {}).items():
        if key not in SETTINGS_FIELDS:
            continue
        merged[key] = value.value if key == "provider" and hasattr(value, "value") else value

    data[TIME_SYNC_KEY] = merged
    save_settings(data)
