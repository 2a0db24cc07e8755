"""Typed signal channel between the sync manager and the rest of the app."""

from __future__ import annotations

from PySide6.QtCore import QObject, Signal

SYNC_NOW = "timeSync:syncNow"
SETTINGS_SAVED = "settingsSaved"
UPDATED = "timeSync:updated"


class TimeSyncEvents(QObject):
    sync_now = Signal()  # manual "sync now"
    settings_saved = Signal()  # reschedule, then sync
    storage_changed = Signal(str)  # settings file touched by another window/process
    updated = Signal()  # emitted after every run, success or failure

    def post(self, name: str) -> None:
        """Emit a payload-less event by its wire name."""
        signals = {
            SYNC_NOW: self.sync_now,
            SETTINGS_SAVED: self.settings_saved,
            UPDATED: self.updated,
        }
        try:
            signal = signals[name]
        except KeyError:
            raise ValueError(f"Unknown time-sync event: {name!r}") from None
        signal.emit()
