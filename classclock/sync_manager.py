"""Background time-sync scheduler."""

from __future__ import annotations

import functools
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from PySide6.QtCore import (
    QFileSystemWatcher,
    QObject,
    QRunnable,
    QThreadPool,
    QTimer,
    Signal,
    Slot,
)

import settings_store
from classclock.effective_clock import wall_clock_now_ms
from classclock.sync_bridge import UdpNtpTransport
from classclock.sync_config import (
    AUTO_SYNC_INTERVAL_SEC_MAX,
    AUTO_SYNC_INTERVAL_SEC_MIN,
    clamp_int,
)
from classclock.sync_events import TimeSyncEvents
from classclock.sync_models import Provider, RunResult
from classclock.sync_runner import SyncRunner
from classclock.sync_sampler import ProviderSampler

logger = logging.getLogger(__name__)

Job = Callable[[], RunResult]
Executor = Callable[[Job, Callable[[RunResult], None], Callable[[Exception], None]], None]


def run_inline(
    job: Job,
    on_success: Callable[[RunResult], None],
    on_failure: Callable[[Exception], None],
) -> None:
    """Executor that runs the job on the calling thread."""
    try:
        result = job()
    except Exception as exc:  # noqa: BLE001 - handed to on_failure
        on_failure(exc)
        return
    on_success(result)


class _Work(QRunnable):
    def __init__(self, fn: Callable[[], None]) -> None:
        super().__init__()
        self._fn = fn

    def run(self) -> None:
        self._fn()


class QThreadPoolExecutor(QObject):
    """
    Runs jobs on a QThreadPool worker and calls back on this object's thread.

    The callback travels with the result through a queued signal, so it always
    executes on the event loop that owns the executor, never on the worker.
    """

    _done = Signal(object, object)

    def __init__(self, pool: QThreadPool | None = None, parent: QObject | None = None):
        super().__init__(parent)
        self._pool = pool or QThreadPool.globalInstance()
        self._done.connect(self._deliver)

    @Slot(object, object)
    def _deliver(self, callback: Callable[[Any], None], value: Any) -> None:
        callback(value)

    def __call__(
        self,
        job: Job,
        on_success: Callable[[RunResult], None],
        on_failure: Callable[[Exception], None],
    ) -> None:
        def work() -> None:
            try:
                result = job()
            except Exception as exc:  # noqa: BLE001 - handed to on_failure
                self._done.emit(on_failure, exc)
                return
            self._done.emit(on_success, result)

        self._pool.start(_Work(work))


class SyncManager(QObject):
    """
    Keeps the persisted offset fresh.

    Owns one QTimer and one single-flight flag. Triggers arriving while a run
    is in flight are dropped, not queued. Failures never escape: they are
    recorded in ``last_error`` and the previous ``offset_ms`` is kept.

    Usage:

        manager = SyncManager()
        stop = manager.start()
        manager.events.sync_now.emit()
        ...
        stop()
    """

    def __init__(
        self,
        store: Any = settings_store,
        runner: Optional[SyncRunner] = None,
        executor: Optional[Executor] = None,
        now_ms: Callable[[], int] = wall_clock_now_ms,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self.store = store
        self.runner = runner or SyncRunner(ProviderSampler(ntp_transport=UdpNtpTransport()))
        self.events = TimeSyncEvents(self)
        self._executor = executor or QThreadPoolExecutor(parent=self)
        self._now_ms = now_ms

        self._timer = QTimer(self)
        self._timer.timeout.connect(self._on_tick)

        self._watcher = QFileSystemWatcher(self)
        self._watched_path = ""

        self._running = False
        self._is_syncing = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    def start(self) -> Callable[[], None]:
        """Subscribe to triggers and arm the timer. Returns the stop handle."""
        if self._running:
            return self.stop

        self._running = True
        self.events.sync_now.connect(self.sync_now)
        self.events.settings_saved.connect(self._on_settings_saved)
        self.events.storage_changed.connect(self._on_storage_changed)
        self._watch_settings_file()
        self._watcher.fileChanged.connect(self._on_file_changed)
        self._watcher.directoryChanged.connect(self._on_directory_changed)

        self.reschedule()
        logger.info("Time sync manager started")
        return self.stop

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        self._timer.stop()
        self._watcher.fileChanged.disconnect(self._on_file_changed)
        self._watcher.directoryChanged.disconnect(self._on_directory_changed)
        watched = self._watcher.files() + self._watcher.directories()
        if watched:
            self._watcher.removePaths(watched)
        self.events.sync_now.disconnect(self.sync_now)
        self.events.settings_saved.disconnect(self._on_settings_saved)
        self.events.storage_changed.disconnect(self._on_storage_changed)
        logger.info("Time sync manager stopped")

    def __enter__(self) -> "SyncManager":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def reschedule(self) -> None:
        """Re-arm the auto-sync timer from the current settings."""
        self._timer.stop()
        settings = self.store.get_time_sync_settings()
        if not (settings.enabled and settings.auto_sync_enabled):
            logger.debug("Auto sync off")
            return

        interval_sec = clamp_int(
            settings.auto_sync_interval_sec,
            AUTO_SYNC_INTERVAL_SEC_MIN,
            AUTO_SYNC_INTERVAL_SEC_MAX,
        )
        self._timer.start(interval_sec * 1000)
        logger.debug("Auto sync every %ss", interval_sec)

    def _watch_settings_file(self) -> None:
        path_fn = getattr(self.store, "settings_path", None)
        if not callable(path_fn):
            return
        path = Path(path_fn())
        self._watched_path = str(path)
        # The file only exists after the first save; the directory reports its creation.
        directory = str(path.parent)
        if path.parent.is_dir() and directory not in self._watcher.directories():
            self._watcher.addPath(directory)
        if path.exists() and self._watched_path not in self._watcher.files():
            self._watcher.addPath(self._watched_path)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    @Slot()
    def sync_now(self) -> None:
        self._sync_and_persist("manual")

    @Slot()
    def _on_tick(self) -> None:
        self._sync_and_persist("auto")

    @Slot()
    def _on_settings_saved(self) -> None:
        self.reschedule()
        self._sync_and_persist("settings")

    @Slot(str)
    def _on_file_changed(self, path: str) -> None:
        self.events.storage_changed.emit(path)

    @Slot(str)
    def _on_directory_changed(self, path: str) -> None:
        if not self._watched_path or self._watched_path in self._watcher.files():
            return
        if Path(self._watched_path).exists():
            self.events.storage_changed.emit(self._watched_path)

    @Slot(str)
    def _on_storage_changed(self, path: str) -> None:
        if not self._watched_path or Path(path) != Path(self._watched_path):
            return
        # Atomic replace drops the inode the watcher was following.
        self._watch_settings_file()
        self.reschedule()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _sync_and_persist(self, reason: str) -> None:
        if not self._running:
            return
        if self._is_syncing:
            logger.debug("Time sync (%s) skipped: a run is already in flight", reason)
            return

        settings = self.store.get_time_sync_settings()
        if not settings.enabled:
            return
        endpoint = settings.endpoint()
        if not endpoint:
            return

        self._is_syncing = True
        job = functools.partial(
            self.runner.sync_time,
            settings.provider,
            endpoint,
            port=settings.ntp_port if settings.provider is Provider.NTP else None,
        )
        self._executor(
            job,
            functools.partial(self._on_run_succeeded, reason),
            functools.partial(self._on_run_failed, reason),
        )

    def _persist(self, patch: Dict[str, Any]) -> bool:
        try:
            self.store.update_time_sync_settings(patch)
        except OSError as exc:
            logger.warning("Could not save time sync result: %s", exc)
            return False
        if self._running:
            self._watch_settings_file()
        return True

    def _on_run_succeeded(self, reason: str, result: RunResult) -> None:
        try:
            saved = self._persist(
                {
                    "offset_ms": result.offset_ms,
                    "last_sync_at": self._now_ms(),
                    "last_rtt_ms": result.rtt_ms,
                    "last_error": "",
                }
            )
            if not saved:
                return
            self.events.updated.emit()
            logger.info(
                "Time sync succeeded (%s): offset=%sms rtt=%sms",
                reason,
                result.offset_ms,
                result.rtt_ms,
            )
        finally:
            self._is_syncing = False

    def _on_run_failed(self, reason: str, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        try:
            if not self._persist({"last_sync_at": self._now_ms(), "last_error": message}):
                return
            self.events.updated.emit()
            logger.warning("Time sync failed (%s): %s", reason, message)
        finally:
            self._is_syncing = False
