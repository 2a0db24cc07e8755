from __future__ import annotations

import logging
import time

import pytest
from PySide6.QtCore import QCoreApplication

import settings_store
from classclock.sync_errors import NetworkError
from classclock.sync_events import SETTINGS_SAVED, SYNC_NOW
from classclock.sync_manager import QThreadPoolExecutor, SyncManager, run_inline
from classclock.sync_models import Provider, RunResult, SampleResult
from classclock.sync_runner import SyncRunner
from classclock.sync_sampler import ProviderSampler
from fakes import FakeResponse, FakeSession, SequenceClock

pytestmark = pytest.mark.usefixtures("app_instance")

RESULT = RunResult(
    offset_ms=250,
    rtt_ms=12,
    server_epoch_ms=5_000,
    measured_at=4_760,
    samples=(SampleResult(250, 12, 5_000, 4_760),),
)

ENABLED = {
    "enabled": True,
    "provider": Provider.HTTP_DATE,
    "http_date_url": "https://test.example/",
}


class ScriptedRunner:
    def __init__(self, outcome=RESULT):
        self.outcome = outcome
        self.calls = []

    def sync_time(self, provider, endpoint, port=None, samples=None, timeout_ms=None):
        self.calls.append((provider, endpoint, port))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class DeferredExecutor:
    """Holds jobs until the test completes them, like a slow network."""

    def __init__(self):
        self.pending = []

    def __call__(self, job, on_success, on_failure):
        self.pending.append((job, on_success, on_failure))

    def complete(self):
        run_inline(*self.pending.pop(0))


def _pump_until(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition() and time.monotonic() < deadline:
        QCoreApplication.processEvents()
        time.sleep(0.01)


def _manager(store, runner=None, executor=run_inline):
    manager = SyncManager(
        store=store,
        runner=runner or ScriptedRunner(),
        executor=executor,
        now_ms=lambda: 777,
    )
    updates = []
    manager.events.updated.connect(lambda: updates.append(True))
    return manager, updates


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------


def test_start_is_idempotent(make_store):
    manager, _ = _manager(make_store(**ENABLED, auto_sync_enabled=True))

    first = manager.start()
    second = manager.start()

    assert first == second
    assert manager.is_running
    first()


def test_stop_is_idempotent_and_releases_timer(make_store):
    manager, _ = _manager(make_store(**ENABLED, auto_sync_enabled=True))
    stop = manager.start()
    assert manager._timer.isActive()

    stop()
    stop()

    assert not manager.is_running
    assert not manager._timer.isActive()


def test_context_manager_stops_on_exit(make_store):
    manager, _ = _manager(make_store(**ENABLED, auto_sync_enabled=True))

    with pytest.raises(RuntimeError):
        with manager:
            assert manager.is_running
            raise RuntimeError("bail out")

    assert not manager.is_running
    assert not manager._timer.isActive()


def test_can_restart_after_stop(make_store):
    runner = ScriptedRunner()
    manager, _ = _manager(make_store(**ENABLED), runner)

    manager.start()()
    manager.start()
    manager.events.sync_now.emit()
    manager.stop()

    assert len(runner.calls) == 1


def test_settings_file_is_watched_while_running(make_store):
    store = make_store()
    store.path.write_text("{}", encoding="utf-8")
    manager, _ = _manager(store)

    manager.start()
    assert str(store.path) in manager._watcher.files()

    manager.stop()
    assert manager._watcher.files() == []


def test_settings_file_created_after_start_is_picked_up(make_store):
    store = make_store()
    manager, _ = _manager(store)
    manager.start()
    assert str(store.path.parent) in manager._watcher.directories()
    assert manager._watcher.files() == []

    store.data.update(ENABLED, auto_sync_enabled=True, auto_sync_interval_sec=30)
    store.path.write_text("{}", encoding="utf-8")
    manager._on_directory_changed(str(store.path.parent))

    assert str(store.path) in manager._watcher.files()
    assert manager._timer.isActive()
    assert manager._timer.interval() == 30_000
    manager.stop()
    assert manager._watcher.directories() == []


def test_first_save_from_another_window_reschedules(tmp_path, monkeypatch):
    path = tmp_path / "settings.json"
    monkeypatch.setattr(settings_store, "settings_path", lambda: path)
    manager = SyncManager(runner=ScriptedRunner(), executor=run_inline)

    with manager:
        assert not path.exists()
        settings_store.update_time_sync_settings(
            {"enabled": True, "http_date_url": "https://x/", "auto_sync_enabled": True}
        )
        _pump_until(manager._timer.isActive)

        assert manager._timer.isActive()
        assert str(path) in manager._watcher.files()


# ----------------------------------------------------------------------
# Scheduling
# ----------------------------------------------------------------------


@pytest.mark.parametrize(
    "interval_sec, expected_ms",
    [(3600, 3_600_000), (5, 10_000), (10**9, 604_800_000)],
)
def test_timer_interval_is_clamped(make_store, interval_sec, expected_ms):
    store = make_store(**ENABLED, auto_sync_enabled=True, auto_sync_interval_sec=interval_sec)
    manager, _ = _manager(store)

    with manager:
        assert manager._timer.isActive()
        assert manager._timer.interval() == expected_ms


@pytest.mark.parametrize(
    "fields",
    [
        {"enabled": False, "auto_sync_enabled": True},
        {"enabled": True, "auto_sync_enabled": False},
    ],
)
def test_no_timer_unless_enabled_and_auto(make_store, fields):
    manager, _ = _manager(make_store(http_date_url="https://test.example/", **fields))

    with manager:
        assert not manager._timer.isActive()


def test_settings_saved_reschedules_and_syncs(make_store):
    store = make_store(**ENABLED)
    runner = ScriptedRunner()
    manager, updates = _manager(store, runner)
    manager.start()
    assert not manager._timer.isActive()

    store.data.update(auto_sync_enabled=True, auto_sync_interval_sec=60)
    manager.events.settings_saved.emit()

    assert manager._timer.isActive()
    assert manager._timer.interval() == 60_000
    assert len(runner.calls) == 1
    assert updates == [True]
    manager.stop()


def test_storage_change_reschedules_without_syncing(make_store):
    store = make_store(**ENABLED)
    runner = ScriptedRunner()
    manager, updates = _manager(store, runner)
    manager.start()

    store.data.update(auto_sync_enabled=True, auto_sync_interval_sec=120)
    manager.events.storage_changed.emit(str(store.path))

    assert manager._timer.interval() == 120_000
    assert manager._timer.isActive()
    assert runner.calls == []
    assert updates == []
    manager.stop()


def test_storage_change_for_other_file_is_ignored(make_store, tmp_path):
    store = make_store(**ENABLED)
    manager, _ = _manager(store)
    manager.start()

    store.data.update(auto_sync_enabled=True)
    manager.events.storage_changed.emit(str(tmp_path / "other.json"))

    assert not manager._timer.isActive()
    manager.stop()


def test_timer_tick_runs_a_sync(make_store):
    runner = ScriptedRunner()
    manager, _ = _manager(make_store(**ENABLED, auto_sync_enabled=True), runner)

    with manager:
        manager._on_tick()

    assert len(runner.calls) == 1


# ----------------------------------------------------------------------
# Runs
# ----------------------------------------------------------------------


def test_successful_run_persists_and_broadcasts(make_store):
    store = make_store(**ENABLED, last_error="old failure")
    manager, updates = _manager(store)

    with manager:
        manager.events.sync_now.emit()

    assert store.patches == [
        {"offset_ms": 250, "last_sync_at": 777, "last_rtt_ms": 12, "last_error": ""}
    ]
    settings = store.get_time_sync_settings()
    assert settings.offset_ms == 250
    assert settings.last_error == ""
    assert updates == [True]
    assert not manager.is_syncing


def test_failed_run_keeps_last_good_offset(make_store):
    store = make_store(**ENABLED, offset_ms=1234, last_rtt_ms=9)
    manager, updates = _manager(store, ScriptedRunner(NetworkError("HTTP 502 Bad Gateway")))

    with manager:
        manager.sync_now()

    assert store.patches == [{"last_sync_at": 777, "last_error": "HTTP 502 Bad Gateway"}]
    settings = store.get_time_sync_settings()
    assert settings.offset_ms == 1234
    assert settings.last_rtt_ms == 9
    assert updates == [True]
    assert not manager.is_syncing


def test_missing_date_header_records_error_without_touching_offset(make_store):
    store = make_store(**ENABLED, offset_ms=42)
    sampler = ProviderSampler(
        session=FakeSession([FakeResponse(headers={})]), now_ms=SequenceClock([1000])
    )
    manager, updates = _manager(store, SyncRunner(sampler))

    with manager:
        manager.sync_now()

    settings = store.get_time_sync_settings()
    assert settings.offset_ms == 42
    assert "Date header" in settings.last_error
    assert settings.last_sync_at == 777
    assert updates == [True]


@pytest.mark.parametrize(
    "fields",
    [
        {"enabled": True, "provider": Provider.HTTP_DATE, "http_date_url": "   "},
        {"enabled": True, "provider": Provider.TIME_API, "http_date_url": "https://x/"},
        {"enabled": False, "http_date_url": "https://test.example/"},
    ],
)
def test_unconfigured_sync_is_a_silent_noop(make_store, fields):
    store = make_store(**fields)
    runner = ScriptedRunner()
    manager, updates = _manager(store, runner)

    with manager:
        manager.sync_now()

    assert runner.calls == []
    assert store.patches == []
    assert updates == []


def test_ntp_port_is_passed_only_for_ntp(make_store):
    store = make_store(enabled=True, provider=Provider.NTP, ntp_host="time.example", ntp_port=4123)
    runner = ScriptedRunner()
    manager, _ = _manager(store, runner)

    with manager:
        manager.sync_now()
        store.data.update(provider=Provider.HTTP_DATE.value, http_date_url="https://test.example/")
        manager.sync_now()

    assert runner.calls == [
        (Provider.NTP, "time.example", 4123),
        (Provider.HTTP_DATE, "https://test.example/", None),
    ]


def test_trigger_while_syncing_is_dropped(make_store):
    store = make_store(**ENABLED)
    executor = DeferredExecutor()
    runner = ScriptedRunner()
    manager, updates = _manager(store, runner, executor)
    manager.start()

    manager.events.sync_now.emit()
    assert manager.is_syncing

    manager.events.sync_now.emit()
    manager.events.settings_saved.emit()
    manager._on_tick()

    assert len(executor.pending) == 1
    assert store.get_time_sync_settings().last_sync_at is None
    assert updates == []

    executor.complete()

    assert not manager.is_syncing
    assert store.get_time_sync_settings().last_sync_at == 777
    assert updates == [True]
    assert len(runner.calls) == 1
    manager.stop()


def test_in_flight_run_still_persists_after_stop(make_store):
    store = make_store(**ENABLED)
    executor = DeferredExecutor()
    manager, updates = _manager(store, executor=executor)
    manager.start()
    manager.sync_now()

    manager.stop()
    executor.complete()

    assert store.get_time_sync_settings().offset_ms == 250
    assert updates == [True]


def test_triggers_ignored_after_stop(make_store):
    runner = ScriptedRunner()
    manager, _ = _manager(make_store(**ENABLED), runner)
    manager.start()
    manager.stop()

    manager.events.sync_now.emit()
    manager.events.settings_saved.emit()
    manager.sync_now()

    assert runner.calls == []


def test_events_can_be_posted_by_wire_name(make_store):
    runner = ScriptedRunner()
    manager, _ = _manager(make_store(**ENABLED), runner)

    with manager:
        manager.events.post(SYNC_NOW)
        manager.events.post(SETTINGS_SAVED)
        with pytest.raises(ValueError):
            manager.events.post("timeSync:nope")

    assert len(runner.calls) == 2


def test_thread_pool_executor_reports_back_on_event_loop(make_store, app_instance):
    store = make_store(**ENABLED)
    manager, updates = _manager(store, executor=QThreadPoolExecutor())

    with manager:
        manager.sync_now()
        _pump_until(lambda: not manager.is_syncing)

    assert not manager.is_syncing
    assert store.get_time_sync_settings().offset_ms == 250
    assert updates == [True]


class FullDiskStore:
    def __init__(self, store):
        self.store = store

    def settings_path(self):
        return self.store.settings_path()

    def get_time_sync_settings(self):
        return self.store.get_time_sync_settings()

    def update_time_sync_settings(self, patch):
        raise OSError(28, "No space left on device")


@pytest.mark.parametrize("outcome", [RESULT, NetworkError("HTTP 502 Bad Gateway")])
def test_save_failure_is_logged_not_raised(make_store, caplog, outcome):
    store = FullDiskStore(make_store(**ENABLED, offset_ms=42))
    manager, updates = _manager(store, ScriptedRunner(outcome))

    with manager, caplog.at_level(logging.WARNING, logger="classclock.sync_manager"):
        manager.sync_now()

    assert not manager.is_syncing
    assert updates == []
    assert store.get_time_sync_settings().offset_ms == 42
    assert "No space left on device" in caplog.text
