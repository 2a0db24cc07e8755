"""Application entrypoint.

Kept small so `main.py` can remain a thin wrapper. This is the composition
root: the only place that builds the SyncManager.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import Optional, Sequence

from PySide6.QtCore import QCoreApplication, QLoggingCategory, QTimer

import settings_store
from classclock import __version__
from classclock.effective_clock import adjusted_date, effective_offset_ms
from classclock.sync_manager import SyncManager, run_inline

LOG = logging.getLogger("classclock")

APP_NAME = "ClassClock"
ORG_NAME = "ClassClock"


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="classclock",
        description="Keep the ClassClock offset in sync with a trusted time source.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sync, print the result and exit.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def _report() -> None:
    settings = settings_store.get_time_sync_settings()
    print(f"Adjusted time: {adjusted_date(settings).isoformat()}")
    print(f"Effective offset: {effective_offset_ms(settings)} ms")
    if settings.last_rtt_ms is not None:
        print(f"Last RTT: {settings.last_rtt_ms} ms")
    if settings.last_error:
        print(f"Last error: {settings.last_error}")


def run_once() -> int:
    """One inline sync through the manager, so results persist the usual way."""
    settings = settings_store.get_time_sync_settings()
    if not settings.enabled or not settings.endpoint():
        LOG.warning("Time sync is disabled or has no endpoint configured")
        _report()
        return 1

    manager = SyncManager(executor=run_inline)
    with manager:
        manager.sync_now()
    _report()
    return 1 if settings_store.get_time_sync_settings().last_error else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the ClassClock time-sync service."""
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    QLoggingCategory.setFilterRules("qt.*.debug=false\n")

    app = QCoreApplication.instance() or QCoreApplication(
        sys.argv if argv is None else ["classclock"]
    )
    QCoreApplication.setOrganizationName(ORG_NAME)
    QCoreApplication.setApplicationName(APP_NAME)

    if args.once:
        return run_once()

    manager = SyncManager(parent=app)
    manager.events.updated.connect(_report)
    stop = manager.start()
    app.aboutToQuit.connect(stop)

    LOG.info("Watching %s", settings_store.settings_path())
    _report()

    # Qt keeps the interpreter out of the loop; wake it so Ctrl+C is seen.
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    wakeup = QTimer(app)
    wakeup.timeout.connect(lambda: None)
    wakeup.start(250)

    # Kick off a first run right away instead of waiting a whole interval.
    QTimer.singleShot(0, manager.sync_now)
    return app.exec()
