from __future__ import annotations

import sys
from typing import Any

import pytest
from PySide6.QtCore import QCoreApplication

from fakes import MemoryStore


@pytest.fixture(scope="session")
def app_instance():
    """Create a QCoreApplication instance for the test session."""
    app = QCoreApplication.instance()
    if app is None:
        app = QCoreApplication(sys.argv)
    return app


@pytest.fixture
def make_store(tmp_path):
    def factory(**fields: Any) -> MemoryStore:
        return MemoryStore(tmp_path / "settings.json", **fields)

    return factory
