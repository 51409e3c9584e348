from __future__ import annotations

import pytest

from governor_backend.common.shutdown import reset_shutdown
from governor_backend.ingestion.observer import RecordingObserver
from governor_backend.persistence.sql_store import SqlStore, connect_sqlite
from governor_backend.persistence.store import InMemoryStore


@pytest.fixture(autouse=True)
def _clear_shutdown_flag():
    # The shutdown event is process-global; never leak it between tests.
    reset_shutdown()
    yield
    reset_shutdown()


@pytest.fixture()
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def sqlite_store():
    store = SqlStore(connect_sqlite(":memory:"), dialect="sqlite")
    store.run_migrations()
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, memory_store, sqlite_store):
    """Runs a test against every Store implementation that needs no server."""
    return memory_store if request.param == "memory" else sqlite_store


@pytest.fixture()
def observer() -> RecordingObserver:
    return RecordingObserver()
