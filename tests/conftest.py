"""Shared fixtures: a module-scoped DB template eliminates per-test init_db overhead."""

import shutil

import pytest

from reposync.storage.sqlite_store import SqliteStore
from reposync.workflow.engine import RetryPolicy, WorkflowEngine


@pytest.fixture(scope="module")
def _module_db_path(tmp_path_factory):
    """Create one fully-initialized DB per test module as a template."""
    db_path = tmp_path_factory.mktemp("db") / "test.db"
    s = SqliteStore(db_path)
    s.init_db()
    s._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
    s._conn.close()
    return db_path


@pytest.fixture
def db_path(tmp_path, _module_db_path):
    """Copy the template DB into a per-test tmp dir (fast file copy, no init_db)."""
    path = tmp_path / "test.db"
    shutil.copy2(_module_db_path, path)
    return path


@pytest.fixture
def store(db_path):
    """Per-test SqliteStore backed by a pre-initialized DB copy."""
    return SqliteStore(db_path)


@pytest.fixture
def store_factory(db_path):
    """Fresh connection per call, as the engine and API use it (thread-safe)."""
    def factory():
        return SqliteStore(db_path)
    return factory


@pytest.fixture
def fast_retry():
    """Same attempt ceiling as production, without the sleeps."""
    return RetryPolicy(max_attempts=3, backoff_seconds=0, backoff_max=0)


@pytest.fixture
def engine(store_factory, fast_retry):
    eng = WorkflowEngine(store_factory, retry_policy=fast_retry, max_workers=2)
    yield eng
    eng.shutdown(wait=True)


@pytest.fixture
def repo_id(store):
    return store.insert_repo("acme", "web")
