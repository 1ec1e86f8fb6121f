# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from tasklive.core.engine import ReconciliationEngine
from tasklive.core.session import SessionHolder

from .fakes import FakeTaskStore


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """Settings double for bootstrap tests: local backend, no polling, paths under tmp_path."""
    data_dir = tmp_path / "data"
    return SimpleNamespace(
        app_name="tasklive-test",
        log_level="DEBUG",
        backend="local",
        supabase_url="",
        supabase_anon_key=None,
        http_timeout_seconds=5.0,
        supabase_realtime=False,
        poll_interval_seconds=0.0,
        persist_session=True,
        data_dir=data_dir,
        db_path=data_dir / "tasks.sqlite3",
        session_path=data_dir / "session.json",
    )


@pytest.fixture()
def store() -> FakeTaskStore:
    return FakeTaskStore()


@pytest.fixture()
def sessions(store: FakeTaskStore) -> SessionHolder:
    return SessionHolder(store)


@pytest.fixture()
def engine(store: FakeTaskStore, sessions: SessionHolder) -> ReconciliationEngine:
    """Engine wired to the in-memory fake store (no SQLite, no network)."""
    return ReconciliationEngine(store, sessions)
