# tests/test_local_store.py

from __future__ import annotations

import asyncio
import json
import sqlite3
from pathlib import Path

import pytest

from tasklive.core.errors import AuthError, NotFoundError, SessionExpiredError, ValidationError
from tasklive.core.models import ChangeEvent, ChangeKind
from tasklive.store import local_store as local_store_mod
from tasklive.store.local_store import LocalTaskStore


@pytest.fixture(autouse=True)
def _fast_hashing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(local_store_mod, "PBKDF2_ITERATIONS", 1_000)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "tasks.sqlite3"


@pytest.fixture()
def session_path(tmp_path: Path) -> Path:
    return tmp_path / "session.json"


async def _registered(store: LocalTaskStore, email: str = "ann@example.com", password: str = "secret1"):
    await store.sign_up(email, password)
    return await store.sign_in(email, password)


@pytest.mark.asyncio
async def test_sign_up_returns_no_session_and_sign_in_works(db_path: Path) -> None:
    store = LocalTaskStore(db_path)

    assert await store.sign_up("  Ann@Example.com ", "secret1") is None
    session = await store.sign_in("ann@example.com", "secret1")

    assert session.identity.email == "ann@example.com"
    assert session.access_token


@pytest.mark.asyncio
async def test_sign_up_rejects_bad_input_and_duplicates(db_path: Path) -> None:
    store = LocalTaskStore(db_path)
    await store.sign_up("ann@example.com", "secret1")

    with pytest.raises(AuthError, match="already registered"):
        await store.sign_up("ANN@example.com", "secret1")
    with pytest.raises(AuthError, match="at least 6"):
        await store.sign_up("bob@example.com", "123")
    with pytest.raises(AuthError, match="valid email"):
        await store.sign_up("not-an-email", "secret1")


@pytest.mark.asyncio
async def test_sign_in_with_wrong_password_or_unknown_user(db_path: Path) -> None:
    store = LocalTaskStore(db_path)
    await store.sign_up("ann@example.com", "secret1")

    with pytest.raises(AuthError, match="Invalid login credentials"):
        await store.sign_in("ann@example.com", "secret2")
    with pytest.raises(AuthError, match="Invalid login credentials"):
        await store.sign_in("nobody@example.com", "secret1")


@pytest.mark.asyncio
async def test_create_list_update_delete(db_path: Path) -> None:
    store = LocalTaskStore(db_path)
    session = await _registered(store)

    first = await store.create_task("  buy milk ", session)
    second = await store.create_task("pay rent", session)
    assert first.title == "buy milk"
    assert first.user_id == session.user_id

    rows = await store.list_tasks(session)
    assert [t.id for t in rows] == [second.id, first.id]

    await store.update_task(first.id, {"is_done": True})
    await store.update_task(second.id, {"title": "pay the rent"})
    rows = {t.id: t for t in await store.list_tasks(session)}
    assert rows[first.id].is_done is True
    assert rows[second.id].title == "pay the rent"

    await store.delete_task(first.id)
    assert [t.id for t in await store.list_tasks(session)] == [second.id]


@pytest.mark.asyncio
async def test_missing_rows_raise_not_found(db_path: Path) -> None:
    store = LocalTaskStore(db_path)
    session = await _registered(store)
    task = await store.create_task("x", session)
    await store.delete_task(task.id)

    with pytest.raises(NotFoundError):
        await store.delete_task(task.id)
    with pytest.raises(NotFoundError):
        await store.update_task(task.id, {"is_done": True})
    with pytest.raises(NotFoundError):
        await store.update_task("not-a-number", {"is_done": True})


@pytest.mark.asyncio
async def test_invalid_input_never_reaches_the_database(db_path: Path) -> None:
    store = LocalTaskStore(db_path)
    session = await _registered(store)
    task = await store.create_task("x", session)

    with pytest.raises(ValidationError):
        await store.create_task("   ", session)
    with pytest.raises(ValidationError):
        await store.update_task(task.id, {"title": " "})
    with pytest.raises(ValidationError):
        await store.update_task(task.id, {"user_id": "someone-else"})
    with pytest.raises(ValidationError):
        await store.update_task(task.id, {})

    assert [t.title for t in await store.list_tasks(session)] == ["x"]


@pytest.mark.asyncio
async def test_users_only_see_and_touch_their_own_rows(db_path: Path) -> None:
    ann_store = LocalTaskStore(db_path)
    bob_store = LocalTaskStore(db_path)
    ann = await _registered(ann_store, "ann@example.com")
    bob = await _registered(bob_store, "bob@example.com")

    ann_task = await ann_store.create_task("ann's", ann)
    await bob_store.create_task("bob's", bob)

    assert [t.title for t in await ann_store.list_tasks(ann)] == ["ann's"]
    assert [t.title for t in await bob_store.list_tasks(bob)] == ["bob's"]

    with pytest.raises(NotFoundError):
        await bob_store.update_task(ann_task.id, {"is_done": True})
    with pytest.raises(NotFoundError):
        await bob_store.delete_task(ann_task.id)


@pytest.mark.asyncio
async def test_session_persists_and_restores_across_instances(db_path: Path, session_path: Path) -> None:
    store = LocalTaskStore(db_path, session_path=session_path)
    session = await _registered(store)

    data = json.loads(session_path.read_text("utf-8"))
    assert data["user"]["email"] == "ann@example.com"

    restored = await LocalTaskStore(db_path, session_path=session_path).restore_session()
    assert restored is not None
    assert restored.user_id == session.user_id
    assert restored.access_token == session.access_token


@pytest.mark.asyncio
async def test_sign_out_revokes_token_and_forgets_file(db_path: Path, session_path: Path) -> None:
    store = LocalTaskStore(db_path, session_path=session_path)
    session = await _registered(store)

    await store.sign_out()

    assert not session_path.exists()
    with pytest.raises(SessionExpiredError):
        await store.list_tasks(session)
    assert await LocalTaskStore(db_path, session_path=session_path).restore_session() is None


@pytest.mark.asyncio
async def test_restore_discards_revoked_session_file(db_path: Path, session_path: Path) -> None:
    store = LocalTaskStore(db_path, session_path=session_path)
    await _registered(store)
    saved = session_path.read_text("utf-8")
    await store.sign_out()
    session_path.write_text(saved, "utf-8")

    assert await LocalTaskStore(db_path, session_path=session_path).restore_session() is None
    assert not session_path.exists()


@pytest.mark.asyncio
async def test_mutations_publish_change_events(db_path: Path) -> None:
    store = LocalTaskStore(db_path)
    session = await _registered(store)
    events: list[ChangeEvent] = []
    sub = store.subscribe_to_changes(events.append)

    task = await store.create_task("x", session)
    await store.update_task(task.id, {"is_done": True})
    await store.delete_task(task.id)

    assert [e.kind for e in events] == [ChangeKind.INSERT, ChangeKind.UPDATE, ChangeKind.DELETE]

    sub.dispose()
    await store.create_task("y", session)
    assert len(events) == 3


@pytest.mark.asyncio
async def test_sign_out_silences_subscriptions(db_path: Path) -> None:
    store = LocalTaskStore(db_path)
    await _registered(store)
    events: list[ChangeEvent] = []
    sub = store.subscribe_to_changes(events.append)

    await store.sign_out()

    assert not sub.active
    session = await store.sign_in("ann@example.com", "secret1")
    await store.create_task("after", session)
    assert events == []


@pytest.mark.asyncio
async def test_polling_feed_sees_changes_from_another_instance(db_path: Path) -> None:
    watcher = LocalTaskStore(db_path, poll_interval_seconds=0.05)
    writer = LocalTaskStore(db_path)
    await _registered(watcher)
    session = await writer.sign_in("ann@example.com", "secret1")

    seen = asyncio.Event()
    watcher.subscribe_to_changes(lambda event: seen.set())
    await asyncio.sleep(0.2)  # let the feed take its baseline

    await writer.create_task("from elsewhere", session)

    await asyncio.wait_for(seen.wait(), timeout=3.0)
    await watcher.aclose()


def test_schema_migration_adds_updated_at(db_path: Path) -> None:
    conn = sqlite3.connect(str(db_path))
    conn.execute(
        """
        CREATE TABLE tasks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            is_done INTEGER NOT NULL DEFAULT 0,
            user_id TEXT NOT NULL,
            created_at REAL NOT NULL
        )
        """
    )
    conn.execute("INSERT INTO tasks(title, user_id, created_at) VALUES ('old', 'u1', 1.0)")
    conn.commit()
    conn.close()

    LocalTaskStore(db_path)

    conn = sqlite3.connect(str(db_path))
    try:
        cols = {row[1] for row in conn.execute("PRAGMA table_info(tasks)")}
        assert "updated_at" in cols
        assert conn.execute("SELECT title FROM tasks").fetchone()[0] == "old"
    finally:
        conn.close()
