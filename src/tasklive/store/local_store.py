# src/tasklive/store/local_store.py

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import hmac
import logging
import secrets
import sqlite3
import time
import uuid
from collections.abc import Callable, Hashable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from ..core.errors import AuthError, NotFoundError, SessionExpiredError, StoreError
from ..core.models import (
    ChangeEvent,
    ChangeKind,
    Identity,
    Session,
    Task,
    TaskId,
    clean_update_fields,
    parse_timestamp,
    require_title,
)
from ..core.ports import ChangeListener
from .change_feed import ChangeBroadcaster, ListenerSubscription, PollingChangeFeed
from .session_file import clear_session, load_session, save_session

logger = logging.getLogger(__name__)

T = TypeVar("T")

PBKDF2_ITERATIONS = 200_000
MIN_PASSWORD_LENGTH = 6


def hash_password(password: str, salt: bytes) -> str:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS).hex()


class LocalTaskStore:
    """
    SQLite-backed task store with its own password accounts.

    Several processes may share one database file; the optional polling feed
    is how each of them notices the others' writes.

    Every task statement is scoped to the user behind the session token, so a
    session only ever reads or mutates its own rows. Schema changes are
    additive: tables are created if missing and new columns are added after a
    PRAGMA table_info check.

    Each sync helper opens and closes its own connection and runs in a worker
    thread; change events are published back on the event loop thread.
    """

    def __init__(
        self,
        db_path: str | Path = "tasks.sqlite3",
        *,
        session_path: Path | None = None,
        poll_interval_seconds: float = 0.0,
    ) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._session_path = session_path
        self._session: Session | None = None

        self._changes = ChangeBroadcaster()
        self._feed: PollingChangeFeed | None = None
        if poll_interval_seconds > 0:
            self._feed = PollingChangeFeed(
                self._fingerprint,
                self._changes.publish,
                interval_seconds=poll_interval_seconds,
            )
            self._changes.on_empty(self._feed.stop)

        self._ensure_schema()
        logger.info("LocalTaskStore ready db=%s", self._db_path)

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    salt TEXT NOT NULL,
                    created_at REAL NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_sessions (
                    token TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    created_at REAL NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    is_done INTEGER NOT NULL DEFAULT 0,
                    user_id TEXT NOT NULL,
                    created_at REAL NOT NULL
                )
                """
            )

            # Additive migrations for databases created by older versions.
            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}
            if "updated_at" not in cols:
                cur.execute("ALTER TABLE tasks ADD COLUMN updated_at REAL NOT NULL DEFAULT 0")
                logger.info("LocalTaskStore migration: added column updated_at")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_user_created ON tasks(user_id, created_at)")
            conn.commit()
        finally:
            conn.close()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            logger.exception("SQLite failure in %s", getattr(fn, "__name__", fn))
            raise StoreError(f"Local store error: {e}") from e

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=int(row["id"]),
            title=str(row["title"] or ""),
            is_done=bool(row["is_done"]),
            user_id=str(row["user_id"]),
            created_at=_ts(row["created_at"]),
        )

    @staticmethod
    def _user_for_token(conn: sqlite3.Connection, token: str) -> sqlite3.Row | None:
        cur = conn.execute(
            """
            SELECT u.id, u.email
            FROM auth_sessions s JOIN users u ON u.id = s.user_id
            WHERE s.token = ?
            """,
            (token,),
        )
        return cur.fetchone()

    def _require_user_id(self, conn: sqlite3.Connection, scope: Session | None) -> str:
        if scope is None:
            raise AuthError("Not signed in.")
        row = self._user_for_token(conn, scope.access_token)
        if row is None:
            raise SessionExpiredError("Session expired. Please log in again.")
        return str(row["id"])

    # ---- identity (sync helpers) ----

    def _sign_up_sync(self, email: str, password: str) -> None:
        salt = secrets.token_bytes(16)
        conn = self._get_conn()
        try:
            try:
                conn.execute(
                    "INSERT INTO users(id, email, password_hash, salt, created_at) VALUES (?, ?, ?, ?, ?)",
                    (str(uuid.uuid4()), email, hash_password(password, salt), salt.hex(), time.time()),
                )
            except sqlite3.IntegrityError as e:
                raise AuthError("User already registered") from e
            conn.commit()
        finally:
            conn.close()

    def _sign_in_sync(self, email: str, password: str) -> Session:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT id, email, password_hash, salt FROM users WHERE email = ?", (email,)
            ).fetchone()
            if row is None:
                raise AuthError("Invalid login credentials")
            expected = str(row["password_hash"])
            actual = hash_password(password, bytes.fromhex(str(row["salt"])))
            if not hmac.compare_digest(expected, actual):
                raise AuthError("Invalid login credentials")

            token = secrets.token_urlsafe(32)
            conn.execute(
                "INSERT INTO auth_sessions(token, user_id, created_at) VALUES (?, ?, ?)",
                (token, row["id"], time.time()),
            )
            conn.commit()
            return Session(identity=Identity(id=str(row["id"]), email=str(row["email"])), access_token=token)
        finally:
            conn.close()

    def _revoke_sync(self, token: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM auth_sessions WHERE token = ?", (token,))
            conn.commit()
        finally:
            conn.close()

    def _validate_sync(self, session: Session) -> Session | None:
        conn = self._get_conn()
        try:
            row = self._user_for_token(conn, session.access_token)
            if row is None:
                return None
            return Session(
                identity=Identity(id=str(row["id"]), email=str(row["email"])),
                access_token=session.access_token,
            )
        finally:
            conn.close()

    # ---- tasks (sync helpers) ----

    def _list_sync(self, scope: Session) -> list[Task]:
        conn = self._get_conn()
        try:
            user_id = self._require_user_id(conn, scope)
            cur = conn.execute(
                """
                SELECT id, title, is_done, user_id, created_at
                FROM tasks
                WHERE user_id = ?
                ORDER BY created_at DESC, id DESC
                """,
                (user_id,),
            )
            return [self._row_to_task(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def _create_sync(self, title: str, scope: Session) -> Task:
        now = time.time()
        conn = self._get_conn()
        try:
            user_id = self._require_user_id(conn, scope)
            cur = conn.execute(
                "INSERT INTO tasks(title, is_done, user_id, created_at, updated_at) VALUES (?, 0, ?, ?, ?)",
                (title, user_id, now, now),
            )
            conn.commit()
            rowid = cur.lastrowid
            if rowid is None:
                raise StoreError("SQLite did not return lastrowid for tasks insert")
            logger.debug("Task added id=%s user=%s", rowid, user_id)
            return Task(id=int(rowid), title=title, is_done=False, user_id=user_id, created_at=_ts(now))
        finally:
            conn.close()

    def _update_sync(self, task_id: TaskId, fields: dict[str, Any], scope: Session | None) -> None:
        sets: list[str] = []
        params: list[Any] = []
        if "title" in fields:
            sets.append("title = ?")
            params.append(fields["title"])
        if "is_done" in fields:
            sets.append("is_done = ?")
            params.append(1 if fields["is_done"] else 0)
        sets.append("updated_at = ?")
        params.append(time.time())

        conn = self._get_conn()
        try:
            user_id = self._require_user_id(conn, scope)
            cur = conn.execute(
                f"UPDATE tasks SET {', '.join(sets)} WHERE id = ? AND user_id = ?",
                (*params, _int_id(task_id), user_id),
            )
            conn.commit()
            if cur.rowcount == 0:
                raise NotFoundError(f"Task {task_id} not found.")
        finally:
            conn.close()

    def _delete_sync(self, task_id: TaskId, scope: Session | None) -> None:
        conn = self._get_conn()
        try:
            user_id = self._require_user_id(conn, scope)
            cur = conn.execute("DELETE FROM tasks WHERE id = ? AND user_id = ?", (_int_id(task_id), user_id))
            conn.commit()
            if cur.rowcount == 0:
                raise NotFoundError(f"Task {task_id} not found.")
        finally:
            conn.close()

    def _fingerprint_sync(self, scope: Session) -> Hashable:
        conn = self._get_conn()
        try:
            user_id = self._require_user_id(conn, scope)
            row = conn.execute(
                """
                SELECT COUNT(*), COALESCE(MAX(updated_at), 0), COALESCE(SUM(id), 0)
                FROM tasks
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
            return tuple(row)
        finally:
            conn.close()

    async def _fingerprint(self) -> Hashable | None:
        scope = self._session
        if scope is None:
            return None
        return await self._run(self._fingerprint_sync, scope)

    # ---- public API: identity ----

    async def sign_up(self, email: str, password: str) -> Session | None:
        email = _normalize_email(email)
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise AuthError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters.")
        await self._run(self._sign_up_sync, email, password)
        logger.info("Local user registered email=%s", email)
        # Like an email-confirmation backend: the user logs in explicitly afterwards.
        return None

    async def sign_in(self, email: str, password: str) -> Session:
        email = _normalize_email(email)
        if not password:
            raise AuthError("Password is required.")
        session = await self._run(self._sign_in_sync, email, password)
        self._session = session
        save_session(self._session_path, session)
        return session

    async def sign_out(self) -> None:
        # Synchronous teardown first: no notification may outlive the session.
        self._changes.dispose_all()
        if self._feed is not None:
            self._feed.stop()
        session, self._session = self._session, None
        clear_session(self._session_path)
        if session is not None:
            await self._run(self._revoke_sync, session.access_token)

    async def restore_session(self) -> Session | None:
        stored = load_session(self._session_path)
        if stored is None:
            return None
        session = await self._run(self._validate_sync, stored)
        if session is None:
            logger.info("Persisted session is no longer valid; discarding it")
            clear_session(self._session_path)
            return None
        self._session = session
        return session

    # ---- public API: tasks ----

    async def list_tasks(self, scope: Session) -> list[Task]:
        return await self._run(self._list_sync, scope)

    async def create_task(self, title: str, scope: Session) -> Task:
        clean = require_title(title)
        task = await self._run(self._create_sync, clean, scope)
        self._changes.publish(ChangeEvent(kind=ChangeKind.INSERT, task_id=task.id))
        return task

    async def update_task(self, task_id: TaskId, fields: Mapping[str, Any]) -> None:
        clean = clean_update_fields(fields)
        await self._run(self._update_sync, task_id, clean, self._session)
        self._changes.publish(ChangeEvent(kind=ChangeKind.UPDATE, task_id=task_id))

    async def delete_task(self, task_id: TaskId) -> None:
        await self._run(self._delete_sync, task_id, self._session)
        self._changes.publish(ChangeEvent(kind=ChangeKind.DELETE, task_id=task_id))

    def subscribe_to_changes(self, on_event: ChangeListener) -> ListenerSubscription:
        sub = self._changes.subscribe(on_event)
        if self._feed is not None and self._session is not None:
            self._feed.start()
        return sub

    async def aclose(self) -> None:
        self._changes.dispose_all()
        if self._feed is not None:
            self._feed.stop()


def _ts(raw: float | None) -> datetime:
    return parse_timestamp(float(raw or 0.0))


def _int_id(task_id: TaskId) -> int:
    try:
        return int(task_id)
    except (TypeError, ValueError) as e:
        raise NotFoundError(f"Task {task_id} not found.") from e


def _normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise AuthError("A valid email address is required.")
    return email
