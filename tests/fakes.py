# tests/fakes.py

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from tasklive.core.errors import AuthError, NotFoundError
from tasklive.core.models import (
    ChangeEvent,
    ChangeKind,
    Identity,
    Session,
    Task,
    TaskId,
    clean_update_fields,
    require_title,
)
from tasklive.core.ports import ChangeListener
from tasklive.store.change_feed import ChangeBroadcaster, ListenerSubscription

BASE_TIME = datetime(2026, 1, 1, tzinfo=UTC)


def make_task(task_id: int, title: str, *, is_done: bool = False, user_id: str = "u-ann", minutes: int = 0) -> Task:
    return Task(
        id=task_id,
        title=title,
        is_done=is_done,
        user_id=user_id,
        created_at=BASE_TIME + timedelta(minutes=minutes or task_id),
    )


class FakeTaskStore:
    """
    In-memory RemoteTaskStore used for engine unit tests.

    - Captures calls for assertions
    - list_gate lets a test hold list_tasks "in flight"
    - fail lets a test make the next call of an operation raise
    - every successful mutation publishes a coarse change event
    """

    def __init__(self, users: Mapping[str, str] | None = None) -> None:
        self.users = dict(users or {"ann@example.com": "secret1", "bob@example.com": "secret2"})
        self.rows: dict[int, Task] = {}
        self.calls: list[tuple[str, Any]] = []
        self.fail: dict[str, Exception] = {}
        self.session: Session | None = None
        self.persisted: Session | None = None
        self.sign_up_returns_session = False

        self.list_gate: asyncio.Event | None = None
        self.list_started = asyncio.Event()
        self.list_calls = 0

        self._changes = ChangeBroadcaster()
        self._ids = itertools.count(1)

    # ---- helpers for tests ----

    @property
    def listener_count(self) -> int:
        return len(self._changes)

    def emit(self, kind: ChangeKind = ChangeKind.UNKNOWN) -> None:
        self._changes.publish(ChangeEvent(kind=kind))

    def seed(self, *tasks: Task) -> None:
        for t in tasks:
            self.rows[int(t.id)] = t

    def _maybe_fail(self, op: str) -> None:
        exc = self.fail.pop(op, None)
        if exc is not None:
            raise exc

    @staticmethod
    def _session_for(email: str) -> Session:
        user_id = "u-" + email.split("@")[0]
        return Session(identity=Identity(id=user_id, email=email), access_token=f"tok-{user_id}")

    # ---- identity ----

    async def sign_up(self, email: str, password: str) -> Session | None:
        self.calls.append(("sign_up", email))
        self._maybe_fail("sign_up")
        if email in self.users:
            raise AuthError("User already registered")
        self.users[email] = password
        if self.sign_up_returns_session:
            self.session = self._session_for(email)
            return self.session
        return None

    async def sign_in(self, email: str, password: str) -> Session:
        self.calls.append(("sign_in", email))
        self._maybe_fail("sign_in")
        if self.users.get(email) != password:
            raise AuthError("Invalid login credentials")
        self.session = self._session_for(email)
        return self.session

    async def sign_out(self) -> None:
        self.calls.append(("sign_out", None))
        self._changes.dispose_all()
        self.session = None
        self._maybe_fail("sign_out")

    async def restore_session(self) -> Session | None:
        self.calls.append(("restore_session", None))
        self._maybe_fail("restore_session")
        self.session = self.persisted
        return self.persisted

    # ---- tasks ----

    async def list_tasks(self, scope: Session) -> list[Task]:
        self.calls.append(("list_tasks", scope.user_id))
        self.list_calls += 1
        self.list_started.set()
        if self.list_gate is not None:
            await self.list_gate.wait()
        self._maybe_fail("list_tasks")
        mine = [t for t in self.rows.values() if t.user_id == scope.user_id]
        return sorted(mine, key=lambda t: t.created_at, reverse=True)

    async def create_task(self, title: str, scope: Session) -> Task:
        self.calls.append(("create_task", title))
        clean = require_title(title)
        self._maybe_fail("create_task")
        task_id = next(self._ids) + 1000
        task = Task(
            id=task_id,
            title=clean,
            user_id=scope.user_id,
            created_at=BASE_TIME + timedelta(days=1, seconds=task_id),
        )
        self.rows[task_id] = task
        self.emit(ChangeKind.INSERT)
        return task

    async def update_task(self, task_id: TaskId, fields: Mapping[str, Any]) -> None:
        self.calls.append(("update_task", (task_id, dict(fields))))
        clean = clean_update_fields(fields)
        self._maybe_fail("update_task")
        current = self.rows.get(int(task_id))
        if current is None:
            raise NotFoundError(f"Task {task_id} not found.")
        self.rows[int(task_id)] = Task(
            id=current.id,
            title=clean.get("title", current.title),
            is_done=clean.get("is_done", current.is_done),
            user_id=current.user_id,
            created_at=current.created_at,
        )
        self.emit(ChangeKind.UPDATE)

    async def delete_task(self, task_id: TaskId) -> None:
        self.calls.append(("delete_task", task_id))
        self._maybe_fail("delete_task")
        if self.rows.pop(int(task_id), None) is None:
            raise NotFoundError(f"Task {task_id} not found.")
        self.emit(ChangeKind.DELETE)

    def subscribe_to_changes(self, on_event: ChangeListener) -> ListenerSubscription:
        self.calls.append(("subscribe", None))
        self._maybe_fail("subscribe")
        return self._changes.subscribe(on_event)

    async def aclose(self) -> None:
        self._changes.dispose_all()

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)
