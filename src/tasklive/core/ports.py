# src/tasklive/core/ports.py

"""
Ports (interfaces) used by the core.

The core depends on Protocols instead of concrete implementations.
This keeps stores swappable (SQLite, Supabase) and makes testing easier.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol

from .models import ChangeEvent, Session, Task, TaskId

ChangeListener = Callable[[ChangeEvent], None]


class Subscription(Protocol):
    """Handle returned by subscribe_to_changes. dispose() must be idempotent."""

    def dispose(self) -> None: ...


class RemoteTaskStore(Protocol):
    """
    Authoritative task store + identity provider.

    Row scoping is the store's job: a session only ever observes its own rows.
    """

    # Identity
    async def sign_up(self, email: str, password: str) -> Session | None: ...
    async def sign_in(self, email: str, password: str) -> Session: ...
    async def sign_out(self) -> None: ...
    async def restore_session(self) -> Session | None: ...

    # Tasks
    async def list_tasks(self, scope: Session) -> list[Task]: ...
    async def create_task(self, title: str, scope: Session) -> Task: ...
    async def update_task(self, task_id: TaskId, fields: Mapping[str, Any]) -> None: ...
    async def delete_task(self, task_id: TaskId) -> None: ...

    # Change notifications (coarse, table-scoped)
    def subscribe_to_changes(self, on_event: ChangeListener) -> Subscription: ...

    async def aclose(self) -> None: ...
