# src/tasklive/core/models.py

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from .errors import ValidationError

TaskId = int | str

UPDATABLE_FIELDS = frozenset({"title", "is_done"})


class TaskFilter(StrEnum):
    """Visible-list filter. Free transitions, reset to ALL on sign-out."""

    ALL = "all"
    PENDING = "pending"
    DONE = "done"

    @classmethod
    def parse(cls, raw: str | TaskFilter) -> TaskFilter:
        if isinstance(raw, TaskFilter):
            return raw
        return cls((raw or "").strip().lower())


class ChangeKind(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class Task:
    id: TaskId
    title: str
    user_id: str
    created_at: datetime
    is_done: bool = False


@dataclass(slots=True, frozen=True)
class Identity:
    id: str
    email: str


@dataclass(slots=True, frozen=True)
class Session:
    identity: Identity
    access_token: str
    refresh_token: str | None = None

    @property
    def user_id(self) -> str:
        return self.identity.id


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """
    Coarse change signal from the store.

    Carries no guaranteed row payload: consumers treat it as "something in the
    tasks table changed" and reload.
    """

    kind: ChangeKind = ChangeKind.UNKNOWN
    task_id: TaskId | None = None


@dataclass(slots=True, frozen=True)
class EditDraft:
    task_id: TaskId
    title: str


@dataclass(slots=True, frozen=True)
class Stats:
    total: int
    done: int
    pending: int
    percent: int


@dataclass(slots=True, frozen=True)
class ViewState:
    """Everything the presentation layer needs to render one frame."""

    signed_in: bool
    email: str | None
    tasks: tuple[Task, ...]
    stats: Stats
    draft: EditDraft | None
    message: str
    loading: bool
    query: str
    filter: TaskFilter
    title_input: str


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(raw: str | float | int | datetime | None) -> datetime:
    """
    Accept the timestamp shapes our stores produce:
    - epoch seconds (SQLite REAL columns)
    - ISO 8601 strings (PostgREST timestamptz, possibly with a trailing 'Z')
    Naive values are assumed to be UTC.
    """
    if raw is None:
        return datetime.fromtimestamp(0, UTC)
    if isinstance(raw, datetime):
        dt = raw
    elif isinstance(raw, (int, float)):
        return datetime.fromtimestamp(float(raw), UTC)
    else:
        s = raw.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def require_title(raw: str | None) -> str:
    """Trimmed title; empty (or whitespace-only) titles never reach a store."""
    title = (raw or "").strip()
    if not title:
        raise ValidationError("Task title cannot be empty.")
    return title


def clean_update_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Validate a partial update: only title / is_done, title never empty."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
    out: dict[str, Any] = {}
    if "title" in fields:
        out["title"] = require_title(str(fields["title"] or ""))
    if "is_done" in fields:
        out["is_done"] = bool(fields["is_done"])
    if not out:
        raise ValidationError("Nothing to update.")
    return out
