# src/tasklive/core/projection.py

"""
View projection: pure derivations over the canonical task collection.

Everything here is side-effect free and memoized on
(collection, query, filter). The collection is an immutable tuple of frozen
Task objects, so it can be used directly as a cache key.
"""

from __future__ import annotations

from functools import lru_cache

from .models import Stats, Task, TaskFilter


def completion_percent(done: int, total: int) -> int:
    """round(100 * done / total), halves rounded up; 0 for an empty collection."""
    if total <= 0:
        return 0
    return (200 * done + total) // (2 * total)


@lru_cache(maxsize=64)
def _stats(tasks: tuple[Task, ...]) -> Stats:
    total = len(tasks)
    done = sum(1 for t in tasks if t.is_done)
    return Stats(
        total=total,
        done=done,
        pending=total - done,
        percent=completion_percent(done, total),
    )


def compute_stats(tasks: tuple[Task, ...]) -> Stats:
    """{total, done, pending, percent}; done + pending == total always."""
    return _stats(tuple(tasks))


def normalize_query(query: str) -> str:
    return (query or "").strip().lower()


def matches(task: Task, query: str, task_filter: TaskFilter) -> bool:
    """Query (already normalized) AND filter predicate for a single task."""
    if query and query not in task.title.lower():
        return False
    if task_filter == TaskFilter.DONE:
        return task.is_done
    if task_filter == TaskFilter.PENDING:
        return not task.is_done
    return True


@lru_cache(maxsize=64)
def _visible(tasks: tuple[Task, ...], query: str, task_filter: TaskFilter) -> tuple[Task, ...]:
    return tuple(t for t in tasks if matches(t, query, task_filter))


def visible_tasks(
    tasks: tuple[Task, ...],
    query: str = "",
    task_filter: TaskFilter | str = TaskFilter.ALL,
) -> tuple[Task, ...]:
    """Filtered view in collection order (newest first). Never re-sorts."""
    return _visible(tuple(tasks), normalize_query(query), TaskFilter.parse(task_filter))
