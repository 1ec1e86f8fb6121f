# src/tasklive/core/errors.py

"""
Error taxonomy shared by the stores and the reconciliation engine.

Adapters translate backend failures (sqlite3, httpx, HTTP status codes) into
these classes; the engine turns them into a single user-visible message.
"""

from __future__ import annotations


class TaskLiveError(Exception):
    """Base class for all expected, user-reportable failures."""


class ValidationError(TaskLiveError):
    """Input rejected before any remote call (empty title, bad filter...)."""


class StoreError(TaskLiveError):
    """Network or store failure on list/create/update/delete/subscribe."""


class SessionExpiredError(StoreError):
    """The store rejected the session credentials on a data call."""


class AuthError(TaskLiveError):
    """Sign-up / sign-in failure."""


class NotFoundError(TaskLiveError):
    """The row being mutated is no longer present (e.g. concurrent delete)."""


def friendly_error_message(exc: BaseException) -> str:
    """Short one-line text for the presentation layer."""
    text = str(exc).strip()

    if isinstance(exc, SessionExpiredError):
        return text or "Your session has expired. Please log in again."
    if isinstance(exc, NotFoundError):
        return text or "That task no longer exists."
    if isinstance(exc, AuthError):
        return text or "Authentication failed."
    if isinstance(exc, ValidationError):
        return text or "Invalid input."
    if isinstance(exc, StoreError):
        return text or "Could not reach the task store. Try again."
    return "Internal error. See logs for details."
