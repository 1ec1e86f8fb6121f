# src/tasklive/core/engine.py

"""
Reconciliation engine.

Owns the canonical task collection for the signed-in user and is the only
writer of it. Local intents go to the remote store; the collection changes
only when a full reload lands (or when state is cleared on sign-out /
identity change).

Ordering rules:
- at most one reload runs at a time; triggers arriving mid-reload collapse
  into a single follow-up run
- every identity change bumps a generation counter; reload results and
  change callbacks tagged with an older generation are dropped
- a failed mutation or reload leaves the collection exactly as it was
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable
from typing import Any

from .errors import (
    AuthError,
    NotFoundError,
    SessionExpiredError,
    TaskLiveError,
    ValidationError,
    friendly_error_message,
)
from .models import ChangeEvent, EditDraft, Session, Task, TaskFilter, TaskId, ViewState, require_title
from .ports import RemoteTaskStore, Subscription
from .projection import compute_stats, visible_tasks
from .session import SessionEvent, SessionHolder

logger = logging.getLogger(__name__)

SIGNUP_DONE_MESSAGE = "Signup done. Now login."

ViewListener = Callable[[], None]


class ReconciliationEngine:
    """
    Keeps the local task collection in step with the store for the signed-in user.

    Intents call the store and never touch the collection directly; the change
    notification that follows triggers a reload, which is the only writer.
    """

    def __init__(self, store: RemoteTaskStore, sessions: SessionHolder) -> None:
        self._store = store
        self._sessions = sessions

        # Canonical state
        self._tasks: tuple[Task, ...] = ()
        self._scope: Session | None = None
        self._active_user_id: str | None = None

        # Ephemeral UI state
        self._draft: EditDraft | None = None
        self._query = ""
        self._filter = TaskFilter.ALL
        self.title_input = ""
        self.message = ""
        self.last_error: BaseException | None = None
        self.loading = False

        # Sync machinery
        self._generation = 0
        self._subscription: Subscription | None = None
        self._reloading = False
        self._reload_pending = False
        self._background: set[asyncio.Task[Any]] = set()
        self._view_listeners: list[ViewListener] = []

        self._detach_sessions = sessions.add_listener(self._on_session_change)

    # ---- read-only accessors ----

    @property
    def tasks(self) -> tuple[Task, ...]:
        return self._tasks

    @property
    def draft(self) -> EditDraft | None:
        return self._draft

    @property
    def query(self) -> str:
        return self._query

    @property
    def filter(self) -> TaskFilter:
        return self._filter

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    def view(self) -> ViewState:
        identity = self._sessions.identity
        return ViewState(
            signed_in=identity is not None,
            email=identity.email if identity else None,
            tasks=visible_tasks(self._tasks, self._query, self._filter),
            stats=compute_stats(self._tasks),
            draft=self._draft,
            message=self.message,
            loading=self.loading,
            query=self._query,
            filter=self._filter,
            title_input=self.title_input,
        )

    def add_listener(self, listener: ViewListener) -> Callable[[], None]:
        """Register a re-render hook; returns a callable that removes it."""
        self._view_listeners.append(listener)

        def _remove() -> None:
            if listener in self._view_listeners:
                self._view_listeners.remove(listener)

        return _remove

    def _notify(self) -> None:
        for listener in list(self._view_listeners):
            try:
                listener()
            except Exception:
                logger.exception("View listener crashed")

    # ---- lifecycle ----

    async def _on_session_change(self, event: SessionEvent, session: Session | None) -> None:
        new_user = session.user_id if session else None
        if new_user is not None and new_user == self._active_user_id and self._subscription is not None:
            # Same identity (e.g. refreshed token): keep the live subscription.
            self._scope = session
            return
        await self.initialize(session)

    async def initialize(self, session: Session | None) -> None:
        self._teardown_subscription()
        self._generation += 1
        self._reload_pending = False

        new_user = session.user_id if session else None
        if new_user != self._active_user_id:
            self._clear_local_state()
        self._active_user_id = new_user
        self._scope = session

        if session is None:
            self._notify()
            return

        generation = self._generation
        logger.info("Initializing sync for user=%s generation=%s", session.identity.email, generation)
        try:
            self._subscription = self._store.subscribe_to_changes(
                lambda event: self._on_change(event, generation)
            )
        except TaskLiveError as exc:
            # Still load once; the user can /reload manually without live updates.
            logger.warning("Change subscription failed: %s", exc)
            self._record_error(exc)

        await self.reload()

    async def aclose(self) -> None:
        """Component teardown: detach from the session holder and stop background work."""
        self._detach_sessions()
        self._teardown_subscription()
        self._generation += 1
        self._reload_pending = False
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._view_listeners.clear()

    async def wait_idle(self) -> None:
        """Wait until no notification-triggered reload is running or scheduled."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _teardown_subscription(self) -> None:
        sub, self._subscription = self._subscription, None
        if sub is not None:
            sub.dispose()

    def _clear_local_state(self) -> None:
        self._tasks = ()
        self._draft = None
        self._query = ""
        self._filter = TaskFilter.ALL
        self.title_input = ""
        self.loading = False

    # ---- change notifications ----

    def _on_change(self, event: ChangeEvent, generation: int) -> None:
        if generation != self._generation:
            logger.debug("Ignoring change from stale subscription generation=%s", generation)
            return
        if self._reloading:
            self._reload_pending = True
            return
        logger.debug("Change notification kind=%s -> reload", event.kind.value)
        self._spawn(self.reload())

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ---- reload ----

    async def reload(self) -> bool:
        """
        Replace the collection with the store's current view.

        Returns True when the last executed run applied its result. A call made
        while another reload is in flight only schedules the follow-up run.
        """
        if self._scope is None:
            return False
        if self._reloading:
            self._reload_pending = True
            return True

        self._reloading = True
        applied = False
        try:
            while True:
                self._reload_pending = False
                applied = await self._reload_once()
                if not self._reload_pending:
                    break
                logger.debug("Running coalesced follow-up reload")
        finally:
            self._reloading = False
            self.loading = False
            self._notify()
        return applied

    async def _reload_once(self) -> bool:
        scope = self._scope
        if scope is None:
            return False
        generation = self._generation

        self.loading = True
        self._notify()
        try:
            rows = await self._store.list_tasks(scope)
        except SessionExpiredError as exc:
            if generation == self._generation:
                self._record_error(exc)
                await self._sessions.invalidate()
            return False
        except TaskLiveError as exc:
            if generation == self._generation:
                logger.warning("Reload failed, keeping %d cached tasks: %s", len(self._tasks), exc)
                self._record_error(exc)
            return False
        except Exception as exc:
            logger.exception("Reload crashed")
            if generation == self._generation:
                self._record_error(exc)
            return False

        if generation != self._generation or self._scope is None:
            logger.info("Discarding stale reload result (generation %s, now %s)", generation, self._generation)
            return False

        self._tasks = self._canonicalize(rows, scope.user_id)
        logger.debug("Reload applied: %d tasks", len(self._tasks))
        return True

    @staticmethod
    def _canonicalize(rows: Iterable[Task], user_id: str) -> tuple[Task, ...]:
        seen: set[TaskId] = set()
        out: list[Task] = []
        for task in rows:
            if task.user_id != user_id:
                logger.warning("Dropping task id=%s owned by another user", task.id)
                continue
            if task.id in seen:
                continue
            seen.add(task.id)
            out.append(task)
        # Stable: equal timestamps keep the store's order.
        out.sort(key=lambda t: t.created_at, reverse=True)
        return tuple(out)

    # ---- error plumbing ----

    def _begin_intent(self) -> None:
        self.message = ""
        self.last_error = None

    def _record_error(self, exc: BaseException) -> None:
        self.last_error = exc
        self.message = friendly_error_message(exc)

    def _fail(self, op: str, exc: BaseException) -> bool:
        if isinstance(exc, TaskLiveError):
            logger.info("%s failed: %s", op, exc)
        else:
            logger.exception("%s crashed", op)
        self._record_error(exc)
        self._notify()
        return False

    def _require_scope(self) -> Session:
        if self._scope is None:
            raise AuthError("Not signed in.")
        return self._scope

    def _resolve(self, task: Task | TaskId) -> Task:
        if isinstance(task, Task):
            return task
        for t in self._tasks:
            if t.id == task:
                return t
        raise NotFoundError(f"Task {task} not found.")

    # ---- identity intents ----

    async def restore(self) -> bool:
        """Pick up a persisted session from a previous run, if the store still accepts it."""
        self._begin_intent()
        try:
            await self._sessions.restore()
        except Exception as exc:
            return self._fail("restore", exc)
        self._notify()
        return True

    async def sign_up(self, email: str, password: str) -> bool:
        self._begin_intent()
        try:
            session = await self._sessions.sign_up(email, password)
        except Exception as exc:
            return self._fail("sign_up", exc)
        if session is None:
            self.message = SIGNUP_DONE_MESSAGE
        self._notify()
        return True

    async def sign_in(self, email: str, password: str) -> bool:
        self._begin_intent()
        try:
            await self._sessions.sign_in(email, password)
        except Exception as exc:
            return self._fail("sign_in", exc)
        self._notify()
        return True

    async def sign_out(self) -> bool:
        self._begin_intent()
        self._teardown_subscription()
        self._generation += 1
        self._reload_pending = False
        self._scope = None
        self._active_user_id = None
        self._clear_local_state()
        self._notify()
        try:
            await self._sessions.sign_out()
        except Exception as exc:
            return self._fail("sign_out", exc)
        return True

    # ---- task intents ----

    def set_title_input(self, text: str) -> None:
        self.title_input = text
        self._notify()

    async def add_task(self, title: str | None = None) -> bool:
        self._begin_intent()
        if title is not None:
            self.title_input = title
        try:
            clean = require_title(self.title_input)
            scope = self._require_scope()
            await self._store.create_task(clean, scope)
        except Exception as exc:
            return self._fail("add_task", exc)
        # No local append: the change notification + reload brings the row in.
        self.title_input = ""
        self._notify()
        return True

    async def toggle_done(self, task: Task | TaskId) -> bool:
        self._begin_intent()
        try:
            current = self._resolve(task)
            await self._store.update_task(current.id, {"is_done": not current.is_done})
        except Exception as exc:
            return self._fail("toggle_done", exc)
        self._notify()
        return True

    async def delete_task(self, task: Task | TaskId) -> bool:
        self._begin_intent()
        task_id = task.id if isinstance(task, Task) else task
        try:
            await self._store.delete_task(task_id)
        except NotFoundError:
            logger.info("Task %s already deleted", task_id)
        except Exception as exc:
            return self._fail("delete_task", exc)
        if self._draft is not None and self._draft.task_id == task_id:
            self._draft = None
        self._notify()
        return True

    # ---- edit draft ----

    def start_edit(self, task: Task | TaskId) -> bool:
        self._begin_intent()
        try:
            current = self._resolve(task)
        except NotFoundError as exc:
            return self._fail("start_edit", exc)
        self._draft = EditDraft(task_id=current.id, title=current.title)
        self._notify()
        return True

    def set_draft_title(self, text: str) -> None:
        if self._draft is None:
            return
        self._draft = EditDraft(task_id=self._draft.task_id, title=text)
        self._notify()

    def cancel_edit(self) -> None:
        self._draft = None
        self._notify()

    async def save_edit(self, task_id: TaskId, new_title: str | None = None) -> bool:
        self._begin_intent()
        draft = self._draft
        if new_title is None:
            new_title = draft.title if draft is not None and draft.task_id == task_id else ""
        try:
            clean = require_title(new_title)
        except ValidationError as exc:
            # Draft untouched so the user keeps what they had.
            return self._fail("save_edit", exc)

        try:
            await self._store.update_task(task_id, {"title": clean})
        except Exception as exc:
            if self._draft is not None and self._draft.task_id == task_id:
                self._draft = EditDraft(task_id=task_id, title=new_title)
            return self._fail("save_edit", exc)

        if self._draft is not None and self._draft.task_id == task_id:
            self._draft = None
        self._notify()
        return True

    # ---- view controls ----

    def set_query(self, text: str) -> None:
        self._query = text or ""
        self._notify()

    def set_filter(self, mode: TaskFilter | str) -> bool:
        try:
            self._filter = TaskFilter.parse(mode)
        except ValueError:
            return self._fail("set_filter", ValidationError(f"Unknown filter: {mode!r} (use all, pending or done)."))
        self._notify()
        return True

    def clear_message(self) -> None:
        self.message = ""
        self.last_error = None
        self._notify()
