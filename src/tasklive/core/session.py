# src/tasklive/core/session.py

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum

from .errors import TaskLiveError
from .models import Identity, Session
from .ports import RemoteTaskStore

logger = logging.getLogger(__name__)


class SessionEvent(StrEnum):
    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"
    RESTORED = "restored"
    INVALIDATED = "invalidated"


SessionListener = Callable[[SessionEvent, Session | None], Awaitable[None]]


class SessionHolder:
    """
    Owns the current authentication identity (or none).

    Every transition goes through the store's identity operations and is then
    broadcast to listeners, awaited in registration order.
    """

    def __init__(self, store: RemoteTaskStore) -> None:
        self._store = store
        self._session: Session | None = None
        self._listeners: list[SessionListener] = []

    @property
    def current(self) -> Session | None:
        return self._session

    @property
    def identity(self) -> Identity | None:
        return self._session.identity if self._session else None

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def _transition(self, event: SessionEvent, session: Session | None) -> None:
        self._session = session
        logger.info(
            "Session %s user=%s",
            event.value,
            session.identity.email if session else None,
        )
        for listener in list(self._listeners):
            await listener(event, session)

    async def restore(self) -> Session | None:
        session = await self._store.restore_session()
        if session is not None:
            await self._transition(SessionEvent.RESTORED, session)
        return session

    async def sign_up(self, email: str, password: str) -> Session | None:
        session = await self._store.sign_up(email, password)
        if session is not None:
            await self._transition(SessionEvent.SIGNED_IN, session)
        return session

    async def sign_in(self, email: str, password: str) -> Session:
        session = await self._store.sign_in(email, password)
        await self._transition(SessionEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        """Local state always ends signed out; a remote failure is re-raised afterwards."""
        try:
            await self._store.sign_out()
        finally:
            await self._transition(SessionEvent.SIGNED_OUT, None)

    async def invalidate(self) -> None:
        """Drop a session the store no longer accepts (expired or revoked token)."""
        if self._session is None:
            return
        try:
            # Lets the store forget its persisted copy; the remote side already rejected it.
            await self._store.sign_out()
        except TaskLiveError:
            logger.debug("sign_out after invalidation failed", exc_info=True)
        await self._transition(SessionEvent.INVALIDATED, None)
