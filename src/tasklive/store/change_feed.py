# src/tasklive/store/change_feed.py

"""
Change notification plumbing shared by the stores.

- ChangeBroadcaster fans a ChangeEvent out to subscribed listeners.
- PollingChangeFeed detects changes made elsewhere (other processes, other
  devices) by polling a cheap fingerprint and publishing a coarse event when
  it moves. Notifications never carry rows; consumers reload.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable, Hashable

from ..core.models import ChangeEvent, ChangeKind
from ..core.ports import ChangeListener

logger = logging.getLogger(__name__)

Fingerprint = Callable[[], Awaitable[Hashable | None]]


class ListenerSubscription:
    """Subscription handle; dispose() is idempotent."""

    def __init__(self, on_dispose: Callable[[], None]) -> None:
        self._on_dispose: Callable[[], None] | None = on_dispose

    @property
    def active(self) -> bool:
        return self._on_dispose is not None

    def dispose(self) -> None:
        cb, self._on_dispose = self._on_dispose, None
        if cb is not None:
            cb()


class ChangeBroadcaster:
    def __init__(self) -> None:
        self._listeners: dict[int, ChangeListener] = {}
        self._subs: dict[int, ListenerSubscription] = {}
        self._ids = itertools.count(1)
        self._on_empty: list[Callable[[], None]] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def on_empty(self, callback: Callable[[], None]) -> None:
        """Called whenever the last listener goes away."""
        self._on_empty.append(callback)

    def subscribe(self, listener: ChangeListener) -> ListenerSubscription:
        key = next(self._ids)

        def _remove() -> None:
            self._listeners.pop(key, None)
            self._subs.pop(key, None)
            if not self._listeners:
                for cb in list(self._on_empty):
                    cb()

        sub = ListenerSubscription(_remove)
        self._listeners[key] = listener
        self._subs[key] = sub
        return sub

    def publish(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners.values()):
            try:
                listener(event)
            except Exception:
                logger.exception("Change listener crashed kind=%s", event.kind.value)

    def dispose_all(self) -> None:
        for sub in list(self._subs.values()):
            sub.dispose()


class PollingChangeFeed:
    """
    Polling change detector.

    Every interval_seconds:
    - compute the fingerprint of what the current identity can see
    - publish ChangeEvent(UNKNOWN) if it differs from the last one

    A failing fingerprint is logged and retried on the next tick; it never
    produces a notification. To stop the feed, call stop().
    """

    def __init__(
        self,
        fingerprint: Fingerprint,
        publish: Callable[[ChangeEvent], None],
        *,
        interval_seconds: float = 2.0,
    ) -> None:
        self._fingerprint = fingerprint
        self._publish = publish
        self._interval = max(0.05, float(interval_seconds))
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug("Polling change feed started interval=%.2fs", self._interval)

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            logger.debug("Polling change feed stopped")

    async def _sample(self) -> Hashable | None:
        try:
            return await self._fingerprint()
        except Exception:
            logger.warning("Change feed fingerprint failed", exc_info=True)
            return None

    async def _run(self) -> None:
        last = await self._sample()
        while True:
            await asyncio.sleep(self._interval)
            current = await self._sample()
            if current is None:
                continue
            if last is not None and current != last:
                logger.debug("Change detected by polling")
                self._publish(ChangeEvent(kind=ChangeKind.UNKNOWN))
            last = current
