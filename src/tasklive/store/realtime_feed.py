# src/tasklive/store/realtime_feed.py

"""
Server-pushed change notifications from Supabase Realtime.

Joins one channel listening to postgres_changes on public.tasks and
republishes every payload as a coarse ChangeEvent. Realtime applies the
table's row-level security with the access token given to set_auth, so the
stream only carries rows the signed-in user can see.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any

from realtime import AsyncRealtimeClient

from ..core.models import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

CHANNEL_TOPIC = "tasks-changes"

_KINDS = {
    "INSERT": ChangeKind.INSERT,
    "UPDATE": ChangeKind.UPDATE,
    "DELETE": ChangeKind.DELETE,
}

RealtimeClientFactory = Callable[[str, str], Any]


def realtime_url(base_url: str) -> str:
    """Project URL to its Realtime endpoint (https -> wss, http -> ws)."""
    base = base_url.rstrip("/")
    if base.startswith("http"):
        base = "ws" + base[len("http"):]
    return base + "/realtime/v1"


def default_client(url: str, api_key: str) -> AsyncRealtimeClient:
    return AsyncRealtimeClient(url, api_key, auto_reconnect=True)


def event_kind(payload: Any) -> ChangeKind:
    """Best-effort kind from a postgres_changes payload; anything odd is UNKNOWN."""
    if not isinstance(payload, Mapping):
        return ChangeKind.UNKNOWN
    data = payload.get("data")
    raw = payload.get("eventType") or (data.get("type") if isinstance(data, Mapping) else None)
    return _KINDS.get(str(raw or "").upper(), ChangeKind.UNKNOWN)


class RealtimeChangeFeed:
    """
    Realtime channel with the same start/stop shape as PollingChangeFeed.

    start() connects in a background task. Once the channel is joined, one
    UNKNOWN event is published so a change that slipped in before the join
    still triggers a reload. If the connection or the join fails, on_failure
    is called once (the store falls back to polling). stop() detaches
    immediately; closing the socket happens in the background and
    aclose() waits for it.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        publish: Callable[[ChangeEvent], None],
        *,
        on_failure: Callable[[], None] | None = None,
        client_factory: RealtimeClientFactory | None = None,
    ) -> None:
        self._url = realtime_url(base_url)
        self._api_key = api_key
        self._publish = publish
        self._on_failure = on_failure
        self._factory = client_factory or default_client

        self._task: asyncio.Task[None] | None = None
        self._client: Any = None
        self._joined = False
        self._failed = False
        self._closing: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._task is not None

    @property
    def joined(self) -> bool:
        return self._joined

    def start(self, access_token: str) -> None:
        if self._task is not None:
            return
        self._joined = False
        self._failed = False
        self._task = asyncio.get_running_loop().create_task(self._connect(access_token))

    def stop(self) -> None:
        task, self._task = self._task, None
        client, self._client = self._client, None
        self._joined = False
        if task is not None and not task.done():
            task.cancel()
        if client is not None:
            closer = asyncio.get_running_loop().create_task(self._close_client(client))
            self._closing.add(closer)
            closer.add_done_callback(self._closing.discard)
            logger.debug("Realtime channel stopped")

    async def aclose(self) -> None:
        self.stop()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    async def set_auth(self, access_token: str) -> None:
        """Hand a refreshed access token to the open socket."""
        client = self._client
        if client is None:
            return
        try:
            await client.set_auth(access_token)
        except Exception as e:
            logger.warning("Realtime set_auth failed: %r", e)

    async def _connect(self, access_token: str) -> None:
        me = asyncio.current_task()
        client = self._factory(self._url, self._api_key)
        try:
            await client.connect()
            await client.set_auth(access_token)
            channel = client.channel(CHANNEL_TOPIC)
            channel.on_postgres_changes("*", schema="public", table="tasks", callback=self._on_payload)
            if self._task is not me:
                await self._close_client(client)
                return
            self._client = client
            await channel.subscribe(self._on_state)
        except asyncio.CancelledError:
            await self._close_client(client)
            raise
        except Exception as e:
            logger.warning("Realtime connection failed: %r", e)
            if self._client is client:
                self._client = None
            await self._close_client(client)
            self._fail()

    def _on_state(self, state: Any, error: Exception | None = None) -> None:
        if self._task is None:
            return
        name = str(getattr(state, "value", state)).upper()
        if name == "SUBSCRIBED":
            logger.info("Realtime channel %s joined", CHANNEL_TOPIC)
            self._joined = True
            self._publish(ChangeEvent(kind=ChangeKind.UNKNOWN))
        elif name in ("CHANNEL_ERROR", "TIMED_OUT"):
            logger.warning("Realtime channel %s: %s %r", CHANNEL_TOPIC, name, error)
            self._joined = False
            self._fail()

    def _on_payload(self, payload: Any) -> None:
        if self._task is None:
            return
        self._publish(ChangeEvent(kind=event_kind(payload)))

    def _fail(self) -> None:
        if self._failed or self._task is None:
            return
        self._failed = True
        if self._on_failure is not None:
            self._on_failure()

    @staticmethod
    async def _close_client(client: Any) -> None:
        try:
            await client.close()
        except Exception as e:
            logger.warning("Realtime close failed: %r", e)
