# src/tasklive/store/supabase_store.py

"""
Supabase-backed task store.

Talks to a Supabase project over plain HTTP:
- PostgREST:  /rest/v1/tasks        (row-level security scopes rows per user)
- GoTrue:     /auth/v1/signup, /auth/v1/token, /auth/v1/logout, /auth/v1/user

Change notifications are pushed by Supabase Realtime (postgres_changes on
public.tasks). When the channel cannot be joined the store falls back to a
polling change feed over the rows the session can see. Our own successful
mutations are also published right away.

Access tokens are short-lived: a 401 on a data call triggers one
refresh_token exchange and one retry before the session counts as expired.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Hashable, Mapping
from pathlib import Path
from typing import Any

import httpx

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
from .realtime_feed import RealtimeChangeFeed, RealtimeClientFactory
from .session_file import clear_session, load_session, save_session

logger = logging.getLogger(__name__)

TASKS_PATH = "/rest/v1/tasks"


def _error_text(resp: httpx.Response) -> str:
    """Pull a human message out of a PostgREST / GoTrue error body."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("msg", "message", "error_description", "error"):
            val = body.get(key)
            if isinstance(val, str) and val.strip():
                return val.strip()
    text = (resp.text or "").strip()
    return text[:200] if text else f"HTTP {resp.status_code}"


def _row_to_task(row: Mapping[str, Any]) -> Task:
    return Task(
        id=row["id"],
        title=str(row.get("title") or ""),
        is_done=bool(row.get("is_done")),
        user_id=str(row.get("user_id") or ""),
        created_at=parse_timestamp(row.get("created_at")),
    )


def _session_from_auth(body: Mapping[str, Any]) -> Session | None:
    token = body.get("access_token")
    user = body.get("user")
    if not token or not isinstance(user, dict) or not user.get("id"):
        return None
    return Session(
        identity=Identity(id=str(user["id"]), email=str(user.get("email") or "")),
        access_token=str(token),
        refresh_token=body.get("refresh_token"),
    )


class SupabaseTaskStore:
    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        session_path: Path | None = None,
        poll_interval_seconds: float = 2.0,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        realtime: bool = True,
        realtime_client_factory: RealtimeClientFactory | None = None,
    ) -> None:
        if not url or not anon_key:
            raise StoreError("Supabase is not configured: set TASKLIVE_SUPABASE_URL and TASKLIVE_SUPABASE_ANON_KEY")

        self._session_path = session_path
        self._session: Session | None = None
        self._refresh_lock = asyncio.Lock()
        self._client = httpx.AsyncClient(
            base_url=url.rstrip("/"),
            headers={"apikey": anon_key},
            timeout=httpx.Timeout(timeout_seconds, connect=min(5.0, timeout_seconds)),
            transport=transport,
        )

        self._changes = ChangeBroadcaster()
        self._feed: PollingChangeFeed | None = None
        if poll_interval_seconds > 0:
            self._feed = PollingChangeFeed(
                self._fingerprint,
                self._changes.publish,
                interval_seconds=poll_interval_seconds,
            )
        self._push: RealtimeChangeFeed | None = None
        self._push_failed = False
        if realtime:
            self._push = RealtimeChangeFeed(
                url,
                anon_key,
                self._changes.publish,
                on_failure=self._fall_back_to_polling,
                client_factory=realtime_client_factory,
            )
        self._changes.on_empty(self._stop_feeds)

    # ---- HTTP helpers ----

    def _auth_headers(self, session: Session | None) -> dict[str, str]:
        if session is None:
            raise AuthError("Not signed in.")
        return {"Authorization": f"Bearer {session.access_token}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Supabase %s %s failed: %r", method, path, e)
            raise StoreError(f"Network error: {e.__class__.__name__}") from e

    def _effective(self, scope: Session | None) -> Session | None:
        """The adopted session wins over a caller's copy of the same user (it may hold a newer token)."""
        current = self._session
        if scope is not None and current is not None and current.user_id == scope.user_id:
            return current
        return scope

    async def _data_request(self, method: str, session: Session | None, **kwargs: Any) -> Any:
        extra_headers = kwargs.pop("headers", {})
        session = self._effective(session)

        async def send(as_session: Session | None) -> httpx.Response:
            headers = {**self._auth_headers(as_session), **extra_headers}
            return await self._request(method, TASKS_PATH, headers=headers, **kwargs)

        resp = await send(session)
        if resp.status_code == 401 and session is not None:
            renewed = await self._renew(session)
            if renewed is not None:
                resp = await send(renewed)

        if resp.status_code == 401:
            raise SessionExpiredError(_error_text(resp))
        if resp.status_code >= 400:
            raise StoreError(_error_text(resp))
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise StoreError("Malformed response from task store") from e

    async def _auth_request(self, path: str, payload: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        resp = await self._request("POST", path, json=payload, **kwargs)
        if resp.status_code >= 500:
            raise StoreError(_error_text(resp))
        if resp.status_code >= 400:
            raise AuthError(_error_text(resp))
        body = resp.json() if resp.content else {}
        return body if isinstance(body, dict) else {}

    def _adopt(self, session: Session) -> Session:
        self._session = session
        save_session(self._session_path, session)
        return session

    # ---- token refresh ----

    async def _refresh(self, refresh_token: str) -> Session | None:
        """refresh_token grant; None when GoTrue rejects the token."""
        try:
            body = await self._auth_request(
                "/auth/v1/token",
                {"refresh_token": refresh_token},
                params={"grant_type": "refresh_token"},
            )
        except AuthError as e:
            logger.info("Supabase refresh token rejected: %s", e)
            return None
        session = _session_from_auth(body)
        if session is not None:
            logger.info("Supabase session refreshed for %s", session.identity.email)
        return session

    async def _renew(self, stale: Session) -> Session | None:
        """
        Replace an access token the API just rejected.

        Serialized: refresh tokens are single use, so callers that hit the
        same 401 concurrently share the first caller's result.
        """
        async with self._refresh_lock:
            current = self._session
            if current is None or current.user_id != stale.user_id:
                return None
            if current.access_token != stale.access_token:
                return current
            if not current.refresh_token:
                return None
            session = await self._refresh(current.refresh_token)
            if session is None:
                return None
            self._adopt(session)
        if self._push is not None:
            await self._push.set_auth(session.access_token)
        return session

    # ---- change feeds ----

    def _start_feeds(self) -> None:
        session = self._session
        if session is None:
            return
        if self._push is not None and not self._push_failed:
            self._push.start(session.access_token)
        elif self._feed is not None:
            self._feed.start()

    def _stop_feeds(self) -> None:
        if self._push is not None:
            self._push.stop()
        if self._feed is not None:
            self._feed.stop()

    def _fall_back_to_polling(self) -> None:
        self._push_failed = True
        if self._push is not None:
            self._push.stop()
        if self._feed is None:
            logger.warning("Realtime unavailable and polling disabled; use /reload to refresh")
            return
        if len(self._changes):
            logger.warning("Realtime unavailable; polling for changes instead")
            self._feed.start()

    # ---- public API: identity ----

    async def sign_up(self, email: str, password: str) -> Session | None:
        body = await self._auth_request(
            "/auth/v1/signup", {"email": (email or "").strip(), "password": password or ""}
        )
        session = _session_from_auth(body)
        if session is None:
            # Email confirmation enabled: no session until the user logs in.
            return None
        return self._adopt(session)

    async def sign_in(self, email: str, password: str) -> Session:
        body = await self._auth_request(
            "/auth/v1/token",
            {"email": (email or "").strip(), "password": password or ""},
            params={"grant_type": "password"},
        )
        session = _session_from_auth(body)
        if session is None:
            raise AuthError("Sign-in response did not include a session.")
        return self._adopt(session)

    async def sign_out(self) -> None:
        self._changes.dispose_all()
        self._stop_feeds()
        self._push_failed = False
        if self._push is not None:
            await self._push.aclose()
        session, self._session = self._session, None
        clear_session(self._session_path)
        if session is None:
            return
        resp = await self._request("POST", "/auth/v1/logout", headers=self._auth_headers(session))
        # 401/403: the token was already dead, which is what we wanted.
        if resp.status_code >= 400 and resp.status_code not in (401, 403):
            raise StoreError(_error_text(resp))

    async def restore_session(self) -> Session | None:
        stored = load_session(self._session_path)
        if stored is None:
            return None

        resp = await self._request("GET", "/auth/v1/user", headers=self._auth_headers(stored))
        if resp.status_code == 200:
            return self._adopt(stored)

        if resp.status_code in (401, 403) and stored.refresh_token:
            session = await self._refresh(stored.refresh_token)
            if session is not None:
                return self._adopt(session)

        if resp.status_code >= 500:
            raise StoreError(_error_text(resp))

        logger.info("Persisted Supabase session rejected (HTTP %s); discarding it", resp.status_code)
        clear_session(self._session_path)
        return None

    # ---- public API: tasks ----

    async def list_tasks(self, scope: Session) -> list[Task]:
        rows = await self._data_request(
            "GET",
            scope,
            params={"select": "*", "user_id": f"eq.{scope.user_id}", "order": "created_at.desc"},
        )
        if not isinstance(rows, list):
            raise StoreError("Malformed task list from store")
        return [_row_to_task(r) for r in rows]

    async def create_task(self, title: str, scope: Session) -> Task:
        clean = require_title(title)
        rows = await self._data_request(
            "POST",
            scope,
            json=[{"title": clean, "user_id": scope.user_id}],
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            raise StoreError("Insert returned no row")
        task = _row_to_task(rows[0])
        self._changes.publish(ChangeEvent(kind=ChangeKind.INSERT, task_id=task.id))
        return task

    async def update_task(self, task_id: TaskId, fields: Mapping[str, Any]) -> None:
        clean = clean_update_fields(fields)
        rows = await self._data_request(
            "PATCH",
            self._session,
            params={"id": f"eq.{task_id}"},
            json=clean,
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            raise NotFoundError(f"Task {task_id} not found.")
        self._changes.publish(ChangeEvent(kind=ChangeKind.UPDATE, task_id=task_id))

    async def delete_task(self, task_id: TaskId) -> None:
        rows = await self._data_request(
            "DELETE",
            self._session,
            params={"id": f"eq.{task_id}"},
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            raise NotFoundError(f"Task {task_id} not found.")
        self._changes.publish(ChangeEvent(kind=ChangeKind.DELETE, task_id=task_id))

    async def _fingerprint(self) -> Hashable | None:
        scope = self._session
        if scope is None:
            return None
        rows = await self._data_request(
            "GET",
            scope,
            params={"select": "id,title,is_done", "order": "id.asc"},
        )
        return tuple((r.get("id"), r.get("title"), bool(r.get("is_done"))) for r in rows or [])

    def subscribe_to_changes(self, on_event: ChangeListener) -> ListenerSubscription:
        sub = self._changes.subscribe(on_event)
        self._start_feeds()
        return sub

    async def aclose(self) -> None:
        self._changes.dispose_all()
        self._stop_feeds()
        if self._push is not None:
            await self._push.aclose()
        await self._client.aclose()
