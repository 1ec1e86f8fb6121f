# src/tasklive/cli/bootstrap.py

"""
Composition root for the console client.

Turns Settings into a running AppState:
- creates the local data directories,
- picks the task store backend (Supabase when configured, SQLite otherwise),
- wires store, session holder and reconciliation engine into AppState.
"""

from __future__ import annotations

import logging

from ..config import BACKEND_LOCAL, BACKEND_SUPABASE, get_settings
from ..core.engine import ReconciliationEngine
from ..core.errors import StoreError
from ..core.ports import RemoteTaskStore
from ..core.session import SessionHolder
from ..core.state import AppState
from ..store.local_store import LocalTaskStore
from ..store.supabase_store import SupabaseTaskStore

logger = logging.getLogger(__name__)


def _prepare_dirs(settings) -> None:
    for directory in {settings.data_dir, settings.db_path.parent, settings.session_path.parent}:
        directory.mkdir(parents=True, exist_ok=True)


def create_store(settings) -> tuple[RemoteTaskStore, str]:
    """Build the configured store; returns (store, backend name actually used)."""
    session_path = settings.session_path if settings.persist_session else None

    if settings.backend == BACKEND_SUPABASE:
        try:
            store = SupabaseTaskStore(
                settings.supabase_url,
                settings.supabase_anon_key or "",
                session_path=session_path,
                poll_interval_seconds=settings.poll_interval_seconds,
                timeout_seconds=settings.http_timeout_seconds,
                realtime=settings.supabase_realtime,
            )
            return store, BACKEND_SUPABASE
        except StoreError as e:
            # Fallback for demos / local runs without a Supabase project.
            logger.warning("%s; falling back to the local store", e)

    store = LocalTaskStore(
        settings.db_path,
        session_path=session_path,
        poll_interval_seconds=settings.poll_interval_seconds,
    )
    return store, BACKEND_LOCAL


def create_initial_state(*, settings=None) -> AppState:
    """Build store, session holder and engine; settings default to the process-wide ones."""
    settings = settings or get_settings()
    _prepare_dirs(settings)

    store, backend = create_store(settings)
    sessions = SessionHolder(store)
    engine = ReconciliationEngine(store, sessions)

    logger.info("Using %s task store", backend)
    return AppState(settings=settings, store=store, sessions=sessions, engine=engine, backend=backend)


async def shutdown_state(state: AppState) -> None:
    """Detach the engine, then release the store (HTTP client, pollers). Never raises."""
    try:
        await state.engine.aclose()
    except Exception:
        logger.exception("Engine shutdown failed.")

    try:
        await state.store.aclose()
    except Exception:
        logger.warning("Store close failed.", exc_info=True)
