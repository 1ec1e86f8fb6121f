# src/tasklive/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .engine import ReconciliationEngine
from .ports import RemoteTaskStore
from .session import SessionHolder


@dataclass
class AppState:
    """
    Explicit application context handed to the presentation layer.

    Nothing here lives in module globals: one AppState per running client.
    """

    # Settings object (or a test double with the same attributes).
    settings: Any

    store: RemoteTaskStore
    sessions: SessionHolder
    engine: ReconciliationEngine
    backend: str = "local"
