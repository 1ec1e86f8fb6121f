# src/tasklive/config.py

"""
Settings for the tasklive client.

Read once from TASKLIVE_* environment variables, after loading a .env file
from the working directory if present (real env vars win). The local
backend needs no secrets, so importing this module never fails; malformed
numbers fall back to their defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "TASKLIVE"

BACKEND_LOCAL = "local"
BACKEND_SUPABASE = "supabase"
BACKENDS = (BACKEND_LOCAL, BACKEND_SUPABASE)

TRUTHY = frozenset({"1", "true", "yes", "y", "on"})

load_dotenv(override=False)


class _Env:
    """Typed lookups of PREFIX_NAME variables; blank values count as unset."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix

    def raw(self, name: str, *fallbacks: str) -> str | None:
        for key in (f"{self.prefix}_{name}", *fallbacks):
            value = os.environ.get(key)
            if value is not None and value.strip():
                return value.strip()
        return None

    def text(self, name: str, default: str, *fallbacks: str) -> str:
        value = self.raw(name, *fallbacks)
        return default if value is None else value

    def flag(self, name: str, default: bool) -> bool:
        value = self.raw(name)
        return default if value is None else value.lower() in TRUTHY

    def number(self, name: str, default: float, *, minimum: float) -> float:
        value = self.raw(name)
        if value is None:
            return default
        try:
            return max(minimum, float(value))
        except ValueError:
            return default

    def path(self, name: str, default: Path) -> Path:
        value = self.raw(name)
        return default if value is None else Path(value).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    app_name: str
    log_level: str

    # "local" (SQLite file) or "supabase"
    backend: str
    supabase_url: str
    supabase_anon_key: str | None
    http_timeout_seconds: float
    # Realtime push for Supabase; polling is the fallback.
    supabase_realtime: bool

    # 0 disables polling; in-process notifications still work.
    poll_interval_seconds: float
    persist_session: bool

    # Local, gitignored state.
    data_dir: Path
    db_path: Path
    session_path: Path

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    @classmethod
    def from_env(cls) -> Settings:
        env = _Env(ENV_PREFIX)

        backend = env.text("BACKEND", BACKEND_LOCAL).lower()
        if backend not in BACKENDS:
            backend = BACKEND_LOCAL

        data_dir = env.path("DATA_DIR", Path(".local/tasklive"))

        return cls(
            app_name=env.text("APP_NAME", "tasklive"),
            log_level=env.text("LOG_LEVEL", "INFO").upper(),
            backend=backend,
            supabase_url=env.text("SUPABASE_URL", "", "SUPABASE_URL").rstrip("/"),
            supabase_anon_key=env.raw("SUPABASE_ANON_KEY", "SUPABASE_ANON_KEY"),
            http_timeout_seconds=env.number("HTTP_TIMEOUT_SECONDS", 10.0, minimum=1.0),
            supabase_realtime=env.flag("SUPABASE_REALTIME", True),
            poll_interval_seconds=env.number("POLL_INTERVAL_SECONDS", 2.0, minimum=0.0),
            persist_session=env.flag("PERSIST_SESSION", True),
            data_dir=data_dir,
            db_path=env.path("DB_PATH", data_dir / "tasks.sqlite3"),
            session_path=env.path("SESSION_PATH", data_dir / "session.json"),
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
