# src/tasklive/store/session_file.py

from __future__ import annotations

import contextlib
import json
import logging
import os
from pathlib import Path
from typing import Any

from ..core.models import Identity, Session

logger = logging.getLogger(__name__)


def _read_object(path: Path) -> dict[str, Any]:
    data = json.loads(path.read_text("utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _write_private(path: Path, data: dict[str, Any]) -> None:
    """Write via a sibling temp file + rename; the file holds a bearer token, so 0600."""
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(path.name + ".partial")
    staging.write_text(json.dumps(data, ensure_ascii=False, indent=2), "utf-8")
    with contextlib.suppress(OSError):
        os.chmod(staging, 0o600)
    os.replace(staging, path)


def load_session(path: Path | None) -> Session | None:
    """Read a persisted session; a missing or malformed file means no session."""
    if path is None or not path.exists():
        return None
    try:
        data = _read_object(path)
        user = data.get("user")
        if not isinstance(user, dict):
            user = {}
        access_token = data.get("access_token")
        user_id = user.get("id")
        if not access_token or not user_id:
            raise ValueError("session file is missing required fields")
        return Session(
            identity=Identity(id=str(user_id), email=str(user.get("email") or "")),
            access_token=str(access_token),
            refresh_token=data.get("refresh_token"),
        )
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable session file %s: %r", path, e)
        return None


def save_session(path: Path | None, session: Session) -> None:
    if path is None:
        return
    try:
        _write_private(
            path,
            {
                "access_token": session.access_token,
                "refresh_token": session.refresh_token,
                "user": {"id": session.identity.id, "email": session.identity.email},
            },
        )
    except OSError as e:
        logger.warning("Failed to persist session to %s: %r", path, e)


def clear_session(path: Path | None) -> None:
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Failed to remove session file %s: %r", path, e)
