# src/tasklive/connectors/console_connector.py

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from ..cli.commands import registry as command_registry
from ..cli.commands import render_stats
from ..core.state import AppState

logger = logging.getLogger(__name__)


def _say(text: str) -> None:
    stamp = datetime.now().astimezone().strftime("%H:%M:%S")
    print(f"[{stamp}] {text}")


def _prompt(state: AppState) -> str:
    view = state.engine.view()
    if not view.signed_in:
        return ">>> (logged out) "
    if view.draft is not None:
        return ">>> (editing) "
    return f">>> {view.email} "


async def handle_line(state: AppState, line: str) -> str | None:
    """
    One console input line -> reply text.

    Slash commands go through the registry; plain text adds a task when
    logged in (like submitting the "New task..." form).
    """
    line = line.strip()
    if not line:
        return None

    reply = await command_registry.handle(state, line)
    if reply is not None:
        return reply

    if not state.engine.view().signed_in:
        return "Log in first: /login <email> <password> (or /signup). Use /help for commands."

    ok = await state.engine.add_task(line)
    return state.engine.message or ("Added." if ok else "Failed.")


async def run_console_loop(state: AppState) -> None:
    logger.info("Console connector started (backend=%s).", state.backend)
    _say("[CONSOLE] Type /help for commands, plain text to add a task, /exit to quit.\n")

    engine = state.engine
    last_tasks = engine.tasks

    def on_view_change() -> None:
        # Report collection changes that arrive from sync (our own or other sessions).
        nonlocal last_tasks
        if engine.tasks is last_tasks:
            return
        last_tasks = engine.tasks
        if engine.view().signed_in:
            _say(f"[SYNC] {render_stats(engine.view())}")

    remove_listener = engine.add_listener(on_view_change)

    if await engine.restore() and engine.view().signed_in:
        _say(f"Welcome back, {engine.view().email}.")
    elif engine.message:
        _say(engine.message)

    try:
        while True:
            try:
                user_input = await asyncio.to_thread(input, _prompt(state))
            except EOFError:
                logger.info("stdin closed")
                break

            if user_input.strip().lower() in ("/exit", "/quit"):
                logger.info("Exit requested")
                break

            try:
                reply = await handle_line(state, user_input)
            except Exception:
                logger.exception("Unhandled error while handling console input")
                reply = "Internal error while handling a command."

            if reply:
                _say(reply)
    finally:
        remove_listener()
        logger.info("Console loop stopped")
