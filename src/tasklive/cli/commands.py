# src/tasklive/cli/commands.py

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from ..core.models import Task, ViewState
from ..core.state import AppState

CommandHandler = Callable[[AppState, list[str]], Awaitable[str]]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Command:
    name: str
    handler: CommandHandler
    help_text: str
    aliases: tuple[str, ...] = ()


class CommandRegistry:
    """Slash-command table for the console: `/name args...` -> reply text."""

    def __init__(self) -> None:
        self._commands: dict[str, Command] = {}
        self._lookup: dict[str, Command] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        cmd = Command(name.lower(), handler, help_text, tuple(a.lower() for a in aliases or ()))
        self._commands[cmd.name] = cmd
        for key in (cmd.name, *cmd.aliases):
            self._lookup[key] = cmd

    async def handle(self, state: AppState, line: str) -> str | None:
        """Reply to a slash command; None means the line was not a command at all."""
        if not line.startswith("/"):
            return None

        name, *args = line[1:].split() or [""]
        if not name:
            return "Empty command. Use /help to list available commands."

        cmd = self._lookup.get(name.lower())
        if cmd is None:
            return f"Unknown command: /{name.lower()}. Use /help to list available commands."

        logger.debug("Running /%s with %d arg(s)", cmd.name, len(args))
        return await cmd.handler(state, args)

    def build_help(self) -> str:
        rows = ["Available commands:"]
        for cmd in self._commands.values():
            also = f" (also /{', /'.join(cmd.aliases)})" if cmd.aliases else ""
            rows.append(f"  /{cmd.name} - {cmd.help_text}{also}")
        return "\n".join(rows)


registry = CommandRegistry()


# ---- rendering ----


def render_tasks(view: ViewState) -> str:
    lines: list[str] = []
    if view.loading:
        lines.append("Loading...")
    if not view.tasks and not view.loading:
        lines.append("No tasks match your search/filter.")
    for i, t in enumerate(view.tasks, start=1):
        mark = "x" if t.is_done else " "
        if view.draft is not None and view.draft.task_id == t.id:
            lines.append(f"{i:>3}. [{mark}] (editing) {view.draft.title}")
        else:
            lines.append(f"{i:>3}. [{mark}] {t.title}")
    return "\n".join(lines)


def render_stats(view: ViewState) -> str:
    s = view.stats
    return f"Total: {s.total}  Done: {s.done}  Pending: {s.pending}  Completion: {s.percent}%"


def _outcome(state: AppState, ok: bool, success: str) -> str:
    """Reply text: the engine's message wins (errors, signup note), else the success line."""
    msg = state.engine.message
    if msg:
        return msg
    return success if ok else "Failed."


def _pick(state: AppState, token: str | None) -> Task | None:
    """Resolve a 1-based position in the visible list."""
    if not token:
        return None
    try:
        idx = int(token)
    except ValueError:
        return None
    tasks = state.engine.view().tasks
    if 1 <= idx <= len(tasks):
        return tasks[idx - 1]
    return None


def _not_found(token: str | None) -> str:
    return f"No task #{token} in the current list. Use /list to see numbers."


# ---- handlers ----


async def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


async def cmd_status(state: AppState, args: list[str]) -> str:
    view = state.engine.view()
    who = view.email if view.signed_in else "(not logged in)"
    return (
        "Status:\n"
        f"  Backend: {state.backend}\n"
        f"  User: {who}\n"
        f"  Live sync: {'ON' if state.engine.subscribed else 'OFF'}\n"
        f"  Search: {view.query or '-'}  Filter: {view.filter.value}"
    )


async def cmd_signup(state: AppState, args: list[str]) -> str:
    if len(args) != 2:
        return "Usage: /signup <email> <password>"
    ok = await state.engine.sign_up(args[0], args[1])
    return _outcome(state, ok, "Signed up and logged in.")


async def cmd_login(state: AppState, args: list[str]) -> str:
    if len(args) != 2:
        return "Usage: /login <email> <password>"
    ok = await state.engine.sign_in(args[0], args[1])
    if not ok:
        return _outcome(state, ok, "")
    view = state.engine.view()
    return f"Logged in: {view.email}\n{render_stats(view)}\n{render_tasks(view)}"


async def cmd_logout(state: AppState, args: list[str]) -> str:
    ok = await state.engine.sign_out()
    return _outcome(state, ok, "Logged out.")


async def cmd_add(state: AppState, args: list[str]) -> str:
    ok = await state.engine.add_task(" ".join(args))
    return _outcome(state, ok, "Added.")


async def cmd_done(state: AppState, args: list[str]) -> str:
    token = args[0] if args else None
    task = _pick(state, token)
    if task is None:
        return _not_found(token)
    ok = await state.engine.toggle_done(task)
    return _outcome(state, ok, f"Marked {'pending' if task.is_done else 'done'}: {task.title}")


async def cmd_edit(state: AppState, args: list[str]) -> str:
    token = args[0] if args else None
    task = _pick(state, token)
    if task is None:
        return _not_found(token)
    if len(args) > 1:
        state.engine.start_edit(task)
        ok = await state.engine.save_edit(task.id, " ".join(args[1:]))
        return _outcome(state, ok, "Saved.")
    ok = state.engine.start_edit(task)
    return _outcome(state, ok, f"Editing #{token}: {task.title}\nUse /save <new title> or /cancel.")


async def cmd_save(state: AppState, args: list[str]) -> str:
    draft = state.engine.draft
    if draft is None:
        return "Nothing is being edited. Use /edit <n> first."
    if args:
        state.engine.set_draft_title(" ".join(args))
    ok = await state.engine.save_edit(draft.task_id)
    return _outcome(state, ok, "Saved.")


async def cmd_cancel(state: AppState, args: list[str]) -> str:
    state.engine.cancel_edit()
    return "Edit cancelled."


async def cmd_rm(state: AppState, args: list[str]) -> str:
    token = args[0] if args else None
    task = _pick(state, token)
    if task is None:
        return _not_found(token)
    ok = await state.engine.delete_task(task)
    return _outcome(state, ok, f"Deleted: {task.title}")


async def cmd_search(state: AppState, args: list[str]) -> str:
    state.engine.set_query(" ".join(args))
    return render_tasks(state.engine.view())


async def cmd_filter(state: AppState, args: list[str]) -> str:
    if not args:
        return f"Filter is {state.engine.filter.value}. Use /filter all | pending | done."
    if not state.engine.set_filter(args[0]):
        return _outcome(state, False, "")
    return render_tasks(state.engine.view())


async def cmd_list(state: AppState, args: list[str]) -> str:
    return render_tasks(state.engine.view())


async def cmd_stats(state: AppState, args: list[str]) -> str:
    return render_stats(state.engine.view())


async def cmd_reload(state: AppState, args: list[str]) -> str:
    if not state.engine.view().signed_in:
        return "Log in first."
    state.engine.clear_message()
    ok = await state.engine.reload()
    return _outcome(state, ok, render_tasks(state.engine.view()))


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show backend, user and sync state.")
registry.register("signup", cmd_signup, help_text="Create an account: /signup <email> <password>.")
registry.register("login", cmd_login, help_text="Log in: /login <email> <password>.", aliases=["signin"])
registry.register("logout", cmd_logout, help_text="Log out and clear local state.", aliases=["signout"])
registry.register("add", cmd_add, help_text="Add a task: /add <title> (plain text works too).")
registry.register("done", cmd_done, help_text="Toggle done/pending: /done <n>.", aliases=["toggle"])
registry.register("edit", cmd_edit, help_text="Edit a title: /edit <n> [new title].")
registry.register("save", cmd_save, help_text="Save the current edit: /save [new title].")
registry.register("cancel", cmd_cancel, help_text="Discard the current edit.")
registry.register("rm", cmd_rm, help_text="Delete a task: /rm <n>.", aliases=["delete", "del"])
registry.register("search", cmd_search, help_text="Search titles: /search <text> (empty clears).")
registry.register("filter", cmd_filter, help_text="Filter: /filter all | pending | done.")
registry.register("list", cmd_list, help_text="Show the visible task list.", aliases=["ls"])
registry.register("stats", cmd_stats, help_text="Show total/done/pending/completion.")
registry.register("reload", cmd_reload, help_text="Force a reload from the store.")
