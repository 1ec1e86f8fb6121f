# tests/test_commands.py

from __future__ import annotations

import pytest

from tasklive.cli.commands import CommandRegistry, registry
from tasklive.connectors.console_connector import handle_line
from tasklive.core.state import AppState

from .fakes import make_task


@pytest.fixture()
def app(settings, store, sessions, engine) -> AppState:
    return AppState(settings=settings, store=store, sessions=sessions, engine=engine, backend="local")


@pytest.mark.asyncio
async def test_registry_routes_aliases_and_rejects_unknown(app) -> None:
    reg = CommandRegistry()
    seen: list[list[str]] = []

    async def echo(state, args):
        seen.append(args)
        return "ok"

    reg.register("echo", echo, help_text="Echo.", aliases=["e"])

    assert await reg.handle(app, "not a command") is None
    assert await reg.handle(app, "/ECHO a b") == "ok"
    assert await reg.handle(app, "/e") == "ok"
    assert seen == [["a", "b"], []]
    assert (await reg.handle(app, "/")).startswith("Empty command")
    assert (await reg.handle(app, "/nope")).startswith("Unknown command: /nope")
    assert "/echo - Echo." in reg.build_help()


@pytest.mark.asyncio
async def test_help_lists_commands(app) -> None:
    text = await registry.handle(app, "/help")

    for name in ("login", "logout", "add", "done", "edit", "rm", "search", "filter", "stats"):
        assert f"/{name} " in text


@pytest.mark.asyncio
async def test_login_shows_stats_and_list(app, store) -> None:
    store.seed(make_task(1, "buy milk"), make_task(2, "pay rent", is_done=True))

    reply = await registry.handle(app, "/login ann@example.com secret1")

    assert reply.startswith("Logged in: ann@example.com")
    assert "Total: 2  Done: 1  Pending: 1  Completion: 50%" in reply
    assert "  1. [x] pay rent" in reply
    assert "  2. [ ] buy milk" in reply


@pytest.mark.asyncio
async def test_login_usage_and_failure(app) -> None:
    assert (await registry.handle(app, "/login ann@example.com")).startswith("Usage")
    assert await registry.handle(app, "/login ann@example.com wrong") == "Invalid login credentials"


@pytest.mark.asyncio
async def test_signup_reports_next_step(app) -> None:
    assert await registry.handle(app, "/signup new@example.com secret9") == "Signup done. Now login."


@pytest.mark.asyncio
async def test_task_commands_use_visible_positions(app, store, engine) -> None:
    store.seed(make_task(1, "buy milk"), make_task(2, "pay rent"))
    await registry.handle(app, "/login ann@example.com secret1")

    assert await registry.handle(app, "/done 2") == "Marked done: buy milk"
    await engine.wait_idle()
    assert engine.tasks[1].is_done

    assert await registry.handle(app, "/edit 1 pay all rent") == "Saved."
    await engine.wait_idle()
    assert engine.tasks[0].title == "pay all rent"

    assert await registry.handle(app, "/rm 1") == "Deleted: pay all rent"
    await engine.wait_idle()
    assert [t.id for t in engine.tasks] == [1]

    assert (await registry.handle(app, "/rm 9")).startswith("No task #9")


@pytest.mark.asyncio
async def test_edit_then_save_and_empty_save_keeps_draft(app, store, engine) -> None:
    store.seed(make_task(1, "buy milk"))
    await registry.handle(app, "/login ann@example.com secret1")

    assert (await registry.handle(app, "/edit 1")).startswith("Editing #1: buy milk")
    assert "(editing) buy milk" in await registry.handle(app, "/list")

    engine.set_draft_title("   ")
    assert await registry.handle(app, "/save") == "Task title cannot be empty."
    assert engine.draft is not None

    assert await registry.handle(app, "/save buy oat milk") == "Saved."
    assert engine.draft is None
    assert await registry.handle(app, "/save") == "Nothing is being edited. Use /edit <n> first."


@pytest.mark.asyncio
async def test_add_rejects_empty_title(app) -> None:
    await registry.handle(app, "/login ann@example.com secret1")

    assert await registry.handle(app, "/add    ") == "Task title cannot be empty."


@pytest.mark.asyncio
async def test_search_filter_and_stats(app, store) -> None:
    store.seed(make_task(1, "buy milk"), make_task(2, "buy bread", is_done=True), make_task(3, "rent"))
    await registry.handle(app, "/login ann@example.com secret1")

    listing = await registry.handle(app, "/search buy")
    assert "buy bread" in listing and "buy milk" in listing and "rent" not in listing

    listing = await registry.handle(app, "/filter pending")
    assert listing.strip() == "1. [ ] buy milk"

    assert (await registry.handle(app, "/filter urgent")).startswith("Unknown filter")
    assert await registry.handle(app, "/stats") == "Total: 3  Done: 1  Pending: 2  Completion: 33%"

    await registry.handle(app, "/search zzz")
    assert await registry.handle(app, "/list") == "No tasks match your search/filter."


@pytest.mark.asyncio
async def test_logout_clears_and_status_reports(app, store) -> None:
    store.seed(make_task(1, "buy milk"))
    await registry.handle(app, "/login ann@example.com secret1")
    status = await registry.handle(app, "/status")
    assert "User: ann@example.com" in status
    assert "Live sync: ON" in status

    assert await registry.handle(app, "/logout") == "Logged out."
    status = await registry.handle(app, "/status")
    assert "(not logged in)" in status
    assert "Live sync: OFF" in status
    assert await registry.handle(app, "/reload") == "Log in first."


@pytest.mark.asyncio
async def test_plain_text_adds_task_when_logged_in(app, engine) -> None:
    assert (await handle_line(app, "buy milk")).startswith("Log in first")

    await handle_line(app, "/login ann@example.com secret1")
    assert await handle_line(app, "  buy milk  ") == "Added."
    await engine.wait_idle()

    assert [t.title for t in engine.tasks] == ["buy milk"]
    assert await handle_line(app, "   ") is None
