# tests/test_logging_setup.py

from __future__ import annotations

import logging

import pytest

from tasklive.logging_setup import _ConsoleNoiseFilter


def _record(name: str, level: int) -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, "msg", None, None)


@pytest.mark.parametrize(
    ("name", "level", "shown"),
    [
        ("tasklive.core.engine", logging.DEBUG, True),
        ("tasklive.store.change_feed", logging.DEBUG, False),
        ("tasklive.store.change_feed", logging.WARNING, True),
        ("httpx", logging.WARNING, False),
        ("httpx", logging.ERROR, True),
        ("py.warnings", logging.WARNING, False),
    ],
)
def test_console_noise_filter(name: str, level: int, shown: bool) -> None:
    assert _ConsoleNoiseFilter().filter(_record(name, level)) is shown
