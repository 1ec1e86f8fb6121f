# src/tasklive/cli/main.py

"""
`tasklive` console script.

Sets up logging, wires AppState, restores a persisted session and runs the
REPL until /exit, EOF or Ctrl+C. The store is always closed on the way out.
"""

from __future__ import annotations

import asyncio
import logging

from ..config import Settings, get_settings
from ..connectors.console_connector import run_console_loop
from ..logging_setup import setup_logging
from .bootstrap import create_initial_state, shutdown_state

logger = logging.getLogger(__name__)


async def _serve(settings: Settings) -> None:
    state = create_initial_state(settings=settings)
    try:
        await run_console_loop(state)
    finally:
        await shutdown_state(state)


def main() -> None:
    settings = get_settings()

    requested = logging.getLevelName(settings.log_level)
    if not isinstance(requested, int):
        requested = logging.INFO
    # INFO chatter goes to the log file only; the console shows warnings up.
    log_file = setup_logging(log_dir=settings.data_dir, console_level=max(requested, logging.WARNING))
    logger.info("Starting %s (log file %s)", settings.app_name, log_file)

    try:
        asyncio.run(_serve(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        print()
    logger.info("Stopped.")


if __name__ == "__main__":
    main()
