# src/herald/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs everything on one event loop:
- channels (console, Matrix if enabled),
- the task scheduler,
- the console REPL (optional) or a wait-for-signal loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from ..cli.bootstrap import create_initial_state
from ..cli.commands import registry as command_registry
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..core.state import AppState
from ..logging_setup import setup_logging
from ..notifications.service import Notification

logger = logging.getLogger(__name__)


def _register_matrix(state: AppState) -> None:
    from ..connectors.matrix_connector import MatrixChannel

    def on_command(text: str, sender: str, room_id: str) -> str | None:
        return command_registry.handle(state, text, user_id=sender, room_id=room_id)

    state.channels.register(
        MatrixChannel(state.settings, conversations=state.conversations, on_command=on_command)
    )


def _print_notification(n: Notification) -> None:
    print(f"[notify:{n.importance}] {n.message}", flush=True)


async def run_app(state: AppState) -> None:
    settings = state.settings

    await state.channels.start_all()
    await state.scheduler.start()

    try:
        if settings.console_enabled:
            await run_console_loop(state)
        else:
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                # Not supported on every platform (e.g. Windows).
                with contextlib.suppress(NotImplementedError):
                    loop.add_signal_handler(sig, stop.set)
            logger.info("Console disabled. Running background channels only. Press Ctrl+C to stop.")
            await stop.wait()
    finally:
        await state.scheduler.stop()
        if state.processor.inflight_count:
            logger.info("Waiting for %d running task(s)...", state.processor.inflight_count)
        await state.processor.drain()
        await state.channels.stop_all()


def main() -> None:
    settings = get_settings()

    # choose console log level from settings.log_level
    level_name = str(settings.log_level).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    # keep noisy libs readable
    logging.getLogger("nio").setLevel(max(console_level, logging.INFO))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

    logger.info("Starting %s...", settings.app_name)

    state = create_initial_state(settings=settings)
    if settings.matrix_enabled:
        _register_matrix(state)
    if settings.console_enabled:
        state.notifications.add_listener(_print_notification)

    try:
        asyncio.run(run_app(state))
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    finally:
        state.task_store.close()
        logger.info("Bye.")


if __name__ == "__main__":
    main()
