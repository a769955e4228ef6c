# src/herald/connectors/console_connector.py

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime
from typing import TextIO

from ..cli.commands import registry as command_registry
from ..core.ports import ChannelConfig, TranscriptTurn
from ..core.state import AppState
from ..tasks.task_log import utc_now_iso

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_ts(text: str, *, out: TextIO | None = None) -> None:
    print(f"[{_ts_local()}] {text}", file=out or sys.stdout, flush=True)


class ConsoleChannel:
    """
    Local terminal as a delivery channel.

    Messages are printed to stdout; the recipient is only shown, the
    terminal user sees everything.
    """

    def __init__(self, *, owner: str, channel_id: str = "console", out: TextIO | None = None) -> None:
        self._config = ChannelConfig(id=channel_id, plugin="console", owner_identity=owner)
        self._out = out
        self.sent: int = 0

    @property
    def config(self) -> ChannelConfig:
        return self._config

    async def start(self) -> None:
        return

    async def stop(self) -> None:
        return

    async def send(self, recipient: str, text: str) -> None:
        _print_ts(f"<<< [{self._config.id} -> {recipient}]\n{text}\n", out=self._out)
        self.sent += 1


def _record_user_line(state: AppState, channel_id: str, text: str) -> None:
    try:
        conv = state.conversations.get_or_create(channel_id, title=channel_id)
        state.conversations.append_turn(
            conv.id,
            TranscriptTurn(role="user", content=text, timestamp=utc_now_iso(), turn_number=conv.turn_count + 1),
        )
    except Exception:
        logger.exception("Failed to record console input")


async def run_console_loop(state: AppState, *, channel_id: str = "console") -> None:
    """
    Interactive console on the event loop.

    input() runs in a worker thread so scheduled and background tasks keep
    progressing while the prompt waits.
    """
    owner = state.settings.console_owner
    logger.info("Console connector started.")
    _print_ts("[CONSOLE] Use /help for commands, /exit to quit.\n")

    def emit(text: str) -> None:
        _print_ts(text)

    while True:
        try:
            user_input = (await asyncio.to_thread(input, ">>> ")).strip()
        except EOFError:
            logger.info("Console EOF received, exiting.")
            break
        except KeyboardInterrupt:
            logger.info("Console KeyboardInterrupt, exiting.")
            print()
            break

        if not user_input:
            continue

        if user_input.lower() in ("/exit", "/quit"):
            logger.info("Console exit command received.")
            break

        try:
            cmd_response = command_registry.handle(state, user_input, user_id=owner, room_id=channel_id, emit=emit)
        except Exception:
            logger.exception("Command handler crashed.")
            cmd_response = "Internal error while handling a command."

        if cmd_response is not None:
            _print_ts(cmd_response)
            continue

        # Plain text is kept as conversation context for task result summaries.
        _record_user_line(state, channel_id, user_input)
        _print_ts("Noted. Use /new <channel> <instructions> to start a task.")

    logger.info("Console connector finished.")
