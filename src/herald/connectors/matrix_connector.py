# src/herald/connectors/matrix_connector.py

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable

from nio import AsyncClient, MatrixRoom, RoomMessageText

from ..config import Settings
from ..conversations.store import ConversationStore
from ..core.ports import ChannelConfig, TranscriptTurn
from ..tasks.task_log import utc_now_iso
from .matrix_client import create_matrix_client

logger = logging.getLogger(__name__)

# (text, sender, room_id) -> reply or None
CommandHook = Callable[[str, str, str], str | None]


def _ms_now() -> int:
    return int(time.time() * 1000)


class MatrixChannel:
    """
    Matrix channel plugin (matrix-nio).

    - outbound: send(room_id, text) as m.text
    - inbound: owner messages are recorded on the channel's conversation so
      replies to delivered messages have context; "/..." lines go to the command hook
    - recipient identity is a room id; the configured owner room is the default
    """

    def __init__(
        self,
        settings: Settings,
        *,
        channel_id: str = "matrix",
        conversations: ConversationStore | None = None,
        on_command: CommandHook | None = None,
    ) -> None:
        self._settings = settings
        self._config = ChannelConfig(
            id=channel_id,
            plugin="matrix",
            owner_identity=settings.matrix_owner_room or None,
        )
        self._conversations = conversations
        self._on_command = on_command
        self._client: AsyncClient | None = None
        self._sync_task: asyncio.Task[None] | None = None
        self._startup_ts = 0

    @property
    def config(self) -> ChannelConfig:
        return self._config

    async def start(self) -> None:
        client = await create_matrix_client(self._settings)
        if client is None:
            raise RuntimeError("Matrix client could not be created (see previous errors)")

        self._client = client
        self._startup_ts = _ms_now()
        client.add_event_callback(self._on_message, RoomMessageText)

        logger.info("Matrix initial sync...")
        await client.sync(timeout=30000, full_state=True)
        logger.info("Matrix initial sync done. Joined rooms: %d", len(client.rooms))

        self._sync_task = asyncio.create_task(self._sync_loop(), name="herald-matrix-sync")

    async def _sync_loop(self) -> None:
        client = self._client
        if client is None:
            return
        try:
            while True:
                await client.sync(timeout=30000, full_state=False)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Matrix sync loop crashed")

    async def stop(self) -> None:
        if self._sync_task is not None:
            self._sync_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sync_task
            self._sync_task = None

        if self._client is not None:
            await self._client.close()
            self._client = None
        logger.info("Matrix channel stopped")

    async def send(self, recipient: str, text: str) -> None:
        if self._client is None:
            raise RuntimeError("Matrix channel is not connected")

        await self._client.room_send(
            room_id=recipient,
            message_type="m.room.message",
            content={"msgtype": "m.text", "body": text},
            ignore_unverified_devices=True,
        )

    async def _on_message(self, room: MatrixRoom, event: RoomMessageText) -> None:
        client = self._client
        if client is None:
            return

        ts = getattr(event, "server_timestamp", None)
        if ts is not None and ts <= self._startup_ts:
            return
        if event.sender == client.user_id:
            return

        owner_room = self._config.owner_identity
        if owner_room and room.room_id != owner_room:
            return

        body = (event.body or "").strip()
        if not body:
            return

        logger.info("Matrix <%s> %s: %r", room.display_name, event.sender, body)

        if body.startswith("/") and self._on_command is not None:
            try:
                reply = self._on_command(body, event.sender, room.room_id)
            except Exception:
                logger.exception("Command handler crashed.")
                reply = "Internal error while handling a command."
            if reply:
                try:
                    await self.send(room.room_id, reply)
                except Exception:
                    logger.exception("Failed to send command reply.")
            return

        self._record_inbound(body)

    def _record_inbound(self, body: str) -> None:
        if self._conversations is None:
            return
        try:
            conv = self._conversations.get_or_create(self._config.id, title="Matrix")
            self._conversations.append_turn(
                conv.id,
                TranscriptTurn(role="user", content=body, timestamp=utc_now_iso(), turn_number=conv.turn_count + 1),
            )
        except Exception:
            logger.exception("Failed to record inbound Matrix message")
