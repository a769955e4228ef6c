# src/herald/connectors/channel_manager.py

from __future__ import annotations

import logging
from typing import Protocol

from ..core.ports import ChannelConfig

logger = logging.getLogger(__name__)


class ChannelPlugin(Protocol):
    """One connected channel instance (console, a Matrix account, ...)."""

    @property
    def config(self) -> ChannelConfig: ...

    async def start(self) -> None: ...
    async def stop(self) -> None: ...
    async def send(self, recipient: str, text: str) -> None: ...


class ChannelManager:
    """
    Registry of channel instances.

    Outbound only: the task pipeline resolves a channel by plugin kind and
    sends through here. Channels own their own connection lifecycle.
    """

    def __init__(self) -> None:
        self._channels: dict[str, ChannelPlugin] = {}

    def register(self, plugin: ChannelPlugin) -> None:
        cid = plugin.config.id
        if cid in self._channels:
            raise ValueError(f"Channel already registered: {cid}")
        self._channels[cid] = plugin
        logger.info("Channel registered id=%s plugin=%s", cid, plugin.config.plugin)

    def channel_infos(self) -> list[ChannelConfig]:
        return [p.config for p in self._channels.values()]

    def get_channel_config(self, channel_id: str) -> ChannelConfig | None:
        plugin = self._channels.get(channel_id)
        return plugin.config if plugin is not None else None

    async def send(self, channel_id: str, recipient: str, text: str) -> None:
        plugin = self._channels.get(channel_id)
        if plugin is None:
            raise KeyError(f"Unknown channel: {channel_id}")
        await plugin.send(recipient, text)

    async def start_all(self) -> None:
        for cid, plugin in self._channels.items():
            try:
                await plugin.start()
            except Exception:
                logger.exception("Channel %s failed to start", cid)

    async def stop_all(self) -> None:
        for cid, plugin in self._channels.items():
            try:
                await plugin.stop()
            except Exception:
                logger.exception("Channel %s failed to stop", cid)
