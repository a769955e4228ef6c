# tests/test_channels.py

from __future__ import annotations

import io

import pytest

from herald.connectors.channel_manager import ChannelManager
from herald.connectors.console_connector import ConsoleChannel


@pytest.mark.asyncio
async def test_console_channel_prints_and_counts() -> None:
    out = io.StringIO()
    channels = ChannelManager()
    console = ConsoleChannel(owner="me", out=out)
    channels.register(console)

    await channels.send("console", "me", "Your digest is ready")

    assert console.sent == 1
    assert "[console -> me]" in out.getvalue()
    assert "Your digest is ready" in out.getvalue()
    assert channels.get_channel_config("console").owner_identity == "me"
    assert [c.plugin for c in channels.channel_infos()] == ["console"]


def test_duplicate_channel_id_rejected() -> None:
    channels = ChannelManager()
    channels.register(ConsoleChannel(owner="me"))
    with pytest.raises(ValueError):
        channels.register(ConsoleChannel(owner="someone else"))


@pytest.mark.asyncio
async def test_unknown_channel_send_raises() -> None:
    with pytest.raises(KeyError):
        await ChannelManager().send("nope", "me", "hi")
