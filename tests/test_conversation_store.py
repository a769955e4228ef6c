# tests/test_conversation_store.py

from __future__ import annotations

from pathlib import Path

import pytest

from herald.conversations.store import ConversationStore
from herald.core.ports import TranscriptTurn


def _turn(role: str, content: str, n: int) -> TranscriptTurn:
    return TranscriptTurn(role=role, content=content, timestamp="t", turn_number=n)


def test_get_or_create_reuses_most_recent(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path / "conv.sqlite3")

    first = store.get_or_create("console", title="console")
    again = store.get_or_create("console")
    other = store.get_or_create("matrix")

    assert first.id.startswith("conv-")
    assert again.id == first.id
    assert other.id != first.id


def test_append_turn_updates_counter_and_order(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path / "conv.sqlite3")
    conv = store.create("console")

    store.append_turn(conv.id, _turn("user", "hi", 1))
    store.append_turn(conv.id, _turn("assistant", "hello", 2))
    store.append_turn(conv.id, _turn("assistant", "late", 1))

    assert store.get(conv.id).turn_count == 2
    assert [t.content for t in store.get_turns(conv.id)] == ["hi", "hello", "late"]
    assert [t.content for t in store.get_turns(conv.id, limit=2)] == ["hello", "late"]


def test_append_turn_to_missing_conversation_raises(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path / "conv.sqlite3")
    with pytest.raises(KeyError):
        store.append_turn("conv-missing", _turn("user", "x", 1))
    assert store.list_conversations() == []
