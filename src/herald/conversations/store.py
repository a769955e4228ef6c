# src/herald/conversations/store.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from pathlib import Path

from ulid import ULID

from ..core.ports import Conversation, TranscriptTurn

logger = logging.getLogger(__name__)


class ConversationStore:
    """
    Minimal SQLite transcript store.

    Tables:
    - conversations: one row per conversation (channel id, title, turn counter)
    - conversation_turns: ordered turns (role, content, timestamp, turn_number)

    Each method opens its own connection.
    """

    def __init__(self, db_path: str | Path = "conversations.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info("ConversationStore ready db=%s", self._db_path)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    channel TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    turn_count INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_turns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT NOT NULL,
                    turn_number INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_conversations_channel ON conversations(channel, updated_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_turns_conversation ON conversation_turns(conversation_id, id)"
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            channel=str(row["channel"]),
            title=str(row["title"] or ""),
            turn_count=int(row["turn_count"] or 0),
            updated_at=float(row["updated_at"] or 0.0),
        )

    def create(self, channel: str, title: str = "") -> Conversation:
        now = time.time()
        conv_id = f"conv-{ULID()}"
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO conversations(id, channel, title, turn_count, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (conv_id, channel, title, now, now),
            )
            conn.commit()
        finally:
            conn.close()
        logger.debug("Conversation created id=%s channel=%s", conv_id, channel)
        return Conversation(id=conv_id, channel=channel, title=title, turn_count=0, updated_at=now)

    def get(self, conversation_id: str) -> Conversation | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
            return self._row_to_conversation(row) if row else None
        finally:
            conn.close()

    def get_most_recent(self, channel: str) -> Conversation | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                """
                SELECT * FROM conversations
                WHERE channel = ?
                ORDER BY updated_at DESC, rowid DESC
                    LIMIT 1
                """,
                (channel,),
            ).fetchone()
            return self._row_to_conversation(row) if row else None
        finally:
            conn.close()

    def get_or_create(self, channel: str, title: str = "") -> Conversation:
        return self.get_most_recent(channel) or self.create(channel, title)

    def list_conversations(self, limit: int = 20) -> list[Conversation]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM conversations ORDER BY updated_at DESC, rowid DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
            return [self._row_to_conversation(r) for r in rows]
        finally:
            conn.close()

    def append_turn(self, conversation_id: str, turn: TranscriptTurn) -> None:
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                UPDATE conversations
                SET turn_count = MAX(turn_count, ?), updated_at = ?
                WHERE id = ?
                """,
                (int(turn.turn_number), time.time(), conversation_id),
            )
            if cur.rowcount == 0:
                raise KeyError(f"Conversation not found: {conversation_id}")
            conn.execute(
                """
                INSERT INTO conversation_turns(conversation_id, turn_number, role, content, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation_id, int(turn.turn_number), turn.role, turn.content, turn.timestamp),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_turns(self, conversation_id: str, limit: int | None = None) -> list[TranscriptTurn]:
        """Turns in order; with limit, only the most recent ones."""
        conn = self._get_conn()
        try:
            if limit is None:
                rows = conn.execute(
                    "SELECT * FROM conversation_turns WHERE conversation_id = ? ORDER BY id ASC",
                    (conversation_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM (
                        SELECT * FROM conversation_turns
                        WHERE conversation_id = ?
                        ORDER BY id DESC
                            LIMIT ?
                    ) ORDER BY id ASC
                    """,
                    (conversation_id, int(limit)),
                ).fetchall()
            return [
                TranscriptTurn(
                    role=r["role"],
                    content=str(r["content"]),
                    timestamp=str(r["timestamp"]),
                    turn_number=int(r["turn_number"]),
                )
                for r in rows
            ]
        finally:
            conn.close()
