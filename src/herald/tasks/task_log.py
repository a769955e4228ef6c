# src/herald/tasks/task_log.py

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..core.ports import TranscriptTurn, TurnRole

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class TaskLogStorage:
    """
    Append-only JSONL execution logs, one file per task.

    Line types:
    - {"type": "meta", "task_id", "session_id", "title", "created"}  (first line)
    - {"type": "turn", "role", "content", "timestamp", "turn_number"}
    - {"type": "event", "event", "timestamp", ...}                     (errors, reconciliation)

    Malformed lines are skipped on read.
    """

    def __init__(self, logs_dir: str | Path) -> None:
        self._logs_dir = Path(logs_dir)
        self._logs_dir.mkdir(parents=True, exist_ok=True)

    def get_log_path(self, task_id: str) -> Path:
        return self._logs_dir / f"{task_id}.jsonl"

    def exists(self, task_id: str) -> bool:
        return self.get_log_path(task_id).exists()

    def create_log(self, task_id: str, session_id: str, title: str) -> None:
        meta = {
            "type": "meta",
            "task_id": task_id,
            "session_id": session_id,
            "title": title,
            "created": utc_now_iso(),
        }
        path = self.get_log_path(task_id)
        path.write_text(json.dumps(meta, ensure_ascii=False) + "\n", encoding="utf-8")

    def ensure_log(self, task_id: str, session_id: str, title: str) -> None:
        if not self.exists(task_id):
            self.create_log(task_id, session_id, title)

    def _append_line(self, task_id: str, record: dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False) + "\n"
        with self.get_log_path(task_id).open("a", encoding="utf-8") as f:
            f.write(line)

    def append_turn(self, task_id: str, turn: TranscriptTurn) -> None:
        self._append_line(task_id, turn.to_dict())

    def append_event(self, task_id: str, event: str, **data: Any) -> None:
        record: dict[str, Any] = {"type": "event", "event": event, "timestamp": utc_now_iso()}
        record.update(data)
        try:
            self._append_line(task_id, record)
        except OSError:
            logger.exception("Failed to append event %s to task log %s", event, task_id)
            raise

    def read_full_log(self, task_id: str) -> list[dict[str, Any]]:
        path = self.get_log_path(task_id)
        if not path.exists():
            return []

        out: list[dict[str, Any]] = []
        with path.open("r", encoding="utf-8") as f:
            for raw in f:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    parsed = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if isinstance(parsed, dict):
                    out.append(parsed)
        return out

    @staticmethod
    def _to_turn(rec: dict[str, Any]) -> TranscriptTurn | None:
        role = rec.get("role")
        if role not in ("user", "assistant", "system"):
            return None
        try:
            turn_number = int(rec.get("turn_number") or 0)
        except (TypeError, ValueError):
            turn_number = 0
        role_t: TurnRole = role
        return TranscriptTurn(
            role=role_t,
            content=str(rec.get("content") or ""),
            timestamp=str(rec.get("timestamp") or ""),
            turn_number=turn_number,
        )

    def read_turns(self, task_id: str) -> list[TranscriptTurn]:
        turns: list[TranscriptTurn] = []
        for rec in self.read_full_log(task_id):
            if rec.get("type") != "turn":
                continue
            turn = self._to_turn(rec)
            if turn is not None:
                turns.append(turn)
        return turns

    def get_recent_turns(self, task_id: str, limit: int) -> list[TranscriptTurn]:
        if limit <= 0:
            return []
        return self.read_turns(task_id)[-limit:]

    def get_turn_count(self, task_id: str) -> int:
        """Number of distinct turn numbers (a user+assistant pair shares one)."""
        return len({t.turn_number for t in self.read_turns(task_id)})
