# tests/test_task_log.py

from __future__ import annotations

import json

from herald.core.ports import TranscriptTurn
from herald.tasks.task_log import TaskLogStorage


def _turn(role: str, content: str, n: int) -> TranscriptTurn:
    return TranscriptTurn(role=role, content=content, timestamp="2026-10-19T10:00:00+00:00", turn_number=n)


def test_create_log_writes_meta_line(task_logs: TaskLogStorage) -> None:
    task_logs.create_log("task-1", "session-1", "Daily digest")

    records = task_logs.read_full_log("task-1")

    assert len(records) == 1
    meta = records[0]
    assert meta["type"] == "meta"
    assert meta["task_id"] == "task-1"
    assert meta["session_id"] == "session-1"
    assert meta["title"] == "Daily digest"
    assert meta["created"]


def test_ensure_log_does_not_truncate(task_logs: TaskLogStorage) -> None:
    task_logs.create_log("task-1", "session-1", "t")
    task_logs.append_turn("task-1", _turn("user", "hello", 1))

    task_logs.ensure_log("task-1", "session-1", "t")

    assert len(task_logs.read_turns("task-1")) == 1


def test_turns_and_events_round_trip(task_logs: TaskLogStorage) -> None:
    task_logs.create_log("task-1", "session-1", "t")
    task_logs.append_turn("task-1", _turn("user", "prompt 1", 1))
    task_logs.append_turn("task-1", _turn("assistant", "answer 1", 1))
    task_logs.append_event("task-1", "error", error="boom")
    task_logs.append_turn("task-1", _turn("user", "prompt 2", 2))

    turns = task_logs.read_turns("task-1")
    events = [r for r in task_logs.read_full_log("task-1") if r.get("type") == "event"]

    assert [t.content for t in turns] == ["prompt 1", "answer 1", "prompt 2"]
    assert events[0]["event"] == "error"
    assert events[0]["error"] == "boom"
    assert task_logs.get_turn_count("task-1") == 2


def test_recent_turns_limit(task_logs: TaskLogStorage) -> None:
    task_logs.create_log("task-1", "session-1", "t")
    for n in range(1, 6):
        task_logs.append_turn("task-1", _turn("user", f"p{n}", n))

    assert [t.content for t in task_logs.get_recent_turns("task-1", 2)] == ["p4", "p5"]
    assert task_logs.get_recent_turns("task-1", 0) == []


def test_malformed_lines_are_skipped(task_logs: TaskLogStorage) -> None:
    task_logs.create_log("task-1", "session-1", "t")
    path = task_logs.get_log_path("task-1")
    with path.open("a", encoding="utf-8") as f:
        f.write("{not json\n")
        f.write("\n")
        f.write(json.dumps(["a", "list"]) + "\n")
    task_logs.append_turn("task-1", _turn("assistant", "still readable", 1))

    assert [t.content for t in task_logs.read_turns("task-1")] == ["still readable"]


def test_missing_log_reads_empty(task_logs: TaskLogStorage) -> None:
    assert task_logs.exists("task-none") is False
    assert task_logs.read_full_log("task-none") == []
    assert task_logs.get_turn_count("task-none") == 0
