# src/herald/tasks/task_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any

from ulid import ULID

from .task_models import (
    CreatedBy,
    CreateTaskInput,
    DeliveryAction,
    ListTasksFilter,
    SourceType,
    Task,
    TaskStatus,
    TaskType,
    TaskUpdate,
    WorkItem,
    validate_transition,
)

logger = logging.getLogger(__name__)


class TaskStoreError(RuntimeError):
    """Base class for task store errors."""


class TaskNotFoundError(TaskStoreError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(TaskStoreError):
    def __init__(self, task_id: str, from_status: TaskStatus, to_status: TaskStatus) -> None:
        super().__init__(f"Task {task_id}: illegal status transition {from_status.value} -> {to_status.value}")
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status


class TaskStore:
    """
    SQLite task store.

    Owns three tables:
    - tasks:              one row per Task (work/delivery stored as JSON lists)
    - task_conversations: many-to-many link between tasks and conversations
    - brain_sessions:     logical session_id -> backend session token

    The schema is migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "tasks.sqlite3", logs_dir: str | Path | None = None) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._logs_dir = Path(logs_dir) if logs_dir is not None else self._db_path.parent / "tasks" / "logs"
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except sqlite3.Error:
            total = -1
        logger.info("TaskStore ready db=%s total=%s", self._db_path, total)

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    @property
    def logs_dir(self) -> Path:
        return self._logs_dir

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    source_type TEXT NOT NULL,
                    source_ref TEXT,
                    title TEXT NOT NULL,
                    instructions TEXT NOT NULL DEFAULT '',
                    work TEXT NOT NULL DEFAULT '[]',
                    delivery TEXT NOT NULL DEFAULT '[]',
                    status TEXT NOT NULL DEFAULT 'pending',
                    session_id TEXT NOT NULL,
                    recurrence_id TEXT,
                    occurrence_date TEXT,
                    scheduled_for REAL,
                    started_at REAL,
                    completed_at REAL,
                    deleted_at REAL,
                    created_at REAL NOT NULL,
                    created_by TEXT NOT NULL DEFAULT 'agent',
                    log_path TEXT NOT NULL
                )
                """
            )

            # Migrations (safe): add missing columns.
            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("source_ref", "TEXT")
            add_col("work", "TEXT NOT NULL DEFAULT '[]'")
            add_col("delivery", "TEXT NOT NULL DEFAULT '[]'")
            add_col("recurrence_id", "TEXT")
            add_col("occurrence_date", "TEXT")
            add_col("deleted_at", "REAL")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_due_status ON tasks(status, scheduled_for)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_created ON tasks(created_at)")
            cur.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_occurrence "
                "ON tasks(recurrence_id, occurrence_date) "
                "WHERE recurrence_id IS NOT NULL AND occurrence_date IS NOT NULL"
            )

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS task_conversations (
                    task_id TEXT NOT NULL,
                    conversation_id TEXT NOT NULL,
                    linked_at REAL NOT NULL,
                    PRIMARY KEY (task_id, conversation_id)
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_task_conversations_conv "
                "ON task_conversations(conversation_id)"
            )

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS brain_sessions (
                    session_id TEXT PRIMARY KEY,
                    backend_token TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )

            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _items_to_str(items: list[WorkItem] | list[DeliveryAction]) -> str:
        return json.dumps([i.to_dict() for i in items], ensure_ascii=False)

    @staticmethod
    def _str_to_list(s: str | None) -> list[dict[str, Any]]:
        if not s:
            return []
        try:
            val = json.loads(s)
        except json.JSONDecodeError:
            logger.warning("TaskStore: malformed JSON list column, treating as empty")
            return []
        return [v for v in val if isinstance(v, dict)] if isinstance(val, list) else []

    @staticmethod
    def _opt_float(raw: Any) -> float | None:
        return float(raw) if raw is not None else None

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=str(row["id"]),
            type=TaskType(row["type"]),
            source_type=SourceType(row["source_type"]),
            source_ref=row["source_ref"],
            title=str(row["title"] or ""),
            instructions=str(row["instructions"] or ""),
            work=[WorkItem.from_dict(d) for d in self._str_to_list(row["work"])],
            delivery=[DeliveryAction.from_dict(d) for d in self._str_to_list(row["delivery"])],
            status=TaskStatus.from_db(row["status"]),
            session_id=str(row["session_id"]),
            recurrence_id=row["recurrence_id"],
            occurrence_date=row["occurrence_date"],
            scheduled_for=self._opt_float(row["scheduled_for"]),
            started_at=self._opt_float(row["started_at"]),
            completed_at=self._opt_float(row["completed_at"]),
            deleted_at=self._opt_float(row["deleted_at"]),
            created_at=float(row["created_at"] or 0.0),
            created_by=CreatedBy(row["created_by"]),
            log_path=str(row["log_path"]),
        )

    @staticmethod
    def _new_task_id() -> str:
        return f"task-{ULID()}"

    @staticmethod
    def _new_session_id() -> str:
        return f"session-{ULID()}"

    def _log_path_for(self, task_id: str) -> Path:
        return self._logs_dir / f"{task_id}.jsonl"

    @staticmethod
    def _validate_input(data: CreateTaskInput) -> None:
        if not data.title or not data.title.strip():
            raise ValueError("title is required")
        if data.type == TaskType.SCHEDULED and data.scheduled_for is None:
            raise ValueError("scheduled tasks require scheduled_for")
        for action in data.delivery:
            if not action.channel or not action.channel.strip():
                raise ValueError("delivery action channel is required")

    def _insert(self, conn: sqlite3.Connection, data: CreateTaskInput, session_id: str) -> Task:
        task_id = self._new_task_id()
        task = Task(
            id=task_id,
            type=data.type,
            source_type=data.source_type,
            source_ref=data.source_ref,
            title=data.title.strip(),
            instructions=(data.instructions or "").strip(),
            work=[WorkItem(description=w.description, status=w.status) for w in data.work],
            delivery=[
                DeliveryAction(channel=a.channel.strip(), recipient=a.recipient, content=a.content, status=a.status)
                for a in data.delivery
            ],
            status=TaskStatus.PENDING,
            session_id=session_id,
            recurrence_id=data.recurrence_id,
            occurrence_date=data.occurrence_date,
            scheduled_for=float(data.scheduled_for) if data.scheduled_for is not None else None,
            created_at=time.time(),
            created_by=data.created_by,
            log_path=str(self._log_path_for(task_id)),
        )

        conn.execute(
            """
            INSERT INTO tasks(
                id, type, source_type, source_ref, title, instructions, work, delivery,
                status, session_id, recurrence_id, occurrence_date,
                scheduled_for, created_at, created_by, log_path
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.type.value,
                task.source_type.value,
                task.source_ref,
                task.title,
                task.instructions,
                self._items_to_str(task.work),
                self._items_to_str(task.delivery),
                task.status.value,
                task.session_id,
                task.recurrence_id,
                task.occurrence_date,
                task.scheduled_for,
                task.created_at,
                task.created_by.value,
                task.log_path,
            ),
        )
        return task

    # ---- public API: CRUD ----

    def count_tasks(self) -> int:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM tasks")
            (n,) = cur.fetchone()
            return int(n)
        finally:
            conn.close()

    def create(self, data: CreateTaskInput) -> Task:
        self._validate_input(data)

        conn = self._get_conn()
        try:
            task = self._insert(conn, data, self._new_session_id())
            conn.commit()
        finally:
            conn.close()

        logger.debug(
            "Task created id=%s type=%s source=%s scheduled_for=%s",
            task.id,
            task.type.value,
            task.source_type.value,
            task.scheduled_for,
        )
        return task

    def find_by_id(self, task_id: str) -> Task | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            return self._row_to_task(row) if row else None
        finally:
            conn.close()

    def get(self, task_id: str) -> Task:
        """Like find_by_id, but raises TaskNotFoundError."""
        task = self.find_by_id(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list(self, flt: ListTasksFilter | None = None) -> list[Task]:
        """
        List tasks, newest first.

        By default soft-deleted tasks are excluded; set include_deleted=True to include them.
        """
        flt = flt or ListTasksFilter()
        conditions: list[str] = []
        params: list[Any] = []

        if not flt.include_deleted:
            conditions.append("status != 'deleted'")

        if flt.status is not None:
            statuses = [flt.status] if isinstance(flt.status, TaskStatus) else list(flt.status)
            if statuses:
                conditions.append(f"status IN ({', '.join('?' for _ in statuses)})")
                params.extend(s.value for s in statuses)

        if flt.type is not None:
            conditions.append("type = ?")
            params.append(flt.type.value)

        if flt.source_type is not None:
            conditions.append("source_type = ?")
            params.append(flt.source_type.value)

        if flt.recurrence_id:
            conditions.append("recurrence_id = ?")
            params.append(flt.recurrence_id)

        sql = "SELECT * FROM tasks"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY created_at DESC, rowid DESC"

        # SQLite needs a LIMIT clause to use OFFSET; -1 means "no limit".
        if flt.limit is not None or flt.offset:
            sql += " LIMIT ?"
            params.append(int(flt.limit) if flt.limit is not None else -1)
        if flt.offset:
            sql += " OFFSET ?"
            params.append(int(flt.offset))

        conn = self._get_conn()
        try:
            rows = conn.execute(sql, params).fetchall()
            return [self._row_to_task(r) for r in rows]
        finally:
            conn.close()

    def list_due(self, *, now_ts: float, limit: int = 64, task_type: TaskType | None = None) -> list[Task]:
        """
        Return pending tasks that are due, oldest first.

        A task is due if:
        - scheduled_for IS NULL (meaning "any time"), OR
        - scheduled_for <= now_ts

        task_type narrows the rows before LIMIT is applied.
        """
        sql = """
            SELECT *
            FROM tasks
            WHERE status = 'pending'
              AND (scheduled_for IS NULL OR scheduled_for <= ?)
        """
        params: list[Any] = [float(now_ts)]
        if task_type is not None:
            sql += " AND type = ?"
            params.append(task_type.value)
        sql += " ORDER BY COALESCE(scheduled_for, created_at) ASC, created_at ASC LIMIT ?"
        params.append(int(limit))

        conn = self._get_conn()
        try:
            rows = conn.execute(sql, params).fetchall()
            return [self._row_to_task(r) for r in rows]
        finally:
            conn.close()

    def update(self, task_id: str, changes: TaskUpdate) -> Task:
        """
        Apply a partial update and return the updated task.

        - status changes are validated against the state machine
        - lifecycle timestamps are set once: a non-null stamp is never overwritten
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            if row is None:
                raise TaskNotFoundError(task_id)
            current = self._row_to_task(row)

            if changes.is_empty():
                conn.rollback()
                return current

            fields: list[str] = []
            params: list[Any] = []

            if changes.status is not None:
                if not validate_transition(current.status, changes.status):
                    raise InvalidTransitionError(task_id, current.status, changes.status)
                fields.append("status = ?")
                params.append(changes.status.value)

            for column, value in (
                ("started_at", changes.started_at),
                ("completed_at", changes.completed_at),
                ("deleted_at", changes.deleted_at),
            ):
                if value is not None:
                    fields.append(f"{column} = COALESCE({column}, ?)")
                    params.append(float(value))

            if changes.work is not None:
                fields.append("work = ?")
                params.append(self._items_to_str(changes.work))

            if changes.delivery is not None:
                fields.append("delivery = ?")
                params.append(self._items_to_str(changes.delivery))

            if changes.source_ref is not None:
                fields.append("source_ref = ?")
                params.append(changes.source_ref)

            params.append(task_id)
            conn.execute(f"UPDATE tasks SET {', '.join(fields)} WHERE id = ?", params)
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        updated = self._row_to_task(row)
        if changes.status is not None and changes.status != current.status:
            logger.info("Task %s: %s -> %s", task_id, current.status.value, updated.status.value)
        return updated

    def delete(self, task_id: str) -> Task:
        """
        Soft-delete a task.

        Sets status to 'deleted' and records deleted_at. The row and its
        execution log file are preserved for the audit trail.
        """
        return self.update(task_id, TaskUpdate(status=TaskStatus.DELETED, deleted_at=time.time()))

    # ---- recurrence ----

    def find_by_recurrence(self, recurrence_id: str) -> list[Task]:
        """All instances of a recurring task, oldest first."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE recurrence_id = ? ORDER BY created_at ASC, rowid ASC",
                (recurrence_id,),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]
        finally:
            conn.close()

    def find_or_create_for_occurrence(self, data: CreateTaskInput) -> tuple[Task, bool]:
        """
        Find or create the task of one occurrence of a recurring source.

        Returns (task, created). A second call with the same
        (recurrence_id, occurrence_date) returns the existing row unchanged.
        New occurrences inherit session_id from the earliest sibling so brain
        context can be resumed across firings.
        """
        if not data.recurrence_id or not data.occurrence_date:
            raise ValueError("recurrence_id and occurrence_date are required")
        self._validate_input(data)

        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            existing = conn.execute(
                "SELECT * FROM tasks WHERE recurrence_id = ? AND occurrence_date = ?",
                (data.recurrence_id, data.occurrence_date),
            ).fetchone()
            if existing is not None:
                conn.rollback()
                return self._row_to_task(existing), False

            prior = conn.execute(
                """
                SELECT session_id FROM tasks
                WHERE recurrence_id = ?
                ORDER BY created_at ASC, rowid ASC
                    LIMIT 1
                """,
                (data.recurrence_id,),
            ).fetchone()
            session_id = str(prior["session_id"]) if prior is not None else self._new_session_id()

            task = self._insert(conn, data, session_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(
            "Occurrence task created id=%s recurrence=%s occurrence=%s session=%s",
            task.id,
            task.recurrence_id,
            task.occurrence_date,
            task.session_id,
        )
        return task, True

    # ---- task <-> conversation links ----

    def link_task_to_conversation(self, task_id: str, conversation_id: str) -> None:
        """Idempotent: linking twice is a no-op."""
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT OR IGNORE INTO task_conversations(task_id, conversation_id, linked_at)
                VALUES (?, ?, ?)
                """,
                (task_id, conversation_id, time.time()),
            )
            conn.commit()
        finally:
            conn.close()

    def get_conversations_for_task(self, task_id: str) -> list[tuple[str, float]]:
        """(conversation_id, linked_at) pairs, most recent link first."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT conversation_id, linked_at
                FROM task_conversations
                WHERE task_id = ?
                ORDER BY linked_at DESC, rowid DESC
                """,
                (task_id,),
            ).fetchall()
            return [(str(r["conversation_id"]), float(r["linked_at"])) for r in rows]
        finally:
            conn.close()

    def get_tasks_for_conversation(self, conversation_id: str) -> list[tuple[str, float]]:
        """(task_id, linked_at) pairs, most recent link first."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT task_id, linked_at
                FROM task_conversations
                WHERE conversation_id = ?
                ORDER BY linked_at DESC, rowid DESC
                """,
                (conversation_id,),
            ).fetchall()
            return [(str(r["task_id"]), float(r["linked_at"])) for r in rows]
        finally:
            conn.close()

    # ---- backend session registry ----

    def get_backend_session(self, session_id: str) -> str | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT backend_token FROM brain_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            return str(row["backend_token"]) if row else None
        finally:
            conn.close()

    def save_backend_session(self, session_id: str, token: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO brain_sessions(session_id, backend_token, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    backend_token = excluded.backend_token,
                    updated_at = excluded.updated_at
                """,
                (session_id, token, time.time()),
            )
            conn.commit()
        finally:
            conn.close()

    def clear_backend_session(self, session_id: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM brain_sessions WHERE session_id = ?", (session_id,))
            conn.commit()
        finally:
            conn.close()
