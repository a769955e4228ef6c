# src/herald/tasks/task_scheduler.py

"""
Task scheduler.

A small polling loop that:
- fetches pending type=scheduled tasks whose scheduled_for is due (or unset);
  immediate tasks are started at creation time,
- hands each one to the processor.

Failures are logged per task and never stop the loop. The processor/executor
own the task status, so nothing is re-queued here.

One scheduler per database is assumed; there is no claim/lease step.
"""

from __future__ import annotations

import asyncio
import logging
import time

from .task_log import TaskLogStorage
from .task_models import ListTasksFilter, TaskStatus, TaskType, TaskUpdate
from .task_processor import TaskProcessor
from .task_store import TaskStore, TaskStoreError

logger = logging.getLogger(__name__)


class TaskScheduler:
    def __init__(
        self,
        task_store: TaskStore,
        processor: TaskProcessor,
        *,
        interval_seconds: float = 30.0,
        log_storage: TaskLogStorage | None = None,
        batch_limit: int = 64,
    ) -> None:
        self._store = task_store
        self._processor = processor
        self._interval = max(0.5, float(interval_seconds))
        self._logs = log_storage
        self._batch_limit = int(batch_limit)
        self._loop_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        """
        Reconcile crashed runs, sweep once, then poll every interval_seconds.

        The first sweep picks up tasks that became due while the process was down.
        """
        if self.running:
            return

        self._stopping.clear()
        self.reconcile_stale_running()
        await self.check_due_tasks()

        self._loop_task = asyncio.create_task(self._run_loop(), name="herald-task-scheduler")
        logger.info("Task scheduler started (interval=%.1fs)", self._interval)

    async def stop(self) -> None:
        """
        Stop polling and wait for the current sweep to finish.

        The task being processed runs to a final status; the rest of the batch
        stays pending for the next start.
        """
        task = self._loop_task
        self._loop_task = None
        if task is None:
            return
        self._stopping.set()
        await task
        logger.info("Task scheduler stopped")

    async def _run_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if self._stopping.is_set():
                break
            try:
                await self.check_due_tasks()
            except Exception:
                logger.exception("Scheduler sweep failed")

    async def check_due_tasks(self) -> int:
        """Run one sweep. Returns the number of tasks handed to the processor."""
        now_ts = time.time()

        try:
            due = self._store.list_due(now_ts=now_ts, limit=self._batch_limit, task_type=TaskType.SCHEDULED)
        except Exception:
            logger.exception("list_due failed")
            return 0

        if due:
            logger.info("Scheduler: %d due task(s)", len(due))

        handled = 0
        for i, task in enumerate(due):
            if self._stopping.is_set():
                logger.info("Scheduler stopping, %d due task(s) left for next start", len(due) - i)
                break
            try:
                await self._processor.execute_and_deliver(task)
                handled += 1
            except Exception:
                logger.exception("Scheduled task %s failed", task.id)
        return handled

    def reconcile_stale_running(self) -> int:
        """
        Mark tasks left in "running" by a previous process as failed.

        Nothing else can be running at startup, so every such row is stale.
        """
        try:
            stale = self._store.list(ListTasksFilter(status=TaskStatus.RUNNING))
        except Exception:
            logger.exception("Reconciliation query failed")
            return 0

        n = 0
        for task in stale:
            try:
                if self._logs is not None:
                    self._logs.ensure_log(task.id, task.session_id, task.title)
                    self._logs.append_event(task.id, "error", error="interrupted by process restart")
                self._store.update(task.id, TaskUpdate(status=TaskStatus.FAILED, completed_at=time.time()))
                n += 1
            except (OSError, TaskStoreError):
                logger.exception("Could not reconcile task %s", task.id)

        if n:
            logger.warning("Reconciled %d task(s) interrupted while running", n)
        return n
