# src/herald/tasks/task_processor.py

"""
Task processor.

Single entry point for running a task end to end, used both when a task is
created (immediate tasks) and by the scheduler (scheduled tasks):

- fast path: every pending delivery action is pre-composed -> deliver directly
- standard path: executor (brain) -> validation gate -> delivery executor

After every attempt the processor reports the outcome to linked
conversations, the event hub and the notification sink.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from ..core.ports import ConversationRepo, EventPublisher, Importance, NotificationSink, TranscriptTurn
from .delivery_executor import DeliveryActionResult, DeliveryExecutor, DeliveryResult
from .task_executor import ExecutionResult, TaskExecutor
from .task_log import utc_now_iso
from .task_models import DeliveryAction, ItemStatus, Task, TaskStatus, TaskType, TaskUpdate, WorkItem
from .task_store import TaskStore, TaskStoreError

logger = logging.getLogger(__name__)

ProcessPath = Literal["fast", "standard", "skipped"]


@dataclass(slots=True)
class ProcessOutcome:
    task_id: str
    path: ProcessPath
    status: TaskStatus
    execution: ExecutionResult | None = None
    delivery: DeliveryResult | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED


def merge_delivery_results(
    actions: Sequence[DeliveryAction],
    results: Sequence[DeliveryActionResult],
) -> list[DeliveryAction]:
    """Copy of actions with per-action outcomes applied (pending -> completed/failed only)."""
    merged = [DeliveryAction(a.channel, a.recipient, a.content, a.status) for a in actions]
    for r in results:
        if not 0 <= r.index < len(merged):
            continue
        action = merged[r.index]
        if action.status != ItemStatus.PENDING:
            continue
        action.status = ItemStatus.COMPLETED if r.success else ItemStatus.FAILED
    return merged


def _complete_work(items: Sequence[WorkItem]) -> list[WorkItem]:
    return [
        WorkItem(w.description, ItemStatus.COMPLETED if w.status == ItemStatus.PENDING else w.status)
        for w in items
    ]


def uses_fast_path(task: Task) -> bool:
    """True if there is something to deliver and all of it is pre-composed."""
    pending = task.pending_delivery()
    return bool(pending) and all(a.content is not None for a in pending)


class TaskProcessor:
    def __init__(
        self,
        task_store: TaskStore,
        executor: TaskExecutor,
        delivery_executor: DeliveryExecutor,
        *,
        conversations: ConversationRepo | None = None,
        notifications: NotificationSink | None = None,
        events: EventPublisher | None = None,
    ) -> None:
        self._store = task_store
        self._executor = executor
        self._delivery = delivery_executor
        self._conversations = conversations
        self._notifications = notifications
        self._events = events
        self._inflight: set[asyncio.Task[None]] = set()

    # ---- creation trigger ----

    def on_task_created(self, task: Task) -> asyncio.Task[None] | None:
        """
        Start immediate pending tasks in the background.

        Returns the detached asyncio.Task (or None when nothing was started).
        Must be called from a running event loop.
        """
        if task.type != TaskType.IMMEDIATE or task.status != TaskStatus.PENDING:
            return None

        logger.info("Immediate task created, executing: %s (%s)", task.title, task.id)
        return self.start_detached(task)

    def start_detached(self, task: Task) -> asyncio.Task[None]:
        """Run execute_and_deliver in the background, tracked until it finishes."""
        job = asyncio.create_task(self._run_detached(task), name=f"herald-task-{task.id}")
        self._inflight.add(job)
        job.add_done_callback(self._inflight.discard)
        return job

    async def _run_detached(self, task: Task) -> None:
        try:
            await self.execute_and_deliver(task)
        except Exception:
            logger.exception("Detached execution of task %s crashed", task.id)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def drain(self) -> None:
        """Wait for every background execution started by on_task_created."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ---- main entry point ----

    async def execute_and_deliver(self, task: Task) -> ProcessOutcome:
        current = self._store.find_by_id(task.id)
        if current is None or current.status != TaskStatus.PENDING:
            status = current.status if current is not None else task.status
            logger.info("Task %s skipped (status=%s)", task.id, status.value)
            return ProcessOutcome(task_id=task.id, path="skipped", status=status)

        if uses_fast_path(current):
            outcome = await self._run_fast_path(current)
        else:
            outcome = await self._run_standard_path(current)

        final = self._store.find_by_id(task.id) or current
        self._report(final, outcome)
        return outcome

    async def _run_fast_path(self, task: Task) -> ProcessOutcome:
        logger.info("Task %s: all delivery pre-composed, skipping brain", task.id)
        try:
            task = self._store.update(task.id, TaskUpdate(status=TaskStatus.RUNNING, started_at=time.time()))
            delivery = await self._delivery.execute_delivery_actions(task, "")
            self._store.update(
                task.id,
                TaskUpdate(
                    status=TaskStatus.COMPLETED,
                    completed_at=time.time(),
                    delivery=merge_delivery_results(task.delivery, delivery.results),
                ),
            )
        except Exception as e:
            return self._fail(task, "fast", e)

        return ProcessOutcome(task_id=task.id, path="fast", status=TaskStatus.COMPLETED, delivery=delivery)

    async def _run_standard_path(self, task: Task) -> ProcessOutcome:
        result = await self._executor.run(task)
        if not result.success:
            status = TaskStatus.NEEDS_REVIEW if result.needs_review else TaskStatus.FAILED
            return ProcessOutcome(
                task_id=task.id,
                path="standard",
                status=status,
                execution=result,
                error=result.error,
            )

        try:
            running = self._store.get(task.id)
            delivery = await self._delivery.execute_delivery_actions(running, result.deliverable or "")
            self._store.update(
                task.id,
                TaskUpdate(
                    status=TaskStatus.COMPLETED,
                    completed_at=time.time(),
                    work=_complete_work(running.work),
                    delivery=merge_delivery_results(running.delivery, delivery.results),
                ),
            )
        except Exception as e:
            outcome = self._fail(task, "standard", e)
            outcome.execution = result
            return outcome

        return ProcessOutcome(
            task_id=task.id,
            path="standard",
            status=TaskStatus.COMPLETED,
            execution=result,
            delivery=delivery,
        )

    def _fail(self, task: Task, path: ProcessPath, exc: Exception) -> ProcessOutcome:
        message = str(exc) or exc.__class__.__name__
        logger.exception("Task %s failed during %s path", task.id, path)
        try:
            self._store.update(task.id, TaskUpdate(status=TaskStatus.FAILED, completed_at=time.time()))
        except TaskStoreError:
            logger.exception("Task %s: could not mark failed", task.id)
        return ProcessOutcome(task_id=task.id, path=path, status=TaskStatus.FAILED, error=message)

    # ---- reporting ----

    @staticmethod
    def format_summary(task: Task, outcome: ProcessOutcome) -> str:
        """Human-readable result written to linked conversations."""
        if outcome.status == TaskStatus.COMPLETED:
            lines = [f"Task completed: {task.title}"]
            body = ""
            if outcome.execution is not None:
                body = outcome.execution.deliverable or outcome.execution.work
            if body:
                lines += ["", body]
            if outcome.delivery is not None:
                for r in outcome.delivery.results:
                    if r.success:
                        lines.append(f"Delivered via {r.channel}.")
                    else:
                        lines.append(f"Delivery via {r.channel} failed: {r.error or 'unknown error'}")
            return "\n".join(lines)

        if outcome.status == TaskStatus.NEEDS_REVIEW:
            lines = [f"Task needs your review: {task.title}", "", f"Reason: {outcome.error or 'unknown'}"]
            if outcome.execution is not None and outcome.execution.work:
                lines += ["", outcome.execution.work]
            lines += ["", "Nothing was sent."]
            return "\n".join(lines)

        return f"Task failed: {task.title}\n\nError: {outcome.error or 'unknown error'}"

    @staticmethod
    def _importance(outcome: ProcessOutcome) -> Importance:
        if outcome.status == TaskStatus.COMPLETED:
            if outcome.delivery is not None and not outcome.delivery.all_succeeded:
                return "warning"
            return "success"
        if outcome.status == TaskStatus.NEEDS_REVIEW:
            return "warning"
        return "error"

    def _report(self, task: Task, outcome: ProcessOutcome) -> None:
        summary = self.format_summary(task, outcome)
        self._write_to_conversations(task, summary)

        if self._events is not None:
            try:
                self._events.publish(
                    "task:executed",
                    {
                        "task": task.to_dict(),
                        "path": outcome.path,
                        "status": outcome.status.value,
                        "error": outcome.error,
                        "all_delivered": outcome.delivery.all_succeeded if outcome.delivery else None,
                    },
                )
            except Exception:
                logger.exception("Task %s: event publish failed", task.id)

        if self._notifications is not None:
            if outcome.status == TaskStatus.COMPLETED:
                message = f"Task completed: {task.title}"
            elif outcome.status == TaskStatus.NEEDS_REVIEW:
                message = f"Task needs review: {task.title}"
            else:
                message = f"Task failed: {task.title}"
            try:
                self._notifications.notify(message=message, importance=self._importance(outcome), task_id=task.id)
            except Exception:
                logger.exception("Task %s: notification failed", task.id)

    def _write_to_conversations(self, task: Task, summary: str) -> None:
        if self._conversations is None:
            return

        try:
            links = self._store.get_conversations_for_task(task.id)
        except Exception:
            logger.exception("Task %s: could not read linked conversations", task.id)
            return

        for conversation_id, _linked_at in links:
            try:
                conv = self._conversations.get(conversation_id)
                if conv is None:
                    logger.warning("Task %s: linked conversation %s not found", task.id, conversation_id)
                    continue
                self._conversations.append_turn(
                    conversation_id,
                    TranscriptTurn(
                        role="assistant",
                        content=summary,
                        timestamp=utc_now_iso(),
                        turn_number=conv.turn_count + 1,
                    ),
                )
            except Exception:
                logger.exception("Task %s: failed to write result to conversation %s", task.id, conversation_id)
