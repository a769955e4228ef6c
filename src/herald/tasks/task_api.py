# src/herald/tasks/task_api.py

from __future__ import annotations

import logging
import time

from ..core.state import AppState
from .task_models import (
    CreatedBy,
    CreateTaskInput,
    DeliveryAction,
    SourceType,
    Task,
    TaskType,
    WorkItem,
)

logger = logging.getLogger(__name__)


def _announce(state: AppState, task: Task, conversation_id: str | None) -> None:
    if conversation_id:
        state.task_store.link_task_to_conversation(task.id, conversation_id)

    try:
        state.events.publish("task:created", {"task": task.to_dict(), "conversation_id": conversation_id})
    except Exception:
        logger.exception("task:created publish failed task_id=%s", task.id)

    state.processor.on_task_created(task)


def create_task(state: AppState, data: CreateTaskInput, *, conversation_id: str | None = None) -> Task:
    """
    Persist a task and hand it to the pipeline.

    - links the task to conversation_id (if given)
    - broadcasts task:created
    - immediate tasks start executing in the background right away
    Must be called from the running event loop.
    """
    task = state.task_store.create(data)
    logger.info("Task created id=%s type=%s title=%r", task.id, task.type.value, task.title)
    _announce(state, task, conversation_id)
    return task


def create_task_for_occurrence(
    state: AppState,
    data: CreateTaskInput,
    *,
    conversation_id: str | None = None,
) -> tuple[Task, bool]:
    """Idempotent variant for one occurrence of a recurring source."""
    task, created = state.task_store.find_or_create_for_occurrence(data)
    if created:
        _announce(state, task, conversation_id)
    elif conversation_id:
        state.task_store.link_task_to_conversation(task.id, conversation_id)
    return task, created


def schedule_message(
    state: AppState,
    *,
    channel: str,
    text: str,
    run_after_minutes: float = 0,
    recipient: str | None = None,
    conversation_id: str | None = None,
) -> Task:
    """Convenience helper: schedule a pre-composed message (no brain involved)."""
    due_at = time.time() + max(0.0, float(run_after_minutes)) * 60.0
    data = CreateTaskInput(
        type=TaskType.SCHEDULED,
        source_type=SourceType.MANUAL,
        title=f"Message via {channel}",
        instructions=text,
        created_by=CreatedBy.USER,
        delivery=[DeliveryAction(channel=channel, recipient=recipient, content=text)],
        scheduled_for=due_at,
    )
    return create_task(state, data, conversation_id=conversation_id)


def request_task(
    state: AppState,
    *,
    channel: str,
    instructions: str,
    title: str | None = None,
    recipient: str | None = None,
    conversation_id: str | None = None,
) -> Task:
    """Convenience helper: run an immediate brain task and deliver its result on channel."""
    text = instructions.strip()
    data = CreateTaskInput(
        type=TaskType.IMMEDIATE,
        source_type=SourceType.CONVERSATION if conversation_id else SourceType.MANUAL,
        title=(title or text[:60]).strip(),
        instructions=text,
        created_by=CreatedBy.USER,
        work=[WorkItem(description=text)],
        delivery=[DeliveryAction(channel=channel, recipient=recipient)],
    )
    return create_task(state, data, conversation_id=conversation_id)
