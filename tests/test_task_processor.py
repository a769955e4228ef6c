# tests/test_task_processor.py

from __future__ import annotations

import sqlite3
import time

import pytest

from herald.tasks.delivery_executor import DeliveryActionResult, DeliveryExecutor
from herald.tasks.task_executor import TaskExecutor
from herald.tasks.task_log import TaskLogStorage
from herald.tasks.task_models import DeliveryAction, ItemStatus, TaskStatus, TaskType, TaskUpdate, WorkItem
from herald.tasks.task_processor import TaskProcessor, merge_delivery_results, uses_fast_path
from herald.tasks.task_store import TaskStore

from .fakes import FakeBrain, FakeChannelManager, FakeConversations, FakeEvents, FakeNotifications


def _processor_with_brain(
    brain: FakeBrain,
    task_store: TaskStore,
    task_logs: TaskLogStorage,
    delivery: DeliveryExecutor,
    conversations: FakeConversations,
    notifications: FakeNotifications,
    events: FakeEvents,
) -> TaskProcessor:
    executor = TaskExecutor(task_store, task_logs, brain, system_prompt_factory=lambda task: "system")
    return TaskProcessor(
        task_store,
        executor,
        delivery,
        conversations=conversations,
        notifications=notifications,
        events=events,
    )


def test_merge_never_regresses_settled_actions() -> None:
    actions = [
        DeliveryAction(channel="a", status=ItemStatus.COMPLETED),
        DeliveryAction(channel="b"),
        DeliveryAction(channel="c"),
    ]
    results = [
        DeliveryActionResult(channel="a", success=False, index=0),
        DeliveryActionResult(channel="b", success=True, index=1),
        DeliveryActionResult(channel="c", success=False, index=2),
        DeliveryActionResult(channel="x", success=True, index=99),
    ]

    merged = merge_delivery_results(actions, results)

    assert [a.status for a in merged] == [ItemStatus.COMPLETED, ItemStatus.COMPLETED, ItemStatus.FAILED]
    # input list is not mutated
    assert actions[1].status == ItemStatus.PENDING


def test_uses_fast_path_rules(task_store: TaskStore, make_input) -> None:
    precomposed = task_store.create(make_input(delivery=[DeliveryAction(channel="a", content="hi")]))
    mixed = task_store.create(
        make_input(delivery=[DeliveryAction(channel="a", content="hi"), DeliveryAction(channel="b")])
    )
    nothing = task_store.create(make_input(delivery=[]))

    assert uses_fast_path(precomposed) is True
    assert uses_fast_path(mixed) is False
    assert uses_fast_path(nothing) is False


@pytest.mark.asyncio
async def test_fast_path_delivers_without_brain(
    task_store: TaskStore,
    brain: FakeBrain,
    channels: FakeChannelManager,
    notifications: FakeNotifications,
    events: FakeEvents,
    processor: TaskProcessor,
    make_input,
) -> None:
    task = task_store.create(
        make_input(
            type=TaskType.SCHEDULED,
            scheduled_for=time.time() - 1,
            delivery=[DeliveryAction(channel="a", content="Reminder: call mom")],
        )
    )

    outcome = await processor.execute_and_deliver(task)

    assert outcome.path == "fast"
    assert outcome.status == TaskStatus.COMPLETED
    assert brain.call_count == 0
    assert [m.text for m in channels.sent] == ["Reminder: call mom"]

    stored = task_store.get(task.id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.started_at is not None and stored.completed_at is not None
    assert stored.delivery[0].status == ItemStatus.COMPLETED

    assert [(n.importance, n.task_id) for n in notifications.items] == [("success", task.id)]
    executed = events.of_type("task:executed")
    assert len(executed) == 1
    assert executed[0]["path"] == "fast"
    assert executed[0]["status"] == "completed"


@pytest.mark.asyncio
async def test_standard_path_completes_and_marks_work(
    task_store: TaskStore,
    brain: FakeBrain,
    channels: FakeChannelManager,
    notifications: FakeNotifications,
    processor: TaskProcessor,
    make_input,
) -> None:
    task = task_store.create(make_input(work=[WorkItem(description="a"), WorkItem(description="b")]))

    outcome = await processor.execute_and_deliver(task)

    assert outcome.path == "standard"
    assert outcome.succeeded is True
    assert brain.call_count == 1
    assert [(m.channel_id, m.text) for m in channels.sent] == [("a-main", "Hello from the brain")]

    stored = task_store.get(task.id)
    assert stored.status == TaskStatus.COMPLETED
    assert all(w.status == ItemStatus.COMPLETED for w in stored.work)
    assert stored.delivery[0].status == ItemStatus.COMPLETED
    assert notifications.items[0].message == f"Task completed: {task.title}"


@pytest.mark.asyncio
async def test_gate_rejection_sends_nothing(
    task_store: TaskStore,
    task_logs: TaskLogStorage,
    channels: FakeChannelManager,
    delivery: DeliveryExecutor,
    conversations: FakeConversations,
    notifications: FakeNotifications,
    events: FakeEvents,
    make_input,
) -> None:
    proc = _processor_with_brain(
        FakeBrain("I could not find the document."),
        task_store,
        task_logs,
        delivery,
        conversations,
        notifications,
        events,
    )
    conversations.add("conv-1", "a-main")
    task = task_store.create(make_input())
    task_store.link_task_to_conversation(task.id, "conv-1")

    outcome = await proc.execute_and_deliver(task)

    assert outcome.status == TaskStatus.NEEDS_REVIEW
    assert channels.sent == []
    assert task_store.get(task.id).status == TaskStatus.NEEDS_REVIEW
    assert [n.importance for n in notifications.items] == ["warning"]

    summary = conversations.turns["conv-1"][0].content
    assert summary.startswith("Task needs your review: Summarize doc X")
    assert summary.endswith("Nothing was sent.")


@pytest.mark.asyncio
async def test_partial_delivery_still_completes_with_warning(
    task_store: TaskStore,
    channels: FakeChannelManager,
    notifications: FakeNotifications,
    events: FakeEvents,
    processor: TaskProcessor,
    make_input,
) -> None:
    channels.failing.add("a-main")
    task = task_store.create(make_input(delivery=[DeliveryAction(channel="a"), DeliveryAction(channel="b")]))

    outcome = await processor.execute_and_deliver(task)

    assert outcome.status == TaskStatus.COMPLETED
    assert outcome.delivery is not None and outcome.delivery.all_succeeded is False

    stored = task_store.get(task.id)
    assert stored.status == TaskStatus.COMPLETED
    assert [a.status for a in stored.delivery] == [ItemStatus.FAILED, ItemStatus.COMPLETED]
    assert [n.importance for n in notifications.items] == ["warning"]
    assert events.of_type("task:executed")[0]["all_delivered"] is False


@pytest.mark.asyncio
async def test_conversation_lookup_error_still_reports_once(
    task_store: TaskStore,
    notifications: FakeNotifications,
    events: FakeEvents,
    processor: TaskProcessor,
    make_input,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def broken_links(task_id: str):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(task_store, "get_conversations_for_task", broken_links)
    task = task_store.create(make_input())

    outcome = await processor.execute_and_deliver(task)

    assert outcome.status == TaskStatus.COMPLETED
    assert task_store.get(task.id).status == TaskStatus.COMPLETED
    assert len(events.of_type("task:executed")) == 1
    assert [n.importance for n in notifications.items] == ["success"]


@pytest.mark.asyncio
async def test_brain_failure_reports_error(
    task_store: TaskStore,
    task_logs: TaskLogStorage,
    channels: FakeChannelManager,
    delivery: DeliveryExecutor,
    conversations: FakeConversations,
    notifications: FakeNotifications,
    events: FakeEvents,
    make_input,
) -> None:
    proc = _processor_with_brain(
        FakeBrain(error=RuntimeError("rate limited")),
        task_store,
        task_logs,
        delivery,
        conversations,
        notifications,
        events,
    )
    conversations.add("conv-1", "a-main")
    task = task_store.create(make_input())
    task_store.link_task_to_conversation(task.id, "conv-1")

    outcome = await proc.execute_and_deliver(task)

    assert outcome.status == TaskStatus.FAILED
    assert outcome.error == "rate limited"
    assert channels.sent == []
    assert [(n.message, n.importance) for n in notifications.items] == [(f"Task failed: {task.title}", "error")]
    assert conversations.turns["conv-1"][0].content == f"Task failed: {task.title}\n\nError: rate limited"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [TaskStatus.PAUSED, TaskStatus.DELETED])
async def test_non_pending_tasks_are_skipped(
    task_store: TaskStore,
    brain: FakeBrain,
    channels: FakeChannelManager,
    notifications: FakeNotifications,
    events: FakeEvents,
    processor: TaskProcessor,
    make_input,
    status: TaskStatus,
) -> None:
    task = task_store.create(make_input())
    task_store.update(task.id, TaskUpdate(status=status))

    outcome = await processor.execute_and_deliver(task)

    assert outcome.path == "skipped"
    assert outcome.status == status
    assert brain.call_count == 0
    assert channels.sent == []
    assert notifications.items == []
    assert events.published == []


@pytest.mark.asyncio
async def test_second_attempt_on_same_task_is_skipped(
    task_store: TaskStore,
    brain: FakeBrain,
    processor: TaskProcessor,
    make_input,
) -> None:
    task = task_store.create(make_input())

    first = await processor.execute_and_deliver(task)
    second = await processor.execute_and_deliver(task)

    assert first.status == TaskStatus.COMPLETED
    assert second.path == "skipped"
    assert brain.call_count == 1


@pytest.mark.asyncio
async def test_immediate_task_runs_in_background(
    task_store: TaskStore,
    channels: FakeChannelManager,
    notifications: FakeNotifications,
    processor: TaskProcessor,
    make_input,
) -> None:
    task = task_store.create(make_input())

    job = processor.on_task_created(task)
    assert job is not None
    assert processor.inflight_count == 1

    await processor.drain()

    assert processor.inflight_count == 0
    assert task_store.get(task.id).status == TaskStatus.COMPLETED
    assert len(channels.sent) == 1
    assert len(notifications.items) == 1


@pytest.mark.asyncio
async def test_scheduled_task_is_not_started_on_create(
    task_store: TaskStore,
    brain: FakeBrain,
    processor: TaskProcessor,
    make_input,
) -> None:
    task = task_store.create(make_input(type=TaskType.SCHEDULED, scheduled_for=time.time() + 600))

    assert processor.on_task_created(task) is None
    assert processor.inflight_count == 0
    assert brain.call_count == 0
