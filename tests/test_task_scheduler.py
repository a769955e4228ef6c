# tests/test_task_scheduler.py

from __future__ import annotations

import asyncio
import time

import pytest

from herald.tasks.delivery_executor import DeliveryExecutor
from herald.tasks.task_executor import TaskExecutor
from herald.tasks.task_log import TaskLogStorage
from herald.tasks.task_models import Task, TaskStatus, TaskType, TaskUpdate
from herald.tasks.task_processor import ProcessOutcome, TaskProcessor
from herald.tasks.task_scheduler import TaskScheduler
from herald.tasks.task_store import TaskStore

from .fakes import FakeBrain, FakeChannelManager, FakeConversations, FakeNotifications


class RecordingProcessor:
    """
    Stand-in processor for scheduler unit tests.

    This keeps the tests purely about scheduling logic:
    what gets picked up, in which order, and how failures are isolated.
    """

    def __init__(self, *, explode_on: set[str] | None = None) -> None:
        self.seen: list[str] = []
        self.explode_on = explode_on or set()

    async def execute_and_deliver(self, task: Task) -> ProcessOutcome:
        self.seen.append(task.id)
        if task.id in self.explode_on:
            raise RuntimeError("processor blew up")
        return ProcessOutcome(task_id=task.id, path="standard", status=TaskStatus.COMPLETED)


class GatedBrain(FakeBrain):
    """FakeBrain that blocks inside query until released."""

    def __init__(self, responses: str) -> None:
        super().__init__(responses)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def query(self, prompt, *, system_prompt=None, resume=None):
        self.entered.set()
        await self.release.wait()
        async for ev in super().query(prompt, system_prompt=system_prompt, resume=resume):
            yield ev


def _scheduled(make_input, title: str, offset: float):
    return make_input(title=title, type=TaskType.SCHEDULED, scheduled_for=time.time() + offset)


@pytest.mark.asyncio
async def test_sweep_picks_only_due_scheduled_tasks(task_store: TaskStore, make_input) -> None:
    due = task_store.create(_scheduled(make_input, "due", -5))
    task_store.create(_scheduled(make_input, "future", 3600))
    task_store.create(make_input(title="immediate"))

    processor = RecordingProcessor()
    scheduler = TaskScheduler(task_store, processor)

    handled = await scheduler.check_due_tasks()

    assert handled == 1
    assert processor.seen == [due.id]


@pytest.mark.asyncio
async def test_sweep_orders_by_scheduled_time(task_store: TaskStore, make_input) -> None:
    later = task_store.create(_scheduled(make_input, "later", -1))
    earlier = task_store.create(_scheduled(make_input, "earlier", -60))

    processor = RecordingProcessor()
    await TaskScheduler(task_store, processor).check_due_tasks()

    assert processor.seen == [earlier.id, later.id]


@pytest.mark.asyncio
async def test_one_failing_task_does_not_stop_the_sweep(task_store: TaskStore, make_input) -> None:
    first = task_store.create(_scheduled(make_input, "first", -20))
    second = task_store.create(_scheduled(make_input, "second", -10))

    processor = RecordingProcessor(explode_on={first.id})
    handled = await TaskScheduler(task_store, processor).check_due_tasks()

    assert processor.seen == [first.id, second.id]
    assert handled == 1


@pytest.mark.asyncio
async def test_paused_tasks_are_not_picked_up(task_store: TaskStore, make_input) -> None:
    task = task_store.create(_scheduled(make_input, "paused", -5))
    task_store.update(task.id, TaskUpdate(status=TaskStatus.PAUSED))

    processor = RecordingProcessor()
    assert await TaskScheduler(task_store, processor).check_due_tasks() == 0
    assert processor.seen == []


def test_reconcile_marks_stale_running_tasks_failed(
    task_store: TaskStore,
    task_logs: TaskLogStorage,
    make_input,
) -> None:
    stale = task_store.create(make_input(title="stale"))
    task_store.update(stale.id, TaskUpdate(status=TaskStatus.RUNNING, started_at=time.time()))
    untouched = task_store.create(make_input(title="pending"))

    scheduler = TaskScheduler(task_store, RecordingProcessor(), log_storage=task_logs)

    assert scheduler.reconcile_stale_running() == 1
    reconciled = task_store.get(stale.id)
    assert reconciled.status == TaskStatus.FAILED
    assert reconciled.completed_at is not None
    assert task_store.get(untouched.id).status == TaskStatus.PENDING

    errors = [r for r in task_logs.read_full_log(stale.id) if r.get("event") == "error"]
    assert errors[0]["error"] == "interrupted by process restart"


@pytest.mark.asyncio
async def test_start_runs_an_immediate_sweep_end_to_end(
    task_store: TaskStore,
    task_logs: TaskLogStorage,
    brain: FakeBrain,
    channels: FakeChannelManager,
    processor: TaskProcessor,
    make_input,
) -> None:
    task = task_store.create(_scheduled(make_input, "overdue digest", -30))
    scheduler = TaskScheduler(task_store, processor, interval_seconds=60.0, log_storage=task_logs)

    await scheduler.start()
    try:
        assert scheduler.running is True
        assert task_store.get(task.id).status == TaskStatus.COMPLETED
        assert brain.call_count == 1
        assert [m.text for m in channels.sent] == ["Hello from the brain"]
    finally:
        await scheduler.stop()

    assert scheduler.running is False


@pytest.mark.asyncio
async def test_stop_without_start_is_noop(task_store: TaskStore) -> None:
    scheduler = TaskScheduler(task_store, RecordingProcessor())
    await scheduler.stop()
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_pending_immediate_tasks_do_not_fill_the_batch(task_store: TaskStore, make_input) -> None:
    # immediate rows left pending (e.g. created right before a crash) are older than the due task
    for i in range(5):
        task_store.create(make_input(title=f"orphan {i}"))
    due = task_store.create(_scheduled(make_input, "due now", 0))

    processor = RecordingProcessor()
    handled = await TaskScheduler(task_store, processor, batch_limit=3).check_due_tasks()

    assert handled == 1
    assert processor.seen == [due.id]


@pytest.mark.asyncio
async def test_stop_lets_the_running_task_finish(
    task_store: TaskStore,
    task_logs: TaskLogStorage,
    delivery: DeliveryExecutor,
    conversations: FakeConversations,
    notifications: FakeNotifications,
    make_input,
) -> None:
    brain = GatedBrain("<deliverable>Morning digest</deliverable>")
    executor = TaskExecutor(task_store, task_logs, brain, system_prompt_factory=lambda task: "system")
    processor = TaskProcessor(task_store, executor, delivery, conversations=conversations, notifications=notifications)
    scheduler = TaskScheduler(task_store, processor, interval_seconds=0.5, log_storage=task_logs)

    await scheduler.start()
    first = task_store.create(_scheduled(make_input, "first", -30))
    second = task_store.create(_scheduled(make_input, "second", -10))

    await asyncio.wait_for(brain.entered.wait(), timeout=5)
    stopping = asyncio.create_task(scheduler.stop())
    await asyncio.sleep(0.05)
    assert not stopping.done()

    brain.release.set()
    await asyncio.wait_for(stopping, timeout=5)

    assert scheduler.running is False
    assert brain.call_count == 1
    assert task_store.get(first.id).status == TaskStatus.COMPLETED
    assert task_store.get(second.id).status == TaskStatus.PENDING
    assert [n.importance for n in notifications.items] == ["success"]
