# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from herald.connectors.channel_manager import ChannelManager
from herald.connectors.console_connector import ConsoleChannel
from herald.conversations.store import ConversationStore
from herald.core.ports import ChannelConfig
from herald.core.state import AppState
from herald.notifications.events import EventHub
from herald.notifications.service import NotificationService
from herald.tasks.delivery_executor import DeliveryExecutor
from herald.tasks.task_executor import TaskExecutor
from herald.tasks.task_log import TaskLogStorage
from herald.tasks.task_models import CreatedBy, CreateTaskInput, DeliveryAction, SourceType, TaskType, WorkItem
from herald.tasks.task_processor import TaskProcessor
from herald.tasks.task_scheduler import TaskScheduler
from herald.tasks.task_store import TaskStore

from .fakes import FakeBrain, FakeChannelManager, FakeConversations, FakeEvents, FakeNotifications


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and commands.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="herald-test",
        data_dir=tmp_path,
        tasks_db_path=tmp_path / "tasks.sqlite3",
        task_logs_dir=tmp_path / "tasks" / "logs",
        conversations_db_path=tmp_path / "conversations.sqlite3",
        llm_models=["test/model"],
        console_owner="owner",
        scheduler_interval_seconds=30.0,
        prior_turns_limit=10,
    )


@pytest.fixture()
def task_store(settings: SimpleNamespace) -> TaskStore:
    return TaskStore(settings.tasks_db_path, settings.task_logs_dir)


@pytest.fixture()
def task_logs(settings: SimpleNamespace) -> TaskLogStorage:
    return TaskLogStorage(settings.task_logs_dir)


@pytest.fixture()
def brain() -> FakeBrain:
    return FakeBrain("Done.\n<deliverable>Hello from the brain</deliverable>")


@pytest.fixture()
def channels() -> FakeChannelManager:
    return FakeChannelManager(
        configs=[
            ChannelConfig(id="a-main", plugin="a", owner_identity="owner-a"),
            ChannelConfig(id="b-main", plugin="b", owner_identity="owner-b"),
        ]
    )


@pytest.fixture()
def conversations() -> FakeConversations:
    return FakeConversations()


@pytest.fixture()
def notifications() -> FakeNotifications:
    return FakeNotifications()


@pytest.fixture()
def events() -> FakeEvents:
    return FakeEvents()


@pytest.fixture()
def executor(task_store: TaskStore, task_logs: TaskLogStorage, brain: FakeBrain) -> TaskExecutor:
    return TaskExecutor(
        task_store,
        task_logs,
        brain,
        system_prompt_factory=lambda task: f"system for {task.title}",
        prior_turns_limit=10,
    )


@pytest.fixture()
def delivery(channels: FakeChannelManager, conversations: FakeConversations) -> DeliveryExecutor:
    return DeliveryExecutor(channels, conversations)


@pytest.fixture()
def processor(
    task_store: TaskStore,
    executor: TaskExecutor,
    delivery: DeliveryExecutor,
    conversations: FakeConversations,
    notifications: FakeNotifications,
    events: FakeEvents,
) -> TaskProcessor:
    return TaskProcessor(
        task_store,
        executor,
        delivery,
        conversations=conversations,
        notifications=notifications,
        events=events,
    )


@pytest.fixture()
def make_input():
    """Factory for CreateTaskInput with sensible defaults."""

    def _make(**overrides) -> CreateTaskInput:
        data = {
            "type": TaskType.IMMEDIATE,
            "source_type": SourceType.MANUAL,
            "title": "Summarize doc X",
            "instructions": "Read doc X and summarize it.",
            "created_by": CreatedBy.USER,
            "work": [WorkItem(description="summarize doc X")],
            "delivery": [DeliveryAction(channel="a")],
        }
        data.update(overrides)
        return CreateTaskInput(**data)

    return _make


@pytest.fixture()
def state(settings: SimpleNamespace, task_store: TaskStore, task_logs: TaskLogStorage, brain: FakeBrain) -> AppState:
    """
    AppState wired with a fake brain and a console channel.

    NOTE: We keep real SQLite stores here (TaskStore/ConversationStore) because
    their correctness is part of what we want to test.
    """
    conversations = ConversationStore(settings.conversations_db_path)
    events = EventHub()
    notifications = NotificationService(events=events)

    channels = ChannelManager()
    channels.register(ConsoleChannel(owner=settings.console_owner))

    executor = TaskExecutor(
        task_store,
        task_logs,
        brain,
        system_prompt_factory=lambda task: "system",
    )
    delivery = DeliveryExecutor(channels, conversations)
    processor = TaskProcessor(
        task_store,
        executor,
        delivery,
        conversations=conversations,
        notifications=notifications,
        events=events,
    )
    scheduler = TaskScheduler(task_store, processor, interval_seconds=30.0, log_storage=task_logs)

    return AppState(
        settings=settings,
        brain=brain,
        brain_online=False,
        task_store=task_store,
        task_logs=task_logs,
        conversations=conversations,
        events=events,
        notifications=notifications,
        channels=channels,
        executor=executor,
        delivery=delivery,
        processor=processor,
        scheduler=scheduler,
    )
