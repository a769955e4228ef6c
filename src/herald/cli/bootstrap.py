# src/herald/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations into AppState (brain/stores/channels/pipeline).
"""

from __future__ import annotations

import logging

from ..config import Settings, get_settings
from ..connectors.channel_manager import ChannelManager
from ..connectors.console_connector import ConsoleChannel
from ..conversations.store import ConversationStore
from ..core.persona import get_task_system_prompt
from ..core.ports import Brain
from ..core.state import AppState
from ..llm.client import OpenRouterBrain
from ..llm.offline import OfflineBrain
from ..notifications.events import EventHub
from ..notifications.service import NotificationService
from ..tasks.delivery_executor import DeliveryExecutor
from ..tasks.task_executor import TaskExecutor
from ..tasks.task_log import TaskLogStorage
from ..tasks.task_processor import TaskProcessor
from ..tasks.task_scheduler import TaskScheduler
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.tasks_db_path.parent.mkdir(parents=True, exist_ok=True)
    settings.task_logs_dir.mkdir(parents=True, exist_ok=True)
    settings.conversations_db_path.parent.mkdir(parents=True, exist_ok=True)
    settings.brain_sessions_dir.mkdir(parents=True, exist_ok=True)
    if settings.matrix_enabled:
        settings.matrix_store_path.mkdir(parents=True, exist_ok=True)


def _create_brain(settings: Settings) -> tuple[Brain, bool]:
    try:
        return OpenRouterBrain(settings), True
    except RuntimeError as e:
        # Demos / local runs without external services.
        logger.warning("Brain unavailable (%s); using offline brain", e)
        return OfflineBrain(), False


def create_initial_state(*, settings: Settings | None = None, brain: Brain | None = None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings (and the brain) injectable makes the app easier to test
    and avoids hidden global config reads. If settings is None, falls back to
    get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    if brain is None:
        brain, brain_online = _create_brain(settings)
    else:
        brain_online = True

    task_store = TaskStore(settings.tasks_db_path, settings.task_logs_dir)
    task_logs = TaskLogStorage(settings.task_logs_dir)
    conversations = ConversationStore(settings.conversations_db_path)
    events = EventHub()
    notifications = NotificationService(events=events)

    channels = ChannelManager()
    if settings.console_enabled:
        channels.register(ConsoleChannel(owner=settings.console_owner))

    executor = TaskExecutor(
        task_store,
        task_logs,
        brain,
        system_prompt_factory=get_task_system_prompt,
        prior_turns_limit=settings.prior_turns_limit,
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
    scheduler = TaskScheduler(
        task_store,
        processor,
        interval_seconds=settings.scheduler_interval_seconds,
        log_storage=task_logs,
    )

    return AppState(
        settings=settings,
        brain=brain,
        brain_online=brain_online,
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
