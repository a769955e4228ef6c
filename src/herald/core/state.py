# src/herald/core/state.py

from __future__ import annotations

from dataclasses import dataclass

from ..config import Settings
from ..connectors.channel_manager import ChannelManager
from ..conversations.store import ConversationStore
from ..notifications.events import EventHub
from ..notifications.service import NotificationService
from ..tasks.delivery_executor import DeliveryExecutor
from ..tasks.task_executor import TaskExecutor
from ..tasks.task_log import TaskLogStorage
from ..tasks.task_processor import TaskProcessor
from ..tasks.task_scheduler import TaskScheduler
from ..tasks.task_store import TaskStore
from .ports import Brain


@dataclass
class AppState:
    """
    Runtime state shared by connectors and commands.

    Built once by cli.bootstrap (the composition root); components receive
    their collaborators from here instead of reading globals.
    """

    settings: Settings

    brain: Brain
    brain_online: bool

    task_store: TaskStore
    task_logs: TaskLogStorage
    conversations: ConversationStore
    events: EventHub
    notifications: NotificationService
    channels: ChannelManager

    executor: TaskExecutor
    delivery: DeliveryExecutor
    processor: TaskProcessor
    scheduler: TaskScheduler
