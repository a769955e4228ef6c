# src/herald/tasks/delivery_executor.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..core.ports import ChannelConfig, ChannelRegistry, ConversationRepo, TranscriptTurn
from .task_log import utc_now_iso
from .task_models import ItemStatus, Task

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DeliveryActionResult:
    channel: str
    success: bool
    error: str | None = None
    index: int = -1  # position in task.delivery


@dataclass(slots=True)
class DeliveryResult:
    all_succeeded: bool
    results: list[DeliveryActionResult] = field(default_factory=list)


class DeliveryExecutor:
    """
    Sends deliverable text to channels.

    - only pending actions are processed, in order, one at a time
    - pre-composed action content wins over the brain's deliverable
    - every failure is returned as a result, never raised
    """

    def __init__(
        self,
        channel_manager: ChannelRegistry | None,
        conversations: ConversationRepo | None = None,
    ) -> None:
        self._channels = channel_manager
        self._conversations = conversations

    async def execute_delivery_actions(self, task: Task, deliverable: str) -> DeliveryResult:
        results: list[DeliveryActionResult] = []

        for idx, action in enumerate(task.delivery):
            if action.status != ItemStatus.PENDING:
                continue

            content = action.content if action.content is not None else deliverable
            result = await self._deliver(task, action.channel, action.recipient, content)
            result.index = idx
            results.append(result)

        all_ok = all(r.success for r in results)
        if results:
            logger.info(
                "Task %s delivery: %d/%d succeeded",
                task.id,
                sum(1 for r in results if r.success),
                len(results),
            )
        return DeliveryResult(all_succeeded=all_ok, results=results)

    def _find_channel(self, plugin: str) -> ChannelConfig | None:
        """First configured channel instance whose plugin kind matches."""
        if self._channels is None:
            return None
        for info in self._channels.channel_infos():
            if info.plugin == plugin:
                return info
        return None

    async def _deliver(
        self,
        task: Task,
        channel: str,
        recipient: str | None,
        content: str,
    ) -> DeliveryActionResult:
        if self._channels is None:
            return DeliveryActionResult(channel=channel, success=False, error="Channel manager not available")

        info = self._find_channel(channel)
        if info is None:
            return DeliveryActionResult(
                channel=channel,
                success=False,
                error=f"No {channel} channel configured",
            )

        config = self._channels.get_channel_config(info.id) or info
        target = recipient or config.owner_identity
        if not target:
            return DeliveryActionResult(
                channel=channel,
                success=False,
                error=f"No recipient or owner identity configured for channel {info.id}",
            )

        if not content or not content.strip():
            return DeliveryActionResult(channel=channel, success=False, error="Nothing to send")

        try:
            await self._channels.send(info.id, target, content)
        except Exception as e:
            logger.warning("Task %s: send on %s failed: %s", task.id, info.id, e)
            return DeliveryActionResult(channel=channel, success=False, error=str(e) or e.__class__.__name__)

        logger.info("Task %s: delivered on %s to %s", task.id, info.id, target)
        self._record_in_conversation(info.id, content)
        return DeliveryActionResult(channel=channel, success=True)

    def _record_in_conversation(self, channel_id: str, content: str) -> None:
        """Append the sent text to the channel's most recent conversation, if any."""
        if self._conversations is None:
            return
        try:
            conv = self._conversations.get_most_recent(channel_id)
            if conv is None:
                return
            self._conversations.append_turn(
                conv.id,
                TranscriptTurn(
                    role="assistant",
                    content=content,
                    timestamp=utc_now_iso(),
                    turn_number=conv.turn_count + 1,
                ),
            )
            logger.debug("Recorded outbound message in conversation %s", conv.id)
        except Exception as e:
            # Already sent; only the reply context is lost.
            logger.warning("Failed to record outbound message on %s: %s", channel_id, e)
