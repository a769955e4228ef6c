# src/herald/core/ports.py

"""
Ports (interfaces) used by the task pipeline.

The pipeline depends on Protocols instead of concrete implementations.
This keeps the brain backend, channel plugins, conversation storage and
notification UI swappable and makes testing easier.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Literal, Protocol

TurnRole = Literal["user", "assistant", "system"]
Importance = Literal["info", "success", "warning", "error"]


class SessionResumeError(RuntimeError):
    """Raised by a brain when a resume token is unknown, expired or otherwise rejected."""


@dataclass(slots=True, frozen=True)
class BrainEvent:
    """
    One item of a brain response stream.

    - kind="text": a text delta (text is set)
    - kind="session": the backend session token to resume this conversation later
    """

    kind: Literal["text", "session"]
    text: str = ""
    session_token: str | None = None


class Brain(Protocol):
    """
    Reasoning backend.

    Either starts a fresh session (system_prompt given, resume=None) or resumes
    a prior one by token. Yields text deltas and, usually last, a session event.
    """

    def query(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        resume: str | None = None,
    ) -> AsyncIterator[BrainEvent]: ...


@dataclass(slots=True, frozen=True)
class ChannelConfig:
    """Static configuration of one channel instance."""

    id: str
    plugin: str
    owner_identity: str | None = None


class ChannelRegistry(Protocol):
    """Outbound side of the channel plugins, as seen by the delivery executor."""

    def channel_infos(self) -> list[ChannelConfig]: ...
    def get_channel_config(self, channel_id: str) -> ChannelConfig | None: ...
    async def send(self, channel_id: str, recipient: str, text: str) -> None: ...


@dataclass(slots=True, frozen=True)
class TranscriptTurn:
    role: TurnRole
    content: str
    timestamp: str
    turn_number: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "turn",
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "turn_number": self.turn_number,
        }


@dataclass(slots=True, frozen=True)
class Conversation:
    id: str
    channel: str
    title: str
    turn_count: int
    updated_at: float


class ConversationRepo(Protocol):
    def get(self, conversation_id: str) -> Conversation | None: ...
    def get_most_recent(self, channel: str) -> Conversation | None: ...
    def append_turn(self, conversation_id: str, turn: TranscriptTurn) -> None: ...


class NotificationSink(Protocol):
    def notify(
        self,
        *,
        message: str,
        importance: Importance = "info",
        task_id: str | None = None,
    ) -> Any: ...


class EventPublisher(Protocol):
    """Live-state fan-out for UI consumers (task:created, task:executed, ...)."""

    def publish(self, event_type: str, payload: dict[str, Any]) -> None: ...
