# src/herald/notifications/events.py

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


@dataclass(slots=True, frozen=True)
class HubEvent:
    type: str
    payload: dict[str, Any]
    ts: float = field(default_factory=time.time)


class EventHub:
    """
    In-memory pub/sub for live consumers (console status line, future dashboard).

    Each subscriber owns a bounded asyncio.Queue. A subscriber whose queue is
    full is dropped instead of blocking publishers.
    """

    def __init__(self, queue_maxsize: int = 100) -> None:
        # event type (or "*") -> set of queues
        self._subscribers: dict[str, set[asyncio.Queue[HubEvent]]] = defaultdict(set)
        self._queue_maxsize = queue_maxsize

    def subscribe(self, event_type: str = ALL_EVENTS) -> asyncio.Queue[HubEvent]:
        queue: asyncio.Queue[HubEvent] = asyncio.Queue(maxsize=self._queue_maxsize)
        self._subscribers[event_type].add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[HubEvent], event_type: str = ALL_EVENTS) -> None:
        subs = self._subscribers.get(event_type)
        if subs is None:
            return
        subs.discard(queue)
        if not subs:
            del self._subscribers[event_type]

    def subscriber_count(self) -> int:
        return sum(len(s) for s in self._subscribers.values())

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        event = HubEvent(type=event_type, payload=payload)
        logger.debug("event %s", event_type)

        for key in (event_type, ALL_EVENTS):
            subs = self._subscribers.get(key)
            if not subs:
                continue

            dead: list[asyncio.Queue[HubEvent]] = []
            for queue in subs:
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    dead.append(queue)

            for q in dead:
                logger.warning("Dropping slow subscriber on %s", key)
                subs.discard(q)
            if not subs:
                del self._subscribers[key]
