from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from .timerange import TimeRange

logger = logging.getLogger(__name__)


class AccessEventKind(StrEnum):
    ADD_ACCESS = "addAccess"
    REMOVE_ACCESS = "removeAccess"


@dataclass(frozen=True)
class AccessEvent:
    kind: AccessEventKind
    code: str
    interval: TimeRange

    def to_message(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "start": int(self.interval.start.timestamp() * 1000),
            "stop": int(self.interval.end.timestamp() * 1000),
        }


class AccessNotifier(Protocol):
    def publish(self, event: AccessEvent) -> None: ...


class NullAccessNotifier:
    def publish(self, event: AccessEvent) -> None:
        return None


class AccessBroadcaster:
    """In-process fan-out of access events to websocket subscribers."""

    def __init__(self, *, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue[AccessEvent]] = set()

    def subscribe(self) -> asyncio.Queue[AccessEvent]:
        queue: asyncio.Queue[AccessEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[AccessEvent]) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: AccessEvent) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("access subscriber queue full, dropping %s for %s", event.kind.value, event.code)


def notify_best_effort(notifier: AccessNotifier, event: AccessEvent) -> None:
    """Deliver an access event without letting delivery failures reach the caller."""
    try:
        notifier.publish(event)
    except Exception:
        logger.exception("access notification failed: %s for %s", event.kind.value, event.code)
