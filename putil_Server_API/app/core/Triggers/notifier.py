# notifier.py
# Description: Notification channel abstraction and the in-process broadcast channel that feeds
#   the notification WebSocket.
#
# Imports
import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from putil_Server_API.app.core.Sync.exceptions import PublishFailure
#
########################################################################################################################
#
# Functions:

KIND_REMINDER_DUE = "reminder_due"
KIND_DEADLINE_DUE = "deadline_due"
KIND_EVENT_DUE = "event_due"


@dataclass(frozen=True)
class TriggerNotification:
    kind: str
    record_id: int
    owner_id: int
    title: str
    message: str
    due_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.record_id,
            "ownerId": self.owner_id,
            "title": self.title,
            "message": self.message,
            "dueAt": self.due_at,
        }


class NotificationChannel(ABC):
    """Fire-and-forget delivery of trigger notifications. No delivery guarantee flows back to the caller."""

    @abstractmethod
    def publish(self, event: TriggerNotification) -> None:
        """
        Hands one notification to the transport.

        Raises:
            PublishFailure: The transport could not accept the event.
        """
        pass


class BroadcastChannel(NotificationChannel):
    """
    Fans notifications out to the owner's connected subscribers through bounded asyncio queues.
    Must be used from the event loop thread. A subscriber whose queue is full misses the event.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: Dict[int, Set[asyncio.Queue]] = defaultdict(set)
        self.closed = False

    def subscribe(self, owner_id: int) -> asyncio.Queue:
        if self.closed:
            raise PublishFailure("Notification channel is closed.")
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[owner_id].add(queue)
        logger.debug(f"Notification subscriber added for owner {owner_id} ({len(self._subscribers[owner_id])} total)")
        return queue

    def unsubscribe(self, owner_id: int, queue: asyncio.Queue):
        subscribers = self._subscribers.get(owner_id)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[owner_id]
        logger.debug(f"Notification subscriber removed for owner {owner_id}")

    def subscriber_count(self, owner_id: Optional[int] = None) -> int:
        if owner_id is not None:
            return len(self._subscribers.get(owner_id, ()))
        return sum(len(s) for s in self._subscribers.values())

    def publish(self, event: TriggerNotification) -> None:
        if self.closed:
            raise PublishFailure("Notification channel is closed.", kind=event.kind, record_id=event.record_id)
        payload = event.to_dict()
        for queue in list(self._subscribers.get(event.owner_id, ())):
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full for owner {event.owner_id}; dropping {event.kind} "
                               f"for record {event.record_id}")

    def close(self):
        """Wakes every subscriber with a None sentinel and refuses further publishes."""
        self.closed = True
        subscriber_queues: List[asyncio.Queue] = [q for qs in self._subscribers.values() for q in qs]
        for queue in subscriber_queues:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                # The consumer is behind; it will see the closed flag on its next read.
                logger.debug("Subscriber queue full at close; sentinel not delivered.")
        self._subscribers.clear()
        logger.info(f"Notification channel closed ({len(subscriber_queues)} subscriber(s) released).")

#
# End of notifier.py
########################################################################################################################
