"""
Notification Fan-out - best-effort delivery of auction updates.

Observers subscribe per auction id (or to WILDCARD for every auction).
broadcast() snapshots the subscriber set before delivering, so observers
may subscribe or unsubscribe while a broadcast is in flight. Delivery is
not retried or persisted; an observer that misses an update reconciles
by fetching state.
"""

import asyncio
from typing import Any, Dict, List, Optional, Protocol, Set

from nftauction.utils.logger import get_logger

logger = get_logger("notify")


WILDCARD = "*"


class Observer(Protocol):
    """A connected subscriber (websocket, queue, ...)."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, message: dict) -> bool: ...


class QueueObserver:
    """In-process observer backed by an asyncio.Queue."""

    def __init__(self, maxsize: int = 0):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def close(self) -> None:
        self._open = False

    async def send(self, message: dict) -> bool:
        if not self._open:
            return False
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    def drain(self) -> List[dict]:
        """Return and clear every queued message."""
        messages = []
        while not self.queue.empty():
            messages.append(self.queue.get_nowait())
        return messages


class NotificationBus:
    """Subscriber registry keyed by auction id."""

    def __init__(self):
        self._subscribers: Dict[str, Set[Observer]] = {}

    def subscribe(self, topic: str, observer: Observer) -> None:
        self._subscribers.setdefault(topic, set()).add(observer)
        logger.debug(f"Observer subscribed to {topic}")

    def unsubscribe(self, topic: str, observer: Observer) -> None:
        observers = self._subscribers.get(topic)
        if observers is None:
            return
        observers.discard(observer)
        if not observers:
            del self._subscribers[topic]

    def unsubscribe_all(self, observer: Observer) -> None:
        """Drop an observer from every topic (connection closed)."""
        for topic in list(self._subscribers):
            self.unsubscribe(topic, observer)

    def subscribers(self, topic: str) -> List[Observer]:
        """Snapshot of the observers that receive messages for topic."""
        observers = set(self._subscribers.get(topic, ()))
        if topic != WILDCARD:
            observers |= self._subscribers.get(WILDCARD, set())
        return list(observers)

    async def broadcast(self, topic: str, message_type: str, data: Optional[Dict[str, Any]] = None) -> int:
        """
        Deliver a message to every current subscriber of topic.

        Returns:
            Number of observers the message was delivered to
        """
        message = {"type": message_type, "auctionId": topic, "data": data or {}}

        count = 0
        for observer in self.subscribers(topic):
            if not observer.is_open:
                self.unsubscribe_all(observer)
                continue
            try:
                if await observer.send(message):
                    count += 1
            except Exception as e:
                logger.warning(f"Failed to deliver {message_type} for {topic}: {e}")

        logger.debug(f"Broadcast {message_type} for {topic} to {count} observers")
        return count

    def __len__(self) -> int:
        return sum(len(observers) for observers in self._subscribers.values())
