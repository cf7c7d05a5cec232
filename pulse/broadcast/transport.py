"""Push transports used by the broadcast hub to reach observers.

The hub owns only the operation/observer relation. Delivering a message to an
observer is the transport's job; sockets, server-sent events or long polling
all plug in behind the same interface.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Exception raised when a message cannot be delivered."""
    pass


class Transport(ABC):
    """Abstract base class for observer transports."""

    @abstractmethod
    async def send(self, observer_id: str, message: Dict[str, Any]) -> None:
        """Deliver a message to one observer.

        Raises:
            TransportError: If the observer cannot be reached
        """
        pass


class QueueTransport(Transport):
    """Per-observer in-process queues.

    Each connected observer registers a bounded queue; the API's websocket
    handler drains it. When a slow observer's queue is full the oldest message
    is dropped, since every message carries a complete snapshot.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._queues: Dict[str, asyncio.Queue] = {}

    def register(self, observer_id: str) -> asyncio.Queue:
        """Create (or return) the queue for an observer."""
        queue = self._queues.get(observer_id)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.max_queue_size)
            self._queues[observer_id] = queue
        return queue

    def unregister(self, observer_id: str) -> None:
        self._queues.pop(observer_id, None)

    def queue_for(self, observer_id: str) -> Optional[asyncio.Queue]:
        return self._queues.get(observer_id)

    async def send(self, observer_id: str, message: Dict[str, Any]) -> None:
        queue = self._queues.get(observer_id)
        if queue is None:
            raise TransportError(f"Observer {observer_id} is not connected")

        if queue.full():
            queue.get_nowait()
            logger.debug(f"Dropped oldest message for slow observer {observer_id}")
        queue.put_nowait(message)


class NullTransport(Transport):
    """Transport that discards every message."""

    async def send(self, observer_id: str, message: Dict[str, Any]) -> None:
        pass
