"""Topic-scoped realtime notifications.

Services publish through a ``NotificationPublisher`` handed to them at
construction time. Publishing happens after the write commits and is
best-effort: a failed delivery is logged and dropped, never raised back
into the operation that produced it.

Topics:
    location:{id}   everyone at a location (floor view)
    waiter:{id}     waiters of a location
    customer:{id}   diners of a location
    kitchen:{id}    kitchen displays of a location
    user:{id}       one signed-in user
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket, status
from fastapi.encoders import jsonable_encoder

from tableside.core.metrics import metrics

logger = logging.getLogger(__name__)


def location_topic(location_id: int) -> str:
    return f"location:{location_id}"


def waiter_topic(location_id: int) -> str:
    return f"waiter:{location_id}"


def customer_topic(location_id: int) -> str:
    return f"customer:{location_id}"


def kitchen_topic(location_id: int) -> str:
    return f"kitchen:{location_id}"


def user_topic(user_id: int) -> str:
    return f"user:{user_id}"


class NotificationPublisher(ABC):
    """Anything that can deliver ``(topic, event_type, payload)`` triples."""

    @abstractmethod
    def publish(self, topic: str, event_type: str, payload: Dict[str, Any]) -> None:
        ...


class NullPublisher(NotificationPublisher):
    """Drops every event; used by scripts and jobs that run without a socket server."""

    def publish(self, topic: str, event_type: str, payload: Dict[str, Any]) -> None:
        logger.debug(f"Dropping {event_type} for {topic}: no subscribers configured")


def safe_publish(
    publisher: NotificationPublisher,
    topics: List[str],
    event_type: str,
    payload: Dict[str, Any],
) -> None:
    """Publish to several topics, logging and swallowing any failure."""
    for topic in topics:
        try:
            publisher.publish(topic, event_type, payload)
        except Exception as e:
            logger.warning(f"Failed to publish {event_type} to {topic}: {e}")


class ConnectionManager:
    """Tracks which WebSockets listen on which topics."""

    def __init__(self, max_connections_per_topic: int = 1000):
        self.max_connections_per_topic = max_connections_per_topic
        self.topics: Dict[str, List[WebSocket]] = {}
        self.subscriptions: Dict[int, Set[str]] = {}

    async def accept(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.subscriptions.setdefault(id(websocket), set())
        metrics.ws_active_connections = len(self.subscriptions)

    def subscribe(self, websocket: WebSocket, topic: str) -> bool:
        """Add a socket to a topic. Returns False when the topic is full."""
        listeners = self.topics.setdefault(topic, [])
        if websocket in listeners:
            return True
        if len(listeners) >= self.max_connections_per_topic:
            logger.warning(f"WebSocket subscription rejected: topic '{topic}' at capacity")
            return False
        listeners.append(websocket)
        self.subscriptions.setdefault(id(websocket), set()).add(topic)
        logger.debug(f"WebSocket subscribed to '{topic}'")
        return True

    def unsubscribe(self, websocket: WebSocket, topic: str) -> None:
        listeners = self.topics.get(topic)
        if listeners and websocket in listeners:
            listeners.remove(websocket)
            if not listeners:
                del self.topics[topic]
        self.subscriptions.get(id(websocket), set()).discard(topic)

    def disconnect(self, websocket: WebSocket) -> None:
        for topic in list(self.subscriptions.get(id(websocket), ())):
            self.unsubscribe(websocket, topic)
        self.subscriptions.pop(id(websocket), None)
        metrics.ws_active_connections = len(self.subscriptions)

    async def reject(self, websocket: WebSocket, reason: str) -> None:
        logger.warning(f"WebSocket rejected: {reason}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)

    async def broadcast(self, topic: str, message: Dict[str, Any]) -> int:
        """Send to every socket on a topic, dropping the ones that fail."""
        disconnected = []
        delivered = 0
        for connection in list(self.topics.get(topic, ())):
            try:
                await connection.send_json(message)
                delivered += 1
            except Exception as e:
                logger.debug(f"WebSocket send failed: {e}")
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn)
        return delivered

    def get_connection_count(self, topic: Optional[str] = None) -> int:
        if topic:
            return len(self.topics.get(topic, []))
        return len(self.subscriptions)


class WebSocketFanout(NotificationPublisher):
    """Publisher backed by a ``ConnectionManager`` on the server's event loop.

    Sync routes run in the threadpool, so ``publish`` hands the broadcast to
    the loop thread-safely instead of awaiting it.
    """

    def __init__(self, manager: ConnectionManager, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.manager = manager
        self._loop = loop

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def publish(self, topic: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self._loop is None or self._loop.is_closed():
            logger.debug(f"Event loop not bound, dropping {event_type} for {topic}")
            return

        message = {
            "type": event_type,
            "topic": topic,
            "data": jsonable_encoder(payload),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._loop.create_task(self.manager.broadcast(topic, message))
        else:
            asyncio.run_coroutine_threadsafe(self.manager.broadcast(topic, message), self._loop)
