"""
Realtime fan-out for admin dashboards.

The Multiplexer is the process-wide publisher: services call
`publish(message_type, data)` from any thread and the message is routed onto
the event loop, then appended to the send buffer of every connection
subscribed to the message's topic. Each Connection owns its subscription set
and buffer; nothing is shared between connections.
"""

import asyncio
import itertools
import logging
import threading
import time
from collections import Counter, deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from admin_plane.core.security import Principal
from admin_plane.core.timeutils import to_iso, utcnow


logger = logging.getLogger(__name__)


class Topic(str, Enum):
    """Named realtime streams."""
    METRICS = "metrics"
    ACTIVITY = "activity"
    NOTIFICATIONS = "notifications"
    SECURITY = "security"
    SYSTEM = "system"


MESSAGE_TOPICS: Dict[str, Topic] = {
    "dashboard:metrics": Topic.METRICS,
    "dashboard:activity": Topic.ACTIVITY,
    "notification:new": Topic.NOTIFICATIONS,
    "security:alert": Topic.SECURITY,
    "system:health": Topic.SYSTEM,
    "system:settings": Topic.SYSTEM,
    "system:maintenance": Topic.SYSTEM,
}

NEVER_DROPPED = frozenset({"security:alert"})


def envelope(message_type: str, data: Any) -> Dict[str, Any]:
    return {"type": message_type, "data": data, "timestamp": to_iso(utcnow())}


class Connection:
    """
    Per-connection state: subscriptions, bounded send buffer and liveness.

    Only the event loop thread touches a Connection once it is registered.
    """

    def __init__(
        self,
        connection_id: str,
        principal: Principal,
        max_buffer: int = 1024,
        clock: Callable[[], float] = time.monotonic
    ):
        self.id = connection_id
        self.principal = principal
        self.max_buffer = max_buffer
        self.topics: set = set()
        self.buffer: Deque[Dict[str, Any]] = deque()
        self.dropped = 0
        self.closed = False
        self.close_reason: Optional[str] = None
        self._clock = clock
        self.connected_at = clock()
        self.last_seen = self.connected_at
        self._wakeup = asyncio.Event()

    def touch(self) -> None:
        self.last_seen = self._clock()

    def subscribe(self, topic: Topic) -> None:
        self.topics.add(topic)

    def unsubscribe(self, topic: Topic) -> None:
        self.topics.discard(topic)

    def enqueue(self, message: Dict[str, Any]) -> None:
        """
        Append a message, dropping the oldest droppable one when full.

        security:alert messages are never dropped, so the buffer may exceed
        its bound when it holds nothing else.
        """
        if self.closed:
            return
        if len(self.buffer) >= self.max_buffer:
            for index, queued in enumerate(self.buffer):
                if queued["type"] not in NEVER_DROPPED:
                    del self.buffer[index]
                    self.dropped += 1
                    break
        self.buffer.append(message)
        self._wakeup.set()

    def disconnect(self, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        self.buffer.clear()
        self._wakeup.set()

    async def next_message(self) -> Optional[Dict[str, Any]]:
        """Wait for the next queued message; None once disconnected."""
        while not self.buffer:
            if self.closed:
                return None
            self._wakeup.clear()
            await self._wakeup.wait()
        if self.closed:
            return None
        return self.buffer.popleft()

    def info(self) -> Dict[str, Any]:
        return {
            "connectionId": self.id,
            "userId": self.principal.sub,
            "topics": sorted(t.value for t in self.topics),
            "queued": len(self.buffer),
            "dropped": self.dropped,
        }


class Multiplexer:
    """
    Process-wide publisher and connection registry.
    """

    def __init__(self, max_buffer: int = 1024, clock: Callable[[], float] = time.monotonic):
        self.max_buffer = max_buffer
        self._clock = clock
        self._connections: Dict[str, Connection] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.published: Counter = Counter()

    def bind(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        self._loop = loop

    def _run(self, fn: Callable, *args) -> None:
        """Run `fn` on the bound loop; inline when already there or unbound."""
        loop = self._loop
        if loop is None or loop.is_closed():
            fn(*args)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            fn(*args)
        else:
            loop.call_soon_threadsafe(fn, *args)

    # Registry

    def register(self, principal: Principal) -> Connection:
        connection = Connection(
            f"conn-{next(self._ids)}", principal, self.max_buffer, clock=self._clock
        )
        with self._lock:
            self._connections[connection.id] = connection
        logger.info(f"Realtime connection {connection.id} opened for {principal.sub}")
        return connection

    def unregister(self, connection: Connection) -> None:
        with self._lock:
            self._connections.pop(connection.id, None)
        logger.info(f"Realtime connection {connection.id} closed ({connection.close_reason or 'client'})")

    def connections(self) -> List[Connection]:
        with self._lock:
            return list(self._connections.values())

    def subscribers(self, topic: Topic) -> int:
        return sum(1 for c in self.connections() if topic in c.topics)

    # Publishing

    def publish(self, message_type: str, data: Any, topic: Optional[Topic] = None) -> None:
        """
        Publish a server event to every connection subscribed to its topic.

        Safe to call from worker threads.
        """
        topic = topic or MESSAGE_TOPICS[message_type]
        message = envelope(message_type, data)
        self.published[message_type] += 1
        self._run(self._dispatch, topic, message)

    def _dispatch(self, topic: Topic, message: Dict[str, Any]) -> None:
        for connection in self.connections():
            if topic in connection.topics:
                connection.enqueue(message)

    def disconnect_principal(self, sub: str, reason: str) -> None:
        """Close every connection opened by `sub`."""
        self._run(self._disconnect_principal, sub, reason)

    def _disconnect_principal(self, sub: str, reason: str) -> None:
        for connection in self.connections():
            if connection.principal.sub == sub:
                connection.disconnect(reason)

    # Supervision

    def stale(self, heartbeat: float, now: Optional[float] = None) -> List[Connection]:
        """Connections silent for longer than `heartbeat` seconds."""
        current = now if now is not None else self._clock()
        return [c for c in self.connections() if not c.closed and current - c.last_seen > heartbeat]

    def expired(self, now: Optional[float] = None) -> List[Connection]:
        """Connections whose token has expired."""
        current = now if now is not None else time.time()
        return [c for c in self.connections() if not c.closed and c.principal.expired(current)]

    def stats(self) -> Dict[str, Any]:
        connections = self.connections()
        by_topic = Counter(t.value for c in connections for t in c.topics)
        return {
            "activeConnections": len(connections),
            "uniqueAdmins": len({c.principal.sub for c in connections}),
            "subscriptionsByTopic": {t.value: by_topic.get(t.value, 0) for t in Topic},
            "queuedMessages": sum(len(c.buffer) for c in connections),
            "droppedMessages": sum(c.dropped for c in connections),
            "publishedByType": dict(self.published),
        }
