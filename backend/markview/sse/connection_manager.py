"""Per-user registry of realtime (SSE) connections and event fan-out.

Each connection owns a bounded asyncio queue that the streaming route
drains. A connection whose queue overflows, or that has not delivered a
heartbeat within the stale window, is dropped.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field

from markview.config import settings
from markview.models.events import ChannelEvent, HeartbeatEvent, encode_event

logger = logging.getLogger(__name__)


@dataclass
class SSEMessage:
    """One frame of the event stream."""

    event: str
    data: str

    def encode(self) -> str:
        return f"event: {self.event}\ndata: {self.data}\n\n"


@dataclass
class SSEConnection:
    id: str
    user_id: str
    device_id: str
    queue: asyncio.Queue
    last_heartbeat: float = field(default_factory=time.monotonic)
    created_at: float = field(default_factory=time.monotonic)


class ConnectionManager:
    """Tracks live connections and broadcasts events to a user's devices."""

    def __init__(self, queue_size: int | None = None) -> None:
        self.queue_size = queue_size or settings.sse_queue_size
        self._connections: dict[str, set[str]] = {}
        self._by_id: dict[str, SSEConnection] = {}

    def add_connection(self, user_id: str, device_id: str) -> SSEConnection:
        """Register a new connection for ``user_id`` on ``device_id``."""
        connection = SSEConnection(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_id=device_id,
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        self._connections.setdefault(user_id, set()).add(connection.id)
        self._by_id[connection.id] = connection
        logger.info(
            "SSE connection added: %s for user %s (device: %s)",
            connection.id, user_id, device_id,
        )
        return connection

    def remove_connection(self, connection_id: str) -> None:
        """Forget a connection. Unknown IDs are ignored."""
        connection = self._by_id.pop(connection_id, None)
        if connection is None:
            return
        user_connections = self._connections.get(connection.user_id)
        if user_connections is not None:
            user_connections.discard(connection_id)
            if not user_connections:
                del self._connections[connection.user_id]
        logger.info("SSE connection removed: %s for user %s", connection_id, connection.user_id)

    def get_connection(self, connection_id: str) -> SSEConnection | None:
        return self._by_id.get(connection_id)

    def get_connections_for_user(self, user_id: str) -> list[SSEConnection]:
        return [self._by_id[cid] for cid in self._connections.get(user_id, set())]

    def mark_heartbeat(self, connection_id: str) -> None:
        """Record that a heartbeat frame reached the client."""
        connection = self._by_id.get(connection_id)
        if connection is not None:
            connection.last_heartbeat = time.monotonic()

    def _enqueue(self, connection: SSEConnection, message: SSEMessage) -> bool:
        try:
            connection.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            logger.warning("SSE queue full for connection %s, dropping it", connection.id)
            return False

    def broadcast(
        self,
        user_id: str,
        event: ChannelEvent,
        origin_device_id: str | None = None,
    ) -> int:
        """Send ``event`` to every connection of ``user_id`` except the origin device.

        The payload is tagged with ``originDeviceId`` so clients can also
        suppress echoes themselves. Returns the number of deliveries.
        """
        tagged = event.model_copy(update={"origin_device_id": origin_device_id})
        message = SSEMessage(event=event.event_type, data=encode_event(tagged))

        delivered = 0
        dead: list[str] = []
        for connection in self.get_connections_for_user(user_id):
            if origin_device_id and connection.device_id == origin_device_id:
                continue
            if self._enqueue(connection, message):
                delivered += 1
            else:
                dead.append(connection.id)

        for connection_id in dead:
            self.remove_connection(connection_id)

        logger.debug("Broadcast %s to %d connection(s) of user %s", event.event_type, delivered, user_id)
        return delivered

    def send_heartbeats(self) -> int:
        """Queue a heartbeat on every connection. Returns the number queued."""
        message = SSEMessage(
            event=HeartbeatEvent.event_type,
            data=encode_event(HeartbeatEvent(timestamp=int(time.time() * 1000))),
        )
        sent = 0
        dead: list[str] = []
        for connection in list(self._by_id.values()):
            if self._enqueue(connection, message):
                sent += 1
            else:
                dead.append(connection.id)
        for connection_id in dead:
            self.remove_connection(connection_id)
        return sent

    def cleanup_stale(self, timeout_seconds: float | None = None) -> int:
        """Drop connections that have not delivered a heartbeat recently."""
        timeout = timeout_seconds if timeout_seconds is not None else settings.sse_stale_seconds
        now = time.monotonic()
        stale = [c.id for c in self._by_id.values() if now - c.last_heartbeat > timeout]
        for connection_id in stale:
            logger.info("Cleaning up stale SSE connection %s", connection_id)
            self.remove_connection(connection_id)
        if stale:
            logger.info("Cleaned up %d stale SSE connection(s)", len(stale))
        return len(stale)

    def close_all(self) -> None:
        """Drop every connection (shutdown)."""
        for connection_id in list(self._by_id):
            self.remove_connection(connection_id)

    def stats(self) -> dict[str, int]:
        return {
            "total_connections": len(self._by_id),
            "total_users": len(self._connections),
        }


connection_manager = ConnectionManager()


def get_connection_manager() -> ConnectionManager:
    """Return the process-wide connection manager (FastAPI dependency)."""
    return connection_manager
