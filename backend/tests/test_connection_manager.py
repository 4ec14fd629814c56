"""Tests for the realtime connection registry."""

import json
import time

from markview.models.events import DocumentDeletedEvent, DocumentUpdatedEvent
from markview.sse.connection_manager import ConnectionManager, SSEMessage


def _drain(connection) -> list[SSEMessage]:
    messages = []
    while not connection.queue.empty():
        messages.append(connection.queue.get_nowait())
    return messages


def test_sse_message_encoding():
    message = SSEMessage(event="heartbeat", data='{"timestamp":1}')
    assert message.encode() == 'event: heartbeat\ndata: {"timestamp":1}\n\n'


def test_add_and_remove_connection():
    manager = ConnectionManager()
    connection = manager.add_connection("user-1", "laptop")

    assert manager.get_connection(connection.id) is connection
    assert manager.get_connections_for_user("user-1") == [connection]
    assert manager.stats() == {"total_connections": 1, "total_users": 1}

    manager.remove_connection(connection.id)
    manager.remove_connection(connection.id)  # unknown IDs are ignored
    assert manager.get_connection(connection.id) is None
    assert manager.stats() == {"total_connections": 0, "total_users": 0}


def test_connection_ids_are_unique_per_connect():
    manager = ConnectionManager()
    first = manager.add_connection("user-1", "laptop")
    second = manager.add_connection("user-1", "laptop")
    assert first.id != second.id
    assert len(manager.get_connections_for_user("user-1")) == 2


def test_broadcast_skips_origin_device_and_other_users():
    manager = ConnectionManager()
    laptop = manager.add_connection("user-1", "laptop")
    phone = manager.add_connection("user-1", "phone")
    other = manager.add_connection("user-2", "phone")

    delivered = manager.broadcast("user-1", DocumentDeletedEvent(document_id="doc-1"), "laptop")

    assert delivered == 1
    assert _drain(laptop) == []
    assert _drain(other) == []
    [message] = _drain(phone)
    assert message.event == "document:deleted"
    assert json.loads(message.data) == {"documentId": "doc-1", "originDeviceId": "laptop"}


def test_broadcast_without_origin_reaches_every_device():
    manager = ConnectionManager()
    laptop = manager.add_connection("user-1", "laptop")
    phone = manager.add_connection("user-1", "phone")

    delivered = manager.broadcast("user-1", DocumentUpdatedEvent(document_id="d", sync_version=2))

    assert delivered == 2
    assert len(_drain(laptop)) == 1
    assert len(_drain(phone)) == 1


def test_overflowing_connection_is_dropped():
    manager = ConnectionManager(queue_size=1)
    phone = manager.add_connection("user-1", "phone")

    assert manager.broadcast("user-1", DocumentDeletedEvent(document_id="a")) == 1
    assert manager.broadcast("user-1", DocumentDeletedEvent(document_id="b")) == 0
    assert manager.get_connection(phone.id) is None


def test_send_heartbeats():
    manager = ConnectionManager()
    laptop = manager.add_connection("user-1", "laptop")
    manager.add_connection("user-2", "phone")

    assert manager.send_heartbeats() == 2
    [message] = _drain(laptop)
    assert message.event == "heartbeat"
    assert isinstance(json.loads(message.data)["timestamp"], int)


def test_cleanup_stale_removes_quiet_connections():
    manager = ConnectionManager()
    quiet = manager.add_connection("user-1", "laptop")
    lively = manager.add_connection("user-1", "phone")
    quiet.last_heartbeat = time.monotonic() - 120

    manager.mark_heartbeat(lively.id)
    removed = manager.cleanup_stale(90)

    assert removed == 1
    assert manager.get_connection(quiet.id) is None
    assert manager.get_connection(lively.id) is lively


def test_close_all():
    manager = ConnectionManager()
    manager.add_connection("user-1", "laptop")
    manager.add_connection("user-2", "phone")
    manager.close_all()
    assert manager.stats()["total_connections"] == 0
