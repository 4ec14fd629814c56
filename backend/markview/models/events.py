"""Realtime channel events.

The set of events is closed: every event name the server may send maps to
exactly one model in ``EVENT_MODELS``, and ``parse_event`` rejects anything
else.
"""

import json
from datetime import datetime
from typing import ClassVar, Union

from markview.models.sync import CamelModel


class UnknownEventError(ValueError):
    """Raised for an event name outside the protocol."""

    def __init__(self, event_type: str):
        super().__init__(f"Unknown realtime event type: {event_type!r}")
        self.event_type = event_type


class ChannelEvent(CamelModel):
    """Common envelope. ``origin_device_id`` names the device that caused the change."""

    event_type: ClassVar[str] = ""

    origin_device_id: str | None = None


class ConnectedEvent(ChannelEvent):
    event_type: ClassVar[str] = "connected"

    connection_id: str
    device_id: str
    user_id: str


class HeartbeatEvent(ChannelEvent):
    event_type: ClassVar[str] = "heartbeat"

    timestamp: int  # epoch milliseconds


class DocumentUpdatedEvent(ChannelEvent):
    event_type: ClassVar[str] = "document:updated"

    document_id: str
    sync_version: int
    updated_at: datetime | None = None


class DocumentDeletedEvent(ChannelEvent):
    event_type: ClassVar[str] = "document:deleted"

    document_id: str


class FolderUpdatedEvent(ChannelEvent):
    event_type: ClassVar[str] = "folder:updated"

    folder_id: str
    updated_at: datetime | None = None


class FolderDeletedEvent(ChannelEvent):
    event_type: ClassVar[str] = "folder:deleted"

    folder_id: str


class SessionUpdatedEvent(ChannelEvent):
    event_type: ClassVar[str] = "session:updated"

    open_document_ids: list[str] = []
    active_document_id: str | None = None
    updated_at: datetime | None = None


class SettingsUpdatedEvent(ChannelEvent):
    event_type: ClassVar[str] = "settings:updated"

    updated_at: datetime | None = None


RealtimeEvent = Union[
    ConnectedEvent,
    HeartbeatEvent,
    DocumentUpdatedEvent,
    DocumentDeletedEvent,
    FolderUpdatedEvent,
    FolderDeletedEvent,
    SessionUpdatedEvent,
    SettingsUpdatedEvent,
]

EVENT_MODELS: dict[str, type[ChannelEvent]] = {
    model.event_type: model
    for model in (
        ConnectedEvent,
        HeartbeatEvent,
        DocumentUpdatedEvent,
        DocumentDeletedEvent,
        FolderUpdatedEvent,
        FolderDeletedEvent,
        SessionUpdatedEvent,
        SettingsUpdatedEvent,
    )
}


def parse_event(event_type: str, data: str | dict) -> RealtimeEvent:
    """Build the typed event for an ``event:`` name and its JSON ``data:``."""
    model = EVENT_MODELS.get(event_type)
    if model is None:
        raise UnknownEventError(event_type)
    payload = json.loads(data) if isinstance(data, str) else data
    return model.model_validate(payload)  # type: ignore[return-value]


def encode_event(event: ChannelEvent) -> str:
    """Serialize an event's data as a compact JSON string (nulls omitted)."""
    return json.dumps(event.model_dump(by_alias=True, mode="json", exclude_none=True))
