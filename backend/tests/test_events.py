"""Tests for realtime event parsing and encoding."""

import json

import pytest

from markview.models.events import (
    EVENT_MODELS,
    DocumentUpdatedEvent,
    SessionUpdatedEvent,
    SettingsUpdatedEvent,
    UnknownEventError,
    encode_event,
    parse_event,
)


def test_every_event_name_has_a_model():
    assert set(EVENT_MODELS) == {
        "connected",
        "heartbeat",
        "document:updated",
        "document:deleted",
        "folder:updated",
        "folder:deleted",
        "session:updated",
        "settings:updated",
    }


def test_parse_camel_case_payload():
    event = parse_event(
        "document:updated",
        '{"documentId":"doc-1","syncVersion":3,"originDeviceId":"laptop","updatedAt":"2026-01-01T00:00:00"}',
    )
    assert isinstance(event, DocumentUpdatedEvent)
    assert event.document_id == "doc-1"
    assert event.sync_version == 3
    assert event.origin_device_id == "laptop"


def test_parse_accepts_dict():
    event = parse_event("session:updated", {"openDocumentIds": ["a", "b"], "activeDocumentId": "b"})
    assert isinstance(event, SessionUpdatedEvent)
    assert event.open_document_ids == ["a", "b"]


def test_parse_settings_updated():
    event = parse_event("settings:updated", {"updatedAt": "2026-01-01T00:00:00", "originDeviceId": "phone"})
    assert isinstance(event, SettingsUpdatedEvent)
    assert event.origin_device_id == "phone"


def test_unknown_event_is_rejected():
    with pytest.raises(UnknownEventError) as exc_info:
        parse_event("document:renamed", "{}")
    assert exc_info.value.event_type == "document:renamed"


def test_encode_omits_nulls():
    encoded = encode_event(DocumentUpdatedEvent(document_id="doc-1", sync_version=2))
    assert json.loads(encoded) == {"documentId": "doc-1", "syncVersion": 2}
