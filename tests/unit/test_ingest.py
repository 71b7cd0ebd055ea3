import json
from datetime import datetime, timezone

import pytest

from rconflow.contracts import EventType, TriggerEvent
from rconflow.exceptions import IngestError
from rconflow.ingest import EventIngestAdapter, parse_event_type


@pytest.fixture
def adapter():
    return EventIngestAdapter()


def test_parse_event_type(adapter):
    assert parse_event_type("rcon_chat_message") == EventType.RCON_CHAT_MESSAGE
    with pytest.raises(IngestError, match="Unknown event type"):
        parse_event_type("PLAYER_JUMPED")


def test_normalize_upstream_type_data_shape(adapter):
    event = adapter.normalize(
        {
            "type": "LOG_PLAYER_DIED",
            "data": {"victim": "Bob"},
            "timestamp": "2024-05-01T12:00:00Z",
        },
        server_id="server-1",
    )
    assert event.event_type == EventType.LOG_PLAYER_DIED
    assert event.server_id == "server-1"
    assert event.payload == {"victim": "Bob"}
    assert event.timestamp == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)


def test_normalize_json_envelope(adapter):
    raw = json.dumps(
        {"id": "ev-1", "event_type": "RCON_CHAT_MESSAGE", "server_id": "s1", "payload": {}}
    )
    event = adapter.normalize(raw)
    assert (event.id, event.server_id) == ("ev-1", "s1")


def test_normalize_passes_trigger_events_through(adapter):
    event = TriggerEvent(event_type="RCON_SERVER_INFO", server_id="s1")
    assert adapter.normalize(event, server_id="s1") is event


@pytest.mark.parametrize(
    "raw, message",
    [
        ("not json", "not valid JSON"),
        ("[1, 2]", "JSON object"),
        ({"payload": {}}, "no event_type"),
        ({"event_type": "RCON_CHAT_MESSAGE"}, "no server_id"),
        ({"event_type": "RCON_CHAT_MESSAGE", "server_id": "s1", "payload": [1]}, "payload"),
        ({"event_type": "RCON_CHAT_MESSAGE", "server_id": "s1", "timestamp": "soon"}, "timestamp"),
    ],
)
def test_normalize_rejects_invalid_events(adapter, raw, message):
    with pytest.raises(IngestError, match=message):
        adapter.normalize(raw)


def test_server_mismatch_is_rejected(adapter):
    with pytest.raises(IngestError, match="not server-2"):
        adapter.normalize(
            {"event_type": "RCON_CHAT_MESSAGE", "server_id": "server-1"}, server_id="server-2"
        )


def test_source_specific_constructors(adapter):
    chat = adapter.from_rcon("s1", "RCON_CHAT_MESSAGE", {"message": "hi"})
    assert chat.source == "rcon"

    camera = adapter.from_admin_camera("s1", {"action": "possessed", "admin": "Alice"})
    assert camera.event_type == EventType.RCON_POSSESSED_ADMIN_CAMERA
    left = adapter.from_admin_camera("s1", {"action": "unpossessed"})
    assert left.event_type == EventType.RCON_UNPOSSESSED_ADMIN_CAMERA

    died = adapter.from_log("s1", "LOG_PLAYER_DIED", {"victim": "Bob"}, timestamp=0)
    assert died.source == "log"
    assert died.timestamp == datetime(1970, 1, 1, tzinfo=timezone.utc)

    with pytest.raises(IngestError):
        adapter.from_log("s1", "RCON_CHAT_MESSAGE", {})
    with pytest.raises(IngestError):
        adapter.from_rcon("s1", "LOG_PLAYER_DIED", {})

    manual = adapter.manual("s1", {"reason": "test"})
    assert manual.event_type == EventType.MANUAL_TRIGGER
    assert manual.source == "manual"
