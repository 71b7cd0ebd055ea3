"""Normalize upstream game server events into ``TriggerEvent`` envelopes."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from .contracts import EventType, TriggerEvent
from .exceptions import IngestError

RawEvent = Union[TriggerEvent, Mapping[str, Any], str, bytes]


def parse_event_type(value: Any) -> EventType:
    if isinstance(value, EventType):
        return value
    try:
        return EventType(str(value).strip().upper())
    except ValueError as e:
        raise IngestError(f"Unknown event type: {value!r}") from e


def _timestamp(value: Any) -> datetime:
    if value is None or value == "":
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        ts = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        try:
            ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise IngestError(f"Invalid timestamp: {value!r}") from e
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class EventIngestAdapter:
    """Turn RCON events, log-parsed events and raw dicts into ``TriggerEvent``."""

    def normalize(self, raw: RawEvent, server_id: Optional[str] = None) -> TriggerEvent:
        """Accept a canonical envelope or an upstream ``{type, data}`` event.

        ``server_id`` fills in (or must agree with) the envelope's server.
        """
        if isinstance(raw, TriggerEvent):
            event = raw
        else:
            if isinstance(raw, (str, bytes)):
                try:
                    raw = json.loads(raw)
                except ValueError as e:
                    raise IngestError(f"Event is not valid JSON: {e}") from e
            if not isinstance(raw, Mapping):
                raise IngestError("Event must be a JSON object")
            event = self._from_mapping(raw, server_id)

        if server_id is not None and event.server_id != server_id:
            raise IngestError(
                f"Event belongs to server {event.server_id}, not {server_id}"
            )
        return event

    def _from_mapping(self, raw: Mapping[str, Any], server_id: Optional[str]) -> TriggerEvent:
        event_type = raw.get("event_type", raw.get("type"))
        if event_type is None:
            raise IngestError("Event has no event_type")
        payload = raw.get("payload", raw.get("data"))
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise IngestError("Event payload must be an object")
        resolved_server = raw.get("server_id") or server_id
        if not resolved_server:
            raise IngestError("Event has no server_id")

        fields: Dict[str, Any] = {
            "event_type": parse_event_type(event_type),
            "server_id": str(resolved_server),
            "payload": dict(payload),
            "timestamp": _timestamp(raw.get("timestamp")),
            "source": raw.get("source", "api"),
        }
        if raw.get("id"):
            fields["id"] = str(raw["id"])
        try:
            return TriggerEvent(**fields)
        except ValidationError as e:
            raise IngestError(str(e)) from e

    def from_rcon(
        self,
        server_id: str,
        event_type: Union[str, EventType],
        data: Mapping[str, Any],
        timestamp: Any = None,
    ) -> TriggerEvent:
        kind = parse_event_type(event_type)
        if not kind.value.startswith("RCON_"):
            raise IngestError(f"{kind.value} is not an RCON event")
        return TriggerEvent(
            event_type=kind,
            server_id=server_id,
            payload=dict(data),
            timestamp=_timestamp(timestamp),
            source="rcon",
        )

    def from_admin_camera(
        self, server_id: str, data: Mapping[str, Any], timestamp: Any = None
    ) -> TriggerEvent:
        """Camera events carry an ``action`` of ``possessed`` or ``unpossessed``."""
        kind = (
            EventType.RCON_POSSESSED_ADMIN_CAMERA
            if data.get("action") == "possessed"
            else EventType.RCON_UNPOSSESSED_ADMIN_CAMERA
        )
        return self.from_rcon(server_id, kind, data, timestamp)

    def from_log(
        self,
        server_id: str,
        event_type: Union[str, EventType],
        data: Mapping[str, Any],
        timestamp: Any = None,
    ) -> TriggerEvent:
        kind = parse_event_type(event_type)
        if not kind.value.startswith("LOG_"):
            raise IngestError(f"{kind.value} is not a log event")
        return TriggerEvent(
            event_type=kind,
            server_id=server_id,
            payload=dict(data),
            timestamp=_timestamp(timestamp),
            source="log",
        )

    def manual(self, server_id: str, payload: Optional[Mapping[str, Any]] = None) -> TriggerEvent:
        return TriggerEvent(
            event_type=EventType.MANUAL_TRIGGER,
            server_id=server_id,
            payload=dict(payload or {}),
            source="manual",
        )
