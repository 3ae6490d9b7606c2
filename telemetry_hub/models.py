"""Domain models for telemetry, devices, commands and realtime envelopes."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

MEASUREMENT_FIELDS = ("temperature", "humidity", "weight", "battery")

EVENT_DEVICE_DATA = "device_data"
EVENT_CONNECTED = "connected"


class TelemetryParseError(ValueError):
    """Raised when an inbound telemetry payload cannot be accepted."""


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True, slots=True)
class TelemetrySample:
    device_id: str
    temperature: float
    humidity: float
    weight: float
    battery: float
    timestamp: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "device_id": self.device_id,
            "temperature": self.temperature,
            "humidity": self.humidity,
            "weight": self.weight,
            "battery": self.battery,
        }
        if self.timestamp is not None:
            payload["timestamp"] = self.timestamp.isoformat()
        return payload


@dataclass(slots=True)
class DeviceRecord:
    id: str
    name: str
    status: DeviceStatus
    last_seen: datetime
    created_at: datetime


@dataclass(frozen=True, slots=True)
class Command:
    device_id: str
    name: str
    parameters: Optional[Mapping[str, Any]] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"command": self.name}
        if self.parameters is not None:
            payload["parameters"] = dict(self.parameters)
        return payload


@dataclass(frozen=True, slots=True)
class Envelope:
    """Typed wrapper for events delivered to realtime subscribers."""

    type: str
    data: Any = None
    message: Optional[str] = None

    def to_json(self) -> str:
        body: Dict[str, Any] = {"type": self.type}
        if self.data is not None:
            body["data"] = self.data
        if self.message is not None:
            body["message"] = self.message
        return json.dumps(body)


# ----------------------------------------------------------------------
# Topics
# ----------------------------------------------------------------------
def telemetry_subscription(namespace: str) -> str:
    return f"{namespace}/devices/+/telemetry"


def telemetry_topic(namespace: str, device_id: str) -> str:
    return f"{namespace}/devices/{device_id}/telemetry"


def command_topic(namespace: str, device_id: str) -> str:
    return f"{namespace}/devices/{device_id}/commands"


def device_id_from_topic(topic: str) -> Optional[str]:
    """Extract the device segment from ``<ns>/devices/<id>/<channel>``."""

    parts = topic.split("/")
    if len(parts) < 4 or parts[-3] != "devices":
        return None
    return parts[-2] or None


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------
def parse_telemetry(payload: bytes | str) -> TelemetrySample:
    """Parse a raw broker payload into a :class:`TelemetrySample`.

    Raises:
        TelemetryParseError: If the payload is not a JSON object, lacks a
            non-empty ``device_id``, carries a non-numeric measurement or an
            unparseable ``timestamp``.
    """

    try:
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8")
        document = json.loads(payload)
    except (UnicodeDecodeError, ValueError) as exc:
        raise TelemetryParseError(f"payload is not valid JSON: {exc}") from exc

    if not isinstance(document, dict):
        raise TelemetryParseError("payload must be a JSON object")

    device_id = document.get("device_id")
    if not isinstance(device_id, str) or not device_id.strip():
        raise TelemetryParseError("device_id is missing or empty")

    values: Dict[str, float] = {}
    for name in MEASUREMENT_FIELDS:
        values[name] = _coerce_number(name, document.get(name))

    return TelemetrySample(
        device_id=device_id.strip(),
        timestamp=_parse_timestamp(document.get("timestamp")),
        **values,
    )


def _coerce_number(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TelemetryParseError(f"{name} must be a number")
    try:
        finite = math.isfinite(value)
    except OverflowError as exc:
        raise TelemetryParseError(f"{name} is out of range") from exc
    if not finite:
        raise TelemetryParseError(f"{name} must be finite")
    return value


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise TelemetryParseError("timestamp must be an ISO-8601 string")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise TelemetryParseError(f"invalid timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
