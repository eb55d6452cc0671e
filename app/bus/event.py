# app/bus/event.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

# Значения полей события: строка / число / bool
Fields = Dict[str, Any]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    """
    Каноническое событие шины.

    topic    — тип события ("state", "command", "timer", "door", ...)
    fields   — именованные значения; сущность лежит в поле "device"
    retained — пришло как «последнее известное значение» от брокера
    """
    topic: str
    fields: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utc_now)
    retained: bool = False

    def __post_init__(self) -> None:
        # событие неизменяемое — поля тоже только для чтения
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @property
    def device(self) -> str:
        return str(self.fields.get("device", "") or "")

    # синоним — «сущность», к которой относится событие
    entity = device

    @property
    def command(self) -> str:
        return str(self.fields.get("command", "") or "")

    def string_field(self, name: str) -> str:
        v = self.fields.get(name)
        return "" if v is None else str(v)

    def with_retained(self, retained: bool) -> "Event":
        return Event(self.topic, dict(self.fields), self.timestamp, retained)

    def __str__(self) -> str:
        s = self.device
        for k, v in self.fields.items():
            if k == "device":
                continue
            s += f" {k}={v}"
        return s


def new_event(topic: str, fields: Optional[Fields] = None, *, retained: bool = False) -> Event:
    return Event(topic=topic, fields=dict(fields or {}), retained=retained)


def new_command(device: str, command: str, fields: Optional[Fields] = None) -> Event:
    f = dict(fields or {})
    f["device"] = device
    f["command"] = command
    return Event(topic="command", fields=f)


# ─────────────────────────────────────────────────────────────────────────────
# JSON-кодек для MQTT: <prefix>/<topic>/<device>  +  {"topic", "device", "timestamp", ...}
# ─────────────────────────────────────────────────────────────────────────────

def encode_event(ev: Event, prefix: str = "gohome") -> Tuple[str, str]:
    payload: Dict[str, Any] = dict(ev.fields)
    payload["topic"] = ev.topic
    payload["timestamp"] = ev.timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    mqtt_topic = f"{prefix}/{ev.topic}"
    if ev.device:
        mqtt_topic += f"/{ev.device}"
    return mqtt_topic, json.dumps(payload, ensure_ascii=False)


def _parse_ts(raw: Any) -> datetime:
    if isinstance(raw, str) and raw:
        try:
            ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            if ts.tzinfo is None:
                ts = ts.replace(tzinfo=timezone.utc)
            return ts
        except ValueError:
            pass
    return _utc_now()


def decode_event(mqtt_topic: str, payload: bytes | str, *, prefix: str = "gohome", retained: bool = False) -> Optional[Event]:
    """
    Разбор MQTT-сообщения в Event. Чужие топики и битый JSON → None.
    """
    parts = mqtt_topic.split("/")
    if len(parts) < 2 or parts[0] != prefix:
        return None

    s = payload.decode("utf-8", errors="ignore") if isinstance(payload, (bytes, bytearray)) else str(payload)
    try:
        data = json.loads(s) if s else {}
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    topic = str(data.pop("topic", "") or parts[1])
    ts = _parse_ts(data.pop("timestamp", None))
    if "device" not in data and len(parts) >= 3:
        data["device"] = "/".join(parts[2:])
    return Event(topic=topic, fields=data, timestamp=ts, retained=retained)
