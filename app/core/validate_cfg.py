# app/core/validate_cfg.py
from __future__ import annotations
from typing import Dict, Any, Optional

ALLOWED_BUSES = {"mqtt", "memory"}
ALLOWED_ALERT_TYPES = {"telegram"}


def _as_int(v, name, min_: Optional[int] = None, max_: Optional[int] = None) -> int:
    try:
        iv = int(v)
    except (TypeError, ValueError):
        raise ValueError(f"{name}: ожидается целое, получено {v!r}")
    if min_ is not None and iv < min_:
        raise ValueError(f"{name}: должно быть ≥ {min_} (получено {iv})")
    if max_ is not None and iv > max_:
        raise ValueError(f"{name}: должно быть ≤ {max_} (получено {iv})")
    return iv


def _as_float(v, name, min_: Optional[float] = None, max_: Optional[float] = None) -> float:
    try:
        fv = float(v)
    except (TypeError, ValueError):
        raise ValueError(f"{name}: ожидается число, получено {v!r}")
    if min_ is not None and fv < min_:
        raise ValueError(f"{name}: должно быть ≥ {min_} (получено {fv})")
    if max_ is not None and fv > max_:
        raise ValueError(f"{name}: должно быть ≤ {max_} (получено {fv})")
    return fv


def _as_str(v, name) -> str:
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"{name}: должен быть непустой строкой")
    return v


def validate_cfg(cfg: Dict[str, Any]) -> None:
    """Бросает ValueError с понятным текстом, если конфиг некорректен."""
    if not isinstance(cfg, dict):
        raise ValueError("корневой YAML должен быть объектом")

    bus = str(cfg.get("bus", "mqtt"))
    if bus not in ALLOWED_BUSES:
        raise ValueError(f"bus: допустимо {sorted(ALLOWED_BUSES)}, получено {bus!r}")

    # ─── mqtt ───
    mqtt = cfg.get("mqtt", {})
    if not isinstance(mqtt, dict):
        raise ValueError("mqtt: должен быть объектом")
    if bus == "mqtt":
        host = str(mqtt.get("host", "")).strip()
        if not host:
            raise ValueError("mqtt.host: не должен быть пустым")
    _as_int(mqtt.get("port", 1883), "mqtt.port", 1, 65535)
    _as_int(mqtt.get("qos", 0), "mqtt.qos", 0, 2)
    if "prefix" in mqtt:
        _as_str(mqtt["prefix"], "mqtt.prefix")

    # ─── db ───
    db = cfg.get("db", {})
    if not isinstance(db, dict):
        raise ValueError("db: должен быть объектом")
    if "url" in db:
        _as_str(db["url"], "db.url")

    # ─── automata ───
    aut = cfg.get("automata", {})
    if aut:
        if not isinstance(aut, dict):
            raise ValueError("automata: должен быть объектом")
        for key in ("rules_file", "state_file", "scripts_dir"):
            if key in aut:
                _as_str(aut[key], f"automata.{key}")
        for key in ("reconcile_window_s", "reload_debounce_s", "query_timeout_s"):
            if key in aut:
                _as_float(aut[key], f"automata.{key}", 0)

    # ─── earth (координаты для событий солнца) ───
    earth = cfg.get("earth", {})
    if earth:
        if not isinstance(earth, dict):
            raise ValueError("earth: должен быть объектом {latitude, longitude}")
        for key in ("latitude", "longitude"):
            if key not in earth:
                raise ValueError(f"earth.{key}: обязателен")
        _as_float(earth["latitude"], "earth.latitude", -90, 90)
        _as_float(earth["longitude"], "earth.longitude", -180, 180)

    # ─── devices ───
    devices = cfg.get("devices", {})
    if devices:
        if not isinstance(devices, dict):
            raise ValueError("devices: должен быть объектом id → {name, caps, group}")
        for dev_id, d in devices.items():
            if d is None:
                continue
            if not isinstance(d, dict):
                raise ValueError(f"devices.{dev_id}: должен быть объектом")
            caps = d.get("caps", [])
            if not isinstance(caps, list) or not all(isinstance(c, str) for c in caps):
                raise ValueError(f"devices.{dev_id}.caps: должен быть списком строк")

    # ─── alerts ───
    alerts = cfg.get("alerts", {})
    if alerts:
        if not isinstance(alerts, dict):
            raise ValueError("alerts: должен быть объектом")
        channels = alerts.get("channels", {}) or {}
        if not isinstance(channels, dict):
            raise ValueError("alerts.channels: должен быть объектом name → {type, ...}")
        for name, ch in channels.items():
            if not isinstance(ch, dict):
                raise ValueError(f"alerts.channels.{name}: должен быть объектом")
            kind = str(ch.get("type", "telegram"))
            if kind not in ALLOWED_ALERT_TYPES:
                raise ValueError(f"alerts.channels.{name}.type: допустимо {sorted(ALLOWED_ALERT_TYPES)}")
            if kind == "telegram":
                _as_str(ch.get("bot_token"), f"alerts.channels.{name}.bot_token")
                if ch.get("chat_id") in (None, ""):
                    raise ValueError(f"alerts.channels.{name}.chat_id: обязателен")
