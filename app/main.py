# app/main.py
from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI, Response
from fastapi.responses import RedirectResponse

from app.core.config import settings
from app.core.devices import load_devices

# Роутеры API
from app.api.routes.automata import router as automata_router

# Шина и автоматы
from app.bus.interfaces import Bus
from app.bus.memory import MemoryBus
from app.bus.mqtt_bus import MqttBus
from app.automata.alerts import AlertDispatcher
from app.automata.audit import AuditLog
from app.automata.loader import FileSource
from app.automata.persistence import SnapshotStore
from app.automata.service import AutomataService

# БД (создать таблицы, в т.ч. audit_events)
from app.db import session as db

log = logging.getLogger("web")

# ─────────────────────────────────────────────────────────────────────────────
# Приложение
# ─────────────────────────────────────────────────────────────────────────────
app = FastAPI(title="Automata hub")

app.include_router(automata_router)


@app.get("/")
def root():
    return RedirectResponse(url="/api/automata/status", status_code=302)


# ─────────────────────────────────────────────────────────────────────────────
# Сборка сервиса по config.yaml
# ─────────────────────────────────────────────────────────────────────────────
def _make_bus() -> Bus:
    if settings.bus == "memory":
        return MemoryBus()
    bus = MqttBus(settings.mqtt)
    try:
        bus.connect()
    except Exception as e:
        log.error("mqtt connect error (non-fatal): %s", e)
    return bus


def build_service(bus: Bus) -> AutomataService:
    conf = settings.automata
    devices = load_devices(settings.devices)

    rules = Path(conf["rules_file"])
    if not rules.is_absolute():
        rules = settings.config_path.parent / rules

    return AutomataService(
        bus=bus,
        devices=devices,
        rules=FileSource(rules),
        store=SnapshotStore(conf["state_file"]),
        audit=AuditLog(db.SessionLocal, bus.emit),
        alerts=AlertDispatcher(bus.emit, settings.alerts.get("channels")),
        reconcile_window=float(conf["reconcile_window_s"]),
        reload_debounce=float(conf["reload_debounce_s"]),
        scripts_dir=str(conf["scripts_dir"]),
        query_timeout=float(conf["query_timeout_s"]),
        earth=settings.earth,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Старт/стоп
# ─────────────────────────────────────────────────────────────────────────────
@app.on_event("startup")
def _startup():
    # 1) грузим YAML
    settings.load_yaml_config()

    # 2) создаём таблицы БД
    db.init_db()

    # 3) шина + автоматы; битые правила на старте — фатально
    bus = _make_bus()
    service = build_service(bus)
    service.start()

    app.state.bus = bus
    app.state.automata = service
    log.info("automata hub ready (%s)", bus.id())


@app.on_event("shutdown")
def _shutdown():
    service = getattr(app.state, "automata", None)
    if service is not None:
        service.stop()
    bus = getattr(app.state, "bus", None)
    if bus is not None:
        bus.close()


@app.get("/.well-known/appspecific/com.chrome.devtools.json")
def _chrome_devtools_probe():
    # Глушим «пинг» от Chrome DevTools, чтобы не мусорил в логах
    return Response(status_code=204)
