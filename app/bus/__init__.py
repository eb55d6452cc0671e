# app/bus/__init__.py
"""
Шина событий хаба.

  - event.py     → модель события и JSON-кодек для MQTT
  - interfaces.py→ интерфейс Bus
  - memory.py    → шина в памяти (локально / тесты)
  - mqtt_bus.py  → шина поверх paho-mqtt
  - query.py     → запрос/ответ по шине с таймаутом
"""
from .event import Event, Fields, new_event, new_command, encode_event, decode_event
from .interfaces import Bus, EventHandler
from .memory import MemoryBus

__all__ = [
    "Event",
    "Fields",
    "new_event",
    "new_command",
    "encode_event",
    "decode_event",
    "Bus",
    "EventHandler",
    "MemoryBus",
]
