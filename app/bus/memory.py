# app/bus/memory.py
from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Sequence, Tuple

from .event import Event
from .interfaces import Bus, EventHandler

log = logging.getLogger("bus")


class MemoryBus(Bus):
    """
    Шина в памяти процесса: локальный запуск без брокера и тесты.

    - последние history опубликованных событий лежат в .events
    - retained-события запоминаются по (topic, device) и отдаются
      новому подписчику с флагом retained=True (как делает MQTT-брокер)
    """

    def __init__(self, history: int = 1000) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._subs: Dict[int, Tuple[EventHandler, Optional[frozenset]]] = {}
        self._retained: Dict[Tuple[str, str], Event] = {}
        self.events: Deque[Event] = deque(maxlen=history)

    def id(self) -> str:
        return "memory"

    def emit(self, ev: Event) -> None:
        with self._lock:
            self.events.append(ev)
            if ev.retained:
                self._retained[(ev.topic, ev.device)] = ev
            subs = list(self._subs.values())

        # живым подписчикам событие приходит без флага retained
        live = ev.with_retained(False) if ev.retained else ev
        for handler, topics in subs:
            if topics is not None and live.topic not in topics:
                continue
            try:
                handler(live)
            except Exception as e:
                log.error("bus handler error for %s: %s", live.topic, e)

    def subscribe(self, handler: EventHandler, topics: Optional[Sequence[str]] = None) -> int:
        flt = frozenset(topics) if topics else None
        with self._lock:
            token = next(self._ids)
            self._subs[token] = (handler, flt)
            retained = [e for e in self._retained.values() if flt is None or e.topic in flt]

        for ev in retained:
            try:
                handler(ev)
            except Exception as e:
                log.error("bus handler error for retained %s: %s", ev.topic, e)
        return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subs.pop(token, None)

    # ── helpers для тестов/отладки ──
    def published(self, topic: Optional[str] = None) -> List[Event]:
        with self._lock:
            return [e for e in self.events if topic is None or e.topic == topic]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()
