# app/automata/timers.py
from __future__ import annotations

import itertools
import logging
import random
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from app.bus.event import Event, new_event

from .types import FunctionError

log = logging.getLogger("automata.timers")

# фабрика таймеров: (секунды, функция) → объект с start()/cancel()
TimerFactory = Callable[[float, Callable[[], None]], "threading.Timer"]


def _thread_timer(delay: float, fn: Callable[[], None]) -> threading.Timer:
    t = threading.Timer(delay, fn)
    t.daemon = True
    return t


def timer_event(name: str) -> Event:
    """Событие срабатывания таймера: device=timer.<name>, command=on."""
    return new_event("timer", {"device": f"timer.{name}", "command": "on"})


@dataclass
class _Entry:
    seq: int
    delay: float
    timer: "threading.Timer"


class TimerManager:
    """
    Именованные одноразовые таймеры.

    - повторный start() с тем же именем отменяет предыдущий таймер
    - по истечении публикуется событие "timer" в шину (emit потокобезопасен),
      в автоматы напрямую ничего не попадает
    - случайная длительность считается один раз при старте
    """

    def __init__(
        self,
        emit: Callable[[Event], None],
        *,
        timer_factory: Optional[TimerFactory] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._emit = emit
        self._factory = timer_factory or _thread_timer
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._seq = itertools.count(1)
        self._timers: Dict[str, _Entry] = {}

    def start(self, name: str, seconds: float) -> float:
        seconds = max(0.0, float(seconds))
        log.info("Starting timer: %s for %.1fs", name, seconds)

        with self._lock:
            old = self._timers.pop(name, None)
            if old is not None:
                # отменить существующий
                old.timer.cancel()
            seq = next(self._seq)
            timer = self._factory(seconds, lambda: self._fire(name, seq))
            self._timers[name] = _Entry(seq, seconds, timer)
            timer.start()
        return seconds

    def start_random(self, name: str, min_s: float, max_s: float) -> float:
        if max_s <= min_s:
            raise FunctionError("RandomTimer max must be greater than min")
        d = self._rng.random() * (max_s - min_s) + min_s
        return self.start(name, d)

    def cancel(self, name: str) -> bool:
        with self._lock:
            entry = self._timers.pop(name, None)
        if entry is None:
            return False
        entry.timer.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            entries = list(self._timers.values())
            self._timers.clear()
        for e in entries:
            e.timer.cancel()
        if entries:
            log.info("cancelled %d timer(s)", len(entries))

    def active(self) -> Dict[str, float]:
        with self._lock:
            return {name: e.delay for name, e in self._timers.items()}

    def _fire(self, name: str, seq: int) -> None:
        with self._lock:
            entry = self._timers.get(name)
            # таймер уже заменён или отменён — молчим
            if entry is None or entry.seq != seq:
                return
            del self._timers[name]
        log.debug("timer fired: %s", name)
        self._emit(timer_event(name))
