# app/automata/clock.py
from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

import astral
import astral.sun

from app.bus.event import Event, new_event

log = logging.getLogger("automata")


def clock_event(now: datetime) -> Event:
    return new_event("clock", {"device": "clock", "time": now.strftime("%H%M")})


class ClockTicker:
    """Раз в минуту (на границе минуты) публикует событие clock {time: HHMM}."""

    def __init__(self, emit: Callable[[Event], None], *, now: Optional[Callable[[], datetime]] = None) -> None:
        self._emit = emit
        self._now = now or datetime.now
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="clock", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None

    def tick(self) -> None:
        self._emit(clock_event(self._now()))

    def _run(self) -> None:
        while True:
            now = self._now()
            # спим до начала следующей минуты
            wait = 60 - now.second - now.microsecond / 1_000_000
            if self._stop.wait(wait):
                return
            try:
                self.tick()
            except Exception as e:
                log.error("clock tick failed: %s", e)


# ─── солнце ───
EARTH_EVENTS = (
    ("dawn", astral.sun.dawn),
    ("sunrise", astral.sun.sunrise),
    ("sunset", astral.sun.sunset),
    ("dusk", astral.sun.dusk),
)


def earth_event(command: str) -> Event:
    return new_event("earth", {"device": "earth", "command": command})


def sun_times(observer: astral.Observer, day: date) -> List[Tuple[datetime, str]]:
    """События солнца за сутки (UTC), по времени. Полярный день/ночь — событий нет."""
    out: List[Tuple[datetime, str]] = []
    for name, fn in EARTH_EVENTS:
        try:
            out.append((fn(observer, date=day, tzinfo=timezone.utc), name))
        except ValueError:
            continue
    out.sort()
    return out


class EarthTicker:
    """Публикует earth {command: dawn|sunrise|sunset|dusk} по координатам."""

    def __init__(
        self,
        emit: Callable[[Event], None],
        latitude: float,
        longitude: float,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._emit = emit
        self.observer = astral.Observer(latitude=latitude, longitude=longitude)
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="earth", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None

    def next_event(self, after: datetime) -> Optional[Tuple[datetime, str]]:
        """Ближайшее событие строго позже after (ищем на пару суток вперёд)."""
        for offset in range(-1, 3):
            day = (after + timedelta(days=offset)).date()
            for at, name in sun_times(self.observer, day):
                if at > after:
                    return at, name
        return None

    def fire(self, command: str) -> None:
        log.info("earth: %s", command)
        self._emit(earth_event(command))

    def _run(self) -> None:
        after = self._now()
        while True:
            nxt = self.next_event(after)
            if nxt is None:
                # полярный день/ночь: проверим через час
                if self._stop.wait(3600):
                    return
                after = self._now()
                continue
            at, name = nxt
            wait = max(0.0, (at - self._now()).total_seconds())
            if self._stop.wait(wait):
                return
            try:
                self.fire(name)
            except Exception as e:
                log.error("earth event failed: %s", e)
            after = at
