# app/automata/context.py
"""
Контексты выполнения выражений.

  - EventContext  → guard'ы: событие шины (type/topic/timestamp/поля)
  - AdminOverride → ручная смена состояния из админки (guard'ы не проверяются)
  - ChangeContext → действия: устройство, длительность, время + поля события
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Mapping, Optional, Tuple

from app.bus.event import Event

if TYPE_CHECKING:
    from app.core.devices import DeviceConf
    from .expressions import Expression
    from .types import Change

log = logging.getLogger("automata")

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

_SUB = re.compile(r"\$(\w+)")


# ─────────────────────────────────────────────────────────────────────────────
# Форматирование времени
# ─────────────────────────────────────────────────────────────────────────────

def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}" if n == 1 else f"{n} {unit}s"


def friendly_duration(d: timedelta) -> str:
    """45 seconds / 3 minutes / 2 hours 5 minutes / 1 day 4 hours"""
    s = max(0, int(d.total_seconds()))
    if s < 60:
        return _plural(s, "second")
    if s < 3600:
        return _plural(s // 60, "minute")
    if s < 86400:
        h, m = divmod(s // 60, 60)
        return _plural(h, "hour") + (f" {_plural(m, 'minute')}" if m else "")
    days, rest = divmod(s, 86400)
    h = rest // 3600
    return _plural(days, "day") + (f" {_plural(h, 'hour')}" if h else "")


def short_duration(d: timedelta) -> str:
    """45s / 12m / 3h / 2d — для статуса"""
    s = max(0, int(d.total_seconds()))
    if s < 60:
        return f"{s}s"
    if s < 3600:
        return f"{s // 60}m"
    if s < 86400:
        return f"{s // 3600}h"
    return f"{s // 86400}d"


def kitchen_time(now: datetime) -> str:
    # 3:04PM
    h = now.hour % 12 or 12
    return f"{h}:{now.minute:02d}{'AM' if now.hour < 12 else 'PM'}"


def stamp_milli(now: datetime) -> str:
    # Jan _2 15:04:05.000
    return f"{_MONTHS[now.month - 1]} {now.day:2d} {now:%H:%M:%S}.{now.microsecond // 1000:03d}"


# ─────────────────────────────────────────────────────────────────────────────
# Общий интерфейс контекста
# ─────────────────────────────────────────────────────────────────────────────

class ExecutionContext(ABC):
    """То, что получает каждая функция библиотеки первым аргументом."""

    @abstractmethod
    def lookup(self, name: str) -> Tuple[Any, bool]:
        """(значение, найдено ли)"""
        raise NotImplementedError

    def format(self, msg: str) -> str:
        """Подстановка $name; нерезолвленные имена остаются как есть."""
        def _repl(m: "re.Match[str]") -> str:
            value, ok = self.lookup(m.group(1))
            return str(value) if ok else m.group(0)

        return _SUB.sub(_repl, msg)


class Trigger(ABC):
    """Источник перехода: событие шины или ручная команда."""

    event: Optional[Event] = None

    @abstractmethod
    def match(self, guard: "Expression") -> bool:
        raise NotImplementedError

    @abstractmethod
    def __str__(self) -> str:
        raise NotImplementedError


class EventContext(Trigger, ExecutionContext):
    """Событие шины как источник перехода и контекст guard'ов."""

    def __init__(self, event: Event, library: Any) -> None:
        self.event = event
        self._library = library

    def lookup(self, name: str) -> Tuple[Any, bool]:
        if name == "type":
            return self.event.device.split(".", 1)[0], True
        if name == "topic":
            return self.event.topic, True
        if name == "timestamp":
            return self.event.timestamp, True
        if name in self.event.fields:
            return self.event.fields[name], True
        return None, False

    def match(self, guard: "Expression") -> bool:
        try:
            result = guard.evaluate(self._library.scope(self))
        except Exception as e:
            log.warning("Error evaluating expression '%s': %s", guard.source, e)
            return False
        if not isinstance(result, bool):
            log.warning("Expression didn't evaluate to boolean '%s'", guard.source)
            return False
        return result

    def __str__(self) -> str:
        return str(self.event)


class AdminOverride(Trigger):
    """Ручная смена состояния. Ни с одним guard'ом не совпадает."""

    def __init__(self, who: str = "user") -> None:
        self.who = who

    def match(self, guard: "Expression") -> bool:
        return False

    def __str__(self) -> str:
        return self.who


class ChangeContext(ExecutionContext):
    """Контекст выполнения действий перехода."""

    def __init__(
        self,
        change: "Change",
        devices: Mapping[str, "DeviceConf"],
        *,
        now: Optional[datetime] = None,
    ) -> None:
        self.change = change
        self.event = change.trigger.event
        self._devices = devices
        self._now = now

    @property
    def entity(self) -> str:
        if self.event is not None and self.event.device:
            return self.event.device
        return self.change.automaton

    def lookup(self, name: str) -> Tuple[Any, bool]:
        entity = self.entity
        dev = self._devices.get(entity)
        now = self._now or datetime.now()

        if name == "id":
            return (dev.id if dev else entity), True
        if name == "name":
            return (dev.name if dev else entity), True
        if name == "type":
            return (dev.id if dev else entity).split(".", 1)[0], True
        if name == "cap":
            return (dev.caps[0] if dev and dev.caps else ""), True
        if name == "group":
            return (dev.group if dev else ""), True
        if name == "duration":
            return friendly_duration(self.change.duration), True
        if name == "timestamp":
            return kitchen_time(now), True
        if name == "datetime":
            return stamp_milli(now), True
        if self.event is not None and name in self.event.fields:
            return self.event.fields[name], True
        return None, False
