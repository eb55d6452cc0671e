# app/automata/types.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from .expressions import Expression
    from .context import Trigger


# === 1. ОШИБКИ ===============================================================

class AutomataError(Exception):
    """Базовая ошибка движка автоматов."""


class ExpressionError(AutomataError):
    """Выражение не компилируется (синтаксис, запрещённая конструкция)."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"Bad expression '{source}': {reason}")
        self.source = source
        self.reason = reason


class RuleSetError(AutomataError):
    """
    Набор правил отклонён. Держит ВСЕ найденные ошибки, а не первую.
    """

    def __init__(self, errors: List[Exception]) -> None:
        self.errors = list(errors)
        super().__init__(", ".join(str(e) for e in self.errors))


class FunctionArgumentError(AutomataError):
    """Неверное число или тип аргументов функции библиотеки."""


class FunctionError(AutomataError):
    """Функция библиотеки не смогла выполниться."""


class ScriptError(AutomataError):
    """Внешний скрипт не найден или завершился с ошибкой."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


# === 2. ОПИСАНИЕ АВТОМАТА ====================================================

@dataclass
class State:
    """Состояние автомата: действия при входе и при выходе."""
    name: str
    entering: List["Expression"] = field(default_factory=list)
    leaving: List["Expression"] = field(default_factory=list)


@dataclass
class Transition:
    """Переход source → dest, охраняемый выражением guard."""
    source: str
    dest: str
    guard: "Expression"
    actions: List["Expression"] = field(default_factory=list)


@dataclass
class AutomatonState:
    """Запись снимка: состояние и момент входа в него."""
    state: str
    timestamp: datetime


# снимок всех автоматов: id → (state, timestamp)
Snapshot = Dict[str, AutomatonState]


# === 3. РЕЗУЛЬТАТЫ ПЕРЕХОДОВ =================================================

@dataclass(frozen=True)
class Change:
    """Принятый переход. Ровно один на каждый переход."""
    automaton: str
    old: str
    new: str
    trigger: "Trigger"
    duration: timedelta
    timestamp: datetime


@dataclass(frozen=True)
class Action:
    """Запланированное действие: выражение + контекст, в котором его выполнять."""
    expression: "Expression"
    change: Change
    trigger: "Trigger"

    @property
    def name(self) -> str:
        return self.expression.source


@dataclass
class RuleSetStatus:
    """Сводка по активному набору правил — для админки."""
    generation: int = 0
    automata_count: int = 0
    expressions_count: int = 0
    loaded_at: Optional[datetime] = None
    last_reload_error: Optional[str] = None
