# app/automata/__init__.py
"""
Движок автоматов (конечные автоматы по сущностям + выражения guard/action).

  - expressions.py → компиляция выражений и кэш на поколение правил
  - functions.py   → закрытая библиотека функций (State, Command, Log, ...)
  - context.py     → контексты выполнения (событие / ручная команда / переход)
  - fsm.py         → реестр автоматов, сопоставление событий, снимки
  - loader.py      → шаблон → YAML → набор правил (всё или ничего)
  - timers.py      → именованные таймеры
  - persistence.py → снимок состояний на диске
  - service.py     → цикл событий, перезагрузка, админ-команды
"""
from .types import (
    AutomataError,
    ExpressionError,
    RuleSetError,
    FunctionArgumentError,
    FunctionError,
    ScriptError,
    Change,
    Action,
    AutomatonState,
    Snapshot,
    RuleSetStatus,
)
from .fsm import Automata, Automaton
from .loader import RuleLoader, RuleSet, FileSource, TextSource
from .persistence import SnapshotStore
from .service import AutomataService

__all__ = [
    "AutomataError",
    "ExpressionError",
    "RuleSetError",
    "FunctionArgumentError",
    "FunctionError",
    "ScriptError",
    "Change",
    "Action",
    "AutomatonState",
    "Snapshot",
    "RuleSetStatus",
    "Automata",
    "Automaton",
    "RuleLoader",
    "RuleSet",
    "FileSource",
    "TextSource",
    "SnapshotStore",
    "AutomataService",
]
