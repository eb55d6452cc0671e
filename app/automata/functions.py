# app/automata/functions.py
"""
Библиотека функций для выражений.

Набор закрыт: имя → обработчик + типы аргументов. Каждый обработчик
первым параметром ЯВНО получает контекст выполнения (EventContext для
guard'ов, ChangeContext для действий), дальше — аргументы из выражения.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from app.bus.event import Fields, new_command
from app.bus.interfaces import Bus
from app.bus.query import query_channel

from .context import ExecutionContext
from .scripts import run_script_async
from .types import FunctionArgumentError, FunctionError

if TYPE_CHECKING:
    from .alerts import AlertDispatcher
    from .audit import AuditLog
    from .fsm import Automata
    from .timers import TimerManager

log = logging.getLogger("automata")

STRING = "string"
NUMBER = "number"

FUNCTION_NAMES = (
    "State",
    "Alert",
    "Command",
    "Log",
    "Query",
    "Script",
    "Snapshot",
    "StartTimer",
    "RandomTimer",
)


def check_arguments(name: str, args: Sequence[Any], types: Sequence[str]) -> List[Any]:
    """
    Проверка арности и типов. Целые числа приводятся к float.
    Возвращает список аргументов после приведения.
    """
    if len(args) != len(types):
        raise FunctionArgumentError(f"{name}(): expected {len(types)} arguments, but got {len(args)}")

    out = list(args)
    for i, (arg, t) in enumerate(zip(args, types)):
        if t == STRING:
            if not isinstance(arg, str):
                raise FunctionArgumentError(f"{name}(): expected string for argument {i + 1}, but got {arg!r}")
        elif t == NUMBER:
            # bool — тоже int в Python, но числом его не считаем
            if isinstance(arg, bool) or not isinstance(arg, (int, float)):
                raise FunctionArgumentError(f"{name}(): expected number for argument {i + 1}, but got {arg!r}")
            out[i] = float(arg)
    return out


def keyword_args(args: Sequence[str]) -> Dict[str, str]:
    ret: Dict[str, str] = {}
    for arg in args:
        k, sep, v = arg.partition("=")
        if sep:
            ret[k] = v
        else:
            ret[""] = k
    return ret


def maybe_number(value: str) -> Any:
    try:
        return float(value)
    except ValueError:
        return value


def parse_args(args: Sequence[str]) -> Tuple[str, Fields]:
    """["off", "level=50", "mode=eco"] → ("off", {"level": 50.0, "mode": "eco"})"""
    command = "on"
    fields: Fields = {}
    for k, v in keyword_args(args).items():
        if k == "":
            command = v
        else:
            fields[k] = maybe_number(v)
    return command, fields


@dataclass(frozen=True)
class Function:
    name: str
    handler: Callable[..., Any]
    arg_types: Tuple[str, ...]


class Scope(Mapping[str, Any]):
    """
    Пространство имён для eval(): функции библиотеки, привязанные к контексту,
    и значения из контекста. Неизвестное имя → None.
    """

    def __init__(self, library: "FunctionLibrary", context: ExecutionContext) -> None:
        self._library = library
        self._context = context

    def __getitem__(self, name: str) -> Any:
        if name in self._library.functions:
            return partial(self._library.call, name, self._context)
        value, ok = self._context.lookup(name)
        return value if ok else None

    def __iter__(self) -> Iterator[str]:
        return iter(self._library.functions)

    def __len__(self) -> int:
        return len(self._library.functions)


class FunctionLibrary:
    """Функции, доступные выражениям. Живёт дольше одного поколения правил."""

    def __init__(
        self,
        *,
        bus: Bus,
        timers: "TimerManager",
        audit: "AuditLog",
        alerts: "AlertDispatcher",
        automata: Callable[[], Optional["Automata"]],
        scripts_dir: str = "~/.gohome/scripts",
        query_timeout: float = 5.0,
    ) -> None:
        self._bus = bus
        self._timers = timers
        self._audit = audit
        self._alerts = alerts
        self._automata = automata
        self._scripts_dir = scripts_dir
        self._query_timeout = query_timeout

        self.functions: Dict[str, Function] = {
            f.name: f
            for f in (
                Function("State", self.state, (STRING,)),
                Function("Alert", self.alert, (STRING, STRING)),
                Function("Command", self.command, (STRING,)),
                Function("Log", self.log, (STRING,)),
                Function("Query", self.query, (STRING,)),
                Function("Script", self.script, (STRING,)),
                Function("Snapshot", self.snapshot, (STRING, STRING, STRING)),
                Function("StartTimer", self.start_timer, (STRING, NUMBER)),
                Function("RandomTimer", self.random_timer, (STRING, NUMBER, NUMBER)),
            )
        }

    def names(self) -> Tuple[str, ...]:
        return tuple(self.functions)

    def scope(self, context: ExecutionContext) -> Scope:
        return Scope(self, context)

    def call(self, name: str, context: ExecutionContext, *args: Any) -> Any:
        fn = self.functions.get(name)
        if fn is None:
            raise FunctionError(f"undefined function {name}")
        checked = check_arguments(name, args, fn.arg_types)
        return fn.handler(context, *checked)

    # ------------------------------------------------------------------ #
    # Обработчики
    # ------------------------------------------------------------------ #
    def state(self, context: ExecutionContext, name: str) -> str:
        automata = self._automata()
        aut = automata.get(name) if automata is not None else None
        if aut is None:
            raise FunctionError(f"State(): automata '{name}' not found")
        return aut.state.name

    def alert(self, context: ExecutionContext, msg: str, target: str) -> None:
        msg = context.format(msg)
        log.info("%s: %s", target.title(), msg)
        self._alerts.send(msg, target)

    def command(self, context: ExecutionContext, text: str) -> None:
        argv = context.format(text).split()
        if not argv:
            raise FunctionError("Command(): expected a device name")
        command, fields = parse_args(argv[1:])
        self._bus.emit(new_command(argv[0], command, fields))

    def log(self, context: ExecutionContext, msg: str) -> None:
        msg = context.format(msg)
        self._audit.append(msg)
        log.info("Log: %s", msg)

    def query(self, context: ExecutionContext, query: str) -> None:
        log.info("Query %s", query)

        def _run() -> None:
            # результаты пока не используются
            responses = query_channel(self._bus, query, self._query_timeout)
            log.debug("Query %s: %d response(s) discarded", query, len(responses))

        threading.Thread(target=_run, name=f"query:{query}", daemon=True).start()

    def script(self, context: ExecutionContext, cmd: str) -> None:
        run_script_async(context.format(cmd), self._scripts_dir)

    def snapshot(self, context: ExecutionContext, device: str, target: str, msg: str) -> None:
        self._bus.emit(new_command(device, "snapshot", {"message": context.format(msg), "notify": target}))

    def start_timer(self, context: ExecutionContext, name: str, seconds: float) -> None:
        self._timers.start(name, seconds)

    def random_timer(self, context: ExecutionContext, name: str, min_s: float, max_s: float) -> None:
        self._timers.start_random(name, min_s, max_s)
