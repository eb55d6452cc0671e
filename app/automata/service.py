# app/automata/service.py
"""
Сервис автоматов: цикл событий + перезагрузка правил + админ-команды.

Один поток цикла разбирает по одному элементу за раз:
  1) накопившиеся Change (публикация состояния, снимок)
  2) накопившиеся действия (выполнение выражений)
  3) входящую очередь: события шины, reload, конец окна сверки, вызовы админки

Всё, что меняет автоматы или трогает выражения, выполняется только здесь.
Таймеры, часы, скрипты, оповещения и запросы живут в своих потоках и
возвращаются в цикл только через шину.
"""
from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from app.bus.event import Event, new_command, new_event
from app.bus.interfaces import Bus
from app.core.devices import DeviceConf, is_switchable, match_devices

from .alerts import AlertDispatcher
from .audit import AuditLog
from .clock import ClockTicker, EarthTicker
from .context import AdminOverride, ChangeContext, EventContext, short_duration
from .fsm import Automata, Clock
from .functions import FunctionLibrary, parse_args
from .loader import DocumentSource, RuleLoader, RuleSet
from .persistence import SnapshotStore
from .scripts import run_script
from .timers import TimerManager
from .types import Action, AutomatonState, Change, RuleSetError, RuleSetStatus, ScriptError

log = logging.getLogger("automata")

_STOP = object()

HELP_TEXT = """\
Commands:
  status                      automata states
  state <automaton> <state>   force an automaton into a state
  logs                        last 25 log entries
  script <command> [args]     run a script, return its output
  switch [device] [on|off] [key=value ...]
                              switch a device (no device: list switchable)
  reload                      reload automata rules
  help                        this text
"""


class AutomataService:
    def __init__(
        self,
        *,
        bus: Bus,
        devices: Mapping[str, DeviceConf],
        rules: DocumentSource,
        store: SnapshotStore,
        audit: AuditLog,
        alerts: Optional[AlertDispatcher] = None,
        timers: Optional[TimerManager] = None,
        reconcile_window: float = 5.0,
        reload_debounce: float = 1.0,
        scripts_dir: str = "~/.gohome/scripts",
        query_timeout: float = 5.0,
        clock_tick: bool = True,
        earth: Optional[Tuple[float, float]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.bus = bus
        self.devices = devices
        self.store = store
        self.audit = audit
        self.scripts_dir = scripts_dir
        self.reconcile_window = float(reconcile_window)
        self.reload_debounce = float(reload_debounce)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.timers = timers or TimerManager(bus.emit)
        self.alerts = alerts or AlertDispatcher(bus.emit)
        self.library = FunctionLibrary(
            bus=bus,
            timers=self.timers,
            audit=audit,
            alerts=self.alerts,
            automata=lambda: self.automata,
            scripts_dir=scripts_dir,
            query_timeout=query_timeout,
        )
        self.loader = RuleLoader(rules, devices, self.library.names(), clock=self._clock)
        self.ticker = ClockTicker(bus.emit) if clock_tick else None
        # earth: (широта, долгота); без координат событий солнца нет
        self.earth = EarthTicker(bus.emit, *earth) if earth else None

        self.ruleset: Optional[RuleSet] = None
        self.status = RuleSetStatus()

        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._token: Optional[int] = None
        self._reconciling = False
        self._reconciled: Set[str] = set()
        self._timer_lock = threading.Lock()
        self._reload_timer: Optional[threading.Timer] = None
        self._window_timer: Optional[threading.Timer] = None

    @property
    def automata(self) -> Optional[Automata]:
        rs = self.ruleset
        return rs.automata if rs is not None else None

    @property
    def reconciling(self) -> bool:
        return self._reconciling

    # ------------------------------------------------------------------ #
    # Жизненный цикл
    # ------------------------------------------------------------------ #
    def start(self, run_loop: bool = True) -> None:
        """
        Загрузка правил (ошибка фатальна — RuleSetError), восстановление из
        снимка, подписка на шину и окно сверки с retained-состояниями.

        run_loop=False — цикл не запускается, очередь разбирается drain() (тесты).
        """
        self._set_ruleset(self.loader.load())
        log.info("Loaded %d automata", len(self.automata))

        restored = self.automata.restore(self.store.load())
        if restored:
            log.info("Restored %d automata from snapshot", len(restored))

        self._reconciling = True
        self._reconciled.clear()
        self._token = self.bus.subscribe(self._on_event)

        with self._timer_lock:
            self._window_timer = self._schedule(self.reconcile_window, self.finish_reconciliation)

        if self.ticker is not None:
            self.ticker.start()
        if self.earth is not None:
            self.earth.start()

        if run_loop:
            self._thread = threading.Thread(target=self._loop, name="automata", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        with self._timer_lock:
            for t in (self._reload_timer, self._window_timer):
                if t is not None:
                    t.cancel()
            self._reload_timer = self._window_timer = None

        if self.ticker is not None:
            self.ticker.stop()
        if self.earth is not None:
            self.earth.stop()
        self.timers.cancel_all()

        if self._token is not None:
            self.bus.unsubscribe(self._token)
            self._token = None

        if self._thread is not None:
            self._inbox.put(_STOP)
            self._thread.join(timeout=5)
            self._thread = None
        log.info("automata service stopped")

    def _schedule(self, delay: float, fn: Callable[[], Any]) -> threading.Timer:
        # по таймеру — только постановка в очередь, исполнение в цикле
        t = threading.Timer(delay, self._inbox.put, args=(fn,))
        t.daemon = True
        t.start()
        return t

    # ------------------------------------------------------------------ #
    # Цикл
    # ------------------------------------------------------------------ #
    def _loop(self) -> None:
        log.info("automata loop started")
        while True:
            if self._step():
                continue
            item = self._inbox.get()
            if item is _STOP:
                break
            self._run(item)
        log.info("automata loop finished")

    def _step(self) -> bool:
        """Один Change или одно действие, если есть. False — разбирать нечего."""
        aut = self.automata
        if aut is None:
            return False
        if aut.changes:
            self._handle_change(aut.changes.popleft())
            return True
        if aut.actions:
            self._perform_action(aut.actions.popleft())
            return True
        return False

    def _run(self, item: Callable[[], Any]) -> None:
        try:
            item()
        except Exception as e:
            log.exception("automata loop item failed: %s", e)

    def drain(self, limit: int = 10000) -> int:
        """Синхронно разобрать всё накопившееся (без потока цикла)."""
        n = 0
        while n < limit:
            if not self._step():
                try:
                    item = self._inbox.get_nowait()
                except queue.Empty:
                    break
                if item is _STOP:
                    break
                self._run(item)
            n += 1
        return n

    def submit(self, fn: Callable[..., Any], *args: Any) -> "Future[Any]":
        """Выполнить fn в цикле; результат — через Future."""
        fut: "Future[Any]" = Future()

        def _call() -> None:
            if not fut.set_running_or_notify_cancel():
                return
            try:
                fut.set_result(fn(*args))
            except BaseException as e:
                fut.set_exception(e)

        self._inbox.put(_call)
        return fut

    def call(self, fn: Callable[..., Any], *args: Any, timeout: float = 10.0) -> Any:
        """Синхронный вызов для админки: через цикл, если он запущен."""
        if self._thread is None or threading.current_thread() is self._thread:
            return fn(*args)
        return self.submit(fn, *args).result(timeout=timeout)

    # ------------------------------------------------------------------ #
    # События шины
    # ------------------------------------------------------------------ #
    def _on_event(self, ev: Event) -> None:
        # поток шины: только в очередь
        self._inbox.put(partial(self.handle_event, ev))

    def handle_event(self, ev: Event) -> None:
        if ev.topic == "config" and ev.device == "automata":
            self.config_updated()
            return

        if ev.topic == "command":
            # команды автоматы не видят; сценам — подтверждение
            if ev.device.startswith("scene."):
                self.bus.emit(new_event("ack", {"device": ev.device, "command": ev.command}))
            return

        if ev.retained:
            if ev.topic == "state":
                self.restore_state(ev)
            return

        aut = self.automata
        if aut is not None:
            aut.process(EventContext(ev, self.library))

    def restore_state(self, ev: Event) -> None:
        """Retained state из шины → состояние автомата (только в окне сверки)."""
        name = ev.device
        if not self._reconciling:
            log.debug("retained state for %s after reconciliation, ignored", name)
            return
        aut = self.automata
        if aut is None or name not in aut:
            return
        state = ev.string_field("state")
        if aut.restore({name: AutomatonState(state, ev.timestamp)}):
            self._reconciled.add(name)
            log.debug("[%s] reconciled: %s", name, state)

    def finish_reconciliation(self) -> None:
        """Окно сверки закрыто: не подтверждённые шиной автоматы публикуют своё состояние."""
        if not self._reconciling:
            return
        self._reconciling = False
        with self._timer_lock:
            self._window_timer = None

        aut = self.automata
        pending = [a for a in aut if a.id not in self._reconciled] if aut is not None else []
        for a in pending:
            self._publish_state(a.id, a.state.name, "initial")
        if pending:
            self._save_snapshot()
        log.info("Reconciliation finished: %d from bus, %d initial", len(self._reconciled), len(pending))

    # ------------------------------------------------------------------ #
    # Changes / действия
    # ------------------------------------------------------------------ #
    def _handle_change(self, change: Change) -> None:
        log.info("[%s] %s->%s (event: %s)", change.automaton, change.old, change.new, change.trigger)
        self._publish_state(change.automaton, change.new, str(change.trigger))
        self._save_snapshot()

    def _publish_state(self, automaton: str, state: str, trigger: str) -> None:
        self.bus.emit(new_event(
            "state",
            {"device": automaton, "state": state, "trigger": trigger},
            retained=True,
        ))

    def _save_snapshot(self) -> None:
        aut = self.automata
        if aut is None:
            return
        try:
            self.store.save(aut.persist())
        except OSError as e:
            log.error("Failed to persist automata state: %s", e)

    def _perform_action(self, action: Action) -> None:
        ctx = ChangeContext(action.change, self.devices)
        try:
            action.expression.evaluate(self.library.scope(ctx))
        except Exception as e:
            log.error("Error executing action '%s' for %s: %s", action.name, action.change.automaton, e)

    # ------------------------------------------------------------------ #
    # Перезагрузка правил
    # ------------------------------------------------------------------ #
    def config_updated(self) -> None:
        """Сигнал «правила изменились». Серия сигналов → одна перезагрузка."""
        with self._timer_lock:
            if self._reload_timer is not None:
                self._reload_timer.cancel()
            self._reload_timer = self._schedule(self.reload_debounce, self.reload)

    def reload(self) -> bool:
        """
        Всё или ничего: новый набор собирается целиком, ошибки → старый
        набор остаётся как был. Совпадающие автоматы сохраняют state/since.
        """
        with self._timer_lock:
            self._reload_timer = None

        old = self.ruleset
        try:
            new = self.loader.load()
        except RuleSetError as e:
            log.error("Failed to reload automata config: %s", e)
            self.status.last_reload_error = str(e)
            return False

        added: List[str] = []
        if old is not None:
            new.automata.restore(old.automata.persist())
            new.automata.adopt_pending(old.automata)
            added = [a.id for a in new.automata if a.id not in old.automata]

        self._set_ruleset(new)
        log.info("Reloaded automata config: generation %d, %d automata", new.generation, len(new.automata))

        # новые автоматы объявляют стартовое состояние (в окне сверки это сделает finish)
        if not self._reconciling:
            for name in added:
                self._publish_state(name, new.automata.automaton[name].state.name, "initial")
        return True

    def _set_ruleset(self, rs: RuleSet) -> None:
        self.ruleset = rs
        self.status = RuleSetStatus(
            generation=rs.generation,
            automata_count=len(rs.automata),
            expressions_count=len(rs.expressions),
            loaded_at=rs.loaded_at,
            last_reload_error=None,
        )

    # ------------------------------------------------------------------ #
    # Админка
    # ------------------------------------------------------------------ #
    def states(self) -> List[Dict[str, Any]]:
        aut = self.automata
        if aut is None:
            return []
        return [{"id": a.id, "state": a.state.name, "since": a.since} for a in aut]

    def status_text(self) -> str:
        """Состояния, сгруппированные по префиксу id до точки. Автомат events не показываем."""
        aut = self.automata
        if aut is None:
            return "No automata loaded"
        now = self._clock()
        groups: Dict[str, List[str]] = {}
        for a in sorted(aut, key=lambda a: a.id):
            if a.id == "events":
                continue
            group = a.id.split(".", 1)[0]
            dev = self.devices.get(a.id)
            name = dev.name if dev is not None else a.id
            groups.setdefault(group, []).append(
                f"- {name}: {a.state.name} for {short_duration(now - a.since)}"
            )

        out: List[str] = []
        for group in sorted(groups):
            out.append(f"{group.title()}:")
            out.extend(groups[group])
        return "\n".join(out)

    def force_state(self, name: str, state: str, who: str = "user") -> str:
        """KeyError — нет такого автомата или состояния."""
        aut = self.automata
        if aut is None:
            raise KeyError(f"automata '{name}' not found")
        change = aut.change_state(name, state, AdminOverride(who))
        return f"Changed {change.automaton}: {change.old}->{change.new}"

    def logs(self, limit: int = 25) -> List[str]:
        return self.audit.tail(limit)

    def run_script(self, command: str, timeout: Optional[float] = 60.0) -> str:
        """Синхронный запуск (поток админки, не цикл): вывод или текст ошибки."""
        try:
            return run_script(command, self.scripts_dir, timeout=timeout)
        except ScriptError as e:
            return f"Script failed: {e}\n{e.output}".rstrip()

    def switch(self, args: List[str]) -> str:
        if not args:
            lines = [f"{dev.name} ({dev_id})" for dev_id, dev in self.devices.items() if is_switchable(dev)]
            return "\n".join(lines) if lines else "No switchable devices"

        name = args[0]
        matches = match_devices(dict(self.devices), name)
        if not matches:
            return f"Device '{name}' not found"
        if len(matches) > 1:
            return f"Device '{name}' is ambiguous: {', '.join(matches)}"

        dev_id = matches[0]
        command, fields = parse_args(args[1:])
        self.bus.emit(new_command(dev_id, command, fields))
        dev = self.devices.get(dev_id)
        return f"Switched {dev.name if dev else dev_id} {command}"

    def help(self) -> str:
        return HELP_TEXT
