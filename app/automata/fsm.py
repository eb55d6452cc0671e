# app/automata/fsm.py
from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Iterator, List, Optional

from .context import Trigger
from .types import Action, AutomatonState, Change, Snapshot, State, Transition

log = logging.getLogger("automata")

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Automaton:
    """
    Конечный автомат одной сущности.

    transitions — таблица по исходному состоянию; порядок в списке = порядок
    объявления в конфиге, именно в нём проверяются guard'ы.
    """

    def __init__(
        self,
        id: str,
        states: Dict[str, State],
        transitions: Dict[str, List[Transition]],
        start: str,
        *,
        now: Optional[datetime] = None,
    ) -> None:
        self.id = id
        self.states = states
        self.transitions = transitions
        self.start = start
        self.state: State = states[start]
        self.since: datetime = now or _utc_now()

    def outgoing(self) -> List[Transition]:
        return self.transitions.get(self.state.name, [])

    def __repr__(self) -> str:
        return f"Automaton({self.id!r}, state={self.state.name!r})"


class Automata:
    """
    Реестр автоматов одного поколения правил + сопоставление событий.

    Изменения состояния и действия НЕ исполняются здесь: Change кладётся
    в .changes, действия — в .actions; их разбирает цикл сервиса.
    Все методы вызываются только из цикла сервиса.
    """

    def __init__(self, automatons: Dict[str, Automaton], *, clock: Optional[Clock] = None) -> None:
        self.automaton = automatons
        self._clock = clock or _utc_now
        self.changes: Deque[Change] = deque()
        self.actions: Deque[Action] = deque()

    # ── доступ ──
    def get(self, name: str) -> Optional[Automaton]:
        return self.automaton.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.automaton

    def __iter__(self) -> Iterator[Automaton]:
        return iter(self.automaton.values())

    def __len__(self) -> int:
        return len(self.automaton)

    # ------------------------------------------------------------------ #
    # Сопоставление
    # ------------------------------------------------------------------ #
    def process(self, trigger: Trigger) -> List[Change]:
        """
        Для каждого автомата — первый по порядку переход текущего состояния,
        чей guard вернул True. Нет совпадений → автомат не меняется.
        """
        changes: List[Change] = []
        for aut in self.automaton.values():
            for t in aut.outgoing():
                if trigger.match(t.guard):
                    changes.append(self._apply(aut, t.dest, trigger, t.actions))
                    break
        return changes

    def change_state(self, name: str, state: str, trigger: Trigger) -> Change:
        """Ручная смена состояния, без проверки guard'ов."""
        aut = self.automaton.get(name)
        if aut is None:
            raise KeyError(f"automata '{name}' not found")
        if state not in aut.states:
            raise KeyError(f"automata state '{state}' not found")
        return self._apply(aut, state, trigger, [])

    def _apply(self, aut: Automaton, dest: str, trigger: Trigger, actions: list) -> Change:
        now = self._clock()
        old = aut.state
        new = aut.states[dest]

        # указатель состояния, since и Change — одним шагом
        change = Change(
            automaton=aut.id,
            old=old.name,
            new=new.name,
            trigger=trigger,
            duration=now - aut.since,
            timestamp=now,
        )
        aut.state = new
        aut.since = now
        self.changes.append(change)

        # leaving → действия перехода → entering
        for expr in [*old.leaving, *actions, *new.entering]:
            self.actions.append(Action(expression=expr, change=change, trigger=trigger))
        return change

    # ------------------------------------------------------------------ #
    # Снимки
    # ------------------------------------------------------------------ #
    def restore(self, snapshot: Snapshot) -> List[str]:
        """
        Выставить состояния из снимка. Без Change и без entering/leaving.
        Возвращает id восстановленных автоматов.
        """
        restored: List[str] = []
        for name, st in snapshot.items():
            aut = self.automaton.get(name)
            if aut is None:
                continue
            state = aut.states.get(st.state)
            if state is None:
                log.warning("restore %s: unknown state '%s', keeping %s", name, st.state, aut.state.name)
                continue
            aut.state = state
            aut.since = st.timestamp
            restored.append(name)
        return restored

    def persist(self) -> Snapshot:
        return {aut.id: AutomatonState(aut.state.name, aut.since) for aut in self.automaton.values()}

    def adopt_pending(self, other: "Automata") -> None:
        """Забрать ещё не разобранные Change/действия у прошлого поколения."""
        self.changes.extend(other.changes)
        self.actions.extend(other.actions)
        other.changes.clear()
        other.actions.clear()
