# app/automata/loader.py
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Collection, Dict, List, Mapping, Optional

import jinja2
import yaml

from app.core.devices import DeviceConf

from .expressions import Expression, ExpressionCache
from .fsm import Automata, Automaton, Clock
from .types import ExpressionError, RuleSetError, State, Transition

log = logging.getLogger("automata")


# ─────────────────────────────────────────────────────────────────────────────
# Откуда берём документ правил
# ─────────────────────────────────────────────────────────────────────────────

class DocumentSource(ABC):
    @abstractmethod
    def read(self) -> str:
        raise NotImplementedError


class FileSource(DocumentSource):
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def __str__(self) -> str:
        return str(self.path)


class TextSource(DocumentSource):
    """Документ в памяти (пришёл по шине, тесты)."""

    def __init__(self, text: str = "") -> None:
        self.text = text

    def read(self) -> str:
        return self.text

    def __str__(self) -> str:
        return "<text>"


# ─────────────────────────────────────────────────────────────────────────────
# Результат загрузки
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class RuleSet:
    """Одно поколение правил: автоматы + их кэш выражений."""
    generation: int
    automata: Automata
    expressions: ExpressionCache
    loaded_at: datetime


def _as_list(v: Any) -> List[Any]:
    if v is None:
        return []
    if isinstance(v, list):
        return v
    return [v]


class RuleLoader:
    """
    Загрузка правил:
      1) рендер шаблона (Jinja2) с инвентарём устройств
      2) разбор YAML в описания автоматов
      3) компиляция ВСЕХ выражений — ошибки копим, а не падаем на первой

    Любая ошибка → RuleSetError со списком; частично собранный набор наружу не попадает.
    """

    def __init__(
        self,
        source: DocumentSource,
        devices: Mapping[str, DeviceConf],
        functions: Collection[str],
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.source = source
        self.devices = devices
        self.functions = tuple(functions)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._generation = 0
        self._env = jinja2.Environment(
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
        )

    def render(self, text: str) -> str:
        tmpl = self._env.from_string(text)
        return tmpl.render(devices=self.devices)

    def load(self) -> RuleSet:
        try:
            text = self.source.read()
        except OSError as e:
            raise RuleSetError([e]) from None

        try:
            generated = self.render(text)
        except jinja2.TemplateError as e:
            raise RuleSetError([ValueError(f"template error: {e}")]) from None

        try:
            data = yaml.safe_load(generated) or {}
        except yaml.YAMLError as e:
            raise RuleSetError([ValueError(f"yaml error: {e}")]) from None

        return self.build(data)

    def build(self, data: Any) -> RuleSet:
        errors: List[Exception] = []
        # кэш нового поколения — с нуля
        cache = ExpressionCache(self.functions)

        raw = data.get("automata") if isinstance(data, dict) else None
        if not isinstance(raw, dict):
            raise RuleSetError([ValueError("automata: must be a mapping of automaton definitions")])

        now = self._clock()
        automatons: Dict[str, Automaton] = {}
        for aut_id, conf in raw.items():
            aut = self._parse_automaton(str(aut_id), conf, cache, errors, now)
            if aut is not None:
                automatons[aut.id] = aut

        if errors:
            raise RuleSetError(errors)

        cache.freeze()
        self._generation += 1
        log.debug("rules from %s: %d automata, %d expressions", self.source, len(automatons), len(cache))
        return RuleSet(
            generation=self._generation,
            automata=Automata(automatons, clock=self._clock),
            expressions=cache,
            loaded_at=now,
        )

    # ------------------------------------------------------------------ #
    # Разбор
    # ------------------------------------------------------------------ #
    def _compile(self, cache: ExpressionCache, source: Any, errors: List[Exception]) -> Optional[Expression]:
        try:
            return cache.compile(str(source))
        except ExpressionError as e:
            errors.append(e)
            return None

    def _compile_all(self, cache: ExpressionCache, items: Any, errors: List[Exception]) -> List[Expression]:
        out = []
        for src in _as_list(items):
            expr = self._compile(cache, src, errors)
            if expr is not None:
                out.append(expr)
        return out

    def _parse_automaton(
        self,
        aut_id: str,
        conf: Any,
        cache: ExpressionCache,
        errors: List[Exception],
        now: datetime,
    ) -> Optional[Automaton]:
        if not isinstance(conf, dict):
            errors.append(ValueError(f"{aut_id}: must be a mapping"))
            return None

        # --- states ---
        raw_states = conf.get("states")
        if isinstance(raw_states, list):
            raw_states = {str(s): None for s in raw_states}
        if not isinstance(raw_states, dict) or not raw_states:
            errors.append(ValueError(f"{aut_id}: states must be a non-empty list or mapping"))
            return None

        states: Dict[str, State] = {}
        for name, sc in raw_states.items():
            sc = sc or {}
            if not isinstance(sc, dict):
                errors.append(ValueError(f"{aut_id}.{name}: state must be a mapping"))
                continue
            states[str(name)] = State(
                name=str(name),
                entering=self._compile_all(cache, sc.get("entering"), errors),
                leaving=self._compile_all(cache, sc.get("leaving"), errors),
            )

        start = str(conf.get("start") or next(iter(raw_states)))
        if start not in states:
            errors.append(ValueError(f"{aut_id}: start state '{start}' not found"))

        # --- transitions ---
        table: Dict[str, List[Transition]] = {name: [] for name in states}
        raw_tr = conf.get("transitions") or {}
        if not isinstance(raw_tr, dict):
            errors.append(ValueError(f"{aut_id}: transitions must be a mapping 'from->to': {{when, actions}}"))
            raw_tr = {}

        for key, tc in raw_tr.items():
            # "a,b->c#метка" — метка только делает ключ уникальным
            src, sep, dest = str(key).split("#", 1)[0].partition("->")
            dest = dest.strip()
            if not sep or not dest or not src.strip():
                errors.append(ValueError(f"{aut_id}: bad transition '{key}', expected 'from->to'"))
                continue
            if dest not in states:
                errors.append(ValueError(f"{aut_id}: transition '{key}': unknown state '{dest}'"))
                continue

            tc = tc or {}
            if not isinstance(tc, dict) or tc.get("when") is None:
                errors.append(ValueError(f"{aut_id}: transition '{key}': 'when' is required"))
                continue

            guard = self._compile(cache, tc["when"], errors)
            actions = self._compile_all(cache, tc.get("actions"), errors)
            if guard is None:
                continue

            sources = [s.strip() for s in src.split(",") if s.strip()]
            if sources == ["*"]:
                sources = list(states)
            for s in sources:
                if s not in states:
                    errors.append(ValueError(f"{aut_id}: transition '{key}': unknown state '{s}'"))
                    continue
                table[s].append(Transition(source=s, dest=dest, guard=guard, actions=actions))

        if start not in states:
            return None
        return Automaton(aut_id, states, table, start, now=now)
