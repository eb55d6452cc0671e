"""Tests for the automaton registry and event matching."""

from datetime import timedelta

import pytest

from app.automata.context import AdminOverride, EventContext
from app.automata.functions import FUNCTION_NAMES
from app.automata.loader import RuleLoader, TextSource
from app.automata.types import AutomatonState
from app.bus.event import new_event

RULES = """
automata:
  front_door:
    start: closed
    states:
      closed:
        leaving: ['Log("leaving closed")']
      open:
        entering: ['Log("entering open")']
      ajar: {}
    transitions:
      closed->open:
        when: type == "door" && command == "open"
        actions: ['Log("transition")']
      closed->ajar:
        when: type == "door" && command in ["open", "ajar"]
      open,ajar->closed:
        when: type == "door" && command == "close"
  broken:
    states: [idle, busy]
    transitions:
      idle->busy#error:
        when: 1 / 0 == 1
      idle->busy#text:
        when: '"not a bool"'
      idle->busy:
        when: command == "go"
"""


@pytest.fixture
def automata(devices, clock):
    return RuleLoader(TextSource(RULES), devices, FUNCTION_NAMES, clock=clock).load().automata


def door(command):
    return new_event("door", {"device": "door.front", "command": command})


class TestProcess:
    """First-match transition semantics."""

    def test_first_declared_match_wins(self, automata, library):
        changes = automata.process(EventContext(door("open"), library))

        assert [(c.automaton, c.old, c.new) for c in changes] == [("front_door", "closed", "open")]
        assert automata.get("front_door").state.name == "open"

    def test_second_transition_when_first_does_not_match(self, automata, library):
        automata.process(EventContext(door("ajar"), library))
        assert automata.get("front_door").state.name == "ajar"

    def test_no_match_is_noop(self, automata, library):
        assert automata.process(EventContext(door("knock"), library)) == []
        assert automata.get("front_door").state.name == "closed"
        assert not automata.changes
        assert not automata.actions

    def test_multiple_sources(self, automata, library):
        automata.process(EventContext(door("ajar"), library))
        automata.process(EventContext(door("close"), library))
        assert automata.get("front_door").state.name == "closed"

    def test_guard_errors_count_as_false(self, automata, library):
        ev = new_event("remote", {"device": "remote.1", "command": "go"})
        changes = automata.process(EventContext(ev, library))

        assert [(c.automaton, c.new) for c in changes] == [("broken", "busy")]

    def test_exactly_one_change_per_transition(self, automata, library):
        automata.process(EventContext(door("open"), library))
        assert len(automata.changes) == 1

    def test_actions_order(self, automata, library):
        automata.process(EventContext(door("open"), library))

        assert [a.name for a in automata.actions] == [
            'Log("leaving closed")',
            'Log("transition")',
            'Log("entering open")',
        ]
        assert all(a.change is automata.changes[0] for a in automata.actions)

    def test_since_and_duration(self, automata, library, clock):
        start = automata.get("front_door").since
        clock.advance(minutes=3)

        change = automata.process(EventContext(door("open"), library))[0]

        assert change.duration == timedelta(minutes=3)
        assert automata.get("front_door").since == clock.now > start


class TestChangeState:
    """Administrative override."""

    def test_override(self, automata):
        change = automata.change_state("front_door", "open", AdminOverride())

        assert str(change.trigger) == "user"
        assert change.trigger.event is None
        assert automata.get("front_door").state.name == "open"
        assert [a.name for a in automata.actions] == ['Log("leaving closed")', 'Log("entering open")']

    def test_unknown_automaton(self, automata):
        with pytest.raises(KeyError):
            automata.change_state("garage", "open", AdminOverride())

    def test_unknown_state(self, automata):
        with pytest.raises(KeyError):
            automata.change_state("front_door", "exploded", AdminOverride())

    def test_admin_override_never_matches_guards(self, automata):
        assert automata.process(AdminOverride()) == []


class TestSnapshots:
    """restore/persist never emit Changes or actions."""

    def test_restore(self, automata, clock, library):
        when = clock.now - timedelta(hours=2)
        restored = automata.restore({
            "front_door": AutomatonState("open", when),
            "garage": AutomatonState("open", when),
        })

        assert restored == ["front_door"]
        assert automata.get("front_door").state.name == "open"
        assert automata.get("front_door").since == when
        assert not automata.changes
        assert not automata.actions

        # after restore live events behave as usual
        automata.process(EventContext(door("close"), library))
        assert automata.get("front_door").state.name == "closed"

    def test_restore_unknown_state_is_skipped(self, automata, clock):
        assert automata.restore({"front_door": AutomatonState("exploded", clock.now)}) == []
        assert automata.get("front_door").state.name == "closed"

    def test_persist(self, automata, clock):
        snap = automata.persist()
        assert snap["front_door"] == AutomatonState("closed", clock.now)
        assert set(snap) == {"front_door", "broken"}
