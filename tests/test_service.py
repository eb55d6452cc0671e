"""End-to-end tests for the automata service loop (driven synchronously)."""

import time
from datetime import timedelta

import pytest

from app.automata.loader import TextSource
from app.automata.persistence import SnapshotStore
from app.automata.service import AutomataService
from app.automata.types import AutomatonState, RuleSetError
from app.bus.event import new_command, new_event

RULES = """
automata:
  front_door:
    start: closed
    states:
      closed: {}
      open:
        entering: ['Log("front door opened")']
    transitions:
      closed->open:
        when: type == "door" && command == "open"
      open->closed:
        when: type == "door" && command == "close"
        actions: ['Log("$name closed after $duration")']

  kettle:
    start: "off"
    states:
      "off": {}
      "on":
        entering: ['StartTimer("kettle_on", 180)']
    transitions:
      off->on:
        when: device == "switch.kettle" && command == "on"
      on->off:
        when: topic == "timer" && device == "timer.kettle_on"
        actions: ['Command("switch.kettle off")']

  events:
    states: [idle]
"""

EXTRA = """
  porch:
    states: [dark, lit]
"""


@pytest.fixture
def source():
    return TextSource(RULES)


@pytest.fixture
def store(tmp_path):
    return SnapshotStore(tmp_path / "automata.json")


@pytest.fixture
def service(bus, devices, source, store, audit, timers, clock, tmp_path):
    svc = AutomataService(
        bus=bus,
        devices=devices,
        rules=source,
        store=store,
        audit=audit,
        timers=timers,
        reconcile_window=3600,
        reload_debounce=3600,
        scripts_dir=str(tmp_path),
        clock_tick=False,
        clock=clock,
    )
    yield svc
    svc.stop()


def door(command):
    return new_event("door", {"device": "door.front", "command": command})


def states_of(bus, automaton):
    return [e for e in bus.published("state") if e.device == automaton]


class TestStartup:
    def test_invalid_initial_rules_are_fatal(self, service, source):
        source.text = "automata: {lamp: {states: [a], transitions: {a->a: {when: 'a =='}}}}"
        with pytest.raises(RuleSetError):
            service.start(run_loop=False)

    def test_restores_from_snapshot(self, service, store, clock, bus):
        when = clock.now - timedelta(hours=1)
        store.save({"front_door": AutomatonState("open", when)})

        service.start(run_loop=False)
        service.drain()

        aut = service.automata.get("front_door")
        assert aut.state.name == "open"
        assert aut.since == when
        assert bus.published("state") == []

    def test_corrupted_snapshot_starts_fresh(self, service, store):
        store.path.write_text("garbage", encoding="utf-8")
        service.start(run_loop=False)
        assert service.automata.get("front_door").state.name == "closed"


class TestReconciliation:
    def test_retained_state_is_restored_without_change(self, service, bus):
        bus.emit(new_event("state", {"device": "front_door", "state": "open", "trigger": "x"}, retained=True))
        bus.clear()

        service.start(run_loop=False)
        service.drain()

        assert service.automata.get("front_door").state.name == "open"
        assert bus.published("state") == []
        assert service.logs() == []

    def test_unreconciled_automata_publish_initial_state(self, service, bus, store):
        bus.emit(new_event("state", {"device": "front_door", "state": "open", "trigger": "x"}, retained=True))
        bus.clear()
        service.start(run_loop=False)
        service.drain()

        service.finish_reconciliation()

        published = {e.device: e for e in bus.published("state")}
        assert set(published) == {"kettle", "events"}
        assert published["kettle"].fields["state"] == "off"
        assert published["kettle"].fields["trigger"] == "initial"
        assert published["kettle"].retained
        assert store.load()["front_door"].state == "open"
        assert not service.reconciling

    def test_retained_state_after_window_is_ignored(self, service, bus):
        service.start(run_loop=False)
        service.finish_reconciliation()
        service.drain()

        service.handle_event(new_event("state", {"device": "front_door", "state": "open"}, retained=True))
        assert service.automata.get("front_door").state.name == "closed"

    def test_other_retained_events_are_ignored(self, service):
        service.start(run_loop=False)
        service.handle_event(door("open").with_retained(True))
        service.drain()
        assert service.automata.get("front_door").state.name == "closed"


class TestScenarios:
    def test_front_door(self, service, bus, store, clock):
        service.start(run_loop=False)
        service.drain()
        clock.advance(minutes=5)

        bus.emit(door("open"))
        service.drain()

        aut = service.automata.get("front_door")
        assert aut.state.name == "open"
        assert aut.since == clock.now

        ev = states_of(bus, "front_door")[-1]
        assert ev.retained
        assert ev.fields["state"] == "open"
        assert ev.fields["trigger"] == "door.front command=open"
        assert service.logs()[-1].endswith(": front door opened")
        assert store.load()["front_door"] == AutomatonState("open", clock.now)

    def test_change_context_in_actions(self, service, bus, clock):
        service.start(run_loop=False)
        bus.emit(door("open"))
        service.drain()
        clock.advance(minutes=3)

        bus.emit(door("close"))
        service.drain()

        assert service.logs()[-1].endswith(": Front door closed after 3 minutes")

    def test_kettle_timer(self, service, bus, manual_timers):
        service.start(run_loop=False)

        bus.emit(new_event("power", {"device": "switch.kettle", "command": "on"}))
        service.drain()

        assert service.automata.get("kettle").state.name == "on"
        assert len(manual_timers.created) == 1
        assert manual_timers.last.delay == 180.0

        manual_timers.last.fire()
        service.drain()

        timer_events = bus.published("timer")
        assert [e.device for e in timer_events] == ["timer.kettle_on"]
        assert service.automata.get("kettle").state.name == "off"
        assert [e.device for e in bus.published("command")] == ["switch.kettle"]

    def test_command_events_do_not_drive_automata(self, service, bus):
        service.start(run_loop=False)
        bus.emit(new_command("door.front", "open"))
        service.drain()
        assert service.automata.get("front_door").state.name == "closed"

    def test_scene_command_is_acknowledged(self, service, bus):
        service.start(run_loop=False)
        bus.emit(new_command("scene.evening", "on"))
        service.drain()

        acks = bus.published("ack")
        assert [e.device for e in acks] == ["scene.evening"]

    def test_failing_action_does_not_stop_loop(self, service, bus, source):
        source.text = RULES.replace('Log("front door opened")', 'State("garage")')
        service.start(run_loop=False)

        bus.emit(door("open"))
        service.drain()
        bus.emit(door("close"))
        service.drain()

        assert service.automata.get("front_door").state.name == "closed"

    def test_threaded_loop(self, bus, devices, source, store, audit, timers):
        svc = AutomataService(
            bus=bus, devices=devices, rules=source, store=store, audit=audit,
            timers=timers, reconcile_window=3600, clock_tick=False,
        )
        svc.start()
        try:
            bus.emit(door("open"))
            # admin call goes through the loop, after the queued event
            assert svc.call(lambda: svc.automata.get("front_door").state.name) == "open"
        finally:
            svc.stop()


class TestReload:
    def test_invalid_reload_keeps_everything(self, service, bus, source, clock):
        service.start(run_loop=False)
        bus.emit(door("open"))
        service.drain()
        before = service.ruleset
        since = service.automata.get("front_door").since

        source.text = RULES + EXTRA + """
  broken:
    states: [a, b]
    transitions:
      a->b: {when: 'command ==='}
"""
        assert service.reload() is False

        assert service.ruleset is before
        assert "porch" not in service.automata
        assert service.automata.get("front_door").state.name == "open"
        assert service.automata.get("front_door").since == since
        assert "Bad expression 'command ==='" in service.status.last_reload_error

    def test_valid_reload_keeps_state(self, service, bus, source, clock):
        service.start(run_loop=False)
        bus.emit(door("open"))
        service.drain()
        since = service.automata.get("front_door").since
        clock.advance(minutes=1)

        source.text = RULES + EXTRA
        assert service.reload() is True

        assert service.status.generation == 2
        assert service.status.last_reload_error is None
        assert service.automata.get("front_door").state.name == "open"
        assert service.automata.get("front_door").since == since
        assert service.automata.get("porch").state.name == "dark"

    def test_reload_drops_removed_automata(self, service, source):
        service.start(run_loop=False)
        source.text = RULES.split("\n  kettle:")[0]
        assert service.reload()
        assert "kettle" not in service.automata

    def test_new_automata_publish_after_window(self, service, bus, source):
        service.start(run_loop=False)
        service.finish_reconciliation()
        bus.clear()

        source.text = RULES + EXTRA
        service.reload()

        assert [(e.device, e.fields["trigger"]) for e in bus.published("state")] == [("porch", "initial")]

    def test_config_event_schedules_reload(self, service, bus, monkeypatch):
        calls = []
        monkeypatch.setattr(service, "config_updated", lambda: calls.append(1))
        service.start(run_loop=False)

        bus.emit(new_event("config", {"device": "automata"}))
        service.drain()
        assert calls == [1]

    def test_repeated_config_updates_reload_once(self, service, source):
        """A burst of change signals collapses into a single reload."""
        service.reload_debounce = 0.05
        service.start(run_loop=False)
        assert service.status.generation == 1

        source.text = RULES + EXTRA
        for _ in range(5):
            service.config_updated()
        time.sleep(0.3)
        service.drain()

        assert service.status.generation == 2
        assert "porch" in service.automata


class TestAdmin:
    def test_status_text(self, service, clock):
        service.start(run_loop=False)
        clock.advance(minutes=12)

        text = service.status_text()
        assert "- front_door: closed for 12m" in text
        assert "- kettle: off for 12m" in text
        assert "events" not in text

    def test_force_state(self, service, bus):
        service.start(run_loop=False)

        assert service.force_state("front_door", "open") == "Changed front_door: closed->open"
        service.drain()

        ev = states_of(bus, "front_door")[-1]
        assert ev.fields["trigger"] == "user"
        assert service.logs()[-1].endswith(": front door opened")

    def test_force_state_errors(self, service):
        service.start(run_loop=False)
        with pytest.raises(KeyError):
            service.force_state("garage", "open")
        with pytest.raises(KeyError):
            service.force_state("front_door", "exploded")

    def test_switch(self, service, bus):
        service.start(run_loop=False)

        assert service.switch(["hall", "off", "level=20"]) == "Switched Hall light off"
        ev = bus.published("command")[-1]
        assert ev.device == "light.hall"
        assert ev.command == "off"
        assert ev.fields["level"] == 20.0

    def test_switch_lookup(self, service):
        service.start(run_loop=False)

        assert "Hall light (light.hall)" in service.switch([])
        assert "sensor.temp" not in service.switch([])
        assert service.switch(["light"]).startswith("Device 'light' is ambiguous")
        assert service.switch(["garage"]) == "Device 'garage' not found"

    def test_script(self, service, tmp_path):
        script = tmp_path / "hello.sh"
        script.write_text("#!/bin/sh\necho hello $1\n", encoding="utf-8")
        script.chmod(0o755)

        assert service.run_script("hello.sh world") == "hello world\n"
        assert service.run_script("missing.sh").startswith("Script failed")

    def test_help(self, service):
        assert "switch" in service.help()
