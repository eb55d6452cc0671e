"""Tests for config.yaml loading and validation."""

import pytest

from app.core.config import Settings
from app.core.devices import is_switchable, load_devices, match_devices
from app.core.validate_cfg import validate_cfg


class TestValidateCfg:
    def test_minimal(self):
        validate_cfg({"mqtt": {"host": "localhost"}})

    def test_memory_bus_needs_no_host(self):
        validate_cfg({"bus": "memory"})

    def test_earth_coordinates(self):
        validate_cfg({"bus": "memory", "earth": {"latitude": 51.5, "longitude": -0.13}})

    @pytest.mark.parametrize(
        "cfg, message",
        [
            ({"mqtt": {}}, "mqtt.host"),
            ({"mqtt": {"host": "h", "port": 0}}, "mqtt.port"),
            ({"bus": "kafka"}, "bus"),
            ({"bus": "memory", "automata": {"reconcile_window_s": -1}}, "automata.reconcile_window_s"),
            ({"bus": "memory", "automata": {"rules_file": ""}}, "automata.rules_file"),
            ({"bus": "memory", "earth": {"latitude": 95, "longitude": 0}}, "earth.latitude"),
            ({"bus": "memory", "earth": {"latitude": 51.5}}, "earth.longitude"),
            ({"bus": "memory", "devices": {"light.hall": {"caps": "switch"}}}, "devices.light.hall.caps"),
            ({"bus": "memory", "alerts": {"channels": {"phone": {"type": "sms"}}}}, "alerts.channels.phone.type"),
            ({"bus": "memory", "alerts": {"channels": {"phone": {"type": "telegram", "bot_token": "x"}}}}, "chat_id"),
        ],
    )
    def test_errors(self, cfg, message):
        with pytest.raises(ValueError, match=message):
            validate_cfg(cfg)


class TestSettings:
    def test_load_from_env_path(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text(
            "bus: memory\n"
            "earth: {latitude: 51.5, longitude: -0.13}\n"
            "automata:\n"
            "  rules_file: rules.yaml\n"
            "devices:\n"
            "  light.hall: {name: Hall, caps: [switch]}\n",
            encoding="utf-8",
        )
        monkeypatch.setenv("CONFIG_FILE", str(path))

        s = Settings()
        s.load_yaml_config()

        assert s.bus == "memory"
        assert s.automata["rules_file"] == "rules.yaml"
        assert s.automata["reconcile_window_s"] == 5
        assert s.db_url == "sqlite:///./data/automata.db"
        assert "light.hall" in s.devices
        assert s.earth == (51.5, -0.13)

    def test_missing_file_is_empty(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONFIG_FILE", str(tmp_path / "none.yaml"))
        s = Settings()
        s.load_yaml_config()
        assert s.cfg == {}
        assert s.earth is None

    def test_invalid_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("mqtt: {port: 1883}\n", encoding="utf-8")
        monkeypatch.setenv("CONFIG_FILE", str(path))
        with pytest.raises(ValueError, match="mqtt.host"):
            Settings().load_yaml_config()


class TestDevices:
    def test_load_and_match(self, devices):
        assert devices["light.hall"].type == "light"
        assert is_switchable(devices["light.hall"])
        assert not is_switchable(devices["sensor.temp"])
        assert match_devices(devices, "sensor.temp") == ["sensor.temp"]
        assert match_devices(devices, "temp") == []
        assert match_devices(devices, "light") == ["light.hall", "light.porch"]

    def test_name_defaults_to_id(self):
        assert load_devices({"light.x": None})["light.x"].name == "light.x"


def test_make_engine_creates_sqlite_dir(tmp_path):
    from app.db.session import make_engine

    engine = make_engine(f"sqlite:///{tmp_path}/data/automata.db")
    try:
        assert (tmp_path / "data").is_dir()
    finally:
        engine.dispose()
