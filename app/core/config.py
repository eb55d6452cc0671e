# app/core/config.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from pydantic import Field, PrivateAttr
from pydantic_settings import BaseSettings

from app.core.validate_cfg import validate_cfg


class Settings(BaseSettings):
    # путь к основному YAML (можно переопределить переменной окружения CONFIG_FILE)
    config_file: str = Field(default="config.yaml", validation_alias="CONFIG_FILE")

    # внутреннее хранилище загруженного YAML
    _cfg: Dict[str, Any] = PrivateAttr(default_factory=dict)
    _config_path: Path | None = PrivateAttr(default=None)

    # ───────── пути ─────────
    @property
    def config_path(self) -> Path:
        if self._config_path is None:
            p = Path(self.config_file)
            if not p.is_absolute():
                p = Path.cwd() / p
            self._config_path = p
        return self._config_path

    # ───────── YAML cfg ─────────
    @property
    def cfg(self) -> Dict[str, Any]:
        return self._cfg

    def load_yaml_config(self) -> None:
        p = self.config_path
        if p.exists():
            with open(p, "r", encoding="utf-8") as f:
                self._cfg = yaml.safe_load(f) or {}
                validate_cfg(self._cfg)  # выбросит ValueError, если что-то не так
        else:
            self._cfg = {}

    # ───────── удобные секции ─────────
    @property
    def mqtt(self) -> Dict[str, Any]:
        return self._cfg.get("mqtt", {})

    @property
    def db_url(self) -> str:
        return self._cfg.get("db", {}).get("url", "sqlite:///./data/automata.db")

    @property
    def automata(self) -> Dict[str, Any]:
        """Секция automata с дефолтами."""
        sec = dict(self._cfg.get("automata", {}) or {})
        sec.setdefault("rules_file", "automata.yaml")
        sec.setdefault("state_file", "./data/automata.json")
        sec.setdefault("reconcile_window_s", 5)
        sec.setdefault("reload_debounce_s", 1)
        sec.setdefault("scripts_dir", "~/.gohome/scripts")
        sec.setdefault("query_timeout_s", 5)
        return sec

    @property
    def devices(self) -> Dict[str, Any]:
        return self._cfg.get("devices", {}) or {}

    @property
    def alerts(self) -> Dict[str, Any]:
        return self._cfg.get("alerts", {}) or {}

    @property
    def earth(self) -> Optional[Tuple[float, float]]:
        """(latitude, longitude) или None, если секция earth не задана."""
        sec = self._cfg.get("earth") or {}
        if not sec:
            return None
        return float(sec["latitude"]), float(sec["longitude"])

    @property
    def bus(self) -> str:
        # mqtt | memory
        return str(self._cfg.get("bus", "mqtt"))


settings = Settings()
