# app/automata/persistence.py
from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from .types import AutomatonState, Snapshot

log = logging.getLogger("automata")


class SnapshotStore:
    """
    Снимок состояний автоматов в JSON:
        {"front_door": {"state": "open", "timestamp": "2024-05-01T10:00:00+00:00"}, ...}

    Запись атомарная: временный файл рядом + os.replace.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Snapshot:
        """Ошибка чтения/разбора → лог и пустой снимок (старт «с нуля»)."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            log.error("Failed to load snapshot %s: %s", self.path, e)
            return {}
        if not isinstance(raw, dict):
            log.error("Failed to load snapshot %s: expected an object", self.path)
            return {}

        snap: Snapshot = {}
        for name, item in raw.items():
            try:
                ts = datetime.fromisoformat(item["timestamp"])
                if ts.tzinfo is None:
                    ts = ts.replace(tzinfo=timezone.utc)
                snap[name] = AutomatonState(state=str(item["state"]), timestamp=ts)
            except (KeyError, TypeError, ValueError) as e:
                log.warning("snapshot: skip %s: %s", name, e)
        return snap

    def save(self, snapshot: Snapshot) -> None:
        data = {
            name: {"state": st.state, "timestamp": st.timestamp.isoformat()}
            for name, st in snapshot.items()
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=self.path.name, suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except OSError:
            # не оставляем мусор рядом со снимком
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
