# app/automata/audit.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.bus.event import Event, new_event
from app.db.models import AuditEntry

from .context import stamp_milli

log = logging.getLogger("automata")


class AuditLog:
    """
    Журнал событий автоматики (то, что пишут действия Log(...)).

    Каждая запись:
      - строка в таблице audit_events (своя сессия на вызов — можно звать из разных потоков)
      - событие "log" в шину
    """

    def __init__(self, session_factory: sessionmaker, emit: Callable[[Event], None]) -> None:
        self._sessions = session_factory
        self._emit = emit

    def append(self, msg: str, source: str = "event") -> None:
        ts = datetime.now(timezone.utc)
        try:
            with self._sessions() as s:
                s.add(AuditEntry(ts=ts, source=source, message=msg))
                s.commit()
        except SQLAlchemyError as e:
            log.error("audit log write failed: %s", e)

        self._emit(new_event("log", {"message": msg, "source": source}))

    def tail(self, limit: int = 25) -> List[str]:
        """Последние записи в порядке «старые → новые», как `tail -n`."""
        with self._sessions() as s:
            rows = s.query(AuditEntry).order_by(AuditEntry.id.desc()).limit(limit).all()
        out = []
        for r in reversed(rows):
            ts = r.ts
            if ts is not None and ts.tzinfo is None:
                ts = ts.replace(tzinfo=timezone.utc)
            stamp = stamp_milli(ts.astimezone()) if ts is not None else "-"
            out.append(f"{stamp}: {r.message}")
        return out
