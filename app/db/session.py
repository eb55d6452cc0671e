# app/db/session.py
from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.db.models import Base  # важно, чтобы модели были импортированы


def _ensure_sqlite_dir(db_url: str) -> None:
    # sqlite:///./data/automata.db  → ./data
    prefix = "sqlite:///"
    if db_url.startswith(prefix):
        fs_path = db_url[len(prefix):]
        # :memory: — ничего не делаем
        if fs_path == ":memory:":
            return
        Path(fs_path).resolve().parent.mkdir(parents=True, exist_ok=True)


def make_engine(db_url: str):
    _ensure_sqlite_dir(db_url)
    connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
    return create_engine(db_url, future=True, connect_args=connect_args)


# engine/фабрика создаются в init_db(), после чтения config.yaml
engine = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False, future=True)


def init_db() -> None:
    """Создать engine по settings.db_url и таблицы, если их ещё нет."""
    global engine
    engine = make_engine(settings.db_url)
    SessionLocal.configure(bind=engine)
    Base.metadata.create_all(bind=engine)

