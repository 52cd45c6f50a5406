from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from .schema import Base

MEMORY_DB = ":memory:"

_ENGINE_CACHE: dict[str, Engine] = {}


def _normalize_db_path(db_path: str) -> tuple[str, str]:
    if db_path == MEMORY_DB:
        return db_path, "sqlite:///:memory:"

    path = Path(db_path).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    path.parent.mkdir(parents=True, exist_ok=True)
    normalized = str(path.resolve())
    return normalized, f"sqlite:///{normalized}"


def _apply_sqlite_pragmas(engine: Engine, *, wal: bool) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        if wal:
            cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA busy_timeout=5000;")
        cursor.close()


def create_sqlite_engine(db_path: str) -> Engine:
    key, db_url = _normalize_db_path(db_path)
    if key in _ENGINE_CACHE:
        return _ENGINE_CACHE[key]

    kwargs = {"connect_args": {"check_same_thread": False}}
    if key == MEMORY_DB:
        # One shared connection, otherwise every session sees a fresh empty database.
        kwargs["poolclass"] = StaticPool
    engine = create_engine(db_url, **kwargs)
    _apply_sqlite_pragmas(engine, wal=key != MEMORY_DB)
    _ENGINE_CACHE[key] = engine
    return engine


def dispose_engine(db_path: str) -> None:
    key, _ = _normalize_db_path(db_path)
    engine = _ENGINE_CACHE.pop(key, None)
    if engine is not None:
        engine.dispose()


def init_db(db_path: str) -> None:
    engine = create_sqlite_engine(db_path)
    Base.metadata.create_all(engine)


@contextmanager
def session_scope(db_path: str) -> Iterator[Session]:
    engine = create_sqlite_engine(db_path)
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
