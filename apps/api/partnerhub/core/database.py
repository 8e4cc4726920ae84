from collections.abc import Generator
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from partnerhub.core.config import get_settings


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str, *, lock_timeout_ms: int = 5000, **kwargs: Any) -> Engine:
    """Create an engine whose transactions take the write lock up front on SQLite.

    pysqlite defers BEGIN until the first write, so two sessions can both read a
    prospect and only collide on commit. Emitting ``BEGIN IMMEDIATE`` ourselves
    gives SQLite the same single-writer behaviour ``SELECT ... FOR UPDATE`` gives
    PostgreSQL.
    """

    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True, **kwargs)

    connect_args = dict(kwargs.pop("connect_args", {}))
    connect_args.setdefault("check_same_thread", False)
    connect_args.setdefault("timeout", lock_timeout_ms / 1000)
    engine = create_engine(database_url, connect_args=connect_args, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


_settings = get_settings()
engine = build_engine(_settings.database_url, lock_timeout_ms=_settings.database_lock_timeout_ms)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
