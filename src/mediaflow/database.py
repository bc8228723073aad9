"""
Engine and session wiring for the asset, job and queue tables.

SQLite backs local runs and tests; PostgreSQL is selected through
MEDIAFLOW_DATABASE_URL and enables the JSONB columns and SKIP LOCKED polling.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mediaflow.config import get_settings
from mediaflow.models.base import Base


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_memory_sqlite(url: str) -> bool:
    return url == "sqlite://" or url.startswith("sqlite:///:memory:")


def import_all_models() -> None:
    """Register every mapped table on ``Base.metadata``."""
    from mediaflow.models import asset as _asset  # noqa: F401
    from mediaflow.models import job as _job  # noqa: F401
    from mediaflow.models import queue_task as _queue_task  # noqa: F401


def create_db_engine(database_url: Optional[str] = None, *, echo: bool = False) -> Engine:
    url = database_url or get_settings().DATABASE_URL

    if _is_memory_sqlite(url):
        # One shared connection so every session sees the same in-memory schema
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif _is_sqlite(url):
        engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(url, echo=echo, pool_pre_ping=True, pool_recycle=3600)

    if _is_sqlite(url):

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _connection_record):  # pragma: no cover
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if not _is_memory_sqlite(url):
                # Workers and the API write to the same file concurrently
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return engine


def create_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autoflush=False, expire_on_commit=False, bind=bind)


if os.getenv("ALEMBIC_RUNNING") != "true":
    engine = create_db_engine()
    SessionLocal = create_session_factory(engine)
else:  # pragma: no cover
    engine = None
    SessionLocal = None


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """Transactional scope for CLI commands and health probes."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(*, create_tables: bool = False, bind_engine: Optional[Engine] = None) -> None:
    """
    Create the media tables from the models.

    With SCHEMA_MODE=migrations nothing is created; the schema must come from
    `mediaflow db upgrade`, and an empty database is reported as an error.
    """
    target_engine = bind_engine or engine
    if target_engine is None:
        raise RuntimeError("Database engine is not initialized")
    if not create_tables:
        return

    if get_settings().SCHEMA_MODE == "migrations":
        if not inspect(target_engine).get_table_names():
            raise RuntimeError(
                "SCHEMA_MODE=migrations: database is empty. "
                "Run `mediaflow db upgrade` to create the media tables."
            )
        return

    import_all_models()
    Base.metadata.create_all(bind=target_engine, checkfirst=True)
