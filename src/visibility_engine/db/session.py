"""Database session management."""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from visibility_engine.config import settings


def build_engine(database_url: str) -> Engine:
    """Create an engine with pool settings suited to the backend."""
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    in_memory = False
    if database_url.startswith("sqlite"):
        # Used by tests and local runs; API handlers run in a threadpool
        kwargs["connect_args"] = {"check_same_thread": False}
        in_memory = ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite:")
        if in_memory:
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_size"] = 5
        kwargs["max_overflow"] = 10

    engine = create_engine(database_url, **kwargs)
    if database_url.startswith("sqlite") and not in_memory:
        _begin_sqlite_immediately(engine)
    return engine


def _begin_sqlite_immediately(engine: Engine) -> None:
    """Take SQLite's write lock when a transaction begins.

    pysqlite defers BEGIN until the first write, so two sessions that both
    read the balance row deadlock when they upgrade to a write lock.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def get_session() -> Generator[Session, None, None]:
    """Get a database session (for FastAPI dependency injection)."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def get_session_context() -> Generator[Session, None, None]:
    """Get a database session as a context manager (for use outside of FastAPI)."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> None:
    """Verify database connectivity."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def create_all() -> None:
    """Create all tables (local development and tests; production uses migrations)."""
    from visibility_engine.db.models import Base

    Base.metadata.create_all(bind=engine)
