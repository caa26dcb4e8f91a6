"""
Database connection management.
Handles SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from jobqueue.config import get_settings
from jobqueue.db.models import Base

logger = logging.getLogger(__name__)

# Global engine instance
_engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None


def _configure_sqlite(engine: Engine) -> None:
    """
    Let SQLAlchemy own transaction boundaries on pysqlite.

    pysqlite's implicit BEGIN handling breaks SAVEPOINT, which get-or-create
    and close_job rely on. Foreign keys are off by default in SQLite.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def create_db_engine(database_url: str, **kwargs: Any) -> Engine:
    """
    Create an engine for the given URL.

    Args:
        database_url: SQLAlchemy database URL.
        **kwargs: Extra arguments for ``create_engine``.

    Returns:
        Engine: The SQLAlchemy engine instance.
    """
    engine = create_engine(database_url, **kwargs)
    if engine.dialect.name == "sqlite":
        _configure_sqlite(engine)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory with the settings every component expects."""
    return sessionmaker(
        bind=engine,
        class_=Session,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> Engine:
    """
    Get or create the database engine.

    Returns:
        Engine: The SQLAlchemy engine instance.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs: dict[str, Any] = {
            "echo": settings.log_level == "DEBUG",
            "pool_pre_ping": True,
        }
        if not settings.database_url.startswith("sqlite"):
            kwargs["pool_size"] = settings.database_pool_size
            kwargs["max_overflow"] = settings.database_max_overflow
        _engine = create_db_engine(settings.database_url, **kwargs)
    return _engine


def init_db(create_schema: bool = False) -> None:
    """
    Initialize the database connection and session factory.
    Should be called on process startup.

    Args:
        create_schema: Create missing tables (for SQLite and tests; use the
            Alembic migration in production).
    """
    global SessionLocal
    engine = get_engine()
    if create_schema:
        Base.metadata.create_all(engine)
    SessionLocal = create_session_factory(engine)
    logger.info("Database connection initialized")


def close_db() -> None:
    """
    Close the database connection.
    Should be called on process shutdown.
    """
    global _engine, SessionLocal
    if _engine is not None:
        _engine.dispose()
        _engine = None
        SessionLocal = None
        logger.info("Database connection closed")


@contextmanager
def get_session_context() -> Generator[Session]:
    """
    Context manager for getting database sessions.
    Commits on success and rolls back on error.

    Yields:
        Session: A database session.

    Raises:
        RuntimeError: If the database is not initialized.
    """
    if SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    with SessionLocal() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
