"""
Engine construction and the unit-of-work primitive.

``transaction(session_factory)`` is how every service touches the database:
commit on success, rollback and re-raise on failure, always close.  Services
take a session factory rather than a session so that worker threads and the
submission state machine can keep each database round-trip short and never
hold a transaction open across an FBR call.

Concurrency comes from the database, not from this process:
    - PostgreSQL runs at READ COMMITTED; sequence allocation and invoice
      leases are single atomic UPDATE statements.
    - SQLite file databases open every transaction with BEGIN IMMEDIATE, so
      concurrent writers wait on the file lock (up to the busy timeout)
      instead of failing at commit with "database is locked".

The module-level engine (``init_engine_from_url``, ``get_session_factory``,
``create_tables``) exists for the command line; tests and the orchestrator
pass session factories explicitly.  ``reset_engine`` disposes it on exit.
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from einvoice_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

SQLITE_BUSY_TIMEOUT_SECONDS = 30

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _take_write_lock_on_begin(engine: Engine) -> None:
    # pysqlite's own implicit BEGIN is turned off so ours is the only one.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """Create an engine for ``database_url`` without touching module state."""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT_SECONDS, "check_same_thread": False},
        )
        _take_write_lock_on_begin(engine)
        return engine

    return create_engine(
        database_url,
        echo=echo,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        isolation_level="READ COMMITTED",
    )


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
) -> Engine:
    """Build the process-wide engine and session factory (replacing any previous one)."""
    global _engine, _session_factory
    reset_engine()
    _engine = build_engine(database_url, echo=echo, pool_size=pool_size, max_overflow=max_overflow)
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    from einvoice_kernel.db.immutability import register_immutability_listeners

    register_immutability_listeners()
    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "pool_size": pool_size, "echo": echo},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    if _session_factory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _session_factory


@contextmanager
def transaction(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """
    One unit of work in a fresh session.

    Usage:
        with transaction(session_factory) as session:
            session.add(invoice)
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """Create every table; all model modules are imported first so metadata is complete."""
    from einvoice_kernel.db.base import Base
    import einvoice_kernel.models  # noqa: F401
    import einvoice_batch.models  # noqa: F401

    Base.metadata.create_all(engine or get_engine())


def drop_tables(engine: Engine | None = None) -> None:
    """Drop every table. Test and scratch databases only."""
    from einvoice_kernel.db.base import Base

    Base.metadata.drop_all(engine or get_engine())


def reset_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


atexit.register(reset_engine)
