"""
Database engine management.

Provides SQLite engines for the single writer and for readers, with the
connection settings the ingestion model depends on:
- WAL journal so readers never block the writer and vice versa
- Transactions begun by SQLAlchemy rather than the driver, so DDL joins
  the batch transaction
- A busy timeout for checkpoint and lock contention
"""

import logging
from pathlib import Path
from typing import Union

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from logtable.common.errors import StorageUnavailableError

logger = logging.getLogger(__name__)


def _sqlite_url(path: Union[str, Path]) -> str:
    return f"sqlite:///{Path(path)}"


def _install_listeners(engine: Engine, busy_timeout_ms: int, begin_statement: str) -> None:
    """Attach pragmas and explicit BEGIN handling to an engine."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Disable pysqlite's implicit BEGIN; it skips DDL statements
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            cursor.execute("PRAGMA synchronous=NORMAL")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql(begin_statement)


def create_writer_engine(path: Union[str, Path], busy_timeout_ms: int = 5000) -> Engine:
    """
    Create the engine used by the ingestion writer.

    Every transaction starts with BEGIN IMMEDIATE so the write lock is
    taken up front instead of on the first write.

    Args:
        path: Database file path (parent directories are created)
        busy_timeout_ms: How long to wait on a locked database

    Returns:
        SQLAlchemy engine

    Raises:
        StorageUnavailableError: If the parent directory cannot be created
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageUnavailableError(
            f"Cannot create directory for {path}: {e}") from e

    engine = create_engine(_sqlite_url(path), echo=False, future=True)
    _install_listeners(engine, busy_timeout_ms, "BEGIN IMMEDIATE")
    logger.debug(f"Writer engine created for {path}")
    return engine


def create_reader_engine(path: Union[str, Path], busy_timeout_ms: int = 5000) -> Engine:
    """
    Create an engine for reading a database that may be under ingestion.

    Transactions are deferred, so each one is a read snapshot.

    Args:
        path: Database file path (must exist)
        busy_timeout_ms: How long to wait on a locked database

    Returns:
        SQLAlchemy engine

    Raises:
        StorageUnavailableError: If the file does not exist
    """
    path = Path(path)
    if not path.is_file():
        raise StorageUnavailableError(f"Database file not found: {path}")

    engine = create_engine(_sqlite_url(path), echo=False, future=True)
    _install_listeners(engine, busy_timeout_ms, "BEGIN")
    return engine
