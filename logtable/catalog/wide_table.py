"""
Evolving wide table.

Owns the physical layout of the single sparse table: the engine metadata
columns every row carries, runtime column addition through Alembic
operations, and batched row inserts.
"""

import logging
from typing import Any, Dict, List, Sequence

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    Table,
    Text,
    column,
    func,
    insert,
    table,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeEngine

from logtable.common.errors import StorageUnavailableError
from logtable.common.resilience import retry_database_operation

logger = logging.getLogger(__name__)

# Engine metadata columns. JSON paths never encode to a name starting with '#'.
ID_COLUMN = "#id"
LINE_COLUMN = "#line"
INGESTED_AT_COLUMN = "#ingested_at"
EXTRA_COLUMN = "#extra"  # JSON object of values that could not get a column
RAW_COLUMN = "#raw"  # Unparsable input line

METADATA_COLUMNS = (ID_COLUMN, LINE_COLUMN, INGESTED_AT_COLUMN, EXTRA_COLUMN, RAW_COLUMN)


def _metadata_column_defs() -> List[Column]:
    return [
        Column(ID_COLUMN, Integer, primary_key=True),
        Column(LINE_COLUMN, Integer, nullable=True),
        Column(INGESTED_AT_COLUMN, DateTime, nullable=True,
               server_default=func.current_timestamp()),
        Column(EXTRA_COLUMN, Text, nullable=True),
        Column(RAW_COLUMN, Text, nullable=True),
    ]


def is_metadata_column(name: str) -> bool:
    return name in METADATA_COLUMNS


class WideTable:
    """
    A sparse table whose column set grows as new JSON paths are observed.

    Rows are append-only; columns are only ever added.
    """

    def __init__(self, engine: Engine, table_name: str):
        """
        Initialize the table handle.

        Args:
            engine: Writer engine
            table_name: Name of the table in the database
        """
        self.engine = engine
        self.table_name = table_name

    def prepare(self) -> Table:
        """
        Create the table if needed and reflect its current layout.

        A table created by an older run, or missing any metadata column,
        is brought up to date without touching its data columns.

        Returns:
            Reflected SQLAlchemy Table

        Raises:
            StorageUnavailableError: If the database cannot be opened or written
        """
        try:
            return self._prepare()
        except (SQLAlchemyError, OSError) as e:
            raise StorageUnavailableError(
                f"Cannot prepare table {self.table_name!r}: {e}") from e

    @retry_database_operation
    def _prepare(self) -> Table:
        with self.engine.begin() as conn:
            base = Table(self.table_name, MetaData(), *_metadata_column_defs())
            base.create(conn, checkfirst=True)

            reflected = self.reflect(conn)
            existing = {col.name for col in reflected.columns}
            for col in _metadata_column_defs():
                if col.name in existing or col.primary_key:
                    continue
                logger.info(f"Adding missing metadata column {col.name}")
                self.add_column(conn, col.name, col.type)

            return self.reflect(conn)

    def reflect(self, conn: Connection) -> Table:
        """Reflect the table as currently seen by `conn`."""
        return Table(self.table_name, MetaData(), autoload_with=conn)

    def data_columns(self, conn: Connection) -> List[Column]:
        """
        List the data columns in creation order.

        Args:
            conn: Open connection

        Returns:
            Reflected columns excluding metadata columns
        """
        return [
            col for col in self.reflect(conn).columns
            if not is_metadata_column(col.name)
        ]

    def add_column(self, conn: Connection, name: str, sql_type: TypeEngine) -> None:
        """
        Add a nullable column inside the caller's transaction.

        Args:
            conn: Connection with an open transaction
            name: Column name (quoted by the dialect)
            sql_type: Declared SQL type
        """
        operations = Operations(MigrationContext.configure(connection=conn))
        operations.add_column(self.table_name, Column(name, sql_type, nullable=True))

    def insert_rows(
        self,
        conn: Connection,
        column_names: Sequence[str],
        rows: List[Dict[str, Any]],
    ) -> int:
        """
        Insert rows inside the caller's transaction.

        Every row dict must carry exactly `column_names` as keys; absent
        values are passed as None.

        Args:
            conn: Connection with an open transaction
            column_names: Columns populated by this insert
            rows: Row values keyed by column name

        Returns:
            Number of rows inserted
        """
        if not rows:
            return 0
        target = table(self.table_name, *[column(name) for name in column_names])
        conn.execute(insert(target), rows)
        return len(rows)
