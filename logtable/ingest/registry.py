"""
Schema registry.

Single owner of the path -> column mapping. Columns are created lazily
inside the writer's open transaction; they become part of the registry
when that transaction commits and are forgotten if it rolls back, so the
in-memory schema never runs ahead of what readers can see.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from logtable.catalog.wide_table import WideTable
from logtable.common.errors import SchemaError
from logtable.common.metrics import columns_created_total, known_columns
from logtable.ingest.flattener import ESCAPE, JsonType
from logtable.ingest.type_policy import (
    COLUMN_JSON_TYPES,
    Reconciliation,
    json_type_for,
    reconcile,
    sql_type_for,
)

logger = logging.getLogger(__name__)

# Marks a name disambiguated from a case-insensitive clash, e.g. "Level\~2".
# encode_path never emits this escape pair.
SUFFIX_MARK = ESCAPE + "~"

_ASCII_LOWER = str.maketrans(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ", "abcdefghijklmnopqrstuvwxyz")


def sqlite_fold(name: str) -> str:
    """Fold a name the way SQLite compares identifiers (ASCII only)."""
    return name.translate(_ASCII_LOWER)


def split_suffix(name: str) -> Tuple[str, Optional[int]]:
    """
    Separate a disambiguation suffix from a column name.

    Args:
        name: Physical column name

    Returns:
        Tuple of (encoded path, suffix number or None)
    """
    index = 0
    mark_at = -1
    while index < len(name):
        if name[index] == ESCAPE:
            if name[index + 1:index + 2] == "~":
                mark_at = index
            index += 2
        else:
            index += 1

    if mark_at < 0:
        return name, None
    digits = name[mark_at + len(SUFFIX_MARK):]
    if not digits.isdigit():
        return name, None
    return name[:mark_at], int(digits)


@dataclass
class ColumnHandle:
    """A data column of the wide table."""
    name: str  # Physical column name
    path: str  # Encoded JSON path
    json_type: JsonType  # Declared type (widened in memory only)
    sequence: int  # First-seen order


class SchemaRegistry:
    """
    Tracks known columns and creates missing ones.

    `ensure` is serialized and idempotent; after a column is committed,
    repeated calls for its path never touch the database.
    """

    def __init__(self, wide_table: WideTable, max_columns: int = 1900):
        """
        Initialize registry.

        Args:
            wide_table: Table the columns belong to
            max_columns: Maximum number of data columns
        """
        self.wide_table = wide_table
        self.max_columns = max_columns
        self._lock = threading.RLock()
        self._columns: Dict[str, ColumnHandle] = {}
        self._pending: Dict[str, ColumnHandle] = {}
        self._folded: Dict[str, str] = {}  # folded physical name -> path
        self._deferred: Set[str] = set()
        self._rejected: Dict[str, str] = {}

    def rehydrate(self, conn: Connection) -> int:
        """
        Rebuild the schema state from the table's current columns.

        Args:
            conn: Open connection

        Returns:
            Number of data columns found
        """
        with self._lock:
            self._columns.clear()
            self._pending.clear()
            self._folded.clear()
            self._deferred.clear()
            self._rejected.clear()

            for sequence, col in enumerate(self.wide_table.data_columns(conn)):
                path, _ = split_suffix(col.name)
                handle = ColumnHandle(
                    name=col.name,
                    path=path,
                    json_type=json_type_for(col.type),
                    sequence=sequence,
                )
                self._columns.setdefault(path, handle)
                self._folded[sqlite_fold(col.name)] = path

            known_columns.set(len(self._columns))
            logger.info(
                f"Schema rehydrated with {len(self._columns)} columns",
                extra={"extra_fields": {"table": self.wide_table.table_name}},
            )
            return len(self._columns)

    def ensure(
        self,
        conn: Connection,
        path: str,
        observed: JsonType,
    ) -> Optional[ColumnHandle]:
        """
        Return the column for a path, creating it if needed.

        A null observation never creates a column; the path is remembered
        as deferred until a typed value arrives. An integer column that
        receives a float is widened to float.

        Args:
            conn: Connection with the writer's open transaction
            path: Encoded JSON path
            observed: JSON type of the value being written

        Returns:
            ColumnHandle, or None for a null value on an unknown path

        Raises:
            SchemaError: If the column cannot be created
        """
        with self._lock:
            handle = self._columns.get(path) or self._pending.get(path)

            if handle is not None:
                if observed != JsonType.NULL and \
                        reconcile(handle.json_type, observed) == Reconciliation.WIDEN:
                    # Widening changes no stored value, so it survives a rollback
                    logger.info(
                        f"Widening column {handle.name} to float",
                        extra={"extra_fields": {"column": handle.name}},
                    )
                    handle.json_type = JsonType.FLOAT
                return handle

            if observed == JsonType.NULL:
                self._deferred.add(path)
                return None

            if observed not in COLUMN_JSON_TYPES:
                raise SchemaError(f"No column type for {observed.value}", column=path)

            if path in self._rejected:
                raise SchemaError(self._rejected[path], column=path)

            if len(self._columns) + len(self._pending) >= self.max_columns:
                raise SchemaError(
                    f"Column limit of {self.max_columns} reached", column=path)

            return self._create(conn, path, observed)

    def _create(self, conn: Connection, path: str, observed: JsonType) -> ColumnHandle:
        name = self._physical_name(path)
        try:
            with conn.begin_nested():
                self.wide_table.add_column(conn, name, sql_type_for(observed))
        except (SQLAlchemyError, UnicodeError, ValueError) as e:
            # sqlite3 raises UnicodeEncodeError for names holding lone surrogates
            reason = f"Store rejected column {name!r}: {e.__class__.__name__}: {e}"
            self._rejected[path] = reason
            logger.warning(
                "Column creation failed, values will go to the overflow column",
                extra={"extra_fields": {"column": name, "error": str(e)}},
            )
            raise SchemaError(reason, column=path) from e

        handle = ColumnHandle(
            name=name,
            path=path,
            json_type=observed,
            sequence=len(self._columns) + len(self._pending),
        )
        self._pending[path] = handle
        self._folded[sqlite_fold(name)] = path
        self._deferred.discard(path)
        return handle

    def _physical_name(self, path: str) -> str:
        name = path
        suffix = 1
        while sqlite_fold(name) in self._folded:
            suffix += 1
            name = f"{path}{SUFFIX_MARK}{suffix}"
        return name

    def commit(self) -> List[ColumnHandle]:
        """
        Make columns created in the just-committed transaction permanent.

        Returns:
            Newly committed columns
        """
        with self._lock:
            created = sorted(self._pending.values(), key=lambda h: h.sequence)
            for handle in created:
                self._columns[handle.path] = handle
                columns_created_total.labels(column_type=handle.json_type.value).inc()
                logger.info(
                    f"Column added: {handle.name}",
                    extra={"extra_fields": {
                        "column": handle.name,
                        "column_type": handle.json_type.value,
                    }},
                )
            self._pending.clear()
            known_columns.set(len(self._columns))
            return created

    def rollback(self) -> None:
        """Forget columns created in a transaction that rolled back."""
        with self._lock:
            for handle in self._pending.values():
                self._folded.pop(sqlite_fold(handle.name), None)
            self._pending.clear()

    def lookup(self, path: str) -> Optional[ColumnHandle]:
        """Get the committed column for a path, if any."""
        with self._lock:
            return self._columns.get(path)

    @property
    def columns(self) -> List[ColumnHandle]:
        """Committed columns in creation order."""
        with self._lock:
            return sorted(self._columns.values(), key=lambda h: h.sequence)

    @property
    def column_names(self) -> Set[str]:
        with self._lock:
            return {handle.name for handle in self._columns.values()}

    @property
    def deferred_paths(self) -> Set[str]:
        """Paths seen only with null values so far."""
        with self._lock:
            return set(self._deferred)

    def __len__(self) -> int:
        with self._lock:
            return len(self._columns)

    def __contains__(self, path: str) -> bool:
        with self._lock:
            return path in self._columns
