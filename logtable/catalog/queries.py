"""
Read helpers for the wide table.

Used by the `schema` command and by tests standing in for an external
SQL client. Every function reads inside one snapshot and never writes.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import column, func, inspect, select, table
from sqlalchemy.engine import Engine

from logtable.catalog.wide_table import ID_COLUMN, is_metadata_column
from logtable.ingest.flattener import decode_column_name
from logtable.ingest.registry import split_suffix
from logtable.ingest.type_policy import json_type_for


@dataclass
class ColumnInfo:
    """Description of one data column."""
    name: str
    path: tuple
    column_type: str


def list_columns(engine: Engine, table_name: str) -> List[ColumnInfo]:
    """
    Describe the data columns of the table in creation order.

    Args:
        engine: Reader engine
        table_name: Table to describe

    Returns:
        List of ColumnInfo (empty if the table does not exist)
    """
    with engine.connect() as conn:
        inspector = inspect(conn)
        if not inspector.has_table(table_name):
            return []
        columns = inspector.get_columns(table_name)

    result = []
    for col in columns:
        if is_metadata_column(col["name"]):
            continue
        path, _ = split_suffix(col["name"])
        result.append(ColumnInfo(
            name=col["name"],
            path=decode_column_name(path),
            column_type=json_type_for(col["type"]).value,
        ))
    return result


def count_rows(engine: Engine, table_name: str) -> int:
    """Count rows in the table."""
    with engine.connect() as conn:
        return conn.execute(
            select(func.count()).select_from(table(table_name))).scalar_one()


def fetch_rows(
    engine: Engine,
    table_name: str,
    columns: Optional[Sequence[str]] = None,
    limit: Optional[int] = None,
    include_empty: bool = False,
) -> List[Dict[str, Any]]:
    """
    Read rows in arrival order.

    Values come back exactly as stored, without SQLAlchemy type
    processing, since a column may hold text next to its declared type.

    Args:
        engine: Reader engine
        table_name: Table to read
        columns: Columns to return (default: all)
        limit: Maximum number of rows
        include_empty: Keep NULL values in the returned dicts

    Returns:
        List of row dicts keyed by column name
    """
    with engine.connect() as conn:
        if columns is None:
            columns = [col["name"] for col in inspect(conn).get_columns(table_name)]
        target = table(table_name, *[column(name) for name in columns])
        query = select(*target.c).order_by(column(ID_COLUMN))
        if limit is not None:
            query = query.limit(limit)
        rows = conn.execute(query).mappings().all()

    if include_empty:
        return [dict(row) for row in rows]
    return [
        {key: value for key, value in row.items() if value is not None}
        for row in rows
    ]
