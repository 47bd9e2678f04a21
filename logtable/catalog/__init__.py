"""
Catalog module: SQLite engines, the evolving wide table, read helpers.
"""

from logtable.catalog.database import (
    create_reader_engine,
    create_writer_engine,
)
from logtable.catalog.wide_table import (
    EXTRA_COLUMN,
    ID_COLUMN,
    INGESTED_AT_COLUMN,
    LINE_COLUMN,
    METADATA_COLUMNS,
    RAW_COLUMN,
    WideTable,
    is_metadata_column,
)

__all__ = [
    "create_reader_engine",
    "create_writer_engine",
    "EXTRA_COLUMN",
    "ID_COLUMN",
    "INGESTED_AT_COLUMN",
    "LINE_COLUMN",
    "METADATA_COLUMNS",
    "RAW_COLUMN",
    "WideTable",
    "is_metadata_column",
]
