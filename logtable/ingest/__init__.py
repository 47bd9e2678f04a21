"""
Ingest module for streaming JSON lines into the wide table.

Provides flattening, type policy, schema registry, batched writer and
the stream coordinator that drives them.
"""

from logtable.ingest.flattener import (
    FlatField,
    JsonType,
    decode_column_name,
    detect_json_type,
    encode_path,
    flatten,
    unflatten,
)
from logtable.ingest.type_policy import Reconciliation, reconcile
from logtable.ingest.registry import ColumnHandle, SchemaRegistry
from logtable.ingest.writer import BatchResult, IngestionWriter
from logtable.ingest.coordinator import (
    CoordinatorState,
    IngestStats,
    StreamCoordinator,
    decode_line,
)
from logtable.ingest.pipeline import IngestPipeline, IngestSummary

__all__ = [  # ruff: noqa: RUF022
    # Flattening
    "FlatField",
    "JsonType",
    "decode_column_name",
    "detect_json_type",
    "encode_path",
    "flatten",
    "unflatten",
    # Type policy
    "Reconciliation",
    "reconcile",
    # Schema
    "ColumnHandle",
    "SchemaRegistry",
    # Writing
    "BatchResult",
    "IngestionWriter",
    # Coordination
    "CoordinatorState",
    "IngestStats",
    "StreamCoordinator",
    "decode_line",
    "IngestPipeline",
    "IngestSummary",
]
