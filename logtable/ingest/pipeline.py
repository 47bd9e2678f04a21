"""
Ingestion pipeline assembly.

Wires the storage engine, wide table, schema registry, writer and stream
coordinator together from settings, and fails fast when storage is not
usable so no line is consumed that cannot be stored.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from logtable.catalog.database import create_writer_engine
from logtable.catalog.wide_table import WideTable
from logtable.common.errors import StorageUnavailableError
from logtable.config.settings import Settings
from logtable.ingest.coordinator import StreamCoordinator
from logtable.ingest.registry import SchemaRegistry
from logtable.ingest.writer import IngestionWriter

logger = logging.getLogger(__name__)


@dataclass
class IngestSummary:
    """Outcome of one ingestion run."""
    storage_path: str
    table_name: str
    lines_processed: int = 0
    blank_lines: int = 0
    records_ingested: int = 0
    decode_errors: int = 0
    rows_committed: int = 0
    rows_dropped: int = 0
    batches_committed: int = 0
    batches_isolated: int = 0
    schema_fallbacks: int = 0
    type_coercions: int = 0
    columns: int = 0
    deferred_paths: int = 0
    source_error: Optional[str] = None
    decode_error_samples: List[Tuple[int, str]] = field(default_factory=list)
    dropped_row_samples: List[Tuple[Optional[int], str]] = field(default_factory=list)


class IngestPipeline:
    """
    One ingestion run against one database file.

    Usage:
        with IngestPipeline(settings) as pipeline:
            summary = pipeline.run(sys.stdin)
    """

    def __init__(self, settings: Settings):
        """
        Open storage and rehydrate the schema.

        Args:
            settings: Validated settings

        Raises:
            StorageUnavailableError: If the database cannot be opened or written
        """
        self.settings = settings
        self.engine = create_writer_engine(settings.storage_path, settings.busy_timeout_ms)
        try:
            self.wide_table = WideTable(self.engine, settings.table_name)
            self.wide_table.prepare()

            self.registry = SchemaRegistry(self.wide_table, max_columns=settings.max_columns)
            with self.engine.connect() as conn:
                self.registry.rehydrate(conn)
        except SQLAlchemyError as e:
            self.engine.dispose()
            raise StorageUnavailableError(f"Cannot read schema: {e}") from e
        except StorageUnavailableError:
            self.engine.dispose()
            raise

        self.writer = IngestionWriter(
            engine=self.engine,
            wide_table=self.wide_table,
            registry=self.registry,
            batch_size=settings.batch_size,
            flush_interval_seconds=settings.flush_interval_seconds,
            batch_retries=settings.batch_retries,
            retry_wait_seconds=settings.retry_wait_seconds,
        )
        self.coordinator = StreamCoordinator(
            writer=self.writer,
            buffer_size=settings.buffer_size,
            capture_unparsable=settings.capture_unparsable,
        )
        logger.info(
            f"Ingesting into {settings.storage_path}",
            extra={"extra_fields": {
                "table": settings.table_name,
                "columns": len(self.registry),
                "batch_size": settings.batch_size,
                "flush_interval_ms": settings.flush_interval_ms,
            }},
        )

    def run(self, lines: Iterable[str]) -> IngestSummary:
        """
        Ingest a line source to completion.

        Args:
            lines: Line source

        Returns:
            IngestSummary for the run
        """
        stats = self.coordinator.run(lines)
        writer_stats = self.writer.stats

        return IngestSummary(
            storage_path=str(self.settings.storage_path),
            table_name=self.settings.table_name,
            lines_processed=stats.lines_processed,
            blank_lines=stats.blank_lines,
            records_ingested=stats.records_ingested,
            decode_errors=stats.decode_errors,
            rows_committed=writer_stats.rows_committed,
            rows_dropped=writer_stats.rows_dropped,
            batches_committed=writer_stats.batches_committed,
            batches_isolated=writer_stats.batches_isolated,
            schema_fallbacks=writer_stats.schema_fallbacks,
            type_coercions=writer_stats.type_coercions,
            columns=len(self.registry),
            deferred_paths=len(self.registry.deferred_paths),
            source_error=stats.source_error,
            decode_error_samples=list(stats.decode_error_samples),
            dropped_row_samples=[
                (failure.line_number, failure.error)
                for failure in writer_stats.failure_samples
            ],
        )

    def stop(self) -> None:
        """Request a graceful stop (flushes the pending batch)."""
        self.coordinator.stop()

    def close(self) -> None:
        self.engine.dispose()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
