"""
Ingestion writer.

Buffers one row per record and commits rows in batches. A batch is one
transaction holding its rows and any columns they introduced, so a
concurrent reader sees all of it or none of it.

Failure policy: the whole batch is retried (once by default), then each
row is committed on its own so one bad row cannot sink its neighbours.
A row that still fails is reported and dropped.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from sqlalchemy.engine import Engine

from logtable.catalog.wide_table import EXTRA_COLUMN, LINE_COLUMN, RAW_COLUMN, WideTable
from logtable.common.errors import SchemaError, WriteError
from logtable.common.logging_config import PerformanceTracker
from logtable.common.metrics import (
    batch_size_rows,
    rows_dropped_total,
    rows_written_total,
    schema_fallbacks_total,
    track_batch_commit,
    type_coercions_total,
)
from logtable.common.resilience import WRITE_ERRORS, batch_retrying
from logtable.ingest.flattener import FlatField
from logtable.ingest.registry import SchemaRegistry
from logtable.ingest.type_policy import Reconciliation, reconcile, to_storage, to_text

logger = logging.getLogger(__name__)

_BASE_COLUMNS = (LINE_COLUMN, EXTRA_COLUMN, RAW_COLUMN)
SLOW_COMMIT_SECONDS = 1.0


@dataclass
class PendingRow:
    """A record waiting for the next flush."""
    fields: List[FlatField]
    line_number: Optional[int] = None
    raw: Optional[str] = None


@dataclass
class _AttemptTally:
    """Counts from one commit attempt, kept only if it commits."""
    schema_fallbacks: int = 0
    type_coercions: int = 0


@dataclass
class RowFailure:
    """A row dropped after exhausting retries."""
    line_number: Optional[int]
    error: str


@dataclass
class BatchResult:
    """Outcome of one flush."""
    committed: int = 0
    dropped: int = 0
    isolated: bool = False
    failures: List[RowFailure] = field(default_factory=list)


@dataclass
class WriterStats:
    """Running totals for one writer."""
    rows_committed: int = 0
    rows_dropped: int = 0
    batches_committed: int = 0
    batches_isolated: int = 0
    schema_fallbacks: int = 0
    type_coercions: int = 0
    failure_samples: List[RowFailure] = field(default_factory=list)


class IngestionWriter:
    """
    Batches rows into transactions against the wide table.

    Not thread-safe: one writer is driven by one ingestion loop.
    """

    def __init__(
        self,
        engine: Engine,
        wide_table: WideTable,
        registry: SchemaRegistry,
        batch_size: int = 500,
        flush_interval_seconds: float = 1.0,
        batch_retries: int = 1,
        retry_wait_seconds: float = 0.1,
        max_failure_samples: int = 20,
    ):
        """
        Initialize writer.

        Args:
            engine: Writer engine
            wide_table: Target table
            registry: Schema registry for the table
            batch_size: Rows per transaction
            flush_interval_seconds: Maximum age of the oldest pending row
            batch_retries: Whole-batch retries before isolating rows
            retry_wait_seconds: Pause between batch attempts
            max_failure_samples: Dropped rows kept for reporting
        """
        self.engine = engine
        self.wide_table = wide_table
        self.registry = registry
        self.batch_size = batch_size
        self.flush_interval_seconds = flush_interval_seconds
        self.batch_retries = batch_retries
        self.retry_wait_seconds = retry_wait_seconds
        self.max_failure_samples = max_failure_samples
        self.stats = WriterStats()

        self._pending: List[PendingRow] = []
        self._deadline: Optional[float] = None
        self._fallback_paths: Set[str] = set()

    # ------------------------------------------------------------------
    # Buffering

    def write(
        self,
        fields: Sequence[FlatField],
        line_number: Optional[int] = None,
        raw: Optional[str] = None,
    ) -> Optional[BatchResult]:
        """
        Queue one record's fields as a row.

        Args:
            fields: Flattened fields of the record
            line_number: Source line number, stored with the row
            raw: Unparsable line text, stored instead of fields

        Returns:
            BatchResult if the batch filled up and was flushed, else None
        """
        if not self._pending:
            self._deadline = time.monotonic() + self.flush_interval_seconds
        self._pending.append(PendingRow(list(fields), line_number, raw))

        if len(self._pending) >= self.batch_size:
            return self.flush()
        return None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def seconds_until_due(self) -> Optional[float]:
        """Seconds until the pending batch must be flushed, None if empty."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def due(self) -> bool:
        remaining = self.seconds_until_due()
        return remaining is not None and remaining <= 0

    def flush_if_due(self) -> Optional[BatchResult]:
        if self.due():
            return self.flush()
        return None

    def close(self) -> BatchResult:
        """Flush whatever is pending."""
        return self.flush()

    # ------------------------------------------------------------------
    # Committing

    def flush(self) -> BatchResult:
        """
        Commit all pending rows.

        Returns:
            BatchResult for the rows that were pending
        """
        rows, self._pending = self._pending, []
        self._deadline = None
        if not rows:
            return BatchResult()

        batch_size_rows.observe(len(rows))
        try:
            for attempt in batch_retrying(self.batch_retries, self.retry_wait_seconds):
                with attempt:
                    self._commit(rows)
        except WriteError as e:
            logger.warning(
                f"Batch of {len(rows)} rows failed, committing rows one at a time",
                extra={"extra_fields": {
                    "first_line": rows[0].line_number,
                    "last_line": rows[-1].line_number,
                    "error": str(e),
                }},
            )
            return self._commit_isolated(rows)

        self.stats.rows_committed += len(rows)
        self.stats.batches_committed += 1
        rows_written_total.labels(mode="batch").inc(len(rows))
        return BatchResult(committed=len(rows))

    def _commit_isolated(self, rows: List[PendingRow]) -> BatchResult:
        result = BatchResult(isolated=True)
        self.stats.batches_isolated += 1

        for row in rows:
            try:
                self._commit([row])
            except WriteError as e:
                failure = RowFailure(line_number=row.line_number, error=str(e))
                result.dropped += 1
                result.failures.append(failure)
                self.stats.rows_dropped += 1
                if len(self.stats.failure_samples) < self.max_failure_samples:
                    self.stats.failure_samples.append(failure)
                rows_dropped_total.inc()
                logger.error(
                    "Dropping row that could not be written",
                    extra={"extra_fields": {
                        "line_number": row.line_number,
                        "error": failure.error,
                    }},
                )
            else:
                result.committed += 1
                self.stats.rows_committed += 1
                rows_written_total.labels(mode="isolated").inc()

        return result

    @track_batch_commit
    def _commit(self, rows: List[PendingRow]) -> None:
        """
        Write rows and their new columns in one transaction.

        Fallback and coercion counts are recorded only once the transaction
        commits, so retried attempts are not counted twice.

        Raises:
            WriteError: If the transaction failed and was rolled back
        """
        tally = _AttemptTally()
        try:
            with PerformanceTracker("batch_commit", logger, slow_seconds=SLOW_COMMIT_SECONDS,
                                    rows=len(rows)):
                with self.engine.begin() as conn:
                    values = [self._row_values(conn, row, tally) for row in rows]
                    names = list(_BASE_COLUMNS)
                    seen = set(names)
                    for row_values in values:
                        for name in row_values:
                            if name not in seen:
                                seen.add(name)
                                names.append(name)
                    normalized = [
                        {name: row_values.get(name) for name in names}
                        for row_values in values
                    ]
                    self.wide_table.insert_rows(conn, names, normalized)
        except WRITE_ERRORS as e:
            self.registry.rollback()
            raise WriteError(f"{e.__class__.__name__}: {e}") from e
        except Exception:
            self.registry.rollback()
            raise
        self.registry.commit()

        self.stats.schema_fallbacks += tally.schema_fallbacks
        self.stats.type_coercions += tally.type_coercions
        schema_fallbacks_total.inc(tally.schema_fallbacks)
        type_coercions_total.inc(tally.type_coercions)

    def _row_values(self, conn, row: PendingRow, tally: _AttemptTally) -> Dict[str, Any]:
        """Resolve columns for one row and convert its values for storage."""
        values: Dict[str, Any] = {LINE_COLUMN: row.line_number, RAW_COLUMN: row.raw}
        overflow: Dict[str, Any] = {}

        for flat in row.fields:
            path = flat.column_name
            if flat.is_null:
                # Unknown paths are deferred; known ones stay NULL
                self.registry.ensure(conn, path, flat.json_type)
                continue

            try:
                handle = self.registry.ensure(conn, path, flat.json_type)
            except SchemaError as e:
                overflow[path] = flat.value
                tally.schema_fallbacks += 1
                self._log_fallback(path, row.line_number, e)
                continue

            if reconcile(handle.json_type, flat.json_type) == Reconciliation.STRINGIFY:
                values[handle.name] = to_text(flat.value)
                tally.type_coercions += 1
                logger.debug(
                    "Type mismatch, storing text",
                    extra={"extra_fields": {
                        "line_number": row.line_number,
                        "column": handle.name,
                        "declared": handle.json_type.value,
                        "observed": flat.json_type.value,
                    }},
                )
            else:
                values[handle.name] = to_storage(flat.value, flat.json_type)

        values[EXTRA_COLUMN] = json.dumps(overflow) if overflow else None
        return values

    def _log_fallback(self, path: str, line_number: Optional[int], error: SchemaError) -> None:
        level = logging.DEBUG if path in self._fallback_paths else logging.WARNING
        self._fallback_paths.add(path)
        logger.log(
            level,
            "Storing value in overflow column",
            extra={"extra_fields": {
                "line_number": line_number,
                "path": path,
                "error": str(error),
            }},
        )
