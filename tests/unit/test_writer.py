"""
Unit tests for the batching ingestion writer.
"""

import json
import time

from logtable.catalog.queries import count_rows, fetch_rows
from logtable.catalog.wide_table import EXTRA_COLUMN, LINE_COLUMN, RAW_COLUMN
from logtable.common.metrics import REGISTRY
from logtable.ingest.flattener import flatten
from logtable.ingest.registry import SchemaRegistry
from logtable.ingest.writer import IngestionWriter

TABLE = "logs"


def _write(writer, record, line_number=None):
    return writer.write(list(flatten(record)), line_number=line_number)


class TestBatching:
    """Tests for flush triggers."""

    def test_flush_on_batch_size(self, writer, reader_engine):
        writer.batch_size = 3

        assert _write(writer, {"a": 1}) is None
        assert _write(writer, {"a": 2}) is None
        assert writer.pending_count == 2
        assert count_rows(reader_engine, TABLE) == 0

        result = _write(writer, {"a": 3})

        assert result.committed == 3
        assert not result.isolated
        assert writer.pending_count == 0
        assert count_rows(reader_engine, TABLE) == 3

    def test_flush_on_deadline(self, writer):
        writer.flush_interval_seconds = 0.05

        assert writer.seconds_until_due() is None
        _write(writer, {"a": 1})
        assert not writer.due()
        assert writer.flush_if_due() is None

        time.sleep(0.1)

        assert writer.due()
        result = writer.flush_if_due()
        assert result.committed == 1
        assert writer.seconds_until_due() is None

    def test_close_flushes_pending(self, writer, reader_engine):
        _write(writer, {"a": 1})

        result = writer.close()

        assert result.committed == 1
        assert count_rows(reader_engine, TABLE) == 1

    def test_flush_with_nothing_pending(self, writer):
        result = writer.flush()

        assert result.committed == 0
        assert writer.stats.batches_committed == 0

    def test_stats_accumulate(self, writer):
        writer.batch_size = 2
        for n in range(5):
            _write(writer, {"n": n})
        writer.close()

        assert writer.stats.rows_committed == 5
        assert writer.stats.batches_committed == 3

    def test_rows_written_metric(self, writer):
        before = REGISTRY.get_sample_value(
            "logtable_rows_written_total", {"mode": "batch"}) or 0.0

        _write(writer, {"a": 1})
        _write(writer, {"a": 2})
        writer.flush()

        after = REGISTRY.get_sample_value("logtable_rows_written_total", {"mode": "batch"})
        assert after - before == 2


class TestRowValues:
    """Tests for what lands in each row."""

    def test_sparse_rows(self, writer, reader_engine):
        _write(writer, {"a": {"b": 1}}, line_number=1)
        _write(writer, {"a": {"c": "x"}}, line_number=2)
        writer.flush()

        rows = fetch_rows(reader_engine, TABLE, columns=[LINE_COLUMN, "a.b", "a.c"],
                          include_empty=True)
        assert rows == [
            {LINE_COLUMN: 1, "a.b": 1, "a.c": None},
            {LINE_COLUMN: 2, "a.b": None, "a.c": "x"},
        ]

    def test_null_only_path_creates_no_column(self, writer, registry, reader_engine):
        _write(writer, {"a": 1, "maybe": None})
        writer.flush()

        assert registry.column_names == {"a"}
        assert "maybe" in registry.deferred_paths
        assert count_rows(reader_engine, TABLE) == 1

    def test_empty_record_still_stored(self, writer, reader_engine):
        _write(writer, {"tags": []}, line_number=1)
        writer.flush()

        rows = fetch_rows(reader_engine, TABLE, columns=[LINE_COLUMN])
        assert rows == [{LINE_COLUMN: 1}]

    def test_booleans_stored_as_integers(self, writer, reader_engine):
        _write(writer, {"ok": True})
        _write(writer, {"ok": False})
        writer.flush()

        assert fetch_rows(reader_engine, TABLE, columns=["ok"]) == [{"ok": 1}, {"ok": 0}]

    def test_type_mismatch_stored_as_text(self, writer, reader_engine):
        _write(writer, {"a": 1})
        _write(writer, {"a": "x"})
        _write(writer, {"a": True})
        writer.flush()

        assert fetch_rows(reader_engine, TABLE, columns=["a"]) == [
            {"a": 1}, {"a": "x"}, {"a": "true"}]
        assert writer.stats.type_coercions == 2

    def test_int_column_accepts_float(self, writer, registry, reader_engine):
        _write(writer, {"a": 1})
        _write(writer, {"a": 2.5})
        writer.flush()

        assert fetch_rows(reader_engine, TABLE, columns=["a"]) == [{"a": 1}, {"a": 2.5}]
        assert registry.lookup("a").json_type.value == "float"
        assert writer.stats.type_coercions == 0

    def test_huge_integer_kept_exact_in_text_column(self, writer, reader_engine):
        _write(writer, {"big": "n/a"})
        _write(writer, {"big": 2 ** 64})
        writer.flush()

        assert fetch_rows(reader_engine, TABLE, columns=["big"]) == [
            {"big": "n/a"}, {"big": "18446744073709551616"}]

    def test_raw_line_row(self, writer, reader_engine):
        writer.write([], line_number=7, raw='{"a":')
        writer.flush()

        rows = fetch_rows(reader_engine, TABLE, columns=[LINE_COLUMN, RAW_COLUMN])
        assert rows == [{LINE_COLUMN: 7, RAW_COLUMN: '{"a":'}]

    def test_schema_error_goes_to_overflow(self, engine, wide_table, reader_engine):
        registry = SchemaRegistry(wide_table, max_columns=1)
        writer = IngestionWriter(engine, wide_table, registry, retry_wait_seconds=0)

        _write(writer, {"a": 1, "b": 2, "c": {"d": "x"}})
        writer.flush()

        rows = fetch_rows(reader_engine, TABLE, columns=["a", EXTRA_COLUMN])
        assert rows[0]["a"] == 1
        assert json.loads(rows[0][EXTRA_COLUMN]) == {"b": 2, "c.d": "x"}
        assert writer.stats.schema_fallbacks == 2
        assert writer.stats.rows_dropped == 0

    def test_unencodable_key_goes_to_overflow(self, writer, registry, reader_engine):
        _write(writer, {"a\ud800": 1, "c": 2}, line_number=1)

        result = writer.flush()

        assert not result.isolated
        assert result.committed == 1
        assert result.dropped == 0
        assert writer.stats.schema_fallbacks == 1
        assert [handle.name for handle in registry.columns] == ["c"]

        rows = fetch_rows(reader_engine, TABLE, columns=["c", EXTRA_COLUMN])
        assert rows[0]["c"] == 2
        assert json.loads(rows[0][EXTRA_COLUMN]) == {"a\ud800": 1}


class TestFailureIsolation:
    """Tests for retry and per-row fallback."""

    def test_bad_row_dropped_alone(self, writer, reader_engine):
        _write(writer, {"msg": "ok"}, line_number=1)
        _write(writer, {"msg": "\ud800"}, line_number=2)
        _write(writer, {"msg": "fine", "extra": 1}, line_number=3)

        result = writer.flush()

        assert result.isolated
        assert result.committed == 2
        assert result.dropped == 1
        assert result.failures[0].line_number == 2
        assert writer.stats.rows_dropped == 1
        assert writer.stats.failure_samples[0].line_number == 2

        rows = fetch_rows(reader_engine, TABLE, columns=[LINE_COLUMN, "msg", "extra"])
        assert rows == [
            {LINE_COLUMN: 1, "msg": "ok"},
            {LINE_COLUMN: 3, "msg": "fine", "extra": 1},
        ]

    def test_whole_batch_retried_before_isolation(self, writer, monkeypatch):
        attempts = []
        original = writer.wide_table.insert_rows

        def flaky_insert(conn, names, rows):
            attempts.append(len(rows))
            if len(attempts) == 1:
                raise ValueError("transient")
            return original(conn, names, rows)

        monkeypatch.setattr(writer.wide_table, "insert_rows", flaky_insert)
        _write(writer, {"a": 1})
        _write(writer, {"a": 2})

        result = writer.flush()

        assert attempts == [2, 2]
        assert not result.isolated
        assert result.committed == 2

    def test_failed_batch_discards_new_columns(self, writer, registry, monkeypatch):
        original = writer.wide_table.insert_rows

        def insert_rejecting_two_rows(conn, names, rows):
            if len(rows) > 1:
                raise ValueError("batch rejected")
            return original(conn, names, rows)

        monkeypatch.setattr(writer.wide_table, "insert_rows", insert_rejecting_two_rows)
        _write(writer, {"a": 1})
        _write(writer, {"b": 2})

        result = writer.flush()

        # Columns come back only through the committed single-row retries
        assert result.isolated
        assert result.committed == 2
        assert [handle.name for handle in registry.columns] == ["a", "b"]

    def test_retried_batch_counts_coercions_once(self, writer, reader_engine):
        retries_before = REGISTRY.get_sample_value("logtable_batch_retries_total") or 0.0
        coercions_before = REGISTRY.get_sample_value("logtable_type_coercions_total") or 0.0

        _write(writer, {"n": 1}, line_number=1)
        _write(writer, {"n": "text"}, line_number=2)
        _write(writer, {"msg": "\ud800"}, line_number=3)

        result = writer.flush()

        assert result.isolated
        assert result.committed == 2
        assert result.dropped == 1
        assert writer.stats.type_coercions == 1
        assert REGISTRY.get_sample_value("logtable_type_coercions_total") - coercions_before == 1
        # One whole-batch retry; isolated rows are not batch retries
        assert REGISTRY.get_sample_value("logtable_batch_retries_total") - retries_before == 1

        rows = fetch_rows(reader_engine, TABLE, columns=[LINE_COLUMN, "n"])
        assert rows == [{LINE_COLUMN: 1, "n": 1}, {LINE_COLUMN: 2, "n": "text"}]
