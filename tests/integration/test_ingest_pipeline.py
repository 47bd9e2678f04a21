"""
Integration tests for the ingestion pipeline against real SQLite files.
"""

import json
import threading

import pytest

from logtable.catalog.database import create_reader_engine
from logtable.catalog.queries import count_rows, fetch_rows, list_columns
from logtable.catalog.wide_table import LINE_COLUMN
from logtable.common.errors import StorageUnavailableError
from logtable.ingest.flattener import JsonType, flatten
from logtable.ingest.pipeline import IngestPipeline

TABLE = "logs"


def _ingest(settings, lines):
    with IngestPipeline(settings) as pipeline:
        summary = pipeline.run(lines)
        registry = pipeline.registry
    return summary, registry


@pytest.fixture
def read_engine(db_path):
    """Reader opened after the pipeline created the file."""
    engines = []

    def _open():
        engine = create_reader_engine(db_path)
        engines.append(engine)
        return engine

    yield _open
    for engine in engines:
        engine.dispose()


class TestScenarios:
    """End-to-end ingestion scenarios."""

    def test_nested_paths_and_widening(self, test_settings, read_engine):
        lines = ['{"a":{"b":1}}', '{"a":{"b":2.5}}', '{"a":{"c":"x"}}']

        summary, registry = _ingest(test_settings, lines)

        assert summary.rows_committed == 3
        assert registry.lookup("a.b").json_type == JsonType.FLOAT

        engine = read_engine()
        columns = list_columns(engine, TABLE)
        assert [c.name for c in columns] == ["a.b", "a.c"]
        assert [c.path for c in columns] == [("a", "b"), ("a", "c")]
        assert fetch_rows(engine, TABLE, columns=["a.b", "a.c"], include_empty=True) == [
            {"a.b": 1, "a.c": None},
            {"a.b": 2.5, "a.c": None},
            {"a.b": None, "a.c": "x"},
        ]

    def test_malformed_line_between_valid_lines(self, test_settings, read_engine):
        summary, _ = _ingest(test_settings, ['{"a":1}\n', '{"a":\n', '{"a":2}\n'])

        assert summary.decode_errors == 1
        assert summary.decode_error_samples[0][0] == 2
        assert summary.rows_committed == 2
        assert count_rows(read_engine(), TABLE) == 2

    def test_empty_array_creates_row_without_column(self, test_settings, read_engine):
        summary, _ = _ingest(test_settings, ['{"tags":[]}'])

        engine = read_engine()
        assert summary.rows_committed == 1
        assert count_rows(engine, TABLE) == 1
        assert list_columns(engine, TABLE) == []

    def test_bad_row_does_not_sink_batch(self, test_settings, read_engine):
        lines = [
            '{"msg": "one"}',
            '{"msg": "\\ud800"}',
            '{"msg": "three"}',
        ]

        summary, _ = _ingest(test_settings, lines)

        assert summary.rows_committed == 2
        assert summary.rows_dropped == 1
        assert summary.batches_isolated == 1
        assert summary.dropped_row_samples[0][0] == 2
        rows = fetch_rows(read_engine(), TABLE, columns=[LINE_COLUMN, "msg"])
        assert rows == [{LINE_COLUMN: 1, "msg": "one"}, {LINE_COLUMN: 3, "msg": "three"}]

    def test_rows_reconstruct_records(self, test_settings, read_engine):
        records = [
            {"user": {"id": 1, "name": "ada"}, "tags": ["x", "y"]},
            {"user": {"id": 2}, "ok": True},
            {"level": "info", "latency": 0.25},
        ]

        _ingest(test_settings, [json.dumps(r) for r in records])

        engine = read_engine()
        names = [c.name for c in list_columns(engine, TABLE)]
        rows = fetch_rows(engine, TABLE, columns=names)
        # Stored leaves match the flattened records (booleans come back as 0/1)
        for record, row in zip(records, rows):
            expected = {f.column_name: f.value for f in flatten(record)}
            assert row == {k: int(v) if isinstance(v, bool) else v for k, v in expected.items()}


class TestRestart:
    """A second run against the same file appends with the same schema."""

    def test_rehydrates_and_appends(self, test_settings, read_engine):
        _ingest(test_settings, ['{"a": 1}', '{"b": "x"}'])

        summary, registry = _ingest(test_settings, ['{"a": 2, "c": true}'])

        assert [h.name for h in registry.columns] == ["a", "b", "c"]
        assert registry.lookup("a").json_type == JsonType.INTEGER
        assert summary.columns == 3

        engine = read_engine()
        assert count_rows(engine, TABLE) == 3
        assert fetch_rows(engine, TABLE, columns=["a"]) == [{"a": 1}, {}, {"a": 2}]

    def test_case_clash_survives_restart(self, test_settings, read_engine):
        _ingest(test_settings, ['{"level": 1}', '{"Level": "warn"}'])

        _, registry = _ingest(test_settings, ['{"Level": "error"}'])

        assert [h.name for h in registry.columns] == ["level", "Level\\~2"]
        rows = fetch_rows(read_engine(), TABLE, columns=["Level\\~2"])
        assert rows == [{}, {"Level\\~2": "warn"}, {"Level\\~2": "error"}]

    def test_column_set_never_shrinks(self, test_settings, read_engine):
        seen = []
        for batch in (['{"a": 1}'], ['{"b": 1}'], ['{"a": 2}'], ['{"a": null}']):
            _ingest(test_settings, batch)
            seen.append([c.name for c in list_columns(read_engine(), TABLE)])

        for before, after in zip(seen, seen[1:]):
            assert after[:len(before)] == before


class TestStorageFailures:
    """Storage problems are fatal before any line is consumed."""

    def test_unwritable_directory(self, tmp_path, test_settings):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        settings = test_settings.model_copy(
            update={"storage_path": str(blocker / "db.sqlite")})

        with pytest.raises(StorageUnavailableError):
            IngestPipeline(settings)

    def test_not_a_database(self, test_settings, db_path):
        db_path.write_bytes(b"x" * 4096)

        with pytest.raises(StorageUnavailableError):
            IngestPipeline(test_settings)


class TestConcurrentReaders:
    """Readers observe whole batches only."""

    def test_reader_sees_whole_batches(self, writer, reader_engine):
        batch_size = 25
        writer.batch_size = batch_size
        observed = []
        done = threading.Event()

        def read_loop():
            while not done.is_set():
                observed.append(count_rows(reader_engine, TABLE))

        reader = threading.Thread(target=read_loop)
        reader.start()
        try:
            for batch in range(8):
                for n in range(batch_size):
                    # Each batch also introduces a new column
                    writer.write(list(flatten({f"k{batch}": n, "n": n})))
        finally:
            done.set()
            reader.join(timeout=5)

        assert observed
        assert all(count % batch_size == 0 for count in observed)
        assert count_rows(reader_engine, TABLE) == 8 * batch_size

    def test_new_column_visible_with_its_rows(self, writer, reader_engine):
        writer.batch_size = 10
        snapshots = []
        done = threading.Event()

        def read_loop():
            while not done.is_set():
                with reader_engine.connect() as conn:
                    rows = conn.exec_driver_sql('SELECT COUNT(*) FROM "logs"').scalar_one()
                    names = [c.name for c in writer.wide_table.data_columns(conn)]
                snapshots.append((len(names), rows))

        reader = threading.Thread(target=read_loop)
        reader.start()
        try:
            for batch in range(5):
                for n in range(10):
                    writer.write(list(flatten({f"k{batch}": n})))
        finally:
            done.set()
            reader.join(timeout=5)

        # One column per committed batch, read in the same snapshot
        assert all(columns * 10 == rows for columns, rows in snapshots)
