# Test configuration

import pytest
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from logtable.catalog.database import create_reader_engine, create_writer_engine
from logtable.catalog.wide_table import WideTable
from logtable.ingest.registry import SchemaRegistry
from logtable.ingest.writer import IngestionWriter

TABLE_NAME = "logs"


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test-logtable.db"


@pytest.fixture
def test_settings(tmp_path, db_path):
    """Settings pointing at a throwaway database"""
    from logtable.config.settings import Settings
    return Settings(
        storage_path=str(db_path),
        logs_dir=str(tmp_path / "logs"),
        table_name=TABLE_NAME,
        batch_size=100,
        flush_interval_ms=50,
        retry_wait_seconds=0,
        log_json=False,
    )


@pytest.fixture
def engine(db_path):
    engine = create_writer_engine(db_path)
    yield engine
    engine.dispose()


@pytest.fixture
def wide_table(engine):
    table = WideTable(engine, TABLE_NAME)
    table.prepare()
    return table


@pytest.fixture
def reader_engine(wide_table, db_path):
    """Separate engine standing in for an external SQL client"""
    engine = create_reader_engine(db_path)
    yield engine
    engine.dispose()


@pytest.fixture
def registry(engine, wide_table):
    registry = SchemaRegistry(wide_table)
    with engine.connect() as conn:
        registry.rehydrate(conn)
    return registry


@pytest.fixture
def writer(engine, wide_table, registry):
    return IngestionWriter(
        engine=engine,
        wide_table=wide_table,
        registry=registry,
        batch_size=100,
        flush_interval_seconds=60,
        retry_wait_seconds=0,
    )
