"""
Prometheus metrics for monitoring ingestion.

Metrics live in a private registry and cover:
- Lines read and decode failures
- Rows committed and dropped
- Schema growth and fallbacks
- Batch commit latency and retries
- Line buffer depth (backpressure)
"""

import time
from functools import wraps
from typing import Callable, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

# Private registry so tests and embedders do not collide with the default one
REGISTRY = CollectorRegistry()

# Counters

lines_read_total = Counter(
    "logtable_lines_read_total",
    "Total number of input lines read",
    registry=REGISTRY,
)

decode_errors_total = Counter(
    "logtable_decode_errors_total",
    "Total number of input lines that were not valid JSON",
    registry=REGISTRY,
)

rows_written_total = Counter(
    "logtable_rows_written_total",
    "Total number of rows committed",
    ["mode"],  # batch/isolated
    registry=REGISTRY,
)

rows_dropped_total = Counter(
    "logtable_rows_dropped_total",
    "Total number of rows dropped after exhausting retries",
    registry=REGISTRY,
)

columns_created_total = Counter(
    "logtable_columns_created_total",
    "Total number of columns added to the wide table",
    ["column_type"],
    registry=REGISTRY,
)

schema_fallbacks_total = Counter(
    "logtable_schema_fallbacks_total",
    "Total number of values stored in the overflow column",
    registry=REGISTRY,
)

type_coercions_total = Counter(
    "logtable_type_coercions_total",
    "Total number of values stored as text because of a type mismatch",
    registry=REGISTRY,
)

batch_retries_total = Counter(
    "logtable_batch_retries_total",
    "Total number of batch commits retried as a whole",
    registry=REGISTRY,
)

# Histograms

batch_commit_seconds = Histogram(
    "logtable_batch_commit_seconds",
    "Time to commit one batch",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
    registry=REGISTRY,
)

batch_size_rows = Histogram(
    "logtable_batch_size_rows",
    "Number of rows per flushed batch",
    buckets=(1, 10, 50, 100, 500, 1000, 5000),
    registry=REGISTRY,
)

# Gauges

buffer_depth = Gauge(
    "logtable_buffer_depth",
    "Number of lines waiting between reader and writer",
    registry=REGISTRY,
)

known_columns = Gauge(
    "logtable_known_columns",
    "Number of data columns in the wide table",
    registry=REGISTRY,
)


# Decorators

def track_batch_commit(func: Callable):
    """Decorator to time a batch commit."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.time()
        try:
            return func(*args, **kwargs)
        finally:
            batch_commit_seconds.observe(time.time() - start_time)

    return wrapper


def get_metrics() -> bytes:
    """
    Render the registry in the Prometheus text exposition format.

    Returns:
        Metrics as bytes
    """
    return generate_latest(REGISTRY)


def start_metrics_server(port: Optional[int]) -> bool:
    """
    Serve metrics over HTTP in a background thread.

    Args:
        port: Port to listen on; nothing is started when None

    Returns:
        True if a server was started
    """
    if port is None:
        return False
    start_http_server(port, registry=REGISTRY)
    return True
