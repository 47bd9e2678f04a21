"""
Unit tests for retry policies.
"""

import pytest
from sqlalchemy.exc import OperationalError

from logtable.common.errors import WriteError
from logtable.common.metrics import REGISTRY
from logtable.common.resilience import batch_retrying, retry_database_operation


def _run(retrying, func):
    for attempt in retrying:
        with attempt:
            return func()


class TestBatchRetrying:
    """Tests for batch commit retries."""

    def test_retries_then_succeeds(self):
        calls = []

        def commit():
            calls.append(1)
            if len(calls) == 1:
                raise WriteError("locked")
            return "ok"

        assert _run(batch_retrying(1, 0), commit) == "ok"
        assert len(calls) == 2

    def test_reraises_after_last_attempt(self):
        calls = []

        def commit():
            calls.append(1)
            raise WriteError("still failing")

        with pytest.raises(WriteError):
            _run(batch_retrying(2, 0), commit)
        assert len(calls) == 3

    def test_retry_metric_counts_only_retries(self):
        before = REGISTRY.get_sample_value("logtable_batch_retries_total") or 0.0

        def commit():
            raise WriteError("still failing")

        with pytest.raises(WriteError):
            _run(batch_retrying(2, 0), commit)

        # Three attempts, two retries
        assert REGISTRY.get_sample_value("logtable_batch_retries_total") - before == 2

    def test_zero_retries(self):
        calls = []

        def commit():
            calls.append(1)
            raise WriteError("failed")

        with pytest.raises(WriteError):
            _run(batch_retrying(0, 0), commit)
        assert len(calls) == 1

    def test_other_errors_not_retried(self):
        calls = []

        def commit():
            calls.append(1)
            raise KeyError("bug")

        with pytest.raises(KeyError):
            _run(batch_retrying(3, 0), commit)
        assert len(calls) == 1


class TestRetryDatabaseOperation:
    """Tests for the startup retry decorator."""

    def test_operational_error_retried(self):
        calls = []

        @retry_database_operation
        def prepare():
            calls.append(1)
            if len(calls) < 2:
                raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))
            return "ready"

        assert prepare() == "ready"
        assert len(calls) == 2
