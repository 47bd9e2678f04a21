"""
Resilience utilities: retry strategies for storage operations.

Batch commits are retried according to configuration before the writer
falls back to committing rows one at a time.
"""

import logging
from functools import wraps
from typing import Callable

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from tenacity import (
    Retrying,
    after_log,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from logtable.common.errors import WriteError
from logtable.common.metrics import batch_retries_total

logger = logging.getLogger(__name__)

# Errors a single bad row can raise from the driver. sqlite3 raises the
# non-DBAPI ones (lone surrogates, out-of-range integers) while binding.
WRITE_ERRORS = (SQLAlchemyError, UnicodeError, OverflowError, ValueError)

_log_batch_retry = before_sleep_log(logger, logging.WARNING)


def _before_batch_retry(retry_state) -> None:
    batch_retries_total.inc()
    _log_batch_retry(retry_state)


def batch_retrying(retries: int, wait_seconds: float) -> Retrying:
    """
    Build the retry controller for a batch commit.

    Args:
        retries: Retries after the first attempt
        wait_seconds: Pause between attempts

    Returns:
        tenacity Retrying instance that re-raises the last error
    """
    return Retrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_fixed(wait_seconds),
        retry=retry_if_exception_type(WriteError),
        before_sleep=_before_batch_retry,
        reraise=True,
    )


def retry_database_operation(func: Callable) -> Callable:
    """
    Retry decorator for opening and preparing the database.

    Retries 3 times with exponential backoff while another process holds
    the write lock.
    """
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        after=after_log(logger, logging.DEBUG),
        reraise=True,
    )
    @wraps(func)
    def wrapper(*args, **kwargs):
        return func(*args, **kwargs)
    return wrapper
