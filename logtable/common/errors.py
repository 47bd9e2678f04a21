"""
Error taxonomy for the ingestion pipeline.

Transient errors (decode, schema, write) are recovered inside the
pipeline and reported through logs and counters. Fatal errors stop the
process before any line is ingested.
"""

from typing import Optional


class LogTableError(Exception):
    """Base class for all logtable errors."""
    pass


class DecodeError(LogTableError):
    """Raised when an input line is not valid JSON."""

    def __init__(self, message: str, line_number: Optional[int] = None):
        super().__init__(message)
        self.line_number = line_number


class SchemaError(LogTableError):
    """Raised when a column cannot be created for a path."""

    def __init__(self, message: str, column: Optional[str] = None):
        super().__init__(message)
        self.column = column


class WriteError(LogTableError):
    """Raised when a row or batch cannot be committed."""
    pass


class FatalError(LogTableError):
    """Raised when ingestion must not start."""
    pass


class ConfigurationError(FatalError):
    """Raised for invalid configuration."""
    pass


class StorageUnavailableError(FatalError):
    """Raised when the database file cannot be opened or written."""
    pass
