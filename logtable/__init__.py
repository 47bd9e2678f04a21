"""logtable: stream line-delimited JSON into an evolving SQLite wide table."""

__version__ = "0.1.0"
