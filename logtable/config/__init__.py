"""Configuration package."""

from logtable.config.settings import DB_FILE_SUFFIX, Settings, get_settings

__all__ = ["DB_FILE_SUFFIX", "Settings", "get_settings"]
