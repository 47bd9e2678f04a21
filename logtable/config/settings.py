# Configuration management

import re
import uuid
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings  # type: ignore

DB_FILE_SUFFIX = "-logtable.db"

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    # Storage
    storage_path: Optional[str] = None  # None = logs_dir/<uuid>-logtable.db
    logs_dir: str = "logs"
    table_name: str = "logs"
    busy_timeout_ms: int = 5000

    # Batching
    batch_size: int = 500
    flush_interval_ms: int = 1000
    buffer_size: int = 10000  # Lines held between reader and writer

    # Write retries
    batch_retries: int = 1
    retry_wait_seconds: float = 0.1

    # Schema
    max_columns: int = 1900  # SQLite hard limit is 2000 per table
    capture_unparsable: bool = False

    # Observability
    log_level: str = "INFO"
    log_json: bool = True
    metrics_port: Optional[int] = None

    class Config:
        env_file = ".env"
        env_prefix = "LOGTABLE_"
        case_sensitive = False

    @field_validator("batch_size", "flush_interval_ms", "buffer_size", "max_columns")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("batch_retries", "busy_timeout_ms")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator("retry_wait_seconds")
    @classmethod
    def _non_negative_wait(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator("table_name")
    @classmethod
    def _identifier(cls, value: str) -> str:
        if not _TABLE_NAME_RE.match(value):
            raise ValueError(
                "must start with a letter or underscore and contain only "
                "letters, digits and underscores")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"unknown log level {value!r}")
        return level

    @model_validator(mode="after")
    def _default_storage_path(self) -> "Settings":
        if not self.storage_path:
            self.storage_path = str(
                Path(self.logs_dir) / f"{uuid.uuid4()}{DB_FILE_SUFFIX}")
        return self

    @property
    def flush_interval_seconds(self) -> float:
        return self.flush_interval_ms / 1000.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
