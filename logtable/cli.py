"""
Command line interface.

    logtable ingest [FILES...]   stream JSON lines (stdin by default) into SQLite
    logtable schema --db PATH    show the columns discovered so far
    logtable purge               delete default database files from the logs dir
"""

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from pydantic import ValidationError

from logtable.catalog.database import create_reader_engine
from logtable.catalog.queries import count_rows, list_columns
from logtable.common.errors import ConfigurationError, FatalError
from logtable.common.logging_config import set_run_id, setup_logging
from logtable.common.metrics import start_metrics_server
from logtable.config.settings import DB_FILE_SUFFIX, Settings, get_settings
from logtable.ingest.pipeline import IngestPipeline, IngestSummary

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="logtable",
        description="Stream line-delimited JSON into a queryable SQLite wide table.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Ingest JSON lines from stdin or files")
    ingest.add_argument("files", nargs="*", help="Files to read in order (default: stdin)")
    ingest.add_argument("-d", "--db", dest="storage_path", help="Database file path")
    ingest.add_argument("-t", "--table", dest="table_name", help="Table name")
    ingest.add_argument("--batch-size", type=int, help="Rows per transaction")
    ingest.add_argument("--flush-interval-ms", type=int,
                        help="Maximum delay before pending rows are committed")
    ingest.add_argument("--capture-unparsable", action="store_true", default=None,
                        help="Store lines that are not valid JSON in the #raw column")
    ingest.add_argument("--metrics-port", type=int, help="Serve Prometheus metrics on this port")
    _add_logging_args(ingest)

    schema = sub.add_parser("schema", help="Show the columns of a database")
    schema.add_argument("-d", "--db", dest="storage_path", required=True,
                        help="Database file path")
    schema.add_argument("-t", "--table", dest="table_name", help="Table name")
    _add_logging_args(schema)

    purge = sub.add_parser("purge", help=f"Delete *{DB_FILE_SUFFIX} files from the logs dir")
    purge.add_argument("--logs-dir", help="Directory holding default database files")
    _add_logging_args(purge)

    return parser


def _add_logging_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR or CRITICAL")
    parser.add_argument("--plain-logs", dest="log_json", action="store_false", default=None,
                        help="Human-readable logs instead of JSON")


_SETTING_ARGS = (
    "storage_path",
    "table_name",
    "batch_size",
    "flush_interval_ms",
    "capture_unparsable",
    "metrics_port",
    "logs_dir",
    "log_level",
    "log_json",
)


def load_settings(args: argparse.Namespace) -> Settings:
    """
    Build settings from environment, .env and command line flags.

    Raises:
        ConfigurationError: If any value is invalid
    """
    overrides: Dict[str, object] = {
        name: getattr(args, name)
        for name in _SETTING_ARGS
        if getattr(args, name, None) is not None
    }
    try:
        if not overrides:
            return get_settings()
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def iter_lines(files: Sequence[str]) -> Iterator[str]:
    """
    Yield lines from files in order, or from stdin when none are given.

    Invalid UTF-8 bytes are kept as lone surrogates so the line can be
    rejected when decoded.
    """
    if not files:
        sys.stdin.reconfigure(encoding="utf-8", errors="surrogateescape")
        yield from sys.stdin
        return

    for name in files:
        with open(name, "r", encoding="utf-8", errors="surrogateescape") as handle:
            yield from handle


def _install_signal_handlers(pipeline: IngestPipeline) -> Dict[int, object]:
    """Route SIGINT/SIGTERM to a graceful stop; returns the previous handlers."""
    def _handle(signum, frame):
        logger.info(f"Received signal {signum}, flushing and stopping")
        pipeline.stop()
        # A second signal terminates immediately
        signal.signal(signum, signal.SIG_DFL)

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.getsignal(signum)
        signal.signal(signum, _handle)
    return previous


def _print_summary(summary: IngestSummary) -> None:
    print(f"All data has been saved to {summary.storage_path} (table {summary.table_name})")
    print(f"  lines read:        {summary.lines_processed}")
    print(f"  rows committed:    {summary.rows_committed}")
    print(f"  columns:           {summary.columns}")
    print(f"  decode errors:     {summary.decode_errors}")
    print(f"  rows dropped:      {summary.rows_dropped}")
    if summary.schema_fallbacks:
        print(f"  overflow values:   {summary.schema_fallbacks}")
    if summary.source_error:
        print(f"  input stopped early: {summary.source_error}")
    for line_number, error in summary.decode_error_samples[:5]:
        print(f"    line {line_number}: {error}")
    for line_number, error in summary.dropped_row_samples[:5]:
        print(f"    dropped line {line_number}: {error}")


def cmd_ingest(args: argparse.Namespace, settings: Settings) -> int:
    for name in args.files:
        if not Path(name).is_file():
            raise ConfigurationError(f"Input file not found: {name}")

    with IngestPipeline(settings) as pipeline:
        print(f"All data is being streamed into SQLite DB: {settings.storage_path}", flush=True)
        start_metrics_server(settings.metrics_port)
        previous = _install_signal_handlers(pipeline)
        try:
            summary = pipeline.run(iter_lines(args.files))
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

    _print_summary(summary)
    return EXIT_OK


def cmd_schema(args: argparse.Namespace, settings: Settings) -> int:
    engine = create_reader_engine(settings.storage_path, settings.busy_timeout_ms)
    try:
        columns = list_columns(engine, settings.table_name)
        rows = count_rows(engine, settings.table_name) if columns else 0
    finally:
        engine.dispose()

    print(f"{settings.table_name}: {rows} rows, {len(columns)} columns")
    for info in columns:
        print(f"  {info.column_type:<8} {info.name}")
    return EXIT_OK


def purge(logs_dir: Path) -> List[Path]:
    """
    Delete default-named database files and their WAL/SHM siblings.

    Args:
        logs_dir: Directory to clean

    Returns:
        Paths that were deleted
    """
    removed: List[Path] = []
    if not logs_dir.is_dir():
        return removed

    for db_file in sorted(logs_dir.glob(f"*{DB_FILE_SUFFIX}")):
        for candidate in (db_file, Path(f"{db_file}-wal"), Path(f"{db_file}-shm")):
            if not candidate.is_file():
                continue
            try:
                candidate.unlink()
            except OSError as e:
                logger.error(f"Error deleting {candidate}: {e}")
                continue
            removed.append(candidate)
    return removed


def cmd_purge(args: argparse.Namespace, settings: Settings) -> int:
    logs_dir = Path(settings.logs_dir)
    print(f"Purging data files from {logs_dir}")
    removed = purge(logs_dir)
    print(f"Removed {len(removed)} files")
    return EXIT_OK


_COMMANDS = {
    "ingest": cmd_ingest,
    "schema": cmd_schema,
    "purge": cmd_purge,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args)
        setup_logging(settings.log_level, settings.log_json)
        set_run_id()
        return _COMMANDS[args.command](args, settings)
    except FatalError as e:
        print(f"logtable: {e}", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
