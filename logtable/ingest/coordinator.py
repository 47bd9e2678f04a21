"""
Stream coordinator.

Drives the ingestion loop: a reader thread moves lines from the line
source into a bounded buffer, and the loop decodes, flattens and writes
them in arrival order, flushing the writer when a batch fills up or its
flush interval expires.
"""

import contextvars
import json
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional, Tuple

from logtable.common.errors import DecodeError
from logtable.common.metrics import decode_errors_total, lines_read_total
from logtable.ingest.flattener import flatten
from logtable.ingest.writer import IngestionWriter
from logtable.queue.line_buffer import END_OF_STREAM, LineBuffer

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 200


class CoordinatorState(str, Enum):
    """Where the ingestion loop currently is."""
    IDLE = "idle"
    READING = "reading"
    DECODING = "decoding"
    FLATTENING = "flattening"
    WRITING = "writing"
    STOPPED = "stopped"


@dataclass
class IngestStats:
    """Counters for one run of the ingestion loop."""
    lines_processed: int = 0
    blank_lines: int = 0
    records_ingested: int = 0
    decode_errors: int = 0
    decode_error_samples: List[Tuple[int, str]] = field(default_factory=list)
    source_error: Optional[str] = None


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-standard JSON constant {name}")


def decode_line(line: str, line_number: Optional[int] = None) -> Any:
    """
    Parse one line as JSON.

    NaN and Infinity literals are rejected since they are not JSON.

    Args:
        line: Text of the line (undecodable bytes as surrogate escapes)
        line_number: Position in the stream, for the error

    Returns:
        Decoded value (any JSON type)

    Raises:
        DecodeError: If the line is not a single valid JSON value
    """
    try:
        line.encode("utf-8")
    except UnicodeEncodeError as e:
        raise DecodeError(f"Invalid UTF-8: {e.reason}", line_number=line_number) from e

    try:
        return json.loads(line, parse_constant=_reject_constant)
    except (ValueError, RecursionError) as e:
        raise DecodeError(f"Invalid JSON: {e}", line_number=line_number) from e


class StreamCoordinator:
    """
    Runs the read -> decode -> flatten -> write loop for one stream.

    `stop()` may be called from another thread or a signal handler; the
    loop then processes lines already buffered, flushes, and returns.
    """

    def __init__(
        self,
        writer: IngestionWriter,
        buffer_size: int = 10000,
        capture_unparsable: bool = False,
        poll_interval: float = 0.5,
        max_error_samples: int = 20,
    ):
        """
        Initialize coordinator.

        Args:
            writer: Writer that receives one row per record
            buffer_size: Lines buffered between reader and loop
            capture_unparsable: Store malformed lines in the raw column
            poll_interval: Longest wait between stop checks
            max_error_samples: Decode errors kept for the summary
        """
        self.writer = writer
        self.buffer_size = buffer_size
        self.capture_unparsable = capture_unparsable
        self.poll_interval = poll_interval
        self.max_error_samples = max_error_samples

        self.state = CoordinatorState.IDLE
        self.stats = IngestStats()
        self._stop_event = threading.Event()
        self._buffer: Optional[LineBuffer] = None
        self._line_number = 0

    def run(self, lines: Iterable[str]) -> IngestStats:
        """
        Ingest lines until the source ends or `stop()` is called.

        Args:
            lines: Line source; may block and may be unbounded

        Returns:
            IngestStats for the run
        """
        if self.state != CoordinatorState.IDLE:
            raise RuntimeError(f"Coordinator cannot run from state {self.state.value}")

        buffer = LineBuffer(max_size=self.buffer_size)
        self._buffer = buffer
        reader = threading.Thread(
            target=contextvars.copy_context().run,
            args=(self._pump, lines, buffer),
            name="line-reader",
            daemon=True,
        )
        reader.start()
        logger.info("Ingestion started")

        try:
            self._loop(buffer)
        finally:
            buffer.stop()
            self.writer.close()
            self.state = CoordinatorState.STOPPED
            logger.info(
                "Ingestion stopped",
                extra={"extra_fields": {
                    "lines": self.stats.lines_processed,
                    "records": self.stats.records_ingested,
                    "decode_errors": self.stats.decode_errors,
                }},
            )

        return self.stats

    def stop(self) -> None:
        """Ask the loop to finish; safe from signal handlers."""
        self._stop_event.set()
        if self._buffer is not None:
            self._buffer.stop()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def _pump(self, lines: Iterable[str], buffer: LineBuffer) -> None:
        """Reader thread: copy lines into the buffer."""
        try:
            for line in lines:
                if not buffer.put(line):
                    break
                lines_read_total.inc()
        except Exception as e:
            self.stats.source_error = f"{e.__class__.__name__}: {e}"
            logger.error(f"Line source failed: {e}", exc_info=True)
        finally:
            buffer.finish()

    def _loop(self, buffer: LineBuffer) -> None:
        while True:
            if self._stop_event.is_set():
                self._drain(buffer)
                return

            self.state = CoordinatorState.READING
            wait = self.writer.seconds_until_due()
            timeout = self.poll_interval if wait is None else min(wait, self.poll_interval)
            item = buffer.get(timeout=timeout)

            if item is None:
                self.writer.flush_if_due()
                continue
            if item is END_OF_STREAM:
                return

            self._process_line(item)
            self.writer.flush_if_due()

    def _drain(self, buffer: LineBuffer) -> None:
        """Process lines already buffered when a stop was requested."""
        while True:
            item = buffer.get_nowait()
            if item is None or item is END_OF_STREAM:
                return
            self._process_line(item)

    def _process_line(self, line: str) -> None:
        self._line_number += 1
        line_number = self._line_number
        self.stats.lines_processed += 1

        text = line.rstrip("\r\n")
        if not text.strip():
            self.stats.blank_lines += 1
            return

        self.state = CoordinatorState.DECODING
        try:
            record = decode_line(text, line_number)
            self.state = CoordinatorState.FLATTENING
            fields = list(flatten(record))
        except DecodeError as e:
            self._record_decode_error(text, e)
            return
        except RecursionError:
            self._record_decode_error(
                text, DecodeError("Value nested too deeply", line_number=line_number))
            return

        self.state = CoordinatorState.WRITING
        self.writer.write(fields, line_number=line_number)
        self.stats.records_ingested += 1

    def _record_decode_error(self, text: str, error: DecodeError) -> None:
        self.stats.decode_errors += 1
        decode_errors_total.inc()
        if len(self.stats.decode_error_samples) < self.max_error_samples:
            self.stats.decode_error_samples.append((error.line_number, str(error)))

        logger.warning(
            "Skipping malformed line",
            extra={"extra_fields": {
                "line_number": error.line_number,
                "error": str(error),
                "excerpt": text[:EXCERPT_LENGTH],
            }},
        )

        if self.capture_unparsable:
            self.state = CoordinatorState.WRITING
            raw = text.encode("utf-8", "surrogateescape").decode("utf-8", "replace")
            self.writer.write([], line_number=error.line_number, raw=raw)
