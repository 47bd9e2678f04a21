"""
Bounded line buffer between the line source and the ingestion loop.

Thread-safe FIFO built on Python's queue.Queue. A full buffer blocks the
producer instead of dropping lines, so a slow database slows reading
down rather than losing data or growing memory without bound.
"""

import queue
import threading
from typing import Any, Optional

from logtable.common.metrics import buffer_depth


class _EndOfStream:
    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = _EndOfStream()


class LineBuffer:
    """
    Single-producer, single-consumer line queue with blocking puts.

    The producer stops once `stop()` is called; the consumer sees
    END_OF_STREAM after the last line the producer delivered.
    """

    def __init__(self, max_size: int = 10000, poll_interval: float = 0.1):
        """
        Initialize line buffer.

        Args:
            max_size: Lines held before the producer blocks
            poll_interval: How often a blocked producer checks for stop
        """
        self._queue: queue.Queue = queue.Queue(maxsize=max_size)
        self._stopped = threading.Event()
        self._poll_interval = poll_interval

    def put(self, line: str) -> bool:
        """
        Add a line, blocking while the buffer is full.

        Returns:
            False if the buffer was stopped before the line was accepted
        """
        while not self._stopped.is_set():
            try:
                self._queue.put(line, timeout=self._poll_interval)
            except queue.Full:
                continue
            buffer_depth.set(self._queue.qsize())
            return True
        return False

    def finish(self) -> None:
        """Mark the end of the stream (skipped once the consumer stopped)."""
        while not self._stopped.is_set():
            try:
                self._queue.put(END_OF_STREAM, timeout=self._poll_interval)
            except queue.Full:
                continue
            return

    def get(self, timeout: Optional[float] = None) -> Optional[Any]:
        """
        Take the next item.

        Args:
            timeout: Seconds to wait (None = block indefinitely)

        Returns:
            A line, END_OF_STREAM, or None on timeout
        """
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        buffer_depth.set(self._queue.qsize())
        return item

    def get_nowait(self) -> Optional[Any]:
        """Take the next item without waiting, None if empty."""
        return self.get(timeout=0)

    def stop(self) -> None:
        """Stop accepting lines and release a blocked producer."""
        self._stopped.set()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def size(self) -> int:
        """Get current buffer size."""
        return self._queue.qsize()
