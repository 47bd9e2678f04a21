"""
Queue module for handing lines from the reader to the ingestion loop.
"""

from logtable.queue.line_buffer import END_OF_STREAM, LineBuffer

__all__ = [
    "END_OF_STREAM",
    "LineBuffer",
]
