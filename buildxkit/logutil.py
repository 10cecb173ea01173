"""Logging helpers: message filters, a compact formatter and output pausing."""

from __future__ import annotations

import io
import logging
import threading
from typing import Callable, Iterable, TextIO


class LogsFilter(logging.Filter):
    """Drop records at the given levels whose message contains any filter string."""

    def __init__(self, levels: Iterable[int], filters: Iterable[str]) -> None:
        super().__init__()
        self.levels = frozenset(levels)
        self.filters = tuple(filters)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno not in self.levels:
            return True
        message = record.getMessage()
        return not any(f in message for f in self.filters)


def new_filter(levels: Iterable[int], *args: str) -> LogsFilter:
    """Build a filter discarding messages that contain any of ``args``."""
    return LogsFilter(levels, args)


class Formatter(logging.Formatter):
    """Format records as ``LEVEL: message``."""

    def format(self, record: logging.LogRecord) -> str:
        return f"{record.levelname.upper()}: {record.getMessage()}"


class BufferedWriter:
    """Stream wrapper that holds writes until ``resume`` is called."""

    def __init__(self, stream: TextIO) -> None:
        self._lock = threading.Lock()
        self._buffer: io.StringIO | None = io.StringIO()
        self._stream = stream

    def write(self, data: str) -> int:
        with self._lock:
            if self._buffer is None:
                return self._stream.write(data)
            return self._buffer.write(data)

    def resume(self) -> None:
        """Flush held output to the wrapped stream and stop buffering."""
        with self._lock:
            if self._buffer is None:
                return
            self._stream.write(self._buffer.getvalue())
            self._buffer = None


def pause(logger: logging.Logger) -> Callable[[], None]:
    """Buffer the logger's stream output; the returned callable releases it."""
    writers = []
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler):
            writer = BufferedWriter(handler.stream)
            handler.setStream(writer)
            writers.append(writer)

    def resume() -> None:
        for writer in writers:
            writer.resume()

    return resume