"""Progress reporting: vertices, statuses and logs sent to a progress writer."""

from __future__ import annotations

import dataclasses
import hashlib
import os
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Hashable, Protocol, TypeVar

_T = TypeVar("_T")

_READ_CHUNK = 32 * 1024


@dataclass
class Vertex:
    """A unit of work shown in progress output."""

    digest: str = ""
    name: str = ""
    started: datetime | None = None
    completed: datetime | None = None
    cached: bool = False
    error: str = ""


@dataclass
class VertexStatus:
    """Progress of a sub-task belonging to a vertex."""

    id: str = ""
    vertex: str = ""
    name: str = ""
    total: int = 0
    current: int = 0
    timestamp: datetime = field(default_factory=lambda: _now())
    started: datetime | None = None
    completed: datetime | None = None


@dataclass
class VertexLog:
    """A chunk of output produced by a vertex on one stream."""

    vertex: str = ""
    stream: int = 0
    data: bytes = b""
    timestamp: datetime = field(default_factory=lambda: _now())


@dataclass
class SolveStatus:
    """One progress update: vertices, statuses and logs."""

    vertexes: list[Vertex] = field(default_factory=list)
    statuses: list[VertexStatus] = field(default_factory=list)
    logs: list[VertexLog] = field(default_factory=list)


class _Writer(Protocol):
    def write(self, status: SolveStatus) -> None: ...

    def validate_log_source(self, digest: str, source: Any) -> bool: ...

    def clear_log_source(self, source: Any) -> None: ...


_Logger = Callable[[SolveStatus], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_digest() -> str:
    return "sha256:" + hashlib.sha256(os.urandom(32).hex().encode("ascii")).hexdigest()


class _DelegatingWriter:
    """Writer that forwards log-source bookkeeping to a wrapped writer."""

    def __init__(self, inner: _Writer) -> None:
        self._inner = inner

    def write(self, status: SolveStatus) -> None:
        self._inner.write(status)

    def validate_log_source(self, digest: str, source: Any) -> bool:
        return self._inner.validate_log_source(digest, source)

    def clear_log_source(self, source: Any) -> None:
        self._inner.clear_log_source(source)


def _run_vertex(writer: _Writer, name: str, action: Callable[[], Any]) -> None:
    vertex = Vertex(digest=_new_digest(), name=name, started=_now())
    writer.write(SolveStatus(vertexes=[vertex]))
    error = ""
    try:
        action()
    except Exception as exc:
        error = str(exc)
    finished = dataclasses.replace(vertex, completed=_now(), error=error)
    writer.write(SolveStatus(vertexes=[finished]))


def from_reader(writer: _Writer, name: str, reader: Any) -> None:
    """Report a vertex that lasts until ``reader`` is read to the end.

    A read error is recorded on the completed vertex rather than raised.
    """

    def drain() -> None:
        while reader.read(_READ_CHUNK):
            pass

    _run_vertex(writer, name, drain)


def write(writer: _Writer, name: str, fn: Callable[[], Any]) -> None:
    """Report a vertex around ``fn``; an exception is recorded, not raised."""
    _run_vertex(writer, name, fn)


def _add_prefix(prefix: str, name: str) -> str:
    if name.startswith("["):
        return "[" + prefix + " " + name[1:]
    return "[" + prefix + "] " + name


class _PrefixedWriter(_DelegatingWriter):
    def __init__(self, inner: _Writer, prefix: str, force: bool) -> None:
        super().__init__(inner)
        self._prefix = prefix
        self._force = force

    def write(self, status: SolveStatus) -> None:
        if self._force:
            for vertex in status.vertexes:
                vertex.name = _add_prefix(self._prefix, vertex.name)
        self._inner.write(status)


def with_prefix(writer: _Writer, prefix: str, force: bool) -> _DelegatingWriter:
    """Wrap a writer so vertex names get ``prefix`` when ``force`` is set."""
    return _PrefixedWriter(writer, prefix, force)


class SubLogger:
    """Reports statuses and logs that belong to one vertex."""

    def __init__(self, digest: str, logger: _Logger) -> None:
        self.digest = digest
        self._logger = logger

    def wrap(self, name: str, fn: Callable[[], _T]) -> _T:
        """Report a status named ``name`` that spans the call to ``fn``."""
        started = _now()
        self._logger(
            SolveStatus(
                statuses=[
                    VertexStatus(id=name, vertex=self.digest, timestamp=_now(), started=started)
                ]
            )
        )
        try:
            return fn()
        finally:
            self._logger(
                SolveStatus(
                    statuses=[
                        VertexStatus(
                            id=name,
                            vertex=self.digest,
                            timestamp=_now(),
                            started=started,
                            completed=_now(),
                        )
                    ]
                )
            )

    def log(self, stream: int, data: bytes) -> None:
        """Report output ``data`` written on ``stream``."""
        self._logger(
            SolveStatus(
                logs=[VertexLog(vertex=self.digest, stream=stream, data=data, timestamp=_now())]
            )
        )

    def set_status(self, status: VertexStatus) -> None:
        """Report ``status``, attaching it to this logger's vertex."""
        status.vertex = self.digest
        self._logger(SolveStatus(statuses=[status]))


def wrap(name: str, logger: _Logger, fn: Callable[[SubLogger], _T]) -> _T:
    """Report a vertex around ``fn``, which gets a SubLogger for that vertex.

    The result of ``fn`` is returned; an exception is recorded on the
    completed vertex and raised again.
    """
    digest = _new_digest()
    started = _now()
    logger(SolveStatus(vertexes=[Vertex(digest=digest, name=name, started=started)]))
    error = ""
    try:
        return fn(SubLogger(digest, logger))
    except Exception as exc:
        error = str(exc)
        raise
    finally:
        logger(
            SolveStatus(
                vertexes=[
                    Vertex(
                        digest=digest,
                        name=name,
                        started=started,
                        completed=_now(),
                        error=error,
                    )
                ]
            )
        )


class _ResetTimeWriter(_DelegatingWriter):
    def __init__(self, inner: _Writer) -> None:
        super().__init__(inner)
        self._origin = _now()
        self._diff: timedelta | None = None

    def write(self, status: SolveStatus) -> None:
        if self._diff is None:
            for vertex in status.vertexes:
                if vertex.started is not None:
                    self._diff = vertex.started - self._origin
        diff = self._diff
        if diff is not None:
            for item in (*status.vertexes, *status.statuses):
                if item.started is not None:
                    item.started = item.started - diff
                if item.completed is not None:
                    item.completed = item.completed - diff
            for item in (*status.statuses, *status.logs):
                item.timestamp = item.timestamp - diff
        self._inner.write(status)


def reset_time(writer: _Writer) -> _DelegatingWriter:
    """Wrap a writer so times are shifted as if the first vertex began now."""
    return _ResetTimeWriter(writer)


_CLOSE = object()


class _StatusChannel:
    """Send side of a progress channel."""

    def __init__(self) -> None:
        self._queue: queue.Queue[Any] = queue.Queue()
        self._closed = False
        self._lock = threading.Lock()

    def send(self, status: SolveStatus) -> None:
        with self._lock:
            if self._closed:
                raise ValueError("send on closed channel")
            self._queue.put(status)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_CLOSE)

    def _receive(self) -> Any:
        return self._queue.get()


def new_channel(writer: _Writer) -> tuple[_StatusChannel, threading.Event]:
    """Start forwarding statuses sent on a channel to ``writer``.

    Logs are passed on only for vertices this channel owns as a log source.
    The returned event is set once the channel is closed and drained; it is
    also the identity under which log sources are claimed.
    """
    channel = _StatusChannel()
    done = threading.Event()
    source: Hashable = done

    def run() -> None:
        while True:
            status = channel._receive()
            if status is _CLOSE:
                done.set()
                writer.clear_log_source(source)
                return
            if status.logs:
                status.logs = [
                    log for log in status.logs if writer.validate_log_source(log.vertex, source)
                ]
            writer.write(status)

    threading.Thread(target=run, daemon=True).start()
    return channel, done