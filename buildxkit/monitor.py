"""In-process pipes and I/O multiplexing for interactive build sessions.

A :class:`MuxIO` routes one terminal-like stream set between several
destinations, switching on the ``Ctrl-a c`` key sequence. An
:class:`IOForwarder` relays a stream set to a destination that may be
swapped at any time.
"""

from __future__ import annotations

import codecs
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol

_log = logging.getLogger(__name__)

_COPY_CHUNK = 4096
_CONTROL_A = "\x01"
_TOGGLE_KEY = "c"

_EOF = object()


class ClosedPipeError(BrokenPipeError):
    """Raised by an operation on a closed pipe."""

    def __init__(self, message: str = "io: read/write on closed pipe") -> None:
        super().__init__(message)


class _Reader(Protocol):
    def read(self, size: int = -1) -> bytes: ...


class _ReadCloser(_Reader, Protocol):
    def close(self) -> Any: ...


class _Writer(Protocol):
    def write(self, data: bytes) -> Any: ...


class _WriteCloser(_Writer, Protocol):
    def close(self) -> Any: ...


class _Pipe:
    """Synchronous pipe: each write blocks until readers have taken all of it."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._write_lock = threading.Lock()
        self._data: memoryview | bytes = b""
        self._reader_error: BaseException | None = None
        self._writer_error: Any = None

    def _closed(self) -> bool:
        return self._reader_error is not None or self._writer_error is not None

    def _error_for_reader(self) -> Any:
        if self._writer_error is None and self._reader_error is not None:
            return ClosedPipeError()
        return self._writer_error

    def _error_for_writer(self) -> BaseException:
        if self._writer_error is None and self._reader_error is not None:
            return self._reader_error
        return ClosedPipeError()

    def read(self, size: int) -> bytes:
        with self._cond:
            while True:
                if self._closed():
                    error = self._error_for_reader()
                    if error is _EOF:
                        return b""
                    raise error
                if self._data:
                    break
                self._cond.wait()
            if size is None or size < 0:
                size = len(self._data)
            chunk = bytes(self._data[:size])
            self._data = self._data[size:]
            if not self._data:
                self._cond.notify_all()
            return chunk

    def write(self, data: bytes) -> int:
        payload = bytes(data)
        with self._write_lock, self._cond:
            if self._closed():
                raise self._error_for_writer()
            if not payload:
                return 0
            self._data = memoryview(payload)
            self._cond.notify_all()
            while self._data and not self._closed():
                self._cond.wait()
            if self._data:
                self._data = b""
                raise self._error_for_writer()
            return len(payload)

    def close_reader(self, error: BaseException | None) -> None:
        with self._cond:
            if self._reader_error is None:
                self._reader_error = error if error is not None else ClosedPipeError()
            self._cond.notify_all()

    def close_writer(self, error: BaseException | None) -> None:
        with self._cond:
            if self._writer_error is None:
                self._writer_error = error if error is not None else _EOF
            self._cond.notify_all()


class PipeReader:
    """Read end of an in-process pipe; ``read`` returns ``b""`` at end of stream."""

    def __init__(self, pipe_: _Pipe) -> None:
        self._pipe = pipe_

    def read(self, size: int = -1) -> bytes:
        """Return data from the current write, at most ``size`` bytes."""
        return self._pipe.read(size)

    def close(self) -> None:
        """Close the read end; further writes raise ClosedPipeError."""
        self._pipe.close_reader(None)

    def close_with_error(self, error: BaseException) -> None:
        """Close the read end so that writers raise ``error``."""
        self._pipe.close_reader(error)


class PipeWriter:
    """Write end of an in-process pipe."""

    def __init__(self, pipe_: _Pipe) -> None:
        self._pipe = pipe_

    def write(self, data: bytes) -> int:
        """Write ``data``, blocking until readers have consumed all of it."""
        return self._pipe.write(data)

    def close(self) -> None:
        """Close the write end; readers then see end of stream."""
        self._pipe.close_writer(None)

    def close_with_error(self, error: BaseException) -> None:
        """Close the write end so that readers raise ``error``."""
        self._pipe.close_writer(error)


def pipe() -> tuple[PipeReader, PipeWriter]:
    """Create a connected synchronous pipe."""
    shared = _Pipe()
    return PipeReader(shared), PipeWriter(shared)


def _close_all(*streams: Any) -> None:
    error: BaseException | None = None
    for stream in streams:
        try:
            stream.close()
        except Exception as exc:  # keep closing the rest
            error = exc
    if error is not None:
        raise error


@dataclass
class IOSetIn:
    """The consuming side of a stream set: stdin is read, stdout/stderr written."""

    stdin: _ReadCloser
    stdout: _WriteCloser
    stderr: _WriteCloser

    def close(self) -> None:
        """Close all three streams, raising the last error seen."""
        _close_all(self.stdin, self.stdout, self.stderr)


@dataclass
class IOSetOut:
    """The producing side of a stream set: stdin is written, stdout/stderr read."""

    stdin: _WriteCloser
    stdout: _ReadCloser
    stderr: _ReadCloser

    def close(self) -> None:
        """Close all three streams, raising the last error seen."""
        _close_all(self.stdin, self.stdout, self.stderr)


@dataclass
class IOSetOutContext(IOSetOut):
    """An output stream set with hooks run when it gains or loses the I/O."""

    enable_hook: Callable[[], None] | None = None
    disable_hook: Callable[[], None] | None = None


def io_set_pipe() -> tuple[IOSetIn, IOSetOut]:
    """Create a stream set whose two sides are joined by pipes."""
    stdin_r, stdin_w = pipe()
    stdout_r, stdout_w = pipe()
    stderr_r, stderr_w = pipe()
    return IOSetIn(stdin_r, stdout_w, stderr_w), IOSetOut(stdin_w, stdout_r, stderr_r)


def copy_to_func(reader: _Reader, writer_func: Callable[[], _Writer | None]) -> None:
    """Copy ``reader`` to whatever writer ``writer_func`` returns for each chunk.

    A ``None`` writer discards the chunk. Read errors and errors from
    ``writer_func`` propagate; write errors are logged and ignored.
    """
    while True:
        data = reader.read(_COPY_CHUNK)
        writer = writer_func()
        if writer is not None and data:
            try:
                writer.write(data)
            except Exception as exc:
                _log.debug("failed to copy: %s", exc)
        if not data:
            return


class _ReaderWithClose:
    def __init__(self, reader: _Reader, closer: Callable[[], None]) -> None:
        self._reader = reader
        self._closer = closer

    def read(self, size: int = -1) -> bytes:
        return self._reader.read(size)

    def close(self) -> None:
        self._closer()


def _spawn(target: Callable[..., Any], *args: Any) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


def trace_reader(reader: _ReadCloser, func: Callable[[str], bool]) -> _ReaderWithClose:
    """Pass each decoded character of ``reader`` through ``func``.

    Characters for which ``func`` returns false are dropped. If ``func``
    raises, reading from the returned reader raises the same exception.
    """
    traced, sink = pipe()

    def run() -> None:
        decoder = codecs.getincrementaldecoder("utf-8")("replace")
        try:
            while True:
                chunk = reader.read(_COPY_CHUNK)
                for char in decoder.decode(chunk, final=not chunk):
                    if func(char):
                        sink.write(char.encode("utf-8"))
                if not chunk:
                    sink.close()
                    return
        except Exception as exc:
            sink.close_with_error(exc)

    _spawn(run)

    def close() -> None:
        traced.close()
        reader.close()

    return _ReaderWithClose(traced, close)


class _ToggleIO(Exception):
    """Signals that the toggle key sequence was typed."""


def _toggle_detector() -> Callable[[str], bool]:
    after_control = False

    def detect(char: str) -> bool:
        nonlocal after_control
        if char == _CONTROL_A:
            after_control = True
            return False
        was_control, after_control = after_control, False
        if was_control and char == _TOGGLE_KEY:
            raise _ToggleIO("toggle IO")
        return True

    return detect


class MuxIO:
    """Route one input stream set to one of several outputs at a time.

    Typing ``Ctrl-a c`` on the input switches to the next enabled output.
    The outputs are closed once the input's stdin reaches end of stream;
    the input itself is left for the caller to close.
    """

    def __init__(
        self,
        in_io: IOSetIn,
        outs: list[IOSetOutContext],
        init_index: int = 0,
        toggle_message: Callable[[int, int], str] | None = None,
    ) -> None:
        self._in = in_io
        self._outs = list(outs)
        self._enabled = set(range(len(self._outs)))
        self._max = len(self._outs)
        self._cur = init_index
        self._lock = threading.RLock()
        self._closed = threading.Event()
        self._toggle_message = toggle_message or (lambda prev, res: "")
        self._output_threads = [
            _spawn(self._forward_output, index, name, reader, target)
            for index, out in enumerate(self._outs)
            for name, reader, target in (
                ("stdout", out.stdout, in_io.stdout),
                ("stderr", out.stderr, in_io.stderr),
            )
        ]
        _spawn(self._forward_input)

    def _current(self) -> int:
        with self._lock:
            return self._cur

    def _forward_output(self, index: int, name: str, reader: _ReadCloser, target: _Writer) -> None:
        try:
            copy_to_func(reader, lambda: target if self._current() == index else None)
        except Exception as exc:
            _log.warning("failed to write %s of output %d: %s", name, index, exc)
        try:
            reader.close()
        except Exception as exc:
            _log.warning("failed to close %s of output %d: %s", name, index, exc)

    def _forward_input(self) -> None:
        while True:
            try:
                copy_to_func(
                    trace_reader(self._in.stdin, _toggle_detector()),
                    lambda: self._outs[self._current()].stdin,
                )
            except _ToggleIO:
                self.toggle_io()
                continue
            except Exception as exc:
                _log.warning("failed to read stdin: %s", exc)
            break

        for index, out in enumerate(self._outs):
            try:
                out.stdin.close()
            except Exception as exc:
                _log.warning("failed to close stdin of %d: %s", index, exc)
        for thread in self._output_threads:
            thread.join()
        self._closed.set()

    def wait_closed(self) -> None:
        """Block until all outputs have been closed."""
        self._closed.wait()

    def enable(self, index: int) -> None:
        """Allow switching to output ``index``."""
        with self._lock:
            self._enabled.add(index)

    def disable(self, index: int) -> None:
        """Exclude output ``index`` from switching, moving away if it is current."""
        with self._lock:
            if index == 0:
                raise ValueError("disabling 0th io is prohibited")
            self._enabled.discard(index)
            if self._cur == index:
                self.toggle_io()

    def toggle_io(self) -> None:
        """Switch to the next enabled output, wrapping around to the first."""
        with self._lock:
            prev = self._cur
            disable_hook = self._outs[prev].disable_hook
            cur = prev
            while True:
                cur = 0 if cur + 1 >= self._max else cur + 1
                if cur in self._enabled:
                    break
            self._cur = cur
            enable_hook = self._outs[cur].enable_hook
            if disable_hook is not None:
                disable_hook()
            if enable_hook is not None:
                enable_hook()
            message = self._toggle_message(prev, cur)
        if message:
            try:
                self._in.stdout.write(message.encode("utf-8"))
            except OSError as exc:
                _log.debug("failed to write toggle message: %s", exc)


class IOForwarder:
    """Relay a stream set to a destination that can be replaced at any time."""

    def __init__(self, in_io: IOSetIn) -> None:
        self._in = in_io
        self._cond = threading.Condition()
        self._cur: IOSetOut | None = None
        self._generation = 0
        self._done = False
        _spawn(self._watch)
        _spawn(self._pump)

    def _copy_stream(self, source: _Reader, target: _Writer, name: str) -> None:
        try:
            while data := source.read(_COPY_CHUNK):
                target.write(data)
        except ClosedPipeError:
            pass  # the destination was replaced and its streams closed
        except Exception as exc:
            _log.warning("failed to forward %s: %s", name, exc)

    def _watch(self) -> None:
        seen = -1
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._done or self._generation != seen)
                if self._done:
                    return
                seen = self._generation
                current = self._cur
            if current is not None and current.stdout is not None and current.stderr is not None:
                _spawn(self._copy_stream, current.stdout, self._in.stdout, "stdout")
                _spawn(self._copy_stream, current.stderr, self._in.stderr, "stderr")

    def _destination_stdin(self) -> _Writer | None:
        with self._cond:
            return self._cur.stdin if self._cur is not None else None

    def _pump(self) -> None:
        try:
            copy_to_func(self._in.stdin, self._destination_stdin)
        except ClosedPipeError:
            pass
        except Exception as exc:
            _log.warning("failed to forward IO: %s", exc)
        with self._cond:
            self._done = True
            current = self._cur
            self._cond.notify_all()
        if current is not None:
            try:
                current.close()
            except Exception as exc:
                _log.warning("failed to close forwarded IO: %s", exc)

    def set_destination(self, out: IOSetOut | None) -> None:
        """Close the current destination and forward to ``out`` (or nowhere)."""
        with self._cond:
            if self._cur is not None:
                self._cur.close()
            self._cur = out
            self._generation += 1
            self._cond.notify_all()