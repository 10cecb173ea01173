import io
import re
import threading

import pytest

from buildxkit.monitor import (
    ClosedPipeError,
    IOForwarder,
    IOSetIn,
    IOSetOutContext,
    MuxIO,
    copy_to_func,
    io_set_pipe,
    pipe,
    trace_reader,
)

TIMEOUT = 10


def _background(fn, *args):
    result = {}

    def run():
        try:
            result["value"] = fn(*args)
        except BaseException as exc:
            result["error"] = exc

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread, result


def _finish(thread, result):
    thread.join(TIMEOUT)
    assert not thread.is_alive()
    if "error" in result:
        raise result["error"]
    return result.get("value")


def _wait_closed(mio):
    thread = threading.Thread(target=mio.wait_closed, daemon=True)
    thread.start()
    thread.join(TIMEOUT)
    return not thread.is_alive()


def _read_exactly(reader, size):
    buf = bytearray()
    while len(buf) < size:
        chunk = reader.read(size - len(buf))
        if not chunk:
            raise EOFError("stream ended early")
        buf += chunk
    return bytes(buf)


def _read_all(reader):
    buf = bytearray()
    while chunk := reader.read(4096):
        buf += chunk
    return bytes(buf)


# --- pipe ---------------------------------------------------------------


def test_pipe_read_in_parts():
    reader, writer = pipe()
    thread, result = _background(writer.write, b"hello")
    assert reader.read(2) == b"he"
    assert reader.read() == b"llo"
    assert _finish(thread, result) == 5


def test_pipe_writer_close_gives_eof():
    reader, writer = pipe()
    writer.close()
    assert reader.read(10) == b""


def test_pipe_reader_close_fails_writes():
    reader, writer = pipe()
    reader.close()
    with pytest.raises(ClosedPipeError):
        writer.write(b"data")


def test_pipe_close_with_error_reaches_reader():
    reader, writer = pipe()
    writer.close_with_error(ValueError("bad stream"))
    with pytest.raises(ValueError, match="bad stream"):
        reader.read(10)


def test_pipe_reader_close_with_error_reaches_writer():
    reader, writer = pipe()
    reader.close_with_error(KeyError("gone"))
    with pytest.raises(KeyError):
        writer.write(b"x")


def test_pipe_empty_write_returns_zero():
    _, writer = pipe()
    assert writer.write(b"") == 0


def test_io_set_close_propagates():
    in_set, out_set = io_set_pipe()
    in_set.close()
    with pytest.raises(ClosedPipeError):
        out_set.stdin.write(b"x")
    assert out_set.stdout.read() == b""
    assert out_set.stderr.read() == b""


# --- copy_to_func / trace_reader ---------------------------------------


def test_copy_to_func_copies_everything():
    dest = io.BytesIO()
    copy_to_func(io.BytesIO(b"abc" * 3000), lambda: dest)
    assert dest.getvalue() == b"abc" * 3000


def test_copy_to_func_discards_without_writer():
    source = io.BytesIO(b"discard me")
    copy_to_func(source, lambda: None)
    assert source.read() == b""


def test_copy_to_func_propagates_writer_func_error():
    def failing():
        raise RuntimeError("no writer")

    with pytest.raises(RuntimeError, match="no writer"):
        copy_to_func(io.BytesIO(b"abc"), failing)


def test_copy_to_func_propagates_read_error():
    reader, writer = pipe()
    writer.close_with_error(ValueError("read failed"))
    with pytest.raises(ValueError, match="read failed"):
        copy_to_func(reader, lambda: None)


def test_trace_reader_drops_rejected_characters():
    traced = trace_reader(io.BytesIO(b"a\x01bc"), lambda ch: ch != "\x01")
    assert _read_all(traced) == b"abc"


def test_trace_reader_decodes_characters():
    seen = []

    def record(ch):
        seen.append(ch)
        return True

    traced = trace_reader(io.BytesIO("héllo".encode()), record)
    assert _read_all(traced).decode() == "héllo"
    assert seen == ["h", "é", "l", "l", "o"]


def test_trace_reader_func_error_surfaces_on_read():
    def stop_at_x(ch):
        if ch == "x":
            raise LookupError("stop")
        return True

    traced = trace_reader(io.BytesIO(b"abxcd"), stop_at_x)
    assert _read_exactly(traced, 2) == b"ab"
    with pytest.raises(LookupError, match="stop"):
        traced.read(10)


def test_trace_reader_close_closes_source():
    source = io.BytesIO(b"")
    traced = trace_reader(source, lambda ch: True)
    traced.close()
    assert source.closed


# --- MuxIO -----------------------------------------------------------------


class _Tee:
    def __init__(self, source, forward):
        self.data = bytearray()
        self.done = threading.Event()
        self._source = source
        self._forward = forward
        threading.Thread(target=self._run, daemon=True).start()

    def _run(self):
        try:
            while chunk := self._source.read(4096):
                self.data += chunk
                self._forward.write(chunk)
        finally:
            self.done.set()


class _Echo:
    """Output end that records stdin and writes back its index per byte."""

    def __init__(self, index):
        self.index = index
        self.received = bytearray()
        self.done = threading.Event()
        self.stdin_r, self.stdin_w = pipe()
        self.stdout_r, self._stdout_w = pipe()
        self.stderr_r, self._stderr_w = pipe()
        threading.Thread(target=self._run, daemon=True).start()

    def _run(self):
        try:
            while chunk := self.stdin_r.read(4096):
                self.received += chunk
                mask = str(self.index).encode() * len(chunk)
                self._stdout_w.write(mask)
                self._stderr_w.write(mask)
        finally:
            self._stdout_w.close()
            self._stderr_w.close()
            self.done.set()

    def context(self):
        return IOSetOutContext(self.stdin_w, self.stdout_r, self.stderr_r)


def _input(text):
    return lambda mio: (text, text.replace("\x01", ""))


def _toggle():
    return lambda mio: ("\x01c", "")


def _enable(index):
    def run(mio):
        mio.enable(index)
        return "", ""

    return run


def _disable(index):
    def run(mio):
        mio.disable(index)
        return "", ""

    return run


MUX_CASES = [
    pytest.param(
        [_input("foo\nbar\n"), _toggle(), _input("1234"), _toggle(), _input("456")],
        0,
        ["foo\nbar\n1234456"],
        r"^0+$",
        id="single output",
    ),
    pytest.param(
        [_input("foo\nbar\n"), _toggle(), _input("12\x0134abc"), _toggle(), _input("456")],
        0,
        ["foo\nbar\n", "1234abc", "456"],
        r"^0+1+2+$",
        id="multi output",
    ),
    pytest.param(
        [_input("foo\nbar\n"), _toggle(), _input("1234"), _toggle(), _input("456")],
        1,
        ["456", "foo\nbar\n", "1234"],
        r"^1+2+0+$",
        id="multi output with nonzero index",
    ),
    pytest.param(
        [
            _input("foo\nbar\n"), _toggle(), _input("1234"), _toggle(), _toggle(),
            _input("456"), _toggle(), _input("%%%%"), _toggle(), _toggle(), _toggle(),
            _input("aaaa"),
        ],
        0,
        ["foo\nbar\n456", "1234%%%%aaaa", ""],
        r"^0+1+0+1+$",
        id="multi output many toggles",
    ),
    pytest.param(
        [
            _input("foo\nbar\n"), _toggle(), _input("1234"), _toggle(), _input("456"),
            _disable(2), _input("%%%%"), _enable(2), _toggle(), _toggle(), _input("aaa"),
            _disable(2), _disable(1), _input("1111"), _toggle(), _input("2222"),
            _toggle(), _input("3333"),
        ],
        0,
        ["foo\nbar\n%%%%111122223333", "1234", "456aaa"],
        r"^0+1+2+0+2+0+$",
        id="enable disable",
    ),
]


@pytest.mark.parametrize("inputs, init_index, wants, masked", MUX_CASES)
def test_mux_io(inputs, init_index, wants, masked):
    mux_stdin_r, end_stdin = pipe()
    mux_stdout_r, mux_stdout_w = pipe()
    mux_stderr_r, mux_stderr_w = pipe()
    end_stdout_r, end_stdout_w = pipe()
    end_stderr_r, end_stderr_w = pipe()
    in_set = IOSetIn(mux_stdin_r, mux_stdout_w, mux_stderr_w)
    stdout_tee = _Tee(mux_stdout_r, end_stdout_w)
    stderr_tee = _Tee(mux_stderr_r, end_stderr_w)

    echoes = [_Echo(i) for i in range(len(wants))]
    mio = MuxIO(in_set, [e.context() for e in echoes], init_index, lambda prev, res: "")

    for instruction in inputs:
        text, writeback = instruction(mio)
        if text:
            end_stdin.write(text.encode())
        if writeback:
            size = len(writeback)
            out_thread, out_result = _background(_read_exactly, end_stdout_r, size)
            err_thread, err_result = _background(_read_exactly, end_stderr_r, size)
            assert len(_finish(out_thread, out_result)) == size
            assert len(_finish(err_thread, err_result)) == size

    end_stdin.close()
    assert _wait_closed(mio)
    in_set.close()

    assert stdout_tee.done.wait(TIMEOUT)
    assert stderr_tee.done.wait(TIMEOUT)
    for echo, want in zip(echoes, wants):
        assert echo.done.wait(TIMEOUT)
        assert echo.received.decode() == want

    assert re.search(masked, stdout_tee.data.decode())
    assert re.search(masked, stderr_tee.data.decode())


def _idle_mux(count, toggle_message, hooks=None):
    mux_in, end = io_set_pipe()
    sides = []
    outs = []
    for index in range(count):
        out_in, out_out = io_set_pipe()
        enable_hook, disable_hook = (hooks or {}).get(index, (None, None))
        outs.append(
            IOSetOutContext(out_out.stdin, out_out.stdout, out_out.stderr, enable_hook, disable_hook)
        )
        sides.append(out_in)
    mio = MuxIO(mux_in, outs, 0, toggle_message)

    def shutdown():
        end.stdin.close()
        for side in sides:
            side.stdout.close()
            side.stderr.close()
        return _wait_closed(mio)

    return mio, shutdown


def test_mux_disable_zero_is_rejected():
    mio, shutdown = _idle_mux(2, None)
    with pytest.raises(ValueError, match="0th io"):
        mio.disable(0)
    assert shutdown()


def test_mux_toggle_messages_follow_enabled_outputs():
    calls = []

    def message(prev, res):
        calls.append((prev, res))
        return ""

    mio, shutdown = _idle_mux(2, message)
    mio.toggle_io()
    mio.disable(1)
    mio.toggle_io()
    assert calls == [(0, 1), (1, 0), (0, 0)]
    assert shutdown()


def test_mux_toggle_runs_hooks_in_order():
    events = []
    hooks = {
        0: (lambda: events.append("enable 0"), lambda: events.append("disable 0")),
        1: (lambda: events.append("enable 1"), lambda: events.append("disable 1")),
    }
    mio, shutdown = _idle_mux(2, None, hooks)
    mio.toggle_io()
    mio.toggle_io()
    assert events == ["disable 0", "enable 1", "disable 1", "enable 0"]
    assert shutdown()


def test_mux_writes_toggle_message_to_input_stdout():
    mux_in, end = io_set_pipe()
    out_in, out_out = io_set_pipe()
    outs = [IOSetOutContext(out_out.stdin, out_out.stdout, out_out.stderr)]
    mio = MuxIO(mux_in, outs, 0, lambda prev, res: f"switched {prev}->{res}\n")
    thread, result = _background(mio.toggle_io)
    expected = b"switched 0->0\n"
    assert _read_exactly(end.stdout, len(expected)) == expected
    _finish(thread, result)
    end.stdin.close()
    out_in.stdout.close()
    out_in.stderr.close()
    assert _wait_closed(mio)


# --- IOForwarder -----------------------------------------------------------


def test_io_forwarder_relays_and_switches():
    fwd_in, fwd_end = io_set_pipe()
    forwarder = IOForwarder(fwd_in)

    first_in, first_out = io_set_pipe()
    forwarder.set_destination(first_out)

    thread, result = _background(_read_exactly, first_in.stdin, 5)
    fwd_end.stdin.write(b"hello")
    assert _finish(thread, result) == b"hello"

    thread, result = _background(first_in.stdout.write, b"out")
    assert _read_exactly(fwd_end.stdout, 3) == b"out"
    _finish(thread, result)

    thread, result = _background(first_in.stderr.write, b"err")
    assert _read_exactly(fwd_end.stderr, 3) == b"err"
    _finish(thread, result)

    second_in, second_out = io_set_pipe()
    forwarder.set_destination(second_out)
    assert first_in.stdin.read() == b""

    thread, result = _background(_read_exactly, second_in.stdin, 4)
    fwd_end.stdin.write(b"next")
    assert _finish(thread, result) == b"next"

    fwd_end.stdin.close()
    thread, result = _background(second_in.stdin.read)
    assert _finish(thread, result) == b""


def test_io_forwarder_without_destination_discards_input():
    fwd_in, fwd_end = io_set_pipe()
    forwarder = IOForwarder(fwd_in)
    forwarder.set_destination(None)
    assert fwd_end.stdin.write(b"dropped") == 7
    dest_in, dest_out = io_set_pipe()
    forwarder.set_destination(dest_out)
    thread, result = _background(_read_exactly, dest_in.stdin, 4)
    fwd_end.stdin.write(b"kept")
    assert _finish(thread, result) == b"kept"
    fwd_end.stdin.close()