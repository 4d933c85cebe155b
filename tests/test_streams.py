import io
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import transcript  # noqa: E402


def _nodes(*names):
    return [transcript.InputValue(name, rows=1) for name in names]


def test_output_path_per_node():
    assert transcript.output_path_for("out/run", "head") == "out/run.head"
    assert transcript.output_path_for("out/run", "x.grad") == "out/run.x.grad"
    assert transcript.output_path_for(transcript.CONSOLE, "head") == transcript.CONSOLE


def test_files_are_created_with_parent_directories(tmp_path):
    base = tmp_path / "nested" / "dir" / "run"
    options = transcript.FormattingOptions(prologue="begin %s\\n", epilogue="end\\n")
    with transcript.OutputStreams(str(base)) as streams:
        streams.open(_nodes("a", "b"))
        assert streams.names() == ["a", "b"]
        streams.write_prologue(options)
        streams["a"].write("1\n")
        streams.write_epilogue(options)

    assert (tmp_path / "nested" / "dir" / "run.a").read_text() == "begin a\n1\nend\n"
    assert (tmp_path / "nested" / "dir" / "run.b").read_text() == "begin b\nend\n"


def test_console_shares_one_stream():
    console = io.StringIO()
    with transcript.OutputStreams(transcript.CONSOLE, console=console) as streams:
        streams.open(_nodes("a", "b"))
        streams.write_prologue(transcript.FormattingOptions(prologue="[%s]"))
        assert streams["a"] is streams["b"]
    assert console.getvalue() == "[a][b]"
    assert not console.closed


def test_unknown_stream_and_reopen_after_close(tmp_path):
    streams = transcript.OutputStreams(str(tmp_path / "run"))
    streams.open(_nodes("a"))
    with pytest.raises(KeyError, match="zzz"):
        streams["zzz"]
    handle = streams["a"]
    streams.close()
    assert handle.closed
    with pytest.raises(RuntimeError):
        streams.open(_nodes("b"))


class FlakyFile(io.StringIO):
    """In-memory file that raises OSError once from the listed operations."""

    def __init__(self, failures=()):
        super().__init__()
        self.failures = set(failures)
        self.flush_calls = 0

    def _maybe_fail(self, operation):
        if operation in self.failures:
            self.failures.discard(operation)
            raise OSError(f"{operation} failed")

    def write(self, text):
        self._maybe_fail("write")
        return super().write(text)

    def flush(self):
        self.flush_calls += 1
        self._maybe_fail("flush")
        super().flush()

    def close(self):
        super().close()
        self._maybe_fail("close")


def _patch_open(monkeypatch, failures):
    opened = {}

    def fake_open(path, mode="r", encoding=None):
        name = os.path.basename(str(path))
        handle = FlakyFile(failures.get(name, ()))
        opened[name] = handle
        return handle

    monkeypatch.setattr(transcript.streams, "open", fake_open, raising=False)
    return opened


def test_flush_error_propagates_after_every_handle_is_closed(tmp_path, monkeypatch):
    opened = _patch_open(monkeypatch, {"run.a": {"flush"}})
    streams = transcript.OutputStreams(str(tmp_path / "run"))
    streams.open(_nodes("a", "b"))

    with pytest.raises(OSError, match="flush failed"):
        streams.close()
    assert opened["b"].flush_calls == 1
    assert opened["a"].closed and opened["b"].closed


def test_write_error_fails_the_run_and_closes_files(tmp_path, monkeypatch):
    opened = _patch_open(monkeypatch, {"run.y": {"write"}})
    net = transcript.Network()
    x = transcript.InputValue("x", rows=1)
    y = transcript.Tanh("y", x)
    net.add(x, y)
    reader = transcript.SequenceReader({"x": [[[1.0]], [[2.0]]]})
    writer = transcript.OutputWriter(net)

    with pytest.raises(OSError, match="write failed"):
        writer.write_output(reader, str(tmp_path / "run"), ["x", "y"], minibatch_size=1)
    assert writer.state is transcript.DriverState.ERROR
    assert opened["run.x"].closed and opened["run.y"].closed


def test_close_errors_do_not_mask_the_original_failure(tmp_path, monkeypatch):
    opened = _patch_open(monkeypatch, {"run.a": {"close"}})
    with pytest.raises(IndexError):
        with transcript.OutputStreams(str(tmp_path / "run")) as streams:
            streams.open(_nodes("a", "b"))
            raise IndexError("label out of range")
    assert opened["a"].closed and opened["b"].closed
