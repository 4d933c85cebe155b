import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import transcript  # noqa: E402


class CountingTimes(transcript.Times):
    def __init__(self, name, weight, data):
        super().__init__(name, weight, data)
        self.calls = 0

    def forward(self):
        self.calls += 1
        super().forward()


def _sequences():
    return [
        torch.tensor([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]]),
        torch.tensor([[7.0, 8.0], [9.0, 10.0]]),
    ]


def _reader():
    return transcript.SequenceReader({"x": _sequences()})


def _build_network():
    net = transcript.Network()
    x = transcript.InputValue("x", rows=2)
    W = transcript.LearnableParameter("W", torch.tensor([[1.0, 0.0], [0.0, -1.0]]))
    h = CountingTimes("h", W, x)
    y = transcript.Tanh("y", h)
    z = transcript.Sigmoid("z", h)
    net.add(x, W, h, y, z)
    net.mark_outputs(y)
    return net


def test_input_node_written_as_text(tmp_path):
    net = _build_network()
    base = str(tmp_path / "out" / "run")
    stats = transcript.write_output(
        net,
        _reader(),
        base,
        minibatch_size=1,
        node_names=["x"],
        formatting={"sequenceSeparator": "--\\n", "precisionFormat": ".0"},
    )
    assert stats.minibatches == 2
    assert stats.samples == 5
    assert (tmp_path / "out" / "run.x").read_text() == "1 2\n3 4\n5 6\n--\n7 8\n9 10\n"


def test_minibatch_size_does_not_change_text(tmp_path):
    formatting = transcript.FormattingOptions(sequence_separator="|", precision_format=".4")
    for size in (1, 2):
        transcript.write_output(
            _build_network(),
            _reader(),
            str(tmp_path / f"mb{size}"),
            minibatch_size=size,
            node_names=["x", "y"],
            formatting=formatting,
        )
    for name in ("x", "y"):
        assert (tmp_path / f"mb1.{name}").read_text() == (tmp_path / f"mb2.{name}").read_text()


def test_outputs_share_work_per_minibatch(tmp_path):
    net = _build_network()
    transcript.write_output(net, _reader(), str(tmp_path / "run"), minibatch_size=1, node_names=["y", "z"])
    assert net.node("h").calls == 2
    assert (tmp_path / "run.y").exists() and (tmp_path / "run.z").exists()


def test_console_output_and_summary(capsys):
    net = _build_network()
    transcript.write_output(
        net,
        _reader(),
        transcript.CONSOLE,
        minibatch_size=2,
        node_names=["x"],
        formatting={"prologue": "<%s>\\n", "precisionFormat": ".0"},
    )
    captured = capsys.readouterr()
    assert captured.out == "<x>\n1 2\n3 4\n5 6\n7 8\n9 10\n"
    assert "Total Samples Evaluated = 5" in captured.err


def test_category_labels_from_mapping_file(tmp_path):
    net = transcript.Network()
    x = transcript.InputValue("x", rows=3)
    s = transcript.Softmax("s", x)
    net.add(x, s)
    net.mark_outputs(s)
    labels = tmp_path / "labels.txt"
    labels.write_text("a\nb\nc\n", encoding="utf-8")
    reader = transcript.SequenceReader({"x": [torch.tensor([[0.0, 5.0, 0.0], [9.0, 0.0, 0.0]])]})

    transcript.write_output(
        net,
        reader,
        str(tmp_path / "run"),
        minibatch_size=1,
        formatting={"isCategoryLabel": True, "labelMappingFile": str(labels), "sampleSeparator": " "},
    )
    assert (tmp_path / "run.s").read_text() == "b a\n"


def test_failed_run_sets_error_state_and_restores_mode(tmp_path):
    net = _build_network()
    writer = transcript.OutputWriter(net)
    with net.operation_mode(transcript.OperationMode.TRAINING):
        with pytest.raises(KeyError):
            writer.write_output(_reader(), str(tmp_path / "run"), ["missing"], minibatch_size=1)
        assert net.mode is transcript.OperationMode.TRAINING
    assert writer.state is transcript.DriverState.ERROR
    assert net.mode is transcript.OperationMode.INFERRING


def test_successful_run_ends_in_done_state(tmp_path):
    writer = transcript.OutputWriter(_build_network())
    writer.write_output(_reader(), str(tmp_path / "run"), minibatch_size=2)
    assert writer.state is transcript.DriverState.DONE


def test_write_to_single_sequence_writer():
    net = _build_network()
    sink = transcript.CollectingWriter(multi_sequences=False)
    stats = transcript.OutputWriter(net).write_to(_reader(), sink, ["y"], minibatch_size=2)

    assert stats.minibatches == 2
    assert sink.sample_counts == [3, 2]
    first = sink.batches[0]["y"]
    expected = torch.tanh(torch.tensor([[1.0, 3.0, 5.0], [-2.0, -4.0, -6.0]]))
    torch.testing.assert_close(first, expected)


def test_writer_unit_test_saves_inputs():
    net = _build_network()
    sink = transcript.CollectingWriter()
    transcript.OutputWriter(net).write_to(_reader(), sink, minibatch_size=2, writer_unit_test=True)
    assert list(sink.batches[0]) == ["x"]
    assert sink.batches[0]["x"].shape == (2, 6)


def test_forward_once_uses_current_inputs():
    net = _build_network()
    net.node("x").value = torch.tensor([[1.0], [1.0]])
    sink = transcript.CollectingWriter()
    values = transcript.OutputWriter(net).forward_once(sink, ["y", "z"])

    torch.testing.assert_close(values["y"], torch.tanh(torch.tensor([[1.0], [-1.0]])))
    torch.testing.assert_close(values["z"], torch.sigmoid(torch.tensor([[1.0], [-1.0]])))
    assert sink.sample_counts == [1]


def test_write_output_from_config(tmp_path):
    net = _build_network()
    cfg = {"minibatch_size": 1, "output_path": str(tmp_path / "cfg"), "node_names": "x", "num_samples": 3}
    stats = transcript.write_output_from_config(net, _reader(), cfg, formatting={"precisionFormat": ".0"})
    assert stats.samples == 3
    assert (tmp_path / "cfg.x").read_text() == "1 2\n3 4\n5 6\n"


def test_write_config_validation():
    with pytest.raises(KeyError, match="minibatch_size"):
        transcript.WriteConfig.from_config({})
    with pytest.raises(KeyError, match="bogus"):
        transcript.WriteConfig.from_config({"minibatch_size": 1, "bogus": 2})
    config = transcript.WriteConfig.from_config({"minibatch_size": 4}, node_names=["a", "b"])
    assert config.node_names == ("a", "b")
    assert config.output_path == transcript.CONSOLE


def test_zero_length_sequences_do_not_end_the_run(tmp_path):
    net = transcript.Network()
    x = transcript.InputValue("x", rows=1)
    net.add(x)
    net.mark_outputs(x)
    reader = transcript.SequenceReader(
        {"x": [torch.zeros(0, 1), torch.tensor([[1.0], [2.0]]), torch.zeros(0, 1), torch.tensor([[3.0]]), torch.zeros(0, 1)]}
    )
    stats = transcript.write_output(
        net,
        reader,
        str(tmp_path / "run"),
        minibatch_size=1,
        formatting={"sequencePrologue": "<", "sequenceEpilogue": ">\\n", "precisionFormat": ".0"},
    )
    assert stats.minibatches == 2
    assert stats.samples == 3
    assert (tmp_path / "run.x").read_text() == "<>\n<1\n2>\n<>\n<3>\n<>\n"
