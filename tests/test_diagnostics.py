import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import transcript  # noqa: E402


class StopGradient(transcript.ComputationNode):
    def __init__(self, name, source):
        super().__init__(name, source)

    def forward(self):
        self.value = self.inputs[0].value.detach()


def _build_product_graph():
    """out = x * u + x"""
    net = transcript.Network()
    x = transcript.InputValue("x", rows=2)
    u = transcript.InputValue("u", rows=2)
    prod = transcript.ElementTimes("prod", x, u)
    out = transcript.Plus("out", prod, x)
    net.add(x, u, prod, out)
    net.mark_outputs(out)
    return net


def _product_reader():
    return transcript.SequenceReader(
        {
            "x": [torch.tensor([[1.0, 2.0]]), torch.tensor([[3.0, 4.0]])],
            "u": [torch.tensor([[0.5, 1.5]]), torch.tensor([[2.0, -1.0]])],
        }
    )


def test_one_tap_per_input_and_parameter():
    net = transcript.Network()
    x = transcript.InputValue("x", rows=2)
    W = transcript.LearnableParameter("W", torch.eye(2))
    y = transcript.Times("y", W, x)
    net.add(x, W, y)

    taps = transcript.expose_gradients(net, [y], [x])
    assert [tap.name for tap in taps] == ["x.grad", "W.grad"]
    assert y.inputs[0] is net.node("W.grad")
    assert y.inputs[1] is net.node("x.grad")
    assert all(tap.learning_rate_multiplier > 0 for tap in taps)

    order = [node.name for node in net.eval_order(y)]
    assert order.index("x.grad") < order.index("y")
    assert order.index("W.grad") < order.index("y")

    # a second exposure reuses the existing taps
    again = transcript.expose_gradients(net, [y], [x])
    assert [id(tap) for tap in again] == [id(tap) for tap in taps]
    assert len(net) == 5


def test_exposure_requires_an_output():
    net = _build_product_graph()
    with pytest.raises(ValueError):
        transcript.expose_gradients(net, [], [net.node("x")])


def test_gradients_are_written_per_minibatch(tmp_path):
    net = _build_product_graph()
    base = str(tmp_path / "run")
    transcript.write_output(
        net,
        _product_reader(),
        base,
        minibatch_size=1,
        formatting={"precisionFormat": ".1"},
        expose_gradients=True,
    )

    assert (tmp_path / "run.out").read_text() == "1.5 5.0\n9.0 0.0\n"
    assert (tmp_path / "run.x.grad").read_text() == "1.5 2.5\n3.0 0.0\n"
    assert (tmp_path / "run.u.grad").read_text() == "1.0 2.0\n3.0 4.0\n"
    assert net.mode is transcript.OperationMode.INFERRING


def test_taps_leave_forward_values_unchanged(tmp_path):
    plain = _build_product_graph()
    tapped = _build_product_graph()
    formatting = {"precisionFormat": ".9"}
    transcript.write_output(plain, _product_reader(), str(tmp_path / "plain"), minibatch_size=1, formatting=formatting)
    transcript.write_output(
        tapped,
        _product_reader(),
        str(tmp_path / "tapped"),
        minibatch_size=1,
        formatting=formatting,
        expose_gradients=True,
    )
    assert (tmp_path / "plain.out").read_text() == (tmp_path / "tapped.out").read_text()
    assert torch.equal(plain.node("out").value, tapped.node("out").value.detach())


def test_only_the_first_output_is_used(tmp_path):
    net = _build_product_graph()
    net.mark_outputs(net.node("prod"))
    with pytest.warns(UserWarning, match="Using only the first"):
        transcript.write_output(
            net,
            _product_reader(),
            str(tmp_path / "run"),
            minibatch_size=2,
            expose_gradients=True,
        )
    assert (tmp_path / "run.out").exists()
    assert not (tmp_path / "run.prod").exists()
    assert (tmp_path / "run.x.grad").exists()


def test_unreached_tap_is_reported(tmp_path):
    net = transcript.Network()
    x = transcript.InputValue("x", rows=2)
    stop = StopGradient("stop", x)
    out = transcript.Tanh("out", stop)
    net.add(x, stop, out)
    net.mark_outputs(out)
    reader = transcript.SequenceReader({"x": [torch.tensor([[1.0, 2.0]])]})

    with pytest.warns(UserWarning, match="Not used in backward pass"):
        transcript.write_output(net, reader, str(tmp_path / "run"), minibatch_size=1, expose_gradients=True)
    assert (tmp_path / "run.x.grad").read_text() == ""
