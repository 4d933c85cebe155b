"""
Demo: evaluate a small feed-forward classifier over synthetic sequences and
write its outputs (and, optionally, input/parameter gradients) as text.

Run:
    python examples/demo_write_outputs.py out/demo
    python examples/demo_write_outputs.py -            # everything to stdout
    python examples/demo_write_outputs.py out/demo --grads
"""

from __future__ import annotations

import os
import sys

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import transcript

MODEL = {
    "input_dim": 4,
    "hidden": 8,
    "classes": 3,
}

DATA = {
    "num_sequences": 6,
    "min_len": 2,
    "max_len": 5,
    "seed": 3,
}

FORMATTING = {
    "sequencePrologue": "# %s\\n",
    "sequenceSeparator": "\\n",
    "precisionFormat": ".4",
}


def build_network() -> transcript.Network:
    net = transcript.Network()
    x = transcript.InputValue("features", rows=MODEL["input_dim"])
    W1 = transcript.LearnableParameter("W1", (MODEL["hidden"], MODEL["input_dim"]))
    b1 = transcript.LearnableParameter("b1", (MODEL["hidden"], 1))
    W2 = transcript.LearnableParameter("W2", (MODEL["classes"], MODEL["hidden"]))
    proj1 = transcript.Times("proj1", W1, x)
    affine1 = transcript.Plus("affine1", proj1, b1)
    hidden = transcript.RectifiedLinear("hidden", affine1)
    logits = transcript.Times("logits", W2, hidden)
    posterior = transcript.Softmax("posterior", logits)
    net.add(x, W1, b1, W2, proj1, affine1, hidden, logits, posterior)
    net.mark_outputs(posterior)
    return net


def synthetic_reader() -> transcript.SequenceReader:
    gen = torch.Generator().manual_seed(DATA["seed"])
    sequences = []
    for _ in range(DATA["num_sequences"]):
        length = int(torch.randint(DATA["min_len"], DATA["max_len"] + 1, (1,), generator=gen))
        sequences.append(torch.randn(length, MODEL["input_dim"], generator=gen))
    return transcript.SequenceReader({"features": sequences})


def main(argv) -> None:
    output_path = argv[1] if len(argv) > 1 else transcript.CONSOLE
    expose = "--grads" in argv[2:]
    torch.manual_seed(0)
    net = build_network()
    reader = synthetic_reader()
    print(f"[demo] reader: {reader.metadata()}", file=sys.stderr)

    transcript.write_output(
        net,
        reader,
        output_path,
        minibatch_size=2,
        formatting=FORMATTING,
        expose_gradients=expose,
        verbosity=2,
    )

    if not expose:
        # category view of the same run
        labels = dict(FORMATTING, isCategoryLabel=True)
        label_path = output_path if output_path == transcript.CONSOLE else output_path + ".labels"
        transcript.write_output(net, synthetic_reader(), label_path, minibatch_size=2, formatting=labels)


if __name__ == "__main__":
    main(sys.argv)
