from __future__ import annotations

import warnings
from typing import List, Optional, Sequence

from .core import ComputationNode, Network
from .formatting import FormattingOptions, write_minibatch
from .nodes import Identity
from .streams import OutputStreams

GRADIENT_SUFFIX = ".grad"


def insert_node(
    network: Network,
    all_nodes: Sequence[ComputationNode],
    parent: ComputationNode,
    new_node: ComputationNode,
) -> None:
    """
    Splice ``new_node`` behind ``parent``: every edge in ``all_nodes`` that
    targeted ``parent`` is redirected to ``new_node``, whose sole input is
    ``parent``.
    """
    new_node.inputs[:] = [parent]
    for node in all_nodes:
        if node is new_node:
            continue
        for index, current in enumerate(node.inputs):
            if current is parent:
                network.set_input(node, index, new_node)
    network.add(new_node)


def expose_gradients(
    network: Network,
    outputs: Sequence[ComputationNode],
    input_nodes: Sequence[ComputationNode],
) -> List[Identity]:
    """
    Insert one identity tap per input node and per learnable parameter the
    first output depends on, then recompile the evaluation order.

    Forward values are unchanged; each tap's gradient after a backward pass
    is the gradient with respect to the node it wraps.

    Returns:
        The inserted taps, in tracking order.
    """
    if not outputs:
        raise ValueError("Expected exactly 1 output node for gradient exposure, got 0.")
    if len(outputs) > 1:
        warnings.warn(
            f"Expected exactly 1 output node for gradient exposure, got {len(outputs)}. "
            "Using only the first.",
            stacklevel=2,
        )
    root = outputs[0]

    tracked: List[ComputationNode] = []
    seen: set[int] = set()
    for node in list(input_nodes) + network.learnable_parameter_nodes(root):
        if id(node) not in seen:
            seen.add(id(node))
            tracked.append(node)

    all_nodes = list(network.nodes.values())
    taps: List[Identity] = []
    for node in tracked:
        existing = network.nodes.get(node.name + GRADIENT_SUFFIX)
        if isinstance(existing, Identity) and existing.inputs[0] is node:
            # Already tapped by an earlier run.
            taps.append(existing)
            continue
        tap = Identity(node.name + GRADIENT_SUFFIX, node)
        tap.learning_rate_multiplier = 1.0
        insert_node(network, all_nodes, node, tap)
        taps.append(tap)

    network.compile()
    return taps


def write_gradients(
    streams: OutputStreams,
    taps: Sequence[ComputationNode],
    options: FormattingOptions,
    *,
    label_mapping: Optional[Sequence[str]] = None,
    num_minibatches_run: int = 0,
) -> int:
    """
    Format every tap's gradient to its own stream. Taps without a gradient
    are reported with a warning and skipped.

    Returns:
        Number of gradient blocks written.
    """
    written = 0
    for tap in taps:
        gradient = tap.gradient
        if gradient is None or gradient.numel() == 0:
            warnings.warn(
                f"Gradient of node {tap.name!r} is empty. Not used in backward pass?",
                stacklevel=2,
            )
            continue
        write_minibatch(
            streams[tap.name],
            gradient,
            tap.layout,
            options,
            node_name=tap.name,
            label_mapping=label_mapping,
            num_minibatches_run=num_minibatches_run,
        )
        written += 1
    return written
