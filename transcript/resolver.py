# transcript/resolver.py

from __future__ import annotations

import sys
from collections import OrderedDict
from typing import Iterable, Iterator, List, Optional, Sequence

import torch

from .core import ComputationNode, Network
from .layout import MBLayout


def resolve_output_nodes(
    network: Network,
    names: Sequence[str] = (),
    *,
    verbose: bool = False,
) -> List[ComputationNode]:
    """
    Pick the nodes to emit.

    With no names the network's declared output nodes are used; otherwise each
    name is looked up in order (unknown names raise KeyError, repeats are
    dropped).
    """
    if not names:
        if verbose:
            print(
                "[resolve_output_nodes] output node names not specified, using the default output nodes.",
                file=sys.stderr,
            )
        if not network.output_nodes:
            raise ValueError("There is no default output node specified in the network.")
        return _dedupe(network.output_nodes)
    return _dedupe(network.node(name) for name in names)


def resolve_input_closure(
    network: Network,
    outputs: Iterable[ComputationNode],
) -> List[ComputationNode]:
    """
    Collect every input node the outputs depend on, first-seen order.
    """
    collected: List[ComputationNode] = []
    for output in outputs:
        collected.extend(network.input_nodes(output))
    return _dedupe(collected)


def _dedupe(nodes: Iterable[ComputationNode]) -> List[ComputationNode]:
    seen: set[int] = set()
    unique: List[ComputationNode] = []
    for node in nodes:
        if id(node) in seen:
            continue
        seen.add(id(node))
        unique.append(node)
    return unique


class InputBinding:
    """
    Handle through which a data source fills one input node's buffer and layout.
    """

    def __init__(self, node: ComputationNode) -> None:
        self.node = node

    def __repr__(self) -> str:
        return f"InputBinding({self.node.name!r})"

    @property
    def name(self) -> str:
        return self.node.name

    @property
    def rows(self) -> Optional[int]:
        return getattr(self.node, "rows", None)

    @property
    def value(self) -> Optional[torch.Tensor]:
        return self.node.value

    @value.setter
    def value(self, tensor: torch.Tensor) -> None:
        self.node.value = tensor

    @property
    def layout(self) -> Optional[MBLayout]:
        return self.node.layout

    @layout.setter
    def layout(self, layout: Optional[MBLayout]) -> None:
        self.node.layout = layout  # type: ignore[misc]


class MinibatchInputs:
    """
    Ordered mapping from input node name to its InputBinding.
    """

    def __init__(self) -> None:
        self._bindings: "OrderedDict[str, InputBinding]" = OrderedDict()

    def add(self, node: ComputationNode) -> InputBinding:
        binding = InputBinding(node)
        self._bindings[node.name] = binding
        return binding

    def __getitem__(self, name: str) -> InputBinding:
        try:
            return self._bindings[name]
        except KeyError:
            raise KeyError(f"No input named {name!r} is bound for this minibatch loop.") from None

    def __contains__(self, name: object) -> bool:
        return name in self._bindings

    def __iter__(self) -> Iterator[str]:
        return iter(self._bindings)

    def __len__(self) -> int:
        return len(self._bindings)

    def items(self):
        return self._bindings.items()

    def values(self):
        return self._bindings.values()


def bind_inputs(input_nodes: Iterable[ComputationNode]) -> MinibatchInputs:
    inputs = MinibatchInputs()
    for node in input_nodes:
        inputs.add(node)
    return inputs
