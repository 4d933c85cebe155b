# transcript/core.py

from __future__ import annotations

import enum
from collections import OrderedDict, defaultdict, deque
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

import torch

from .layout import MBLayout


class Clock:
    """
    Evaluation clock for a Network.

    Responsibilities:
      - Maintain a monotonically increasing 'tick' counter, one per minibatch.
      - Nodes remember the tick of their last forward computation; a cached
        value is valid iff that tick equals the current one.
    """

    def __init__(self) -> None:
        self._tick: int = 0

    @property
    def tick(self) -> int:
        """Current evaluation generation (integer)."""
        return self._tick

    def step(self, n: int = 1) -> int:
        """Advance clock by n ticks (default 1) and return new tick."""
        self._tick += n
        return self._tick


class OperationMode(enum.Enum):
    INFERRING = "inferring"
    TRAINING = "training"


class ComputationNode:
    """
    Capability interface shared by every node variant.

    Responsibilities:
      - Own a value buffer shaped [rows, S * T] and, for variants that track
        it, a gradient buffer of the same shape.
      - Compute its value from its inputs (forward()).
      - Report the minibatch layout of its value.

    The evaluation driver and formatter only use this interface.
    """

    def __init__(self, name: str, *inputs: "ComputationNode") -> None:
        if not name:
            raise ValueError("Nodes require a non-empty name.")
        self.name = name
        self.inputs: List[ComputationNode] = list(inputs)
        self.value: Optional[torch.Tensor] = None
        self.eval_tick: Optional[int] = None
        # > 0 forces the node to take part in the backward pass.
        self.learning_rate_multiplier: float = 0.0

    def __repr__(self) -> str:
        args = ", ".join(node.name for node in self.inputs)
        return f"{type(self).__name__}({self.name!r}, inputs=[{args}])"

    @property
    def operation_name(self) -> str:
        return type(self).__name__

    @property
    def layout(self) -> Optional[MBLayout]:
        for node in self.inputs:
            layout = node.layout
            if layout is not None:
                return layout
        return None

    @property
    def gradient(self) -> Optional[torch.Tensor]:
        return None

    @property
    def needs_gradient(self) -> bool:
        return self.learning_rate_multiplier > 0

    def set_input(self, index: int, node: "ComputationNode") -> None:
        self.inputs[index] = node

    def forward(self) -> None:
        raise NotImplementedError

    def zero_gradient(self) -> None:
        pass


def topological_order(nodes: Sequence[ComputationNode]) -> List[ComputationNode]:
    """
    Order ``nodes`` so every node follows all of its inputs (Kahn's algorithm).

    Ties are broken by position in ``nodes`` so the result depends only on the
    node table and its edges.
    """
    position = {id(node): idx for idx, node in enumerate(nodes)}
    in_degree: Dict[int, int] = {id(node): 0 for node in nodes}
    children: Dict[int, List[ComputationNode]] = defaultdict(list)
    for node in nodes:
        for parent in node.inputs:
            if id(parent) not in position:
                raise ValueError(
                    f"Node {node.name!r} consumes {parent.name!r}, which is not part of the network."
                )
            in_degree[id(node)] += 1
            children[id(parent)].append(node)

    queue = deque(node for node in nodes if in_degree[id(node)] == 0)
    ordered: List[ComputationNode] = []
    while queue:
        current = queue.popleft()
        ordered.append(current)
        ready = []
        for child in children[id(current)]:
            in_degree[id(child)] -= 1
            if in_degree[id(child)] == 0:
                ready.append(child)
        ready.sort(key=lambda node: position[id(node)])
        queue.extend(ready)

    if len(ordered) != len(nodes):
        unresolved = sorted(node.name for node in nodes if in_degree[id(node)] > 0)
        raise ValueError(f"Cyclic dependency detected among nodes: {unresolved}")
    return ordered


class Network:
    """
    Owner of the node table.

    Responsibilities:
      - Register nodes by unique name and declare default output nodes.
      - Answer dependency queries (input nodes, learnable parameters).
      - Recompute the evaluation order after structural edits (compile()).
      - Run memoized forward passes and autograd-backed backward passes.
      - Carry the operation mode, switched only through operation_mode().
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or Clock()
        self.nodes: "OrderedDict[str, ComputationNode]" = OrderedDict()
        self.output_nodes: List[ComputationNode] = []

        self._mode = OperationMode.INFERRING
        self._order: List[ComputationNode] = []
        self._root_orders: Dict[int, List[ComputationNode]] = {}
        self._structure_dirty = True
        self._value_roots: set[int] = set()
        self._gradient_root: Optional[ComputationNode] = None

    # --- Construction APIs ---

    def add(self, *nodes: ComputationNode) -> None:
        """
        Register one or more nodes with the network.
        """
        for node in nodes:
            if node.name in self.nodes:
                raise ValueError(f"Duplicate node name {node.name!r}")
            self.nodes[node.name] = node
        self._structure_dirty = True

    def mark_outputs(self, *nodes: ComputationNode) -> None:
        """
        Declare default output nodes, used when no output names are requested.
        """
        for node in nodes:
            if self.nodes.get(node.name) is not node:
                raise ValueError(f"Node {node.name!r} must be added before it is marked as output.")
            if node not in self.output_nodes:
                self.output_nodes.append(node)

    def set_input(self, node: ComputationNode, index: int, new_input: ComputationNode) -> None:
        node.set_input(index, new_input)
        self._structure_dirty = True

    # --- Queries ---

    def node(self, name: str) -> ComputationNode:
        try:
            return self.nodes[name]
        except KeyError:
            raise KeyError(f"Network has no node named {name!r}.") from None

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def walk(self, root: ComputationNode) -> Iterator[ComputationNode]:
        """
        Yield ``root`` and every node it depends on, first-seen (depth-first,
        inputs left to right).
        """
        seen: set[int] = set()
        stack = [root]
        while stack:
            node = stack.pop()
            if id(node) in seen:
                continue
            seen.add(id(node))
            yield node
            stack.extend(reversed(node.inputs))

    def input_nodes(self, root: ComputationNode) -> List[ComputationNode]:
        from .nodes import InputValue

        return [node for node in self.walk(root) if isinstance(node, InputValue)]

    def learnable_parameter_nodes(self, root: ComputationNode) -> List[ComputationNode]:
        from .nodes import LearnableParameter

        return [node for node in self.walk(root) if isinstance(node, LearnableParameter)]

    # --- Evaluation order ---

    def compile(self) -> List[ComputationNode]:
        """
        Recompute the evaluation order from the current edge set.
        """
        self._order = topological_order(list(self.nodes.values()))
        self._root_orders = {}
        self._structure_dirty = False
        return list(self._order)

    def eval_order(self, root: ComputationNode) -> List[ComputationNode]:
        if self._structure_dirty:
            self.compile()
        key = id(root)
        order = self._root_orders.get(key)
        if order is None:
            if self.nodes.get(root.name) is not root:
                raise KeyError(f"Node {root.name!r} is not part of this network.")
            needed = {id(node) for node in self.walk(root)}
            order = [node for node in self._order if id(node) in needed]
            self._root_orders[key] = order
        return order

    # --- Operation mode ---

    @property
    def mode(self) -> OperationMode:
        return self._mode

    @contextmanager
    def operation_mode(self, mode: OperationMode) -> Iterator[OperationMode]:
        """
        Switch the operation mode for the duration of a with-block.

        Usage:
            with net.operation_mode(OperationMode.TRAINING):
                net.forward(node)
                net.backward(node)
        """
        if not isinstance(mode, OperationMode):
            raise ValueError(f"Unknown operation mode {mode!r}")
        previous = self._mode
        self._mode = mode
        try:
            yield mode
        finally:
            self._mode = previous

    # --- Allocation & compute ---

    def allocate_matrices(
        self,
        exclude: Iterable[ComputationNode] = (),
        value_nodes: Iterable[ComputationNode] = (),
        gradient_root: Optional[ComputationNode] = None,
    ) -> None:
        """
        Prepare buffers for the requested forward roots and, when
        ``gradient_root`` is given, for a backward pass rooted there.
        """
        excluded = {id(node) for node in exclude}
        self._value_roots = set()
        for node in value_nodes:
            if id(node) in excluded:
                continue
            self.eval_order(node)
            self._value_roots.add(id(node))
        self._gradient_root = gradient_root
        if gradient_root is not None:
            self.eval_order(gradient_root)
            self._value_roots.add(id(gradient_root))
        for node in self.nodes.values():
            node.eval_tick = None

    def forward(self, root: ComputationNode) -> torch.Tensor:
        """
        Compute ``root`` and any stale dependency for the current clock tick.
        """
        if id(root) not in self._value_roots:
            raise RuntimeError(
                f"Node {root.name!r} was not allocated; call allocate_matrices() first."
            )
        tick = self.clock.tick
        with torch.set_grad_enabled(self._mode is OperationMode.TRAINING):
            for node in self.eval_order(root):
                if node.eval_tick == tick:
                    continue
                node.forward()
                node.eval_tick = tick
        assert root.value is not None
        return root.value

    def backward(self, root: ComputationNode) -> None:
        """
        Populate gradient buffers of every tracked node below ``root``.

        The output value is seeded with a gradient of ones.
        """
        if self._mode is not OperationMode.TRAINING:
            raise RuntimeError("backward() requires OperationMode.TRAINING.")
        if root.eval_tick != self.clock.tick or root.value is None:
            raise RuntimeError(f"Node {root.name!r} has no forward value for the current minibatch.")
        order = self.eval_order(root)
        for node in order:
            node.zero_gradient()
        value = root.value
        if not value.requires_grad:
            return
        value.backward(torch.ones_like(value))
