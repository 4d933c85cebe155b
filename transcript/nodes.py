# transcript/nodes.py

from __future__ import annotations

from typing import Optional, Sequence, Tuple, Union

import torch
import torch.nn as nn

from .core import ComputationNode
from .layout import MBLayout


class InputValue(ComputationNode):
    """
    Leaf node whose value and layout are filled by a data source per minibatch.
    """

    def __init__(self, name: str, rows: int) -> None:
        super().__init__(name)
        if rows < 1:
            raise ValueError("InputValue rows must be >= 1")
        self.rows = int(rows)
        self._layout: Optional[MBLayout] = None

    @property
    def layout(self) -> Optional[MBLayout]:
        return self._layout

    @layout.setter
    def layout(self, layout: Optional[MBLayout]) -> None:
        self._layout = layout

    def forward(self) -> None:
        if self.value is None:
            raise RuntimeError(f"Input node {self.name!r} has no data bound.")
        if self.value.dim() != 2 or self.value.shape[0] != self.rows:
            raise ValueError(
                f"Input node {self.name!r} expects [{self.rows}, N] data; got {tuple(self.value.shape)}."
            )


class LearnableParameter(ComputationNode):
    """
    Leaf node holding a trainable matrix. Never updated here; only read and,
    in training mode, differentiated.
    """

    def __init__(
        self,
        name: str,
        init: Union[torch.Tensor, Sequence[int]],
        learning_rate_multiplier: float = 1.0,
    ) -> None:
        super().__init__(name)
        if isinstance(init, torch.Tensor):
            data = init.detach().clone().float()
        else:
            shape: Tuple[int, ...] = tuple(int(dim) for dim in init)
            data = torch.randn(*shape) * 0.1
        if data.dim() == 1:
            data = data.unsqueeze(1)
        if data.dim() != 2:
            raise ValueError(f"LearnableParameter {name!r} must be 2-D; got {tuple(data.shape)}.")
        self.learning_rate_multiplier = float(learning_rate_multiplier)
        self.parameter = nn.Parameter(data, requires_grad=self.learning_rate_multiplier > 0)
        self.value = self.parameter

    @property
    def layout(self) -> Optional[MBLayout]:
        return None

    @property
    def gradient(self) -> Optional[torch.Tensor]:
        return self.parameter.grad

    def forward(self) -> None:
        self.value = self.parameter

    def zero_gradient(self) -> None:
        self.parameter.grad = None


class Identity(ComputationNode):
    """
    Pass-through node. With a positive learning-rate multiplier it keeps its
    own gradient, which makes it usable as a gradient tap.
    """

    def __init__(self, name: str, source: ComputationNode) -> None:
        super().__init__(name, source)

    @property
    def gradient(self) -> Optional[torch.Tensor]:
        if self.value is None or not self.needs_gradient or not self.value.requires_grad:
            return None
        return self.value.grad

    def forward(self) -> None:
        value = self.inputs[0].value.clone()
        if self.needs_gradient and torch.is_grad_enabled():
            if value.requires_grad:
                value.retain_grad()
            else:
                value.requires_grad_(True)
        self.value = value


class Times(ComputationNode):
    """Matrix product ``inputs[0] @ inputs[1]``."""

    def __init__(self, name: str, weight: ComputationNode, data: ComputationNode) -> None:
        super().__init__(name, weight, data)

    def forward(self) -> None:
        self.value = self.inputs[0].value @ self.inputs[1].value


class Plus(ComputationNode):
    def __init__(self, name: str, left: ComputationNode, right: ComputationNode) -> None:
        super().__init__(name, left, right)

    def forward(self) -> None:
        self.value = self.inputs[0].value + self.inputs[1].value


class ElementTimes(ComputationNode):
    def __init__(self, name: str, left: ComputationNode, right: ComputationNode) -> None:
        super().__init__(name, left, right)

    def forward(self) -> None:
        self.value = self.inputs[0].value * self.inputs[1].value


class Tanh(ComputationNode):
    def __init__(self, name: str, source: ComputationNode) -> None:
        super().__init__(name, source)

    def forward(self) -> None:
        self.value = torch.tanh(self.inputs[0].value)


class Sigmoid(ComputationNode):
    def __init__(self, name: str, source: ComputationNode) -> None:
        super().__init__(name, source)

    def forward(self) -> None:
        self.value = torch.sigmoid(self.inputs[0].value)


class RectifiedLinear(ComputationNode):
    def __init__(self, name: str, source: ComputationNode) -> None:
        super().__init__(name, source)

    def forward(self) -> None:
        self.value = torch.relu(self.inputs[0].value)


class Softmax(ComputationNode):
    """Softmax over the feature (row) dimension of every column."""

    def __init__(self, name: str, source: ComputationNode) -> None:
        super().__init__(name, source)

    def forward(self) -> None:
        self.value = torch.softmax(self.inputs[0].value, dim=0)
