# transcript/formatting.py

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, TextIO

import torch

from .layout import MBLayout

# camelCase spellings accepted by FormattingOptions.from_config().
_CONFIG_ALIASES: Dict[str, str] = {
    "isCategoryLabel": "is_category_label",
    "labelMappingFile": "label_mapping_file",
    "transpose": "transpose",
    "prologue": "prologue",
    "epilogue": "epilogue",
    "sequenceSeparator": "sequence_separator",
    "sequencePrologue": "sequence_prologue",
    "sequenceEpilogue": "sequence_epilogue",
    "elementSeparator": "element_separator",
    "sampleSeparator": "sample_separator",
    "precisionFormat": "precision_format",
}

NODE_NAME_PLACEHOLDER = "%s"


@dataclass(frozen=True)
class NodeFormat:
    """String fragments of a FormattingOptions, processed for one node."""

    prologue: str
    epilogue: str
    sequence_separator: str
    sequence_prologue: str
    sequence_epilogue: str
    element_separator: str
    sample_separator: str


@dataclass(frozen=True)
class FormattingOptions:
    """
    How node values are turned into text.

    Interpretation:
      - is_category_label: reduce each column to the index of its maximum.
      - label_mapping_file: optional file of label strings for category output.
      - transpose: True writes one line per time step, False one line per
        feature dimension.
    Interspersed strings (all support literal '\\n'/'\\t' and '%s' for the
    node name): prologue/epilogue once per destination, sequence_separator
    between sequences, sequence_prologue/sequence_epilogue around each
    sequence, element_separator between values on a line and
    sample_separator between lines.
    precision_format: printf fragment placed between '%' and the type
    character, e.g. '.2' for '%.2f'.
    """

    is_category_label: bool = False
    label_mapping_file: Optional[str] = None
    transpose: bool = True
    prologue: str = ""
    epilogue: str = ""
    sequence_separator: str = ""
    sequence_prologue: str = ""
    sequence_epilogue: str = "\n"
    element_separator: str = " "
    sample_separator: str = "\n"
    precision_format: str = ""

    @classmethod
    def from_config(
        cls,
        config: Optional[Mapping[str, Any]] = None,
        **overrides: Any,
    ) -> "FormattingOptions":
        """
        Build options from a mapping (camelCase or snake_case keys) plus
        keyword overrides, which take precedence.
        """
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        merged = dict(config or {})
        merged.update(overrides)
        for key, value in merged.items():
            name = _CONFIG_ALIASES.get(key, key)
            if name not in known:
                raise KeyError(f"Unknown formatting option {key!r}")
            values[name] = value
        if "label_mapping_file" in values and not values["label_mapping_file"]:
            values["label_mapping_file"] = None
        for flag in ("is_category_label", "transpose"):
            if flag in values:
                values[flag] = _as_bool(values[flag])
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "FormattingOptions":
        return replace(self, **overrides)

    @staticmethod
    def processed(fragment: str, node_name: str) -> str:
        """
        Turn literal '\\n' and '\\t' into control characters and substitute
        the node name for '%s'.
        """
        fragment = fragment.replace("\\n", "\n").replace("\\t", "\t")
        if NODE_NAME_PLACEHOLDER in fragment:
            fragment = fragment.replace(NODE_NAME_PLACEHOLDER, node_name)
        return fragment

    def for_node(self, node_name: str) -> NodeFormat:
        return NodeFormat(
            prologue=self.processed(self.prologue, node_name),
            epilogue=self.processed(self.epilogue, node_name),
            sequence_separator=self.processed(self.sequence_separator, node_name),
            sequence_prologue=self.processed(self.sequence_prologue, node_name),
            sequence_epilogue=self.processed(self.sequence_epilogue, node_name),
            element_separator=self.processed(self.element_separator, node_name),
            sample_separator=self.processed(self.sample_separator, node_name),
        )

    @property
    def format_char(self) -> str:
        if not self.is_category_label:
            return "f"
        if self.label_mapping_file:
            return "s"
        return "u"

    @property
    def value_format(self) -> str:
        return "%" + self.precision_format + self.format_char


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off", ""):
            return False
        raise ValueError(f"Cannot interpret {value!r} as a boolean.")
    return bool(value)


def category_index(column: Sequence[float]) -> int:
    """
    Index of the maximum value in ``column``.

    The first index always beats the unset sentinel and keeps values equal to
    it; after a later index has taken the maximum, equal values move it to the
    later index.
    """
    best_pos = -1
    best_val = 0.0
    for pos, val in enumerate(column):
        # A plain ">=" would move [0.5, 0.5, 0.2] to index 1; index 0 must keep
        # ties so that column reports 0 while [0.2, 0.5, 0.5] still reports 2.
        if best_pos < 0 or val > best_val or (best_pos > 0 and val == best_val):
            best_pos = pos
            best_val = val
    if best_pos < 0:
        raise ValueError("Cannot reduce an empty column to a category index.")
    return best_pos


def reduce_to_categories(block: torch.Tensor) -> torch.Tensor:
    """
    Overwrite row 0 of every column of ``block`` [rows, steps] with that
    column's category index, in place, and return the [1, steps] view.
    """
    for j in range(block.shape[1]):
        block[0, j] = float(category_index(block[:, j].tolist()))
    return block[:1]


@contextmanager
def _host_copy(values: torch.Tensor) -> Iterator[torch.Tensor]:
    """
    Detached float64 CPU copy of ``values``. The generator keeps no reference
    to it, so the copy is released as soon as the caller drops its binding.
    """
    yield values.detach().to(device="cpu", dtype=torch.float64).clone()


def write_minibatch(
    stream: TextIO,
    values: torch.Tensor,
    layout: Optional[MBLayout],
    options: FormattingOptions,
    *,
    node_name: str,
    label_mapping: Optional[Sequence[str]] = None,
    num_minibatches_run: int = 0,
) -> int:
    """
    Write every sequence of one minibatch buffer to ``stream``.

    Args:
        stream: Text destination.
        values: Buffer shaped [rows, S * T]; column ``t * S + s`` is time step
            ``t`` of slot ``s``.
        layout: Minibatch layout; None means a single sequence of length 1.
        options: Formatting configuration.
        node_name: Substituted for '%s' in the string options.
        label_mapping: Category names, required when options.format_char is 's'.
        num_minibatches_run: Minibatches already written to this stream in the
            run; the sequence separator is skipped only for the run's first
            sequence.
    Returns:
        Number of sequences written.
    """
    if values.dim() == 1:
        values = values.unsqueeze(1)
    if values.dim() != 2:
        raise ValueError(f"Expected a [rows, columns] buffer for {node_name!r}; got {tuple(values.shape)}.")
    rows = int(values.shape[0])
    format_char = options.format_char
    if format_char == "s":
        if label_mapping is None:
            raise ValueError(
                f"Label mapping file {options.label_mapping_file!r} was configured but not loaded."
            )
        if rows != len(label_mapping):
            raise ValueError(
                f"Row dimension {rows} does not match number of entries {len(label_mapping)} "
                f"in label mapping file {options.label_mapping_file!r}."
            )
    if layout is None:
        layout = MBLayout.frame_mode(1)
    slots = layout.num_parallel_sequences
    width = layout.num_time_steps
    if values.shape[1] < slots * width:
        raise ValueError(
            f"Buffer of {node_name!r} has {values.shape[1]} columns; layout {layout!r} needs {slots * width}."
        )

    fmt = options.for_node(node_name)
    value_format = options.value_format
    written = 0
    with _host_copy(values) as data:
        grid = data[:, : slots * width].reshape(rows, width, slots)
        for seq in layout.sequences:
            if seq.is_gap:
                continue
            t_begin, t_end = seq.clipped(width)
            parts: List[str] = []
            if (num_minibatches_run > 0 or written > 0) and fmt.sequence_separator:
                parts.append(fmt.sequence_separator)
            parts.append(fmt.sequence_prologue)

            block = grid[:, t_begin:t_end, seq.slot]
            if options.is_category_label:
                block = reduce_to_categories(block)
            parts.extend(
                _format_block(block, options.transpose, fmt, format_char, value_format, label_mapping)
            )
            parts.append(fmt.sequence_epilogue)
            stream.write("".join(parts))
            written += 1
    return written


def _format_block(
    block: torch.Tensor,
    transpose: bool,
    fmt: NodeFormat,
    format_char: str,
    value_format: str,
    label_mapping: Optional[Sequence[str]],
) -> List[str]:
    if block.shape[1] == 0:
        return []
    lines = block.t().tolist() if transpose else block.tolist()
    parts: List[str] = []
    for j, line in enumerate(lines):
        if j > 0:
            parts.append(fmt.sample_separator)
        for i, val in enumerate(line):
            if i > 0:
                parts.append(fmt.element_separator)
            parts.append(_format_value(val, format_char, value_format, label_mapping))
    return parts


def _format_value(
    val: float,
    format_char: str,
    value_format: str,
    label_mapping: Optional[Sequence[str]],
) -> str:
    if format_char == "f":
        return value_format % val
    index = int(val)
    if format_char == "u":
        return value_format % index
    assert label_mapping is not None
    if index < 0 or index >= len(label_mapping):
        raise IndexError(
            f"Category index {index} is outside the label mapping ({len(label_mapping)} entries)."
        )
    return value_format % label_mapping[index]
