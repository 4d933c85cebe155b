from __future__ import annotations

import enum
import sys
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import torch

from .core import ComputationNode, Network, OperationMode
from .data_helper import MinibatchSource, load_label_file
from .diagnostics import expose_gradients, write_gradients
from .formatting import FormattingOptions, write_minibatch
from .resolver import bind_inputs, resolve_input_closure, resolve_output_nodes
from .streams import CONSOLE, OutputStreams

Formatting = Union[FormattingOptions, Mapping[str, Any], None]


class DriverState(enum.Enum):
    IDLE = "idle"
    LOOP_INIT = "loop_init"
    FETCH_MINIBATCH = "fetch_minibatch"
    FORWARD = "forward"
    BACKWARD = "backward"
    EMIT = "emit"
    DATA_END = "data_end"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class WriteConfig:
    minibatch_size: int
    output_path: str = CONSOLE
    node_names: Sequence[str] = ()
    num_samples: Optional[int] = None
    expose_gradients: bool = False

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any], **overrides: Any) -> "WriteConfig":
        """
        Extract the write_output() settings from a plain config dict.
        """
        merged = dict(cfg)
        merged.update(overrides)
        if "minibatch_size" not in merged:
            raise KeyError("Write config missing required key: minibatch_size")
        known = {f.name for f in fields(cls)}
        unknown = sorted(key for key in merged if key not in known)
        if unknown:
            raise KeyError(f"Unknown write config keys: {', '.join(unknown)}")
        if isinstance(merged.get("node_names"), str):
            merged["node_names"] = [merged["node_names"]]
        merged["node_names"] = tuple(merged.get("node_names", ()))
        return cls(**merged)


@dataclass
class EvaluationStats:
    minibatches: int
    samples: int
    output_path: Optional[str] = None


class TensorWriter:
    """
    Destination receiving raw per-minibatch tensors keyed by node name.
    """

    def save_data(self, values: Dict[str, torch.Tensor], num_samples: int) -> None:
        raise NotImplementedError

    def supports_multi_sequences(self) -> bool:
        return True


class CollectingWriter(TensorWriter):
    """Keeps every saved minibatch in memory."""

    def __init__(self, multi_sequences: bool = True) -> None:
        self.batches: List[Dict[str, torch.Tensor]] = []
        self.sample_counts: List[int] = []
        self._multi_sequences = multi_sequences

    def save_data(self, values: Dict[str, torch.Tensor], num_samples: int) -> None:
        self.batches.append(dict(values))
        self.sample_counts.append(int(num_samples))

    def supports_multi_sequences(self) -> bool:
        return self._multi_sequences


class OutputWriter:
    """
    Runs a network over a data source and writes selected node values.

    Responsibilities:
      - Resolve output/input nodes and bind inputs to the data source.
      - Drive the minibatch loop (fetch, forward, optional backward, emit).
      - Format values through write_minibatch() into one stream per node.
      - In diagnostic mode, expose input/parameter gradients through taps.
    """

    def __init__(self, network: Network, *, verbosity: int = 0, progress_every: int = 100) -> None:
        self.network = network
        self.verbosity = verbosity
        self.progress_every = progress_every
        self.state = DriverState.IDLE
        self.gradient_taps: List[ComputationNode] = []

    # ------------------------------------------------------------------ text
    def write_output(
        self,
        reader: MinibatchSource,
        output_path: str,
        node_names: Sequence[str] = (),
        formatting: Formatting = None,
        *,
        minibatch_size: int,
        num_samples: Optional[int] = None,
        expose_gradients: bool = False,
    ) -> EvaluationStats:
        """
        Evaluate ``node_names`` (or the network's default outputs) over every
        minibatch of ``reader`` and write them as text.

        Args:
            reader: Data source filling the network's input nodes.
            output_path: Base path; node ``n`` goes to ``<output_path>.n``.
                CONSOLE ('-') writes everything to stdout.
            node_names: Output nodes in emission order.
            formatting: FormattingOptions or a config mapping.
            minibatch_size: Passed to reader.start_minibatch_loop().
            num_samples: Optional sample budget for the reader.
            expose_gradients: Insert gradient taps for every input and
                learnable parameter of the (single) output node, run a
                backward pass per minibatch and write each tap's gradient to
                ``<output_path>.<node>.grad``.
        Returns:
            EvaluationStats for the run.
        """
        options = _as_options(formatting)
        mode = OperationMode.TRAINING if expose_gradients else OperationMode.INFERRING
        try:
            with self.network.operation_mode(mode):
                return self._write_text(
                    reader,
                    output_path,
                    node_names,
                    options,
                    minibatch_size=minibatch_size,
                    num_samples=num_samples,
                    expose=expose_gradients,
                )
        except BaseException:
            self.state = DriverState.ERROR
            raise

    def _write_text(
        self,
        reader: MinibatchSource,
        output_path: str,
        node_names: Sequence[str],
        options: FormattingOptions,
        *,
        minibatch_size: int,
        num_samples: Optional[int],
        expose: bool,
    ) -> EvaluationStats:
        self.state = DriverState.LOOP_INIT
        outputs = resolve_output_nodes(self.network, node_names, verbose=self.verbosity > 0)
        inputs = resolve_input_closure(self.network, outputs)

        self.gradient_taps = []
        if expose:
            self.gradient_taps = list(expose_gradients(self.network, outputs, inputs))
            outputs = outputs[:1]
            self.network.allocate_matrices((), outputs, gradient_root=outputs[0])
        else:
            self.network.allocate_matrices((), outputs, gradient_root=None)

        bindings = bind_inputs(inputs)

        label_mapping: Optional[List[str]] = None
        if options.is_category_label and options.label_mapping_file:
            label_mapping = load_label_file(options.label_mapping_file)

        minibatches = 0
        samples = 0
        with OutputStreams(output_path) as streams:
            streams.open(outputs)
            streams.open(self.gradient_taps)
            streams.write_prologue(options)

            reader.start_minibatch_loop(minibatch_size, 0, num_samples)
            while True:
                self.state = DriverState.FETCH_MINIBATCH
                actual = reader.get_minibatch(bindings)
                if not actual or actual <= 0:
                    break

                self.state = DriverState.FORWARD
                self.network.clock.step()
                for node in outputs:
                    self.state = DriverState.FORWARD
                    value = self.network.forward(node)
                    self.state = DriverState.EMIT
                    write_minibatch(
                        streams[node.name],
                        value,
                        node.layout,
                        options,
                        node_name=node.name,
                        label_mapping=label_mapping,
                        num_minibatches_run=minibatches,
                    )
                    if expose:
                        self.state = DriverState.BACKWARD
                        self.network.backward(node)

                if expose:
                    self.state = DriverState.EMIT
                    write_gradients(
                        streams,
                        self.gradient_taps,
                        options,
                        label_mapping=label_mapping,
                        num_minibatches_run=minibatches,
                    )

                samples += actual
                minibatches += 1
                self._report_minibatch(minibatches, actual)

                self.state = DriverState.DATA_END
                reader.data_end()

            streams.write_epilogue(options)

        self.state = DriverState.DONE
        print(
            f"[write_output] written to {output_path}*\n"
            f"[write_output] Total Samples Evaluated = {samples}",
            file=sys.stderr,
        )
        return EvaluationStats(minibatches=minibatches, samples=samples, output_path=output_path)

    # --------------------------------------------------------------- tensors
    def write_to(
        self,
        reader: MinibatchSource,
        writer: TensorWriter,
        node_names: Sequence[str] = (),
        *,
        minibatch_size: int,
        num_samples: Optional[int] = None,
        writer_unit_test: bool = False,
    ) -> EvaluationStats:
        """
        Evaluate outputs over ``reader`` and hand raw tensors to ``writer``.

        With ``writer_unit_test`` the bound input values are saved instead of
        the outputs, which checks a reader/writer pair without the network.
        """
        try:
            with self.network.operation_mode(OperationMode.INFERRING):
                self.state = DriverState.LOOP_INIT
                outputs = resolve_output_nodes(self.network, node_names, verbose=self.verbosity > 0)
                inputs = resolve_input_closure(self.network, outputs)
                self.network.allocate_matrices((), outputs, gradient_root=None)
                bindings = bind_inputs(inputs)

                reader.start_minibatch_loop(minibatch_size, 0, num_samples)
                if not writer.supports_multi_sequences():
                    reader.set_num_parallel_sequences(1)

                minibatches = 0
                samples = 0
                while True:
                    self.state = DriverState.FETCH_MINIBATCH
                    actual = reader.get_minibatch(bindings)
                    if not actual or actual <= 0:
                        break

                    self.state = DriverState.FORWARD
                    self.network.clock.step()
                    values: Dict[str, torch.Tensor] = {}
                    for node in outputs:
                        values[node.name] = self.network.forward(node).detach().clone()

                    self.state = DriverState.EMIT
                    if writer_unit_test:
                        values = {
                            name: binding.value.detach().clone()
                            for name, binding in bindings.items()
                            if binding.value is not None
                        }
                    writer.save_data(values, actual)

                    samples += actual
                    minibatches += 1
                    self._report_minibatch(minibatches, actual)

                    self.state = DriverState.DATA_END
                    reader.data_end()

                if self.verbosity > 0:
                    print(f"[write_to] Total Samples Evaluated = {samples}", file=sys.stderr)
                self.state = DriverState.DONE
                return EvaluationStats(minibatches=minibatches, samples=samples)
        except BaseException:
            self.state = DriverState.ERROR
            raise

    def forward_once(self, writer: TensorWriter, node_names: Sequence[str] = ()) -> Dict[str, torch.Tensor]:
        """
        Single forward pass over whatever the input nodes currently hold.
        """
        try:
            with self.network.operation_mode(OperationMode.INFERRING):
                self.state = DriverState.LOOP_INIT
                outputs = resolve_output_nodes(self.network, node_names, verbose=self.verbosity > 0)
                self.network.allocate_matrices((), outputs, gradient_root=None)
                self.state = DriverState.FORWARD
                self.network.clock.step()
                values = {node.name: self.network.forward(node).detach().clone() for node in outputs}
                self.state = DriverState.EMIT
                writer.save_data(values, 1)
                self.state = DriverState.DONE
                return values
        except BaseException:
            self.state = DriverState.ERROR
            raise

    # --------------------------------------------------------------- helpers
    def _report_minibatch(self, minibatches: int, actual: int) -> None:
        if self.verbosity > 1:
            print(f"Minibatch[{minibatches}]: ActualMBSize = {actual}", file=sys.stderr)
        if self.progress_every > 0 and minibatches % self.progress_every == 0:
            print(f"[write_output] {minibatches} minibatches evaluated", file=sys.stderr)


def _as_options(formatting: Formatting) -> FormattingOptions:
    if formatting is None:
        return FormattingOptions()
    if isinstance(formatting, FormattingOptions):
        return formatting
    return FormattingOptions.from_config(formatting)


def write_output(
    network: Network,
    reader: MinibatchSource,
    output_path: str = CONSOLE,
    *,
    minibatch_size: int,
    node_names: Sequence[str] = (),
    formatting: Formatting = None,
    num_samples: Optional[int] = None,
    expose_gradients: bool = False,
    verbosity: int = 0,
) -> EvaluationStats:
    """
    Write node values of ``network`` evaluated over ``reader`` as text.

    Returns the EvaluationStats of the run.
    """
    writer = OutputWriter(network, verbosity=verbosity)
    return writer.write_output(
        reader,
        output_path,
        node_names,
        formatting,
        minibatch_size=minibatch_size,
        num_samples=num_samples,
        expose_gradients=expose_gradients,
    )


def write_output_from_config(
    network: Network,
    reader: MinibatchSource,
    cfg: Mapping[str, Any],
    *,
    formatting: Formatting = None,
    verbosity: int = 0,
) -> EvaluationStats:
    """
    Same as write_output() with settings taken from a plain config dict.
    """
    config = WriteConfig.from_config(cfg)
    return write_output(
        network,
        reader,
        config.output_path,
        minibatch_size=config.minibatch_size,
        node_names=config.node_names,
        formatting=formatting,
        num_samples=config.num_samples,
        expose_gradients=config.expose_gradients,
        verbosity=verbosity,
    )
