# transcript/__init__.py

from .core import (
    Clock,
    OperationMode,
    ComputationNode,
    Network,
    topological_order,
)
from .layout import GAP_SEQUENCE_ID, MBLayout, SequenceInfo
from .nodes import (
    InputValue,
    LearnableParameter,
    Identity,
    Times,
    Plus,
    ElementTimes,
    Tanh,
    Sigmoid,
    RectifiedLinear,
    Softmax,
)
from .resolver import (
    InputBinding,
    MinibatchInputs,
    bind_inputs,
    resolve_input_closure,
    resolve_output_nodes,
)
from .formatting import FormattingOptions, category_index, reduce_to_categories, write_minibatch
from .streams import CONSOLE, OutputStreams, output_path_for
from .diagnostics import expose_gradients, insert_node, write_gradients
from .data_helper import MinibatchSource, SequenceReader, load_label_file, write_sequences_hdf5
from .evaluation import (
    CollectingWriter,
    DriverState,
    EvaluationStats,
    OutputWriter,
    TensorWriter,
    WriteConfig,
    write_output,
    write_output_from_config,
)

__all__ = [
    "Clock",
    "OperationMode",
    "ComputationNode",
    "Network",
    "topological_order",
    "GAP_SEQUENCE_ID",
    "MBLayout",
    "SequenceInfo",
    "InputValue",
    "LearnableParameter",
    "Identity",
    "Times",
    "Plus",
    "ElementTimes",
    "Tanh",
    "Sigmoid",
    "RectifiedLinear",
    "Softmax",
    "InputBinding",
    "MinibatchInputs",
    "bind_inputs",
    "resolve_input_closure",
    "resolve_output_nodes",
    "FormattingOptions",
    "category_index",
    "reduce_to_categories",
    "write_minibatch",
    "CONSOLE",
    "OutputStreams",
    "output_path_for",
    "expose_gradients",
    "insert_node",
    "write_gradients",
    "MinibatchSource",
    "SequenceReader",
    "load_label_file",
    "write_sequences_hdf5",
    "CollectingWriter",
    "DriverState",
    "EvaluationStats",
    "OutputWriter",
    "TensorWriter",
    "WriteConfig",
    "write_output",
    "write_output_from_config",
]
