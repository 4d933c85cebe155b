"""
Minibatch data sources and label files for output evaluation.

A data source packs variable-length sequences into the ``[rows, S * T]``
buffers consumed by a Network and describes the packing with an MBLayout.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import torch

from .layout import MBLayout
from .resolver import MinibatchInputs

try:
    import h5py  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    h5py = None  # type: ignore


PathLike = Union[str, Path]


class MinibatchSource:
    """
    Interface the evaluation driver pulls minibatches from.
    """

    def start_minibatch_loop(
        self,
        minibatch_size: int,
        start: int = 0,
        requested_samples: Optional[int] = None,
    ) -> None:
        raise NotImplementedError

    def get_minibatch(self, inputs: MinibatchInputs) -> int:
        """
        Fill the bound input buffers and return the number of samples (time
        steps) delivered; 0 signals exhaustion.
        """
        raise NotImplementedError

    def data_end(self) -> None:
        """Called once per minibatch after its outputs were written."""

    def supports_multi_sequences(self) -> bool:
        return True

    def set_num_parallel_sequences(self, count: int) -> None:
        raise NotImplementedError


class SequenceReader(MinibatchSource):
    """
    In-memory data source over named streams of ``[T_i, D]`` sequences.

    Every stream holds the same number of sequences, and the i-th sequence has
    the same length in every stream. Each minibatch packs up to
    ``minibatch_size`` sequences (capped by the parallel-sequence hint), one
    per slot, padded to the longest one with gap entries. Zero-length
    sequences take no slot: they travel with the next non-empty sequence (or
    the last one, at the end of the data), so a minibatch only carries zero
    samples when every remaining sequence is empty.
    """

    def __init__(self, streams: Mapping[str, Sequence[torch.Tensor]]) -> None:
        if not streams:
            raise ValueError("SequenceReader requires at least one stream.")
        self.streams: Dict[str, List[torch.Tensor]] = {}
        lengths: Optional[List[int]] = None
        for name, sequences in streams.items():
            prepared = [_as_sequence(seq, name) for seq in sequences]
            stream_lengths = [int(seq.shape[0]) for seq in prepared]
            if lengths is None:
                lengths = stream_lengths
            elif stream_lengths != lengths:
                raise ValueError(f"Stream {name!r} does not match the sequence lengths of the other streams.")
            self.streams[name] = prepared
        self.lengths: List[int] = lengths or []

        self._minibatch_size = 1
        self._cursor = 0
        self._requested: Optional[int] = None
        self._delivered = 0
        self._max_parallel: Optional[int] = None
        self.minibatches_completed = 0

    @classmethod
    def from_hdf5(cls, path: PathLike, streams: Optional[Sequence[str]] = None) -> "SequenceReader":
        """
        Load streams stored as ``<stream>/data`` [frames, D] and
        ``<stream>/lengths`` [N] groups of an HDF5 file.
        """
        if h5py is None:
            raise RuntimeError("h5py is required to read sequence streams from disk. Install h5py.")
        loaded: Dict[str, List[torch.Tensor]] = {}
        with h5py.File(Path(path), "r") as handle:
            names = list(streams) if streams is not None else list(handle.keys())
            for name in names:
                if name not in handle:
                    raise KeyError(f"HDF5 file {str(path)!r} has no stream {name!r}.")
                group = handle[name]
                data = torch.from_numpy(group["data"][...]).float()
                if data.dim() == 1:
                    data = data.unsqueeze(1)
                lengths = [int(n) for n in group["lengths"][...]]
                if sum(lengths) != data.shape[0]:
                    raise ValueError(
                        f"Stream {name!r}: lengths sum to {sum(lengths)} but data has {data.shape[0]} frames."
                    )
                loaded[name] = list(torch.split(data, lengths, dim=0))
        return cls(loaded)

    @property
    def num_sequences(self) -> int:
        return len(self.lengths)

    @property
    def total_samples(self) -> int:
        return sum(self.lengths)

    def metadata(self) -> Dict[str, Any]:
        return {
            "streams": {name: int(seqs[0].shape[1]) if seqs else None for name, seqs in self.streams.items()},
            "num_sequences": self.num_sequences,
            "total_samples": self.total_samples,
            "minibatch_size": self._minibatch_size,
            "minibatches": math.ceil(self.num_sequences / max(1, self._sequences_per_minibatch())),
        }

    # ------------------------------------------------------------------ loop
    def start_minibatch_loop(
        self,
        minibatch_size: int,
        start: int = 0,
        requested_samples: Optional[int] = None,
    ) -> None:
        if minibatch_size < 1:
            raise ValueError("minibatch_size must be >= 1")
        if not 0 <= start <= self.num_sequences:
            raise ValueError(f"start {start} outside [0, {self.num_sequences}]")
        self._minibatch_size = int(minibatch_size)
        self._cursor = int(start)
        self._requested = None if requested_samples is None else int(requested_samples)
        self._delivered = 0
        self.minibatches_completed = 0

    def set_num_parallel_sequences(self, count: int) -> None:
        if count < 1:
            raise ValueError("count must be >= 1")
        self._max_parallel = int(count)

    def get_minibatch(self, inputs: MinibatchInputs) -> int:
        if self._cursor >= self.num_sequences:
            return 0
        if self._requested is not None and self._delivered >= self._requested:
            return 0
        for name in inputs:
            if name not in self.streams:
                raise KeyError(f"SequenceReader has no stream for input {name!r}.")

        cap = self._sequences_per_minibatch()
        indices: List[int] = []
        slot_of: Dict[int, int] = {}
        while self._cursor < self.num_sequences:
            idx = self._cursor
            if self.lengths[idx] > 0:
                if len(slot_of) == cap:
                    break
                slot_of[idx] = len(slot_of)
            indices.append(idx)
            self._cursor += 1

        lengths = [self.lengths[idx] for idx in indices]
        width = max(lengths)
        slots = max(1, len(slot_of))
        layout = MBLayout(num_parallel_sequences=slots, num_time_steps=width)
        taken = 0
        for idx, length in zip(indices, lengths):
            if idx not in slot_of:
                layout.add_sequence(idx, min(taken, slots - 1), 0, 0)
                continue
            slot = slot_of[idx]
            layout.add_sequence(idx, slot, 0, length)
            if length < width:
                layout.add_gap(slot, length, width)
            taken += 1

        for name, binding in inputs.items():
            sequences = self.streams[name]
            dim = int(sequences[indices[0]].shape[1])
            packed = torch.zeros(dim, width, slots)
            for idx, slot in slot_of.items():
                seq = sequences[idx]
                packed[:, : seq.shape[0], slot] = seq.t()
            binding.value = packed.reshape(dim, width * slots)
            binding.layout = layout

        samples = sum(lengths)
        self._delivered += samples
        return samples

    def data_end(self) -> None:
        self.minibatches_completed += 1

    def _sequences_per_minibatch(self) -> int:
        if self._max_parallel is None:
            return self._minibatch_size
        return max(1, min(self._minibatch_size, self._max_parallel))


def _as_sequence(seq: Any, stream: str) -> torch.Tensor:
    tensor = torch.as_tensor(seq, dtype=torch.float32)
    if tensor.dim() == 1:
        tensor = tensor.unsqueeze(1)
    if tensor.dim() != 2:
        raise ValueError(f"Stream {stream!r} expects [T, D] sequences; got {tuple(tensor.shape)}.")
    return tensor


def load_label_file(path: PathLike) -> List[str]:
    """
    Read one category label per line; surrounding whitespace is trimmed and
    blank lines are skipped.
    """
    labels: List[str] = []
    with open(Path(path), "r", encoding="utf-8") as handle:
        for line in handle:
            label = line.strip()
            if label:
                labels.append(label)
    return labels


def write_sequences_hdf5(path: PathLike, streams: Mapping[str, Sequence[torch.Tensor]]) -> None:
    """
    Store streams in the layout read by SequenceReader.from_hdf5().
    """
    if h5py is None:
        raise RuntimeError("h5py is required to write sequence streams to disk. Install h5py.")
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with h5py.File(target, "w") as handle:
        for name, sequences in streams.items():
            prepared = [_as_sequence(seq, name) for seq in sequences]
            grp = handle.create_group(name)
            grp.create_dataset("data", data=torch.cat(prepared, dim=0).numpy(), compression="gzip")
            grp.create_dataset("lengths", data=[int(seq.shape[0]) for seq in prepared])
