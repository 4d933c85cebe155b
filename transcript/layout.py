# transcript/layout.py

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

GAP_SEQUENCE_ID = -1


@dataclass(frozen=True)
class SequenceInfo:
    """
    One entry of a minibatch layout.

    ``t_begin``/``t_end`` may extend past the minibatch when a sequence started
    in an earlier minibatch or continues into the next one; readers of the
    layout clip them to ``[0, num_time_steps]``.
    """

    seq_id: int
    slot: int
    t_begin: int
    t_end: int

    @property
    def is_gap(self) -> bool:
        return self.seq_id == GAP_SEQUENCE_ID

    @property
    def num_time_steps(self) -> int:
        return self.t_end - self.t_begin

    def clipped(self, width: int) -> Tuple[int, int]:
        """Return ``(t_begin, t_end)`` clipped to ``[0, width]``."""
        t_begin = max(self.t_begin, 0)
        t_end = min(self.t_end, width)
        return t_begin, max(t_begin, t_end)


class MBLayout:
    """
    Describes how a packed ``[rows, S * T]`` buffer holds a batch of sequences.

    Responsibilities:
      - Track the number of parallel sequence slots (S) and time steps (T).
      - Hold the ordered list of sequences (and padding gaps) per slot.
      - Map (slot, time step) to a buffer column: ``t * S + slot``.
    """

    def __init__(self, num_parallel_sequences: int = 1, num_time_steps: int = 1) -> None:
        if num_parallel_sequences < 1:
            raise ValueError("num_parallel_sequences must be >= 1")
        if num_time_steps < 0:
            raise ValueError("num_time_steps must be >= 0")
        self.num_parallel_sequences = int(num_parallel_sequences)
        self.num_time_steps = int(num_time_steps)
        self._sequences: List[SequenceInfo] = []

    @classmethod
    def frame_mode(cls, num_frames: int) -> "MBLayout":
        """
        Layout where every column is its own sequence of length 1.
        """
        layout = cls(num_parallel_sequences=num_frames, num_time_steps=1)
        for slot in range(num_frames):
            layout.add_sequence(slot, slot, 0, 1)
        return layout

    def __repr__(self) -> str:
        return (
            f"MBLayout(S={self.num_parallel_sequences}, T={self.num_time_steps}, "
            f"sequences={len(self._sequences)})"
        )

    @property
    def sequences(self) -> Tuple[SequenceInfo, ...]:
        return tuple(self._sequences)

    @property
    def num_columns(self) -> int:
        return self.num_parallel_sequences * self.num_time_steps

    def column_index(self, slot: int, t: int) -> int:
        return t * self.num_parallel_sequences + slot

    def add_sequence(self, seq_id: int, slot: int, t_begin: int, t_end: int) -> SequenceInfo:
        if not 0 <= slot < self.num_parallel_sequences:
            raise ValueError(
                f"Slot {slot} out of range for layout with {self.num_parallel_sequences} parallel sequences."
            )
        if t_end < t_begin:
            raise ValueError(f"Sequence end {t_end} precedes its begin {t_begin}.")
        info = SequenceInfo(seq_id=int(seq_id), slot=int(slot), t_begin=int(t_begin), t_end=int(t_end))
        self._sequences.append(info)
        return info

    def add_gap(self, slot: int, t_begin: int, t_end: int) -> SequenceInfo:
        return self.add_sequence(GAP_SEQUENCE_ID, slot, t_begin, t_end)

    def num_frames(self) -> int:
        """Number of valid (non-gap) time steps inside the minibatch."""
        total = 0
        for seq in self._sequences:
            if seq.is_gap:
                continue
            t_begin, t_end = seq.clipped(self.num_time_steps)
            total += t_end - t_begin
        return total
