# transcript/streams.py

from __future__ import annotations

import sys
from collections import OrderedDict
from pathlib import Path
from typing import Iterable, List, Optional, TextIO

from .core import ComputationNode
from .formatting import FormattingOptions

# Output path value that routes every node to stdout.
CONSOLE = "-"


def output_path_for(output_path: str, node_name: str) -> str:
    if output_path == CONSOLE:
        return CONSOLE
    return f"{output_path}.{node_name}"


class OutputStreams:
    """
    One text destination per node.

    Responsibilities:
      - Open ``<output_path>.<node name>`` per node (creating intermediate
        directories), or share stdout when output_path is CONSOLE.
      - Write prologue/epilogue fragments per destination.
      - Flush every destination before closing any of them.

    Usage:
        with OutputStreams("out/run") as streams:
            streams.open(nodes)
            streams["head"].write(...)
    """

    def __init__(self, output_path: str, *, console: Optional[TextIO] = None) -> None:
        self.output_path = str(output_path)
        self._console = console
        self._streams: "OrderedDict[str, TextIO]" = OrderedDict()
        self._owned: List[TextIO] = []
        self._closed = False

    # ------------------------------------------------------------------ control
    def __enter__(self) -> "OutputStreams":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            # the exception in flight is the one the caller sees
            self._close_handles(raise_errors=False)

    @property
    def is_console(self) -> bool:
        return self.output_path == CONSOLE

    def open(self, nodes: Iterable[ComputationNode]) -> None:
        if self._closed:
            raise RuntimeError("OutputStreams already closed.")
        for node in nodes:
            if node.name in self._streams:
                continue
            if self.is_console:
                self._streams[node.name] = self._console or sys.stdout
                continue
            path = Path(output_path_for(self.output_path, node.name))
            path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(path, "w", encoding="utf-8")
            self._owned.append(handle)
            self._streams[node.name] = handle

    def __getitem__(self, node_name: str) -> TextIO:
        try:
            return self._streams[node_name]
        except KeyError:
            raise KeyError(f"No output stream opened for node {node_name!r}.") from None

    def __contains__(self, node_name: object) -> bool:
        return node_name in self._streams

    def names(self) -> List[str]:
        return list(self._streams)

    # ------------------------------------------------------------------- output
    def write_prologue(self, options: FormattingOptions) -> None:
        for name, stream in self._streams.items():
            stream.write(options.processed(options.prologue, name))

    def write_epilogue(self, options: FormattingOptions) -> None:
        for name, stream in self._streams.items():
            stream.write(options.processed(options.epilogue, name))

    def flush(self) -> None:
        """
        Flush every destination; the first OSError is raised once all of them
        were attempted.
        """
        pending: Optional[OSError] = None
        for stream in self._streams.values():
            try:
                stream.flush()
            except OSError as exc:
                pending = pending or exc
        if pending is not None:
            raise pending

    def close(self) -> None:
        """
        Flush all destinations (errors propagate), then close owned files.
        """
        if self._closed:
            return
        try:
            self.flush()
        except OSError:
            self._close_handles(raise_errors=False)
            raise
        self._close_handles()

    def _close_handles(self, raise_errors: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        pending: Optional[OSError] = None
        for handle in self._owned:
            try:
                handle.close()
            except OSError as exc:
                pending = pending or exc
        self._owned.clear()
        if pending is not None and raise_errors:
            raise pending
