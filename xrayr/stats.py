"""A writer that counts the bytes passing through it."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, Sequence


class Counter(Protocol):
    def add(self, value: int) -> int: ...


class BufferWriter(Protocol):
    def write_multi_buffer(self, buffers: Sequence[bytes]) -> Any: ...


@dataclass
class SizeStatWriter:
    """Adds the size of every written batch to a counter, then passes it on."""

    counter: Counter
    writer: BufferWriter

    def write_multi_buffer(self, buffers: Sequence[bytes]) -> Any:
        self.counter.add(sum(len(b) for b in buffers))
        return self.writer.write_multi_buffer(buffers)

    def close(self) -> Any:
        """Close the wrapped writer if it can be closed."""
        close = getattr(self.writer, "close", None)
        if callable(close):
            return close()
        return None

    def interrupt(self) -> None:
        """Interrupt the wrapped writer, falling back to closing it."""
        interrupt = getattr(self.writer, "interrupt", None)
        if callable(interrupt):
            interrupt()
            return
        self.close()