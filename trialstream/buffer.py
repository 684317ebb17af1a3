"""FIFO of random units fed by an entropy source.

Example:
    >>> from trialstream.buffer import BitChunk, StreamBuffer
    >>> buf = StreamBuffer()
    >>> buf.push(BitChunk(units=(1, 0, 1), source_label="remote", arrival_time=0.0))
    3
    >>> [unit.value for unit in buf.pop(2)], buf.depth()
    ([1, 0], 1)
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Sequence, Tuple

from .errors import BufferUnderrun, MalformedChunkError


@dataclass(frozen=True)
class BitChunk:
    """One delivery from an entropy source, appended in arrival order."""

    units: Tuple[int, ...]
    source_label: str
    arrival_time: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "units", tuple(int(unit) for unit in self.units))

    def __len__(self) -> int:
        return len(self.units)

    def validate(self, *, min_units: int = 1) -> "BitChunk":
        """Return self if every unit is 0/1 and the chunk is long enough."""
        if len(self.units) < min_units:
            raise MalformedChunkError(
                f"Chunk from {self.source_label!r} is too short.",
                details={"length": len(self.units), "min_units": min_units},
            )
        bad = [unit for unit in self.units if unit not in (0, 1)]
        if bad:
            raise MalformedChunkError(
                f"Chunk from {self.source_label!r} contains non-binary units.",
                details={"sample": bad[:8]},
            )
        return self

    @classmethod
    def from_string(cls, bits: str, source_label: str, arrival_time: float = 0.0) -> "BitChunk":
        """Build a chunk from a ``"0101..."`` payload as delivered by bit streams."""
        text = bits.strip()
        if any(char not in "01" for char in text):
            raise MalformedChunkError(
                f"Payload from {source_label!r} is not a bit string.",
                details={"sample": text[:16]},
            )
        return cls(units=tuple(int(char) for char in text), source_label=source_label, arrival_time=arrival_time)


@dataclass(frozen=True)
class BufferedUnit:
    """A unit together with its global stream position and origin."""

    value: int
    raw_index: int
    source_label: str


@dataclass
class StreamBuffer:
    """Strict arrival-order FIFO; no unit is ever returned twice.

    ``pop`` is all-or-nothing: on underrun nothing is removed.
    """

    _units: Deque[BufferedUnit] = field(default_factory=deque)
    total_pushed: int = 0
    total_popped: int = 0

    def push(self, chunk: BitChunk) -> int:
        """Append a chunk's units; return the new depth."""
        for value in chunk.units:
            self._units.append(BufferedUnit(value, self.total_pushed, chunk.source_label))
            self.total_pushed += 1
        return len(self._units)

    def depth(self) -> int:
        return len(self._units)

    def pop(self, count: int) -> List[BufferedUnit]:
        """Remove and return the oldest ``count`` units.

        Raises:
            BufferUnderrun: If fewer than ``count`` units are buffered.
        """
        if count < 0:
            raise ValueError("count must be >= 0")
        available = len(self._units)
        if count > available:
            raise BufferUnderrun(requested=count, available=available)
        popped = [self._units.popleft() for _ in range(count)]
        self.total_popped += count
        return popped

    def clear(self) -> int:
        """Drop everything buffered (used when a block attempt is abandoned)."""
        dropped = len(self._units)
        self.total_popped += dropped
        self._units.clear()
        return dropped


def unit_values(units: Sequence[BufferedUnit]) -> List[int]:
    return [unit.value for unit in units]
