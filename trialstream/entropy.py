"""Cross-block Shannon-entropy windowing with carried-forward remainders.

Example:
    >>> from trialstream.entropy import EntropyWindower
    >>> windower = EntropyWindower(window_size=4)
    >>> len(windower.feed("subject", [1, 0, 1, 0, 1, 1, 0, 0, 1]))
    2
    >>> windower.remainder("subject")
    [1]
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from .stats import shannon_entropy


@dataclass(frozen=True)
class EntropyWindow:
    """One complete window; ``bit_range`` is ``[start, end)`` in channel bit order."""

    global_index: int
    bit_range: tuple[int, int]
    entropy: float

    @property
    def bit_index_center(self) -> float:
        start, end = self.bit_range
        return (start + end) / 2

    def to_dict(self) -> dict:
        return {
            "global_index": self.global_index,
            "bit_range": list(self.bit_range),
            "entropy": self.entropy,
        }


class EntropyWindower:
    """Per-channel accumulators owned by a session.

    A window is emitted iff the accumulator holds at least ``window_size`` bits
    at the time of the check; whatever is left stays for the next feed.
    """

    def __init__(self, window_size: int = 1000):
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self.window_size = window_size
        self._accumulators: Dict[str, List[int]] = {}
        self._emitted: Dict[str, int] = {}
        self._history: Dict[str, List[EntropyWindow]] = {}

    def feed(self, channel: str, bits: Iterable[int]) -> List[EntropyWindow]:
        """Append bits for ``channel`` and return any newly completed windows."""
        accumulator = self._accumulators.setdefault(channel, [])
        accumulator.extend(1 if bit else 0 for bit in bits)
        history = self._history.setdefault(channel, [])

        fresh: List[EntropyWindow] = []
        consumed = 0
        while len(accumulator) - consumed >= self.window_size:
            window_bits = accumulator[consumed:consumed + self.window_size]
            index = len(history)
            start = index * self.window_size
            window = EntropyWindow(
                global_index=index,
                bit_range=(start, start + self.window_size),
                entropy=float(shannon_entropy(window_bits)),
            )
            history.append(window)
            fresh.append(window)
            consumed += self.window_size
        if consumed:
            del accumulator[:consumed]
            self._emitted[channel] = self._emitted.get(channel, 0) + consumed
        return fresh

    def remainder(self, channel: str) -> List[int]:
        return list(self._accumulators.get(channel, []))

    def windows(self, channel: str) -> List[EntropyWindow]:
        return list(self._history.get(channel, []))

    def total_fed(self, channel: str) -> int:
        """``sum(window sizes) + remainder length`` for the channel."""
        return self._emitted.get(channel, 0) + len(self._accumulators.get(channel, []))

    @property
    def channels(self) -> List[str]:
        return sorted(self._accumulators)


def split_entropies(bits: Sequence[int], parts: int, *, min_bits: int = 50) -> Optional[List[Optional[float]]]:
    """Entropy of ``parts`` equal splits of a block; the last split takes the slack.

    Diagnostic only, independent of the cross-block windower. ``None`` when the
    block is shorter than ``min_bits``.
    """
    if parts < 1:
        raise ValueError("parts must be >= 1")
    n = len(bits)
    if n < min_bits:
        return None
    size = n // parts
    splits = []
    for part in range(parts):
        start = part * size
        end = n if part == parts - 1 else start + size
        splits.append(shannon_entropy(bits[start:end]))
    return splits
