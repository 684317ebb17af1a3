"""Channel draw strategy, chosen by trial parity.

Odd 1-based trial numbers draw subject and ghost units adjacently from one
contiguous pop; even trial numbers draw each channel separately with
``independent_gap`` discarded units between them. Records keep the strategy per
trial so the two populations can be compared afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

from .buffer import BufferedUnit, StreamBuffer
from .errors import BufferUnderrun


class ChannelStrategy(str, Enum):
    ALTERNATING = "alternating"
    INDEPENDENT = "independent"


def strategy_for_trial(trial_number: int) -> ChannelStrategy:
    """Parity policy: odd -> alternating, even -> independent (1-based numbering)."""
    if trial_number < 1:
        raise ValueError("trial_number is 1-based")
    return ChannelStrategy.ALTERNATING if trial_number % 2 == 1 else ChannelStrategy.INDEPENDENT


@dataclass(frozen=True)
class DrawPlan:
    """How many units one trial consumes, per channel and in total."""

    strategy: ChannelStrategy
    unit_bits: int
    independent_gap: int
    demon_enabled: bool

    @property
    def channels(self) -> List[str]:
        return ["subject", "ghost", "demon"] if self.demon_enabled else ["subject", "ghost"]

    @property
    def total_units(self) -> int:
        total = self.unit_bits * len(self.channels)
        if self.strategy is ChannelStrategy.INDEPENDENT:
            total += self.independent_gap * (len(self.channels) - 1)
        return total

    def draw(self, buffer: StreamBuffer) -> Dict[str, List[BufferedUnit]]:
        """Consume one trial's units; all-or-nothing.

        Raises:
            BufferUnderrun: Before consuming anything, if the trial cannot be filled.
        """
        needed = self.total_units
        if buffer.depth() < needed:
            raise BufferUnderrun(requested=needed, available=buffer.depth())

        drawn: Dict[str, List[BufferedUnit]] = {}
        if self.strategy is ChannelStrategy.ALTERNATING:
            block = buffer.pop(self.unit_bits * len(self.channels))
            for offset, channel in enumerate(self.channels):
                drawn[channel] = block[offset * self.unit_bits:(offset + 1) * self.unit_bits]
            return drawn

        for position, channel in enumerate(self.channels):
            if position and self.independent_gap:
                buffer.pop(self.independent_gap)
            drawn[channel] = buffer.pop(self.unit_bits)
        return drawn
