"""Trial outcomes, blocks and the block finalizer."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .entropy import EntropyWindow, EntropyWindower, split_entropies
from .errors import BlockFinalizedError
from .governor import PauseStats
from .stats import (
    binomial_z,
    cumulative_range,
    hurst_estimate,
    lag1_autocorrelation,
    shannon_entropy,
    two_sided_p,
)
from .strategy import ChannelStrategy

logger = logging.getLogger(__name__)

CHANNELS = ("subject", "ghost", "demon")


@dataclass(frozen=True)
class TrialOutcome:
    """One recorded trial: units drawn per channel and their comparison to the target."""

    index: int
    strategy: ChannelStrategy
    units: Dict[str, Tuple[int, ...]]
    decisions: Dict[str, int]
    raw_indices: Dict[str, Tuple[int, ...]]
    hits: Dict[str, bool]
    bit_position: int = 0
    source_label: str = "unknown"
    timestamp_ms: float = 0.0

    @property
    def trial_number(self) -> int:
        return self.index + 1

    @property
    def subject_unit(self) -> int:
        return self.decisions["subject"]

    @property
    def ghost_unit(self) -> int:
        return self.decisions["ghost"]

    @property
    def demon_unit(self) -> Optional[int]:
        return self.decisions.get("demon")


@dataclass(frozen=True)
class ChannelSummary:
    """Derived per-channel statistics for a finalized block."""

    hits: int
    trials: int
    z: float
    p_two_sided: float
    coherence_range: int
    hurst: float
    lag1_autocorrelation: float
    lag1_hit_autocorrelation: float
    block_entropy: Optional[float]
    entropy_k2: Optional[List[Optional[float]]]
    entropy_k3: Optional[List[Optional[float]]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "trials": self.trials,
            "z": self.z,
            "p_two_sided": self.p_two_sided,
            "coherence_range": self.coherence_range,
            "hurst": self.hurst,
            "lag1_autocorrelation": self.lag1_autocorrelation,
            "lag1_hit_autocorrelation": self.lag1_hit_autocorrelation,
            "block_entropy": self.block_entropy,
            "entropy_k2": self.entropy_k2,
            "entropy_k3": self.entropy_k3,
        }


def summarize_channel(decisions: List[int], hit_flags: List[int]) -> ChannelSummary:
    n = len(decisions)
    k = sum(hit_flags)
    z = binomial_z(k, n, 0.5)
    return ChannelSummary(
        hits=k,
        trials=n,
        z=z,
        p_two_sided=two_sided_p(z),
        coherence_range=cumulative_range(decisions),
        hurst=hurst_estimate(decisions),
        lag1_autocorrelation=lag1_autocorrelation(decisions),
        lag1_hit_autocorrelation=lag1_autocorrelation(hit_flags),
        block_entropy=shannon_entropy(decisions),
        entropy_k2=split_entropies(decisions, 2),
        entropy_k3=split_entropies(decisions, 3),
    )


@dataclass
class Block:
    """A batch of trials scored as one unit.

    Mutable only until ``finalize``; afterwards every mutator raises
    ``BlockFinalizedError``.
    """

    index: int
    planned_trial_count: int
    target_bit: int
    attempt: int = 1
    channels: Tuple[str, ...] = ("subject", "ghost")
    start_time_ms: float = 0.0
    end_time_ms: Optional[float] = None
    trials: List[TrialOutcome] = field(default_factory=list)
    summaries: Dict[str, ChannelSummary] = field(default_factory=dict)
    pause_stats: PauseStats = PauseStats(0, 0.0, 0.0)
    invalidated: bool = False
    invalid_reason: Optional[str] = None
    truncated: bool = False
    warmup_status: str = "ready"
    fallback_used: bool = False
    new_windows: Dict[str, List[EntropyWindow]] = field(default_factory=dict)
    first_trial_time_ms: Optional[float] = None
    last_trial_time_ms: Optional[float] = None
    _finalized: bool = field(default=False, repr=False)

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def trial_count(self) -> int:
        return len(self.trials)

    @property
    def shortfall(self) -> int:
        return max(self.planned_trial_count - len(self.trials), 0)

    @property
    def hits(self) -> int:
        return self._hits("subject")

    @property
    def ghost_hits(self) -> int:
        return self._hits("ghost")

    @property
    def demon_hits(self) -> Optional[int]:
        return self._hits("demon") if "demon" in self.channels else None

    def _hits(self, channel: str) -> int:
        return sum(1 for trial in self.trials if trial.hits.get(channel))

    def decisions(self, channel: str) -> List[int]:
        return [trial.decisions[channel] for trial in self.trials if channel in trial.decisions]

    def hit_flags(self, channel: str) -> List[int]:
        return [1 if trial.hits.get(channel) else 0 for trial in self.trials if channel in trial.hits]

    def raw_bits(self, channel: str) -> List[int]:
        """Every bit of every unit drawn for ``channel``, in draw order."""
        bits: List[int] = []
        for trial in self.trials:
            bits.extend(trial.units.get(channel, ()))
        return bits

    def record_trial(self, outcome: TrialOutcome) -> None:
        self._require_mutable()
        if outcome.index != len(self.trials):
            raise ValueError(f"trial index {outcome.index} out of order (expected {len(self.trials)})")
        if self.first_trial_time_ms is None:
            self.first_trial_time_ms = outcome.timestamp_ms
        self.last_trial_time_ms = outcome.timestamp_ms
        self.trials.append(outcome)

    def mark_invalidated(self, reason: str) -> None:
        self._require_mutable()
        self.invalidated = True
        self.invalid_reason = reason

    def finalize(
        self,
        *,
        end_time_ms: float,
        pause_stats: PauseStats,
        truncated: bool = False,
        new_windows: Optional[Dict[str, List[EntropyWindow]]] = None,
    ) -> "Block":
        """Compute per-channel summaries and freeze the block."""
        self._require_mutable()
        self.end_time_ms = end_time_ms
        self.pause_stats = pause_stats
        self.truncated = truncated and not self.invalidated
        self.new_windows = dict(new_windows or {})
        self.summaries = {
            channel: summarize_channel(self.decisions(channel), self.hit_flags(channel))
            for channel in self.channels
        }
        self._finalized = True
        return self

    def _require_mutable(self) -> None:
        if self._finalized:
            raise BlockFinalizedError(self.index)


def finalize_block(
    block: Block,
    windower: EntropyWindower,
    *,
    end_time_ms: float,
    pause_stats: PauseStats,
    truncated: bool = False,
) -> Block:
    """Finalize ``block`` and feed valid blocks' raw bits into the session windower.

    Invalidated blocks are never fed: their bits are discarded with the block.
    """
    if block.finalized:
        raise BlockFinalizedError(block.index)
    if block.invalidated:
        block.finalize(end_time_ms=end_time_ms, pause_stats=pause_stats)
        logger.info("block %d attempt %d invalidated (%s)", block.index, block.attempt, block.invalid_reason)
        return block
    new_windows = {channel: windower.feed(channel, block.raw_bits(channel)) for channel in block.channels}
    block.finalize(
        end_time_ms=end_time_ms,
        pause_stats=pause_stats,
        truncated=truncated,
        new_windows=new_windows,
    )
    if block.truncated:
        logger.warning(
            "block %d truncated by hard timeout with %d of %d trials",
            block.index,
            block.trial_count,
            block.planned_trial_count,
        )
    return block
