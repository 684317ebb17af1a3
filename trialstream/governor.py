"""Hysteresis pause/resume controller and block invalidation guardrails."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import ExperimentConfig

logger = logging.getLogger(__name__)


class GovernorState(str, Enum):
    FLOWING = "flowing"
    PAUSED = "paused"


class WarmupStatus(str, Enum):
    WAITING = "waiting"
    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class GuardrailPolicy:
    """Limits past which a block's data quality is no longer acceptable."""

    max_pauses: int
    max_total_pause_ms: float
    max_single_pause_ms: float

    @classmethod
    def from_config(cls, config: ExperimentConfig) -> "GuardrailPolicy":
        return cls(
            max_pauses=config.governor.max_pauses,
            max_total_pause_ms=config.max_total_pause_ms,
            max_single_pause_ms=config.max_single_pause_ms,
        )

    def violation(self, pause_count: int, total_paused_ms: float, longest_pause_ms: float) -> Optional[str]:
        """Return the name of the first exceeded guardrail, or ``None``."""
        if pause_count > self.max_pauses:
            return "pause_count"
        if total_paused_ms > self.max_total_pause_ms:
            return "total_paused_duration"
        if longest_pause_ms > self.max_single_pause_ms:
            return "longest_pause"
        return None


@dataclass(frozen=True)
class PauseStats:
    pause_count: int
    total_paused_ms: float
    longest_pause_ms: float

    def to_dict(self) -> dict[str, float]:
        return {
            "pause_count": self.pause_count,
            "total_paused_ms": round(self.total_paused_ms, 3),
            "longest_pause_ms": round(self.longest_pause_ms, 3),
        }


class BufferGovernor:
    """Decide whether the trial clock may consume, based on buffer depth.

    Transitions:
        FLOWING -> PAUSED  when depth < pause_threshold (or on a forced pause)
        PAUSED  -> FLOWING when depth >= resume_threshold
    Depths in ``[pause_threshold, resume_threshold)`` never change state.

    Times are caller-supplied milliseconds so the governor stays clock-agnostic.
    """

    def __init__(
        self,
        *,
        pause_threshold: int,
        resume_threshold: int,
        guardrails: GuardrailPolicy,
        warmup_threshold: int = 0,
        warmup_timeout_ms: float = 0.0,
    ):
        if pause_threshold >= resume_threshold:
            raise ValueError("pause_threshold must be strictly below resume_threshold")
        self.pause_threshold = pause_threshold
        self.resume_threshold = resume_threshold
        self.warmup_threshold = warmup_threshold
        self.warmup_timeout_ms = warmup_timeout_ms
        self.guardrails = guardrails
        self.reset()

    @classmethod
    def from_config(cls, config: ExperimentConfig) -> "BufferGovernor":
        gov = config.governor
        return cls(
            pause_threshold=gov.pause_threshold,
            resume_threshold=gov.resume_threshold,
            guardrails=GuardrailPolicy.from_config(config),
            warmup_threshold=gov.warmup_threshold,
            warmup_timeout_ms=gov.warmup_timeout_ms,
        )

    def reset(self) -> None:
        """Clear state and counters for a fresh block attempt."""
        self.state = GovernorState.FLOWING
        self.pause_count = 0
        self.total_paused_ms = 0.0
        self.longest_pause_ms = 0.0
        self._pause_started_at: Optional[float] = None
        self.invalid_reason: Optional[str] = None

    @property
    def paused(self) -> bool:
        return self.state is GovernorState.PAUSED

    @property
    def invalidated(self) -> bool:
        return self.invalid_reason is not None

    def warmup_ready(self, depth: int, elapsed_ms: float) -> WarmupStatus:
        if depth >= self.warmup_threshold:
            return WarmupStatus.READY
        if elapsed_ms >= self.warmup_timeout_ms:
            return WarmupStatus.TIMED_OUT
        return WarmupStatus.WAITING

    def observe(self, depth: int, now_ms: float) -> GovernorState:
        """Apply the hysteresis rule for the current depth and return the state."""
        if self.state is GovernorState.FLOWING:
            if depth < self.pause_threshold:
                self._enter_pause(now_ms, depth)
        elif depth >= self.resume_threshold:
            self._leave_pause(now_ms, depth)
        self._check_guardrails(now_ms)
        return self.state

    def force_pause(self, now_ms: float) -> GovernorState:
        """Pause on a failed draw regardless of depth; no-op if already paused."""
        if self.state is GovernorState.FLOWING:
            self._enter_pause(now_ms, None)
        self._check_guardrails(now_ms)
        return self.state

    def close(self, now_ms: float) -> PauseStats:
        """Account for a pause still open when the block stops."""
        if self.state is GovernorState.PAUSED and self._pause_started_at is not None:
            self._accumulate(now_ms - self._pause_started_at)
            self._pause_started_at = now_ms
        return self.stats()

    def stats(self) -> PauseStats:
        return PauseStats(self.pause_count, self.total_paused_ms, self.longest_pause_ms)

    def _enter_pause(self, now_ms: float, depth: Optional[int]) -> None:
        self.state = GovernorState.PAUSED
        self.pause_count += 1
        self._pause_started_at = now_ms
        logger.debug("buffer pause #%d at depth=%s", self.pause_count, depth)

    def _leave_pause(self, now_ms: float, depth: int) -> None:
        started = self._pause_started_at if self._pause_started_at is not None else now_ms
        self._accumulate(now_ms - started)
        self._pause_started_at = None
        self.state = GovernorState.FLOWING
        logger.debug("buffer resume at depth=%d after %.1fms", depth, now_ms - started)

    def _accumulate(self, duration_ms: float) -> None:
        duration_ms = max(duration_ms, 0.0)
        self.total_paused_ms += duration_ms
        self.longest_pause_ms = max(self.longest_pause_ms, duration_ms)

    def _check_guardrails(self, now_ms: float) -> None:
        if self.invalidated:
            return
        total = self.total_paused_ms
        longest = self.longest_pause_ms
        if self._pause_started_at is not None:
            ongoing = max(now_ms - self._pause_started_at, 0.0)
            total += ongoing
            longest = max(longest, ongoing)
        reason = self.guardrails.violation(self.pause_count, total, longest)
        if reason is not None:
            self.invalid_reason = reason
            logger.warning(
                "block invalidated by %s guardrail (pauses=%d total=%.1fms longest=%.1fms)",
                reason,
                self.pause_count,
                total,
                longest,
            )
