"""Fixed-rate trial clock: one trial attempt per tick, gated by the buffer governor.

State machine::

    IDLE -> WARMUP -> RUNNING <-> PAUSED -> FINALIZING -> COMPLETED | INVALIDATED

``tick`` is synchronous and clock-agnostic so it can be driven directly; the
async timer created by ``start`` only calls it at the configured period.
"""

from __future__ import annotations

import asyncio
import logging
import warnings
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional

from .block import Block, TrialOutcome, finalize_block
from .buffer import StreamBuffer
from .config import ExperimentConfig
from .entropy import EntropyWindower
from .errors import BufferUnderrun, FallbackSourceWarning, SchedulerStateError
from .governor import BufferGovernor, WarmupStatus
from .sources import EntropySource, monotonic_ms
from .strategy import DrawPlan, strategy_for_trial

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    WARMUP = "warmup"
    RUNNING = "running"
    PAUSED = "paused"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    INVALIDATED = "invalidated"


class StopReason(str, Enum):
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    INVALIDATED = "invalidated"
    ABORTED = "aborted"


_TRANSITIONS: Dict[SchedulerState, FrozenSet[SchedulerState]] = {
    SchedulerState.IDLE: frozenset({SchedulerState.WARMUP, SchedulerState.FINALIZING}),
    SchedulerState.WARMUP: frozenset({SchedulerState.RUNNING, SchedulerState.FINALIZING}),
    SchedulerState.RUNNING: frozenset({SchedulerState.PAUSED, SchedulerState.FINALIZING}),
    SchedulerState.PAUSED: frozenset({SchedulerState.RUNNING, SchedulerState.FINALIZING}),
    SchedulerState.FINALIZING: frozenset({SchedulerState.COMPLETED, SchedulerState.INVALIDATED}),
    SchedulerState.COMPLETED: frozenset(),
    SchedulerState.INVALIDATED: frozenset(),
}

_ACTIVE = frozenset({SchedulerState.RUNNING, SchedulerState.PAUSED})


class TrialScheduler:
    """Owns one block attempt's clock; at most one timer per instance.

    Args:
        config: Validated experiment configuration.
        buffer: The block's exclusive stream buffer.
        governor: The block's exclusive hysteresis governor.
        block: Block to record trials into.
        fallback: Local source used when warmup times out.
        drain: Called before every warmup poll and tick to move ready
            source chunks into ``buffer``.
        clock: Millisecond clock used by the async timer.
    """

    def __init__(
        self,
        config: ExperimentConfig,
        buffer: StreamBuffer,
        governor: BufferGovernor,
        block: Block,
        *,
        fallback: Optional[EntropySource] = None,
        drain: Optional[Callable[[], int]] = None,
        clock: Callable[[], float] = monotonic_ms,
    ):
        self.config = config
        self.buffer = buffer
        self.governor = governor
        self.block = block
        self.fallback = fallback
        self.drain = drain
        self.clock = clock
        self.state = SchedulerState.IDLE
        self.stop_reason: Optional[StopReason] = None
        self.using_fallback = False
        self._warmup_started_at: Optional[float] = None
        self._running_since: Optional[float] = None
        self._stopped_at: Optional[float] = None
        self._timer: Optional[asyncio.Task] = None
        self._timer_cancelled = False

    @property
    def period_ms(self) -> float:
        return self.config.tick_ms

    @property
    def trial_index(self) -> int:
        return self.block.trial_count

    @property
    def finished(self) -> bool:
        return self.state in (
            SchedulerState.FINALIZING,
            SchedulerState.COMPLETED,
            SchedulerState.INVALIDATED,
        )

    def _transition(self, target: SchedulerState) -> None:
        if target is self.state:
            return
        if target not in _TRANSITIONS[self.state]:
            raise SchedulerStateError(self.state.value, target.value)
        self.state = target

    # -- warmup -----------------------------------------------------------

    def begin_warmup(self, now_ms: float) -> None:
        self._transition(SchedulerState.WARMUP)
        self._warmup_started_at = now_ms
        self.block.start_time_ms = now_ms

    def poll_warmup(self, now_ms: float) -> WarmupStatus:
        """Leave WARMUP once the buffer is deep enough or the timeout elapsed."""
        if self.state is not SchedulerState.WARMUP:
            raise SchedulerStateError(self.state.value, SchedulerState.RUNNING.value)
        started = self._warmup_started_at if self._warmup_started_at is not None else now_ms
        status = self.governor.warmup_ready(self.buffer.depth(), now_ms - started)
        if status is WarmupStatus.WAITING:
            return status
        self.block.warmup_status = status.value
        if status is WarmupStatus.TIMED_OUT:
            self._engage_fallback()
        self._transition(SchedulerState.RUNNING)
        self._running_since = now_ms
        return status

    def _engage_fallback(self) -> None:
        if self.fallback is None:
            logger.warning("warmup timed out for block %d with no fallback source", self.block.index)
            return
        self.fallback.connect(self.config.hard_cap_ms)
        self.using_fallback = True
        self.block.fallback_used = True
        logger.warning("warmup timed out for block %d; using %s", self.block.index, self.fallback.label)
        warnings.warn(
            f"Warmup timed out for block {self.block.index}; trials use {self.fallback.label!r}.",
            FallbackSourceWarning,
            stacklevel=2,
        )

    # -- ticking ----------------------------------------------------------

    def _draw_plan(self) -> DrawPlan:
        return DrawPlan(
            strategy=strategy_for_trial(self.trial_index + 1),
            unit_bits=self.config.unit_bits,
            independent_gap=self.config.independent_gap,
            demon_enabled=self.config.demon_enabled,
        )

    def _top_up_from_fallback(self, needed: int) -> None:
        if self.fallback is None:
            return
        while self.buffer.depth() < needed:
            chunk = self.fallback.next_chunk()
            if chunk is None:
                break
            self.buffer.push(chunk)

    def tick(self, now_ms: float) -> Optional[TrialOutcome]:
        """One clock period: maybe record a trial. Never blocks.

        Returns the recorded outcome, or ``None`` when the tick was skipped.
        """
        if self.state not in _ACTIVE:
            return None
        started = self._running_since if self._running_since is not None else now_ms
        if now_ms - started > self.config.hard_cap_ms:
            self.stop(StopReason.TIMEOUT, now_ms)
            return None

        plan = self._draw_plan()
        if self.using_fallback:
            self._top_up_from_fallback(plan.total_units + self.governor.resume_threshold)

        self.governor.observe(self.buffer.depth(), now_ms)
        if self.governor.invalidated:
            self.stop(StopReason.INVALIDATED, now_ms)
            return None
        if self.governor.paused:
            self._transition(SchedulerState.PAUSED)
            return None
        self._transition(SchedulerState.RUNNING)

        try:
            drawn = plan.draw(self.buffer)
        except BufferUnderrun as exc:
            logger.debug("underrun on trial %d: %s", self.trial_index + 1, exc.description)
            self.governor.force_pause(now_ms)
            if self.governor.invalidated:
                self.stop(StopReason.INVALIDATED, now_ms)
            else:
                self._transition(SchedulerState.PAUSED)
            return None

        bit_position = self.trial_index % self.config.unit_bits
        units = {channel: tuple(unit.value for unit in group) for channel, group in drawn.items()}
        decisions = {channel: values[bit_position] for channel, values in units.items()}
        outcome = TrialOutcome(
            index=self.trial_index,
            strategy=plan.strategy,
            units=units,
            decisions=decisions,
            raw_indices={channel: tuple(unit.raw_index for unit in group) for channel, group in drawn.items()},
            hits={channel: bit == self.block.target_bit for channel, bit in decisions.items()},
            bit_position=bit_position,
            source_label=drawn["subject"][0].source_label,
            timestamp_ms=now_ms,
        )
        self.block.record_trial(outcome)
        if self.trial_index >= self.block.planned_trial_count:
            self.stop(StopReason.COMPLETED, now_ms)
        return outcome

    # -- lifecycle --------------------------------------------------------

    def start(self) -> "asyncio.Task[Block]":
        """Arm the single timer for this block. Must be called inside a running loop.

        Raises:
            SchedulerStateError: If this scheduler was already started.
        """
        if self._timer is not None or self.state is not SchedulerState.IDLE:
            raise SchedulerStateError(self.state.value, SchedulerState.WARMUP.value)
        self.begin_warmup(self.clock())
        self._timer = asyncio.get_running_loop().create_task(self._run_clock())
        return self._timer

    async def _run_clock(self) -> Block:
        poll_s = min(self.period_ms, 50.0) / 1000.0
        while self.state is SchedulerState.WARMUP:
            self._drain()
            if self.poll_warmup(self.clock()) is WarmupStatus.WAITING:
                await asyncio.sleep(poll_s)
        while self.state in _ACTIVE:
            # setInterval semantics: fixed period, no drift compensation.
            await asyncio.sleep(self.period_ms / 1000.0)
            self._drain()
            self.tick(self.clock())
        return self.block

    def _drain(self) -> None:
        if self.drain is not None and not self.finished:
            self.drain()

    def stop(self, reason: StopReason = StopReason.ABORTED, now_ms: Optional[float] = None) -> None:
        """Stop the clock. Idempotent; the timer is cancelled at most once.

        Stopping before ``start`` moves straight to FINALIZING, so a block
        aborted before its clock ever ran finalizes as invalidated.
        """
        if self.finished:
            return
        now = self.clock() if now_ms is None else now_ms
        if self.state is SchedulerState.IDLE:
            self.block.start_time_ms = now
        self.stop_reason = reason
        self._stopped_at = now
        if reason is StopReason.INVALIDATED:
            self.block.mark_invalidated(f"invalidated-buffer:{self.governor.invalid_reason}")
        elif reason is StopReason.ABORTED:
            self.block.mark_invalidated("aborted")
        self._transition(SchedulerState.FINALIZING)
        self._cancel_timer()
        if self.using_fallback and self.fallback is not None:
            self.fallback.disconnect()
        logger.debug("block %d stopped: %s after %d trials", self.block.index, reason.value, self.trial_index)

    def _cancel_timer(self) -> None:
        timer = self._timer
        if timer is None or self._timer_cancelled or timer.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        self._timer_cancelled = True
        if timer is not current:
            timer.cancel()

    def finalize(self, windower: EntropyWindower) -> Block:
        """Compute block statistics and reach a terminal state."""
        if self.state is not SchedulerState.FINALIZING:
            raise SchedulerStateError(self.state.value, "finalize")
        end = self._stopped_at if self._stopped_at is not None else self.clock()
        finalize_block(
            self.block,
            windower,
            end_time_ms=end,
            pause_stats=self.governor.close(end),
            truncated=self.stop_reason is StopReason.TIMEOUT,
        )
        self._transition(
            SchedulerState.INVALIDATED if self.block.invalidated else SchedulerState.COMPLETED
        )
        return self.block

    @property
    def redo_requested(self) -> bool:
        return self.stop_reason in (StopReason.INVALIDATED, StopReason.ABORTED)
