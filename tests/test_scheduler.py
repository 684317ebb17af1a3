from __future__ import annotations

import asyncio

import pytest

from trialstream.buffer import BitChunk
from trialstream.entropy import EntropyWindower
from trialstream.errors import BlockFinalizedError, FallbackSourceWarning, SchedulerStateError
from trialstream.governor import WarmupStatus
from trialstream.scheduler import SchedulerState, StopReason
from trialstream.sources import FALLBACK_LABEL, LocalRandomSource
from trialstream.strategy import ChannelStrategy


def _interleave(subject, ghost):
    return [bit for pair in zip(subject, ghost) for bit in pair]


def test_ten_trial_block_counts_subject_hits(fast_config, scheduler_factory):
    subject = [1, 0, 1, 1, 0, 1, 1, 1, 0, 1]
    scheduler = scheduler_factory(fast_config, _interleave(subject, [0] * 10), target_bit=1)

    scheduler.begin_warmup(0.0)
    assert scheduler.poll_warmup(0.0) is WarmupStatus.READY
    outcomes = [scheduler.tick(step * 100.0) for step in range(1, 11)]

    assert all(outcome is not None for outcome in outcomes)
    assert scheduler.state is SchedulerState.FINALIZING
    assert scheduler.stop_reason is StopReason.COMPLETED

    block = scheduler.finalize(EntropyWindower(4))
    assert scheduler.state is SchedulerState.COMPLETED
    assert block.trial_count == 10
    assert block.hits == 7
    assert block.ghost_hits == 0
    assert block.pause_stats.pause_count == 0
    assert not block.invalidated
    assert block.decisions("subject") == subject
    assert [trial.strategy for trial in block.trials[:2]] == [
        ChannelStrategy.ALTERNATING,
        ChannelStrategy.INDEPENDENT,
    ]
    assert block.summaries["subject"].hits == 7
    assert [len(windows) for windows in block.new_windows.values()] == [2, 2]


def test_no_trial_is_recorded_past_the_planned_count(fast_config, scheduler_factory):
    scheduler = scheduler_factory(fast_config, [1, 0] * 15)
    scheduler.begin_warmup(0.0)
    scheduler.poll_warmup(0.0)
    for step in range(1, 16):
        scheduler.tick(step * 100.0)

    assert scheduler.block.trial_count == 10
    assert scheduler.buffer.depth() == 10


def test_pause_and_resume_on_buffer_depth(fast_config, scheduler_factory):
    scheduler = scheduler_factory(fast_config, [1, 0, 1, 0])
    scheduler.begin_warmup(0.0)
    scheduler.poll_warmup(0.0)

    assert scheduler.tick(100.0) is not None
    assert scheduler.tick(200.0) is not None
    assert scheduler.tick(300.0) is None
    assert scheduler.state is SchedulerState.PAUSED

    scheduler.buffer.push(BitChunk(units=(1, 1, 1, 1), source_label="scripted"))
    assert scheduler.tick(400.0) is not None
    assert scheduler.state is SchedulerState.RUNNING
    assert scheduler.governor.pause_count == 1
    assert scheduler.governor.total_paused_ms == 100.0


def test_guardrail_breach_invalidates_and_skips_the_windower(config_factory, scheduler_factory):
    config = config_factory(governor={"max_pauses": 0})
    scheduler = scheduler_factory(config)
    windower = EntropyWindower(4)
    scheduler.begin_warmup(0.0)
    scheduler.poll_warmup(0.0)

    assert scheduler.tick(100.0) is None
    assert scheduler.stop_reason is StopReason.INVALIDATED
    assert scheduler.redo_requested

    block = scheduler.finalize(windower)
    assert scheduler.state is SchedulerState.INVALIDATED
    assert block.invalidated
    assert block.invalid_reason == "invalidated-buffer:pause_count"
    assert windower.total_fed("subject") == 0


def test_hard_cap_truncates_the_block(config_factory, scheduler_factory):
    config = config_factory(grace_ms=0.0)
    scheduler = scheduler_factory(config, [1, 0, 1, 0])
    scheduler.begin_warmup(0.0)
    scheduler.poll_warmup(0.0)
    scheduler.tick(100.0)

    assert scheduler.tick(1001.0) is None
    assert scheduler.stop_reason is StopReason.TIMEOUT
    assert not scheduler.redo_requested

    block = scheduler.finalize(EntropyWindower(4))
    assert block.truncated
    assert not block.invalidated
    assert block.trial_count == 1
    assert block.shortfall == 9


def test_warmup_timeout_switches_to_fallback(config_factory, scheduler_factory):
    config = config_factory(governor={"warmup_threshold": 50, "warmup_timeout_ms": 100.0})
    scheduler = scheduler_factory(config, fallback=LocalRandomSource(chunk_bits=16))
    scheduler.begin_warmup(0.0)
    assert scheduler.poll_warmup(50.0) is WarmupStatus.WAITING

    with pytest.warns(FallbackSourceWarning):
        assert scheduler.poll_warmup(100.0) is WarmupStatus.TIMED_OUT

    outcome = scheduler.tick(200.0)
    assert outcome is not None
    assert outcome.source_label == FALLBACK_LABEL
    assert scheduler.block.fallback_used
    assert scheduler.block.warmup_status == "timed_out"


def test_stop_is_idempotent_and_marks_abort(fast_config, scheduler_factory):
    scheduler = scheduler_factory(fast_config, [1, 0] * 4)
    scheduler.begin_warmup(0.0)
    scheduler.poll_warmup(0.0)
    scheduler.tick(100.0)

    scheduler.stop(now_ms=150.0)
    scheduler.stop(now_ms=175.0)
    assert scheduler.stop_reason is StopReason.ABORTED
    assert scheduler.tick(200.0) is None

    block = scheduler.finalize(EntropyWindower(4))
    assert block.invalid_reason == "aborted"
    assert block.end_time_ms == 150.0
    with pytest.raises(BlockFinalizedError):
        block.mark_invalidated("late")


def test_finalize_requires_a_stopped_clock(fast_config, scheduler_factory):
    scheduler = scheduler_factory(fast_config, [1, 0] * 4)
    scheduler.begin_warmup(0.0)
    with pytest.raises(SchedulerStateError):
        scheduler.finalize(EntropyWindower(4))


def test_stop_before_start_finalizes_an_invalidated_block(fast_config, scheduler_factory):
    scheduler = scheduler_factory(fast_config, [1, 0] * 4)
    scheduler.stop(now_ms=5.0)
    assert scheduler.state is SchedulerState.FINALIZING

    async def scenario() -> None:
        with pytest.raises(SchedulerStateError):
            scheduler.start()

    asyncio.run(scenario())
    block = scheduler.finalize(EntropyWindower(4))
    assert scheduler.state is SchedulerState.INVALIDATED
    assert block.invalid_reason == "aborted"
    assert block.trial_count == 0
    assert scheduler.buffer.depth() == 8


def test_tick_without_a_fallback_source_skips_the_top_up(fast_config, scheduler_factory):
    scheduler = scheduler_factory(fast_config, [1, 0] * 4)
    scheduler.begin_warmup(0.0)
    scheduler.poll_warmup(0.0)
    scheduler.using_fallback = True

    outcome = scheduler.tick(100.0)
    assert outcome is not None
    assert scheduler.buffer.depth() == 6


def test_second_start_is_rejected(fast_config, scheduler_factory):
    scheduler = scheduler_factory(fast_config)

    async def scenario() -> None:
        timer = scheduler.start()
        with pytest.raises(SchedulerStateError):
            scheduler.start()
        scheduler.stop()
        with pytest.raises(asyncio.CancelledError):
            await timer

    asyncio.run(scenario())
    assert scheduler.state is SchedulerState.FINALIZING


def test_timer_runs_a_block_to_completion(config_factory, scheduler_factory):
    config = config_factory(visual_hz=200, block_ms=50)
    scheduler = scheduler_factory(config, [1, 1] * config.trials_per_block)

    async def scenario():
        return await scheduler.start()

    block = asyncio.run(scenario())
    assert block.trial_count == 10
    assert block.hits == 10
    assert scheduler.stop_reason is StopReason.COMPLETED
