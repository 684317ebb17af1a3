from __future__ import annotations

from typing import Callable, Sequence

import pytest

from trialstream.block import Block
from trialstream.buffer import BitChunk, StreamBuffer
from trialstream.config import ExperimentConfig, build_config
from trialstream.entropy import EntropyWindower
from trialstream.governor import BufferGovernor
from trialstream.scheduler import TrialScheduler


def make_config(**overrides) -> ExperimentConfig:
    governor = {
        "pause_threshold": 1,
        "resume_threshold": 2,
        "warmup_threshold": 0,
        "warmup_timeout_ms": 0.0,
    }
    governor.update(overrides.pop("governor", {}))
    settings = {"visual_hz": 10, "block_ms": 1000, "independent_gap": 0, "governor": governor}
    settings.update(overrides)
    return build_config(settings)


def make_scheduler(
    config: ExperimentConfig,
    units: Sequence[int] = (),
    *,
    target_bit: int = 1,
    block_index: int = 0,
    fallback=None,
) -> TrialScheduler:
    buffer = StreamBuffer()
    if units:
        buffer.push(BitChunk(units=tuple(units), source_label="scripted"))
    block = Block(index=block_index, planned_trial_count=config.trials_per_block, target_bit=target_bit)
    return TrialScheduler(config, buffer, BufferGovernor.from_config(config), block, fallback=fallback)


def interleave(subject: Sequence[int], ghost: Sequence[int]) -> list[int]:
    return [bit for pair in zip(subject, ghost) for bit in pair]


def run_block(
    config: ExperimentConfig,
    subject: Sequence[int],
    ghost: Sequence[int],
    *,
    target_bit: int = 1,
    block_index: int = 0,
    windower: EntropyWindower | None = None,
) -> Block:
    """Drive a full block with a fake clock and finalize it."""
    scheduler = make_scheduler(config, interleave(subject, ghost), target_bit=target_bit, block_index=block_index)
    start = block_index * 10_000.0
    scheduler.begin_warmup(start)
    scheduler.poll_warmup(start)
    step = 1
    while not scheduler.finished:
        scheduler.tick(start + step * config.tick_ms)
        step += 1
    return scheduler.finalize(windower or EntropyWindower(config.entropy_window_size))


@pytest.fixture
def fast_config() -> ExperimentConfig:
    return make_config()


@pytest.fixture
def finished_block() -> Callable[..., Block]:
    return run_block


@pytest.fixture
def config_factory() -> Callable[..., ExperimentConfig]:
    return make_config


@pytest.fixture
def scheduler_factory() -> Callable[..., TrialScheduler]:
    return make_scheduler
