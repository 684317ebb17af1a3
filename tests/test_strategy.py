from __future__ import annotations

import pytest

from trialstream.buffer import BitChunk, StreamBuffer
from trialstream.errors import BufferUnderrun
from trialstream.strategy import ChannelStrategy, DrawPlan, strategy_for_trial


def _buffer(*units: int) -> StreamBuffer:
    buffer = StreamBuffer()
    buffer.push(BitChunk(units=units, source_label="s"))
    return buffer


def _plan(strategy: ChannelStrategy, *, gap: int = 1, demon: bool = False, unit_bits: int = 1) -> DrawPlan:
    return DrawPlan(strategy=strategy, unit_bits=unit_bits, independent_gap=gap, demon_enabled=demon)


def test_parity_selects_strategy():
    assert strategy_for_trial(1) is ChannelStrategy.ALTERNATING
    assert strategy_for_trial(2) is ChannelStrategy.INDEPENDENT
    assert strategy_for_trial(3) is ChannelStrategy.ALTERNATING
    with pytest.raises(ValueError):
        strategy_for_trial(0)


def test_alternating_draw_takes_adjacent_units():
    buffer = _buffer(1, 0, 1, 1)
    drawn = _plan(ChannelStrategy.ALTERNATING).draw(buffer)

    assert [unit.raw_index for unit in drawn["subject"]] == [0]
    assert [unit.raw_index for unit in drawn["ghost"]] == [1]
    assert drawn["ghost"][0].value == 0
    assert buffer.depth() == 2


def test_independent_draw_discards_the_gap():
    buffer = _buffer(1, 0, 1, 1, 0)
    plan = _plan(ChannelStrategy.INDEPENDENT, gap=1)
    drawn = plan.draw(buffer)

    assert plan.total_units == 3
    assert [unit.raw_index for unit in drawn["subject"]] == [0]
    assert [unit.raw_index for unit in drawn["ghost"]] == [2]
    assert buffer.depth() == 2


def test_demon_channel_draws_after_ghost():
    buffer = _buffer(1, 0, 1, 0, 1, 1, 0, 0)
    plan = _plan(ChannelStrategy.ALTERNATING, demon=True, unit_bits=2)
    drawn = plan.draw(buffer)

    assert plan.total_units == 6
    assert [unit.raw_index for unit in drawn["demon"]] == [4, 5]
    assert [unit.value for unit in drawn["ghost"]] == [1, 0]


def test_underrun_consumes_nothing():
    buffer = _buffer(1, 0)
    with pytest.raises(BufferUnderrun):
        _plan(ChannelStrategy.INDEPENDENT, gap=1).draw(buffer)
    assert buffer.depth() == 2
