from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from trialstream.buffer import BitChunk, StreamBuffer, unit_values
from trialstream.errors import BufferUnderrun, MalformedChunkError


def test_pop_returns_units_in_arrival_order_across_chunks():
    buffer = StreamBuffer()
    assert buffer.push(BitChunk(units=(1, 0, 1), source_label="a")) == 3
    assert buffer.push(BitChunk(units=(0, 0), source_label="b")) == 5

    popped = buffer.pop(4)
    assert unit_values(popped) == [1, 0, 1, 0]
    assert [unit.raw_index for unit in popped] == [0, 1, 2, 3]
    assert [unit.source_label for unit in popped] == ["a", "a", "a", "b"]
    assert buffer.depth() == 1
    assert buffer.pop(1)[0].raw_index == 4


def test_underrun_removes_nothing():
    buffer = StreamBuffer()
    buffer.push(BitChunk(units=(1, 1), source_label="a"))

    with pytest.raises(BufferUnderrun) as excinfo:
        buffer.pop(3)

    assert excinfo.value.requested == 3
    assert excinfo.value.available == 2
    assert excinfo.value.error_code == "BUF_001"
    assert buffer.depth() == 2
    assert buffer.total_popped == 0


def test_clear_counts_dropped_units():
    buffer = StreamBuffer()
    buffer.push(BitChunk(units=(1, 0, 1), source_label="a"))
    buffer.pop(1)
    assert buffer.clear() == 2
    assert buffer.depth() == 0
    assert buffer.total_pushed == buffer.total_popped == 3


def test_chunk_validation_rejects_short_and_non_binary_payloads():
    assert BitChunk(units=(1, 0, 1), source_label="ok").validate(min_units=3).units == (1, 0, 1)
    with pytest.raises(MalformedChunkError):
        BitChunk(units=(1, 0), source_label="short").validate(min_units=3)
    with pytest.raises(MalformedChunkError):
        BitChunk(units=(1, 2, 0), source_label="bad").validate()
    with pytest.raises(MalformedChunkError):
        BitChunk.from_string("01x1", "remote")
    assert BitChunk.from_string(" 0110\n", "remote").units == (0, 1, 1, 0)


@given(
    chunks=st.lists(st.lists(st.integers(min_value=0, max_value=1), max_size=20), max_size=10),
    pops=st.lists(st.integers(min_value=0, max_value=15), max_size=20),
)
def test_consumed_units_are_a_prefix_of_the_stream(chunks: list[list[int]], pops: list[int]) -> None:
    buffer = StreamBuffer()
    stream: list[int] = []
    for chunk in chunks:
        buffer.push(BitChunk(units=tuple(chunk), source_label="s"))
        stream.extend(chunk)

    consumed_indices: list[int] = []
    consumed_values: list[int] = []
    for count in pops:
        try:
            popped = buffer.pop(count)
        except BufferUnderrun:
            continue
        consumed_indices.extend(unit.raw_index for unit in popped)
        consumed_values.extend(unit.value for unit in popped)
        assert buffer.depth() >= 0

    assert consumed_indices == list(range(len(consumed_indices)))
    assert consumed_values == stream[: len(consumed_values)]
    assert buffer.depth() == len(stream) - len(consumed_values)
