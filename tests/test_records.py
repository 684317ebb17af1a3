from __future__ import annotations

import pytest

from trialstream.block import Block
from trialstream.entropy import EntropyWindower
from trialstream.errors import RecordValidationError
from trialstream.records import (
    block_to_record,
    canonical_json,
    load_schema,
    payload_hash,
    validate_record,
    verify_record_hash,
)

SUBJECT = [1, 0, 1, 1, 0, 1, 1, 1, 0, 1]


def test_completed_block_record_matches_schema(fast_config, finished_block):
    block = finished_block(fast_config, SUBJECT, [0] * 10)
    record = block_to_record(block, session_id="s-1", previous_end_ms=-50.0)

    assert validate_record(record) is record
    assert record["hits"] == 7
    assert record["ghost_hits"] == 0
    assert record["demon_hits"] is None
    assert record["trial_count"] == record["planned_trial_count"] == 10
    assert record["invalidated"] is False
    assert record["source_labels"] == ["scripted"]
    assert record["timing"]["duration_ms"] == 1000.0
    assert record["timing"]["gap_since_previous_ms"] == 50.0
    assert [trial["strategy"] for trial in record["trials"][:2]] == ["alternating", "independent"]
    assert record["trials"][0]["raw_indices"] == {"subject": [0], "ghost": [1]}


def test_record_hash_detects_tampering(fast_config, finished_block):
    record = block_to_record(finished_block(fast_config, SUBJECT, [0] * 10), session_id="s-1")
    assert verify_record_hash(record)
    assert not verify_record_hash(dict(record, hits=8))


def test_trials_can_be_left_out(fast_config, finished_block):
    record = block_to_record(
        finished_block(fast_config, SUBJECT, [0] * 10),
        session_id="s-1",
        include_trials=False,
    )
    assert "trials" not in record
    validate_record(record)


def test_windows_completed_by_a_block_are_recorded(config_factory, finished_block):
    config = config_factory(entropy_window_size=4)
    windower = EntropyWindower(4)
    block = finished_block(config, SUBJECT, [1, 0] * 5, windower=windower)
    record = block_to_record(block, session_id="s-1")

    assert [window["bit_range"] for window in record["entropy_windows"]["subject"]] == [[0, 4], [4, 8]]
    assert windower.remainder("subject") == [0, 1]


def test_unfinalized_block_cannot_be_recorded():
    with pytest.raises(ValueError):
        block_to_record(Block(index=0, planned_trial_count=1, target_bit=1), session_id="s-1")


def test_schema_violations_report_the_first_location(fast_config, finished_block):
    record = block_to_record(finished_block(fast_config, SUBJECT, [0] * 10), session_id="s-1")

    with pytest.raises(RecordValidationError) as excinfo:
        validate_record(dict(record, target_bit=2))
    assert excinfo.value.details["location"] == "target_bit"

    missing = dict(record)
    del missing["hits"]
    with pytest.raises(RecordValidationError) as excinfo:
        validate_record(missing)
    assert excinfo.value.details["location"] == "<root>"

    with pytest.raises(RecordValidationError):
        validate_record(["not", "a", "record"])


def test_canonical_hashing():
    assert load_schema()["title"] == "trialstream block record"
    assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
    assert payload_hash({"a": 1, "b": 2}) == payload_hash({"b": 2, "a": 1})
