"""Persisted block records: serialization, integrity hashes and schema validation.

The schema resource lives at ``trialstream/schemas/block.schema.json`` and is
loaded via ``importlib.resources``.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from importlib import resources
from typing import Any, Dict, List, Optional, cast

import jsonschema

from .block import Block
from .errors import RecordValidationError

RECORD_VERSION = "1.0.0"
SCHEMA_PACKAGE = "trialstream.schemas"
SCHEMA_FILENAME = "block.schema.json"


def load_schema() -> dict[str, Any]:
    """Load the block record schema.

    Example:
        >>> load_schema()["title"]
        'trialstream block record'
    """
    text = resources.files(SCHEMA_PACKAGE).joinpath(SCHEMA_FILENAME).read_text(encoding="utf-8")
    return cast(dict[str, Any], json.loads(text))


def canonical_json(payload: Any) -> str:
    """Return canonical JSON (sorted keys, compact separators).

    Example:
        >>> canonical_json({"b": 1, "a": 2})
        '{"a":2,"b":1}'
    """
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def payload_hash(payload: Any) -> str:
    """SHA-256 over canonical JSON.

    Example:
        >>> len(payload_hash({"a": 1}))
        64
    """
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def bitstream_hash(bits: List[int]) -> str:
    """SHA-256 of a bit sequence rendered as a ``"0101..."`` string."""
    return hashlib.sha256("".join("1" if bit else "0" for bit in bits).encode("ascii")).hexdigest()


def _trial_to_dict(trial: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "index": trial.index,
        "strategy": trial.strategy.value,
        "subject": trial.subject_unit,
        "ghost": trial.ghost_unit,
        "raw_indices": {channel: list(indices) for channel, indices in trial.raw_indices.items()},
        "hits": dict(trial.hits),
        "bit_position": trial.bit_position,
        "source_label": trial.source_label,
        "t_ms": round(trial.timestamp_ms, 3),
    }
    if trial.demon_unit is not None:
        payload["demon"] = trial.demon_unit
    return payload


def block_to_record(
    block: Block,
    *,
    session_id: str,
    previous_end_ms: Optional[float] = None,
    include_trials: bool = True,
) -> dict[str, Any]:
    """Serialize a finalized block into its persisted record form."""
    if not block.finalized:
        raise ValueError(f"block {block.index} must be finalized before it is recorded")

    summaries = {channel: summary.to_dict() for channel, summary in block.summaries.items()}
    subject = block.summaries.get("subject")
    end = block.end_time_ms if block.end_time_ms is not None else block.start_time_ms
    record: dict[str, Any] = {
        "record_version": RECORD_VERSION,
        "session_id": session_id,
        "recorded_at_utc": datetime.now(timezone.utc).isoformat(),
        "block_index": block.index,
        "attempt": block.attempt,
        "planned_trial_count": block.planned_trial_count,
        "trial_count": block.trial_count,
        "target_bit": block.target_bit,
        "hits": block.hits,
        "ghost_hits": block.ghost_hits,
        "demon_hits": block.demon_hits,
        "z": subject.z if subject else 0.0,
        "p": subject.p_two_sided if subject else 1.0,
        "coherence_range": subject.coherence_range if subject else 0,
        "hurst": subject.hurst if subject else 0.5,
        "lag1_autocorrelation": subject.lag1_autocorrelation if subject else 0.0,
        "channels": summaries,
        "pause_stats": block.pause_stats.to_dict(),
        "invalidated": block.invalidated,
        "invalid_reason": block.invalid_reason,
        "truncated": block.truncated,
        "warmup_status": block.warmup_status,
        "fallback_used": block.fallback_used,
        "source_labels": sorted({trial.source_label for trial in block.trials}),
        "timing": {
            "start_ms": round(block.start_time_ms, 3),
            "end_ms": round(end, 3),
            "duration_ms": round(end - block.start_time_ms, 3),
            "first_trial_ms": block.first_trial_time_ms,
            "last_trial_ms": block.last_trial_time_ms,
            "gap_since_previous_ms": (
                round(block.start_time_ms - previous_end_ms, 3) if previous_end_ms is not None else None
            ),
        },
        "entropy_windows": {
            channel: [window.to_dict() for window in windows]
            for channel, windows in block.new_windows.items()
        },
        "bit_hashes": {channel: bitstream_hash(block.raw_bits(channel)) for channel in block.channels},
    }
    if include_trials:
        record["trials"] = [_trial_to_dict(trial) for trial in block.trials]
    record["record_hash"] = ""
    record["record_hash"] = payload_hash(record)
    return record


def verify_record_hash(record: Dict[str, Any]) -> bool:
    staged = dict(record)
    expected = staged.get("record_hash", "")
    staged["record_hash"] = ""
    return payload_hash(staged) == expected


def validate_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a block record against the packaged schema.

    Raises:
        RecordValidationError: On the first schema violation, ordered by path.
    """
    if not isinstance(record, dict):
        raise RecordValidationError("<root>", "record must be a JSON object")
    validator = jsonschema.Draft7Validator(load_schema())
    errors = sorted(validator.iter_errors(record), key=lambda item: [str(part) for part in item.path])
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.path) or "<root>"
        raise RecordValidationError(location, first.message)
    return record
