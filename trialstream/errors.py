"""Error taxonomy for trial scheduling, entropy sources and session storage.

Example:
    >>> from trialstream.errors import BufferUnderrun
    >>> err = BufferUnderrun(requested=3, available=1)
    >>> err.error_code
    'BUF_001'
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass
class TrialStreamError(Exception):
    """Base trialstream error.

    Attributes:
        error_code: Stable error identifier.
        category: One of config/buffer/source/scheduler/block/storage/record.
        description: Human-readable error description.
        details: Machine-readable context for the failure.

    Example:
        >>> err = TrialStreamError("CFG_001", "config", "bad cadence", {"visual_hz": 0})
        >>> err.to_dict()["category"]
        'config'
    """

    error_code: str
    category: str
    description: str
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.description)

    def to_dict(self) -> dict[str, Any]:
        """Return serializable error details."""
        return {
            "error_code": self.error_code,
            "category": self.category,
            "description": self.description,
            "details": self.details,
        }

    def to_payload(self) -> str:
        """Serialize the error for logs and CLI output.

        Example:
            >>> payload = TrialStreamError("X_1", "block", "bad", {}).to_payload()
            >>> '"error_code": "X_1"' in payload
            True
        """
        return json.dumps(self.to_dict(), sort_keys=True, indent=2, default=str)


class ConfigurationError(TrialStreamError):
    """Raised when startup configuration is invalid. Always fatal."""

    def __init__(self, description: str, details: dict[str, Any] | None = None):
        super().__init__(
            error_code="CFG_001",
            category="config",
            description=description,
            details=dict(details or {}),
        )


class BufferUnderrun(TrialStreamError):
    """Raised by ``StreamBuffer.pop`` when fewer units are buffered than requested."""

    def __init__(self, requested: int, available: int):
        super().__init__(
            error_code="BUF_001",
            category="buffer",
            description=f"Requested {requested} units but only {available} are buffered.",
            details={"requested": requested, "available": available},
        )
        self.requested = requested
        self.available = available


class SourceUnavailableError(TrialStreamError):
    """Raised when an entropy source cannot connect or deliver."""

    def __init__(self, description: str, details: dict[str, Any] | None = None):
        super().__init__(
            error_code="SRC_001",
            category="source",
            description=description,
            details=dict(details or {}),
        )


class MalformedChunkError(TrialStreamError):
    """Raised when a delivered chunk is short or contains non-binary units."""

    def __init__(self, description: str, details: dict[str, Any] | None = None):
        super().__init__(
            error_code="SRC_002",
            category="source",
            description=description,
            details=dict(details or {}),
        )


class SchedulerStateError(TrialStreamError):
    """Raised on an illegal scheduler transition, e.g. a second ``start()``."""

    def __init__(self, current: str, requested: str):
        super().__init__(
            error_code="SCH_001",
            category="scheduler",
            description=f"Illegal scheduler transition {current} -> {requested}.",
            details={"current": current, "requested": requested},
        )


class BlockFinalizedError(TrialStreamError):
    """Raised when a finalized block is mutated."""

    def __init__(self, block_index: int):
        super().__init__(
            error_code="BLK_001",
            category="block",
            description=f"Block {block_index} is finalized and can no longer be mutated.",
            details={"block_index": block_index},
        )


class BlockRetryExhaustedError(TrialStreamError):
    """Raised when a block index keeps being invalidated past the attempt limit."""

    def __init__(self, block_index: int, attempts: int):
        super().__init__(
            error_code="BLK_002",
            category="block",
            description=(
                f"Block {block_index} was invalidated on all {attempts} attempts; "
                "session aborted."
            ),
            details={"block_index": block_index, "attempts": attempts},
        )


class PersistenceError(TrialStreamError):
    """Raised by session stores when a write fails."""

    def __init__(self, description: str, details: dict[str, Any] | None = None):
        super().__init__(
            error_code="STO_001",
            category="storage",
            description=description,
            details=dict(details or {}),
        )


class DuplicateBlockError(TrialStreamError):
    """Raised when a block index is appended twice to the same session."""

    def __init__(self, session_id: str, block_index: int):
        super().__init__(
            error_code="STO_002",
            category="storage",
            description=f"Session {session_id} already holds block {block_index}.",
            details={"session_id": session_id, "block_index": block_index},
        )


class RecordValidationError(TrialStreamError):
    """Raised when a block record does not match the packaged schema."""

    def __init__(self, location: str, message: str):
        super().__init__(
            error_code="REC_001",
            category="record",
            description=f"Block record validation failed at {location}: {message}",
            details={"location": location},
        )


class PersistenceWarning(UserWarning):
    """Emitted when a store write fails and the record stays queued in memory."""


class FallbackSourceWarning(UserWarning):
    """Emitted when trials switch to the local fallback random source."""
