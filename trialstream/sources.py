"""Entropy source contract plus scripted, local and resilient implementations."""

from __future__ import annotations

import logging
import secrets
import time
import warnings
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Iterable, List, Optional, Sequence, Union

from .buffer import BitChunk
from .config import SourceConfig
from .errors import FallbackSourceWarning, MalformedChunkError, SourceUnavailableError

logger = logging.getLogger(__name__)

FALLBACK_LABEL = "local-fallback"

ScriptItem = Union[BitChunk, str, Sequence[int], Exception]


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class EntropySource(ABC):
    """Producer of ``BitChunk`` deliveries.

    ``next_chunk`` never blocks: it returns ``None`` when nothing is ready.
    ``completed`` turns true once the source will deliver nothing more.
    """

    label: str = "source"

    def __init__(self) -> None:
        self.connected = False

    def connect(self, duration_hint_ms: float = 0.0) -> None:
        self.connected = True

    def disconnect(self) -> None:
        """Release the source; safe to call any number of times."""
        self.connected = False

    @abstractmethod
    def next_chunk(self) -> Optional[BitChunk]:
        raise NotImplementedError

    @property
    def completed(self) -> bool:
        return False

    def describe(self) -> dict:
        return {"label": self.label, "type": type(self).__name__, "connected": self.connected}


def bits_from_bytes(data: bytes) -> List[int]:
    """Expand bytes into bits, most significant bit first."""
    return [(byte >> shift) & 1 for byte in data for shift in range(7, -1, -1)]


def read_bits_file(path: Union[str, Path]) -> List[int]:
    """Load a ``0``/``1`` text file, or any other file as raw bytes."""
    raw = Path(path).read_bytes()
    stripped = "".join(raw.decode("ascii", errors="ignore").split())
    if stripped and set(stripped) <= {"0", "1"}:
        return [int(char) for char in stripped]
    return bits_from_bytes(raw)


class ScriptedSource(EntropySource):
    """Replays a fixed script of deliveries.

    Script items may be chunks, ``"0101"`` strings, bit sequences, or
    exceptions; an exception item is raised from ``next_chunk`` once, which
    lets callers exercise retry paths.
    """

    def __init__(self, script: Iterable[ScriptItem], *, label: str = "scripted", clock: Callable[[], float] = monotonic_ms):
        super().__init__()
        self.label = label
        self.clock = clock
        self._script: Deque[ScriptItem] = deque(script)
        self.delivered = 0

    @classmethod
    def from_bits(cls, bits: Sequence[int], *, chunk_bits: int = 256, label: str = "scripted") -> "ScriptedSource":
        if chunk_bits < 1:
            raise ValueError("chunk_bits must be >= 1")
        chunks = [list(bits[start:start + chunk_bits]) for start in range(0, len(bits), chunk_bits)]
        return cls(chunks, label=label)

    @classmethod
    def from_file(cls, path: Union[str, Path], *, chunk_bits: int = 256, label: Optional[str] = None) -> "ScriptedSource":
        return cls.from_bits(read_bits_file(path), chunk_bits=chunk_bits, label=label or Path(path).name)

    def next_chunk(self) -> Optional[BitChunk]:
        if not self.connected:
            raise SourceUnavailableError(f"Source {self.label!r} is not connected.")
        if not self._script:
            return None
        item = self._script.popleft()
        if isinstance(item, Exception):
            raise item
        self.delivered += 1
        if isinstance(item, BitChunk):
            return item
        if isinstance(item, str):
            return BitChunk.from_string(item, self.label, self.clock())
        return BitChunk(units=tuple(item), source_label=self.label, arrival_time=self.clock())

    @property
    def completed(self) -> bool:
        return not self._script


class LocalRandomSource(EntropySource):
    """Cryptographically strong local bits from ``secrets``; never completes."""

    def __init__(self, *, chunk_bits: int = 256, label: str = FALLBACK_LABEL, clock: Callable[[], float] = monotonic_ms):
        super().__init__()
        if chunk_bits < 1:
            raise ValueError("chunk_bits must be >= 1")
        self.label = label
        self.chunk_bits = chunk_bits
        self.clock = clock

    def next_chunk(self) -> Optional[BitChunk]:
        if not self.connected:
            return None
        value = secrets.randbits(self.chunk_bits)
        units = tuple((value >> shift) & 1 for shift in range(self.chunk_bits - 1, -1, -1))
        return BitChunk(units=units, source_label=self.label, arrival_time=self.clock())


class ResilientSource(EntropySource):
    """Wrap a primary source with validation, backoff retries and local fallback.

    Failures (connect errors, read errors and malformed or short chunks) are
    counted consecutively. Retry ``n`` is scheduled ``backoff_ms(n)`` after the
    failure; while waiting, ``next_chunk`` returns ``None`` without touching
    the primary. After ``max_retries`` retries have failed the wrapper
    switches to the fallback for the rest of its lifetime.
    """

    def __init__(
        self,
        primary: EntropySource,
        config: Optional[SourceConfig] = None,
        *,
        fallback: Optional[EntropySource] = None,
        clock: Callable[[], float] = monotonic_ms,
    ):
        super().__init__()
        self.primary = primary
        self.config = config or SourceConfig()
        self.fallback = fallback or LocalRandomSource(chunk_bits=self.config.chunk_bits, clock=clock)
        self.clock = clock
        self.label = primary.label
        self.failures = 0
        self.total_failures = 0
        self.fallback_active = False
        self._retry_at: Optional[float] = None
        self._duration_hint_ms = 0.0

    def connect(self, duration_hint_ms: float = 0.0) -> None:
        super().connect(duration_hint_ms)
        self._duration_hint_ms = duration_hint_ms
        if self.fallback_active:
            self.fallback.connect(duration_hint_ms)
        else:
            self._connect_primary()

    def _connect_primary(self) -> None:
        try:
            self.primary.connect(self._duration_hint_ms)
        except SourceUnavailableError as exc:
            self._record_failure(exc)

    def disconnect(self) -> None:
        super().disconnect()
        self.primary.disconnect()
        self.fallback.disconnect()

    @property
    def completed(self) -> bool:
        if self.fallback_active:
            return self.fallback.completed
        return self.primary.completed

    def next_chunk(self) -> Optional[BitChunk]:
        if not self.connected:
            return None
        if self.fallback_active:
            return self.fallback.next_chunk()
        if self._retry_at is not None:
            if self.clock() < self._retry_at:
                return None
            self._retry_at = None
        if not self.primary.connected:
            self._connect_primary()
            if not self.primary.connected:
                return self.fallback.next_chunk() if self.fallback_active else None
        try:
            chunk = self.primary.next_chunk()
            if chunk is None:
                return None
            chunk.validate(min_units=self.config.min_chunk_bits)
        except (SourceUnavailableError, MalformedChunkError) as exc:
            self._record_failure(exc)
            return self.fallback.next_chunk() if self.fallback_active else None
        self.failures = 0
        return chunk

    def _record_failure(self, exc: Exception) -> None:
        self.failures += 1
        self.total_failures += 1
        if self.failures > self.config.max_retries:
            self._engage_fallback(exc)
            return
        delay = self.config.backoff_ms(self.failures)
        self._retry_at = self.clock() + delay
        logger.info(
            "entropy source %s failed (%s); retry %d/%d in %.0fms",
            self.primary.label,
            exc,
            self.failures,
            self.config.max_retries,
            delay,
        )

    def _engage_fallback(self, exc: Exception) -> None:
        self.fallback_active = True
        self._retry_at = None
        self.primary.disconnect()
        self.fallback.connect(self._duration_hint_ms)
        logger.warning(
            "entropy source %s unavailable after %d retries; switching to %s",
            self.primary.label,
            self.config.max_retries,
            self.fallback.label,
        )
        warnings.warn(
            f"Entropy source {self.primary.label!r} unavailable ({exc}); using {self.fallback.label!r}.",
            FallbackSourceWarning,
            stacklevel=3,
        )

    def describe(self) -> dict:
        payload = super().describe()
        payload.update(
            {
                "primary": self.primary.describe(),
                "fallback": self.fallback.describe(),
                "fallback_active": self.fallback_active,
                "failures": self.total_failures,
            }
        )
        return payload
