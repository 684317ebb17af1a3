"""Sessions, target assignment and append-only session stores."""

from __future__ import annotations

import json
import logging
import secrets
import warnings
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from .entropy import EntropyWindower, split_entropies
from .errors import DuplicateBlockError, PersistenceError, PersistenceWarning
from .records import validate_record
from .stats import (
    binomial_tail_at_or_above,
    binomial_z,
    is_session_significant,
    required_hit_percent,
    required_hits,
    two_proportion_z,
    two_sided_p,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TargetAssignment:
    """Session target: the first allowed target maps to bit 1, the second to bit 0.

    ``source`` names where the deciding bit came from; a single allowed
    target involves no draw and is labelled ``"fixed"``.
    """

    label: str
    bit: int
    source: str = "secrets"

    @classmethod
    def draw(
        cls,
        allowed_targets: Sequence[str],
        randbits: Callable[[int], int] = secrets.randbits,
        *,
        source: str = "secrets",
    ) -> "TargetAssignment":
        if not allowed_targets:
            raise ValueError("allowed_targets must not be empty")
        if len(allowed_targets) == 1:
            return cls(label=allowed_targets[0], bit=1, source="fixed")
        bit = randbits(1) & 1
        return cls(label=allowed_targets[0] if bit else allowed_targets[1], bit=bit, source=source)

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "bit": self.bit, "source": self.source}


def draw_condition(prime_probability: float, randbelow: Callable[[int], int] = secrets.randbelow) -> str:
    """``"prime"`` with probability ``prime_probability``, else ``"neutral"``."""
    resolution = 1_000_000
    return "prime" if randbelow(resolution) < round(prime_probability * resolution) else "neutral"


@dataclass
class Session:
    """In-memory source of truth for one run; stores only mirror it."""

    session_id: str
    target: TargetAssignment
    windower: EntropyWindower
    condition: str = "neutral"
    meta: Dict[str, Any] = field(default_factory=dict)
    records: List[Dict[str, Any]] = field(default_factory=list)
    decisions: Dict[str, List[int]] = field(default_factory=dict)
    invalidated_attempts: int = 0
    audits: List[Dict[str, Any]] = field(default_factory=list)
    completed: bool = False
    exit_reason: Optional[str] = None

    @classmethod
    def start(
        cls,
        *,
        allowed_targets: Sequence[str],
        window_size: int,
        prime_probability: float = 0.0,
        meta: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> "Session":
        return cls(
            session_id=session_id or str(uuid4()),
            target=TargetAssignment.draw(allowed_targets),
            windower=EntropyWindower(window_size),
            condition=draw_condition(prime_probability),
            meta=dict(meta or {}),
        )

    @property
    def valid_records(self) -> List[Dict[str, Any]]:
        return [record for record in self.records if not record["invalidated"]]

    @property
    def total_hits(self) -> int:
        return sum(record["hits"] for record in self.valid_records)

    @property
    def total_ghost_hits(self) -> int:
        return sum(record["ghost_hits"] for record in self.valid_records)

    @property
    def total_trials(self) -> int:
        return sum(record["trial_count"] for record in self.valid_records)

    @property
    def last_end_ms(self) -> Optional[float]:
        if not self.records:
            return None
        return self.records[-1]["timing"]["end_ms"]

    def add_block(self, record: Dict[str, Any], decisions: Optional[Dict[str, List[int]]] = None) -> None:
        if any(existing["block_index"] == record["block_index"] for existing in self.records):
            raise DuplicateBlockError(self.session_id, record["block_index"])
        self.records.append(record)
        for channel, bits in (decisions or {}).items():
            self.decisions.setdefault(channel, []).extend(bits)

    def complete(self, exit_reason: str = "completed") -> None:
        self.completed = True
        self.exit_reason = exit_reason

    def summary(self, *, alpha: float = 0.01) -> Dict[str, Any]:
        """Session-level totals, tests and entropy history."""
        n = self.total_trials
        k = self.total_hits
        ghost_k = self.total_ghost_hits
        z = binomial_z(k, n)
        return {
            "session_id": self.session_id,
            "target": self.target.to_dict(),
            "condition": self.condition,
            "completed": self.completed,
            "exit_reason": self.exit_reason,
            "blocks_recorded": len(self.records),
            "invalidated_attempts": self.invalidated_attempts,
            "fallback_blocks": sum(1 for record in self.records if record.get("fallback_used")),
            "truncated_blocks": sum(1 for record in self.records if record.get("truncated")),
            "total_trials": n,
            "total_hits": k,
            "total_ghost_hits": ghost_k,
            "hit_rate": k / n if n else None,
            "z": z,
            "p_two_sided": two_sided_p(z),
            "p_exact_at_or_above": binomial_tail_at_or_above(k, n),
            "subject_vs_ghost_z": two_proportion_z(k, n, ghost_k, n),
            "required_hit_percent": required_hit_percent(n, alpha),
            "required_hits": required_hits(n, alpha) if n else None,
            "significant": is_session_significant(k, n, alpha),
            "entropy_windows": {
                channel: [window.entropy for window in self.windower.windows(channel)]
                for channel in self.windower.channels
            },
            "temporal_entropy": {
                channel: {"k2": split_entropies(bits, 2), "k3": split_entropies(bits, 3), "bits": len(bits)}
                for channel, bits in self.decisions.items()
            },
            "audits": list(self.audits),
        }


class SessionStore(ABC):
    """Append-only persistence collaborator.

    Records are schema-validated and checked for duplicate block indices
    before ``_write_block`` is called; a stored block is never rewritten.
    """

    def __init__(self) -> None:
        self._indices: Dict[str, set] = {}

    def create_session(self, target: TargetAssignment, meta: Dict[str, Any], *, session_id: Optional[str] = None) -> str:
        handle = session_id or str(uuid4())
        if handle in self._indices:
            raise PersistenceError(f"Session {handle} already exists.", details={"session_id": handle})
        self._write_session(handle, {"session_id": handle, "target": target.to_dict(), "meta": dict(meta)})
        self._indices[handle] = set()
        return handle

    def append_block(self, handle: str, record: Dict[str, Any]) -> None:
        indices = self._known(handle)
        if record.get("block_index") in indices:
            raise DuplicateBlockError(handle, record["block_index"])
        validate_record(record)
        self._write_block(handle, record)
        indices.add(record["block_index"])

    def complete_session(self, handle: str, summary: Dict[str, Any]) -> None:
        self._known(handle)
        self._write_summary(handle, summary)

    def _known(self, handle: str) -> set:
        if handle not in self._indices:
            raise PersistenceError(f"Unknown session {handle}.", details={"session_id": handle})
        return self._indices[handle]

    @abstractmethod
    def _write_session(self, handle: str, header: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def _write_block(self, handle: str, record: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def _write_summary(self, handle: str, summary: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def load(self, handle: str) -> Dict[str, Any]:
        raise NotImplementedError


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        super().__init__()
        self.sessions: Dict[str, Dict[str, Any]] = {}

    def _write_session(self, handle: str, header: Dict[str, Any]) -> None:
        self.sessions[handle] = dict(header, blocks=[], summary=None)

    def _write_block(self, handle: str, record: Dict[str, Any]) -> None:
        self.sessions[handle]["blocks"].append(json.loads(json.dumps(record)))

    def _write_summary(self, handle: str, summary: Dict[str, Any]) -> None:
        self.sessions[handle]["summary"] = dict(summary)

    def load(self, handle: str) -> Dict[str, Any]:
        self._known(handle)
        return self.sessions[handle]


class JsonlSessionStore(SessionStore):
    """One ``<session_id>.jsonl`` file per session; lines are only ever appended."""

    def __init__(self, directory: Union[str, Path]):
        super().__init__()
        self.directory = Path(directory)

    def path_for(self, handle: str) -> Path:
        return self.directory / f"{handle}.jsonl"

    def _append_line(self, handle: str, payload: Dict[str, Any], *, create: bool = False) -> None:
        path = self.path_for(handle)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with path.open("x" if create else "a", encoding="utf-8") as handle_file:
                handle_file.write(json.dumps(payload, sort_keys=True) + "\n")
        except FileExistsError as exc:
            raise PersistenceError(
                f"Session file {path} already exists.",
                details={"path": str(path)},
            ) from exc
        except OSError as exc:
            raise PersistenceError(
                f"Unable to write session file {path}.",
                details={"path": str(path), "reason": str(exc)},
            ) from exc

    def _write_session(self, handle: str, header: Dict[str, Any]) -> None:
        self._append_line(handle, {"type": "session", **header}, create=True)

    def _write_block(self, handle: str, record: Dict[str, Any]) -> None:
        self._append_line(handle, {"type": "block", "record": record})

    def _write_summary(self, handle: str, summary: Dict[str, Any]) -> None:
        self._append_line(handle, {"type": "summary", "summary": summary})

    def load(self, handle: str) -> Dict[str, Any]:
        return read_session_file(self.path_for(handle))


def read_session_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Rebuild a session document from its JSONL lines."""
    path = Path(path)
    session: Dict[str, Any] = {"session_id": path.stem, "target": None, "meta": {}, "blocks": [], "summary": None}
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise PersistenceError(f"Unable to read session file {path}.", details={"path": str(path)}) from exc
    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError as exc:
            raise PersistenceError(
                f"Corrupt line {number} in {path}.",
                details={"path": str(path), "line": number},
            ) from exc
        kind = entry.pop("type", None)
        if kind == "session":
            session.update(entry)
        elif kind == "block":
            session["blocks"].append(entry["record"])
        elif kind == "summary":
            session["summary"] = entry["summary"]
    return session


def load_sessions(path: Union[str, Path]) -> List[Dict[str, Any]]:
    """Load one session file, a directory of them, or a JSON export list."""
    path = Path(path)
    if path.is_dir():
        return [read_session_file(item) for item in sorted(path.glob("*.jsonl"))]
    if path.suffix == ".jsonl":
        return [read_session_file(path)]
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise PersistenceError(f"Unable to load sessions from {path}.", details={"path": str(path)}) from exc
    if isinstance(payload, dict):
        payload = payload.get("sessions", [payload])
    if not isinstance(payload, list):
        raise PersistenceError(f"{path} does not contain a session list.", details={"path": str(path)})
    return payload


class SessionRecorder:
    """Mirror a session into a store without ever blocking the run.

    Failed writes leave the operation queued; every later call retries the
    queue in order before giving up again.
    """

    def __init__(self, store: Optional[SessionStore]):
        self.store = store
        self.handle: Optional[str] = None
        self._pending: Deque[Tuple[str, Dict[str, Any]]] = deque()
        self.failures = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def open(self, session: Session) -> None:
        meta = dict(session.meta, condition=session.condition)
        self._pending.append(("create", {"target": session.target, "meta": meta, "session_id": session.session_id}))
        self.flush()

    def append(self, record: Dict[str, Any]) -> None:
        self._pending.append(("block", record))
        self.flush()

    def complete(self, summary: Dict[str, Any]) -> None:
        self._pending.append(("summary", summary))
        self.flush()

    def flush(self) -> bool:
        if self.store is None:
            self._pending.clear()
            return True
        while self._pending:
            kind, payload = self._pending[0]
            try:
                if kind == "create":
                    self.handle = self.store.create_session(
                        payload["target"], payload["meta"], session_id=payload["session_id"]
                    )
                elif kind == "block":
                    self.store.append_block(self._require_handle(), payload)
                else:
                    self.store.complete_session(self._require_handle(), payload)
            except PersistenceError as exc:
                self.failures += 1
                logger.warning("persistence write failed (%s); %d operation(s) queued", exc.description, len(self._pending))
                warnings.warn(
                    f"Session write failed and stays queued: {exc.description}",
                    PersistenceWarning,
                    stacklevel=3,
                )
                return False
            self._pending.popleft()
        return True

    def _require_handle(self) -> str:
        if self.handle is None:
            raise PersistenceError("Session was never created in the store.")
        return self.handle
