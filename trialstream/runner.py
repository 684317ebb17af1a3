"""Async block and session runners on a single cooperative event loop."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from .audit import run_audit
from .block import Block
from .buffer import StreamBuffer
from .config import ExperimentConfig
from .entropy import EntropyWindower
from .errors import BlockRetryExhaustedError
from .governor import BufferGovernor
from .records import block_to_record
from .scheduler import StopReason, TrialScheduler
from .session import Session, SessionRecorder, SessionStore
from .sources import EntropySource, LocalRandomSource, ResilientSource, monotonic_ms

logger = logging.getLogger(__name__)


class BlockRunner:
    """One block attempt with its own buffer, governor and scheduler.

    ``abort`` stops the trial clock and disconnects the source together; it
    may be called any number of times.
    """

    def __init__(
        self,
        config: ExperimentConfig,
        source: EntropySource,
        *,
        block_index: int,
        target_bit: int,
        attempt: int = 1,
        clock: Callable[[], float] = monotonic_ms,
        fallback_factory: Optional[Callable[[], EntropySource]] = None,
    ):
        self.config = config
        self.source = source
        self.clock = clock
        self.buffer = StreamBuffer()
        self.governor = BufferGovernor.from_config(config)
        channels = ("subject", "ghost", "demon") if config.demon_enabled else ("subject", "ghost")
        self.block = Block(
            index=block_index,
            planned_trial_count=config.trials_per_block,
            target_bit=target_bit,
            attempt=attempt,
            channels=channels,
        )
        factory = fallback_factory or (lambda: LocalRandomSource(chunk_bits=config.source.chunk_bits, clock=clock))
        self.scheduler = TrialScheduler(
            config,
            self.buffer,
            self.governor,
            self.block,
            fallback=factory(),
            drain=self.drain,
            clock=clock,
        )
        self.capacity = max(config.governor.warmup_threshold, config.governor.resume_threshold) + 2 * config.source.chunk_bits
        self.aborted = False
        self._released = False

    def drain(self) -> int:
        """Move ready chunks from the source into the buffer, up to capacity."""
        pushed = 0
        while self.buffer.depth() < self.capacity:
            chunk = self.source.next_chunk()
            if chunk is None:
                break
            self.buffer.push(chunk)
            pushed += len(chunk)
        return pushed

    async def run(self, windower: EntropyWindower) -> Block:
        if self.aborted:
            return self.scheduler.finalize(windower)
        self.source.connect(self.config.hard_cap_ms)
        timer = self.scheduler.start()
        try:
            await timer
        except asyncio.CancelledError:
            if not self.aborted:
                raise
        finally:
            self._release()
        return self.scheduler.finalize(windower)

    def abort(self) -> None:
        self.aborted = True
        self.scheduler.stop(StopReason.ABORTED)
        self._release()

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        self.source.disconnect()


class ExperimentRunner:
    """Run a full session: blocks in order, invalidated indices redone in place.

    Args:
        config: Validated experiment configuration.
        source: Entropy source; wrapped in ``ResilientSource`` unless it is one.
        store: Optional session store mirrored through a ``SessionRecorder``.
        clock: Millisecond clock shared by the scheduler and source wrapper.
    """

    def __init__(
        self,
        config: ExperimentConfig,
        source: EntropySource,
        *,
        store: Optional[SessionStore] = None,
        clock: Callable[[], float] = monotonic_ms,
        fallback_factory: Optional[Callable[[], EntropySource]] = None,
    ):
        self.config = config
        if not isinstance(source, ResilientSource):
            source = ResilientSource(source, config.source, clock=clock)
        self.source = source
        self.recorder = SessionRecorder(store)
        self.clock = clock
        self.fallback_factory = fallback_factory
        self.aborted = False
        self._current: Optional[BlockRunner] = None
        self._recent_bits: Deque[int] = deque(maxlen=max(config.audit_bits, 1))

    def new_session(self, meta: Optional[Dict[str, Any]] = None) -> Session:
        return Session.start(
            allowed_targets=self.config.allowed_targets,
            window_size=self.config.entropy_window_size,
            prime_probability=self.config.prime_probability,
            meta=dict(meta or {}, experiment_id=self.config.experiment_id, policy=self.config.describe_policy()),
        )

    async def run_block(self, session: Session, block_index: int) -> Block:
        """Run ``block_index`` until a valid attempt, abort, or retry exhaustion."""
        for attempt in range(1, self.config.max_block_attempts + 1):
            runner = BlockRunner(
                self.config,
                self.source,
                block_index=block_index,
                target_bit=session.target.bit,
                attempt=attempt,
                clock=self.clock,
                fallback_factory=self.fallback_factory,
            )
            self._current = runner
            block = await runner.run(session.windower)
            self._current = None
            if self.aborted or not block.invalidated:
                return block
            session.invalidated_attempts += 1
            logger.info(
                "redoing block %d (attempt %d of %d failed: %s)",
                block_index,
                attempt,
                self.config.max_block_attempts,
                block.invalid_reason,
            )
        raise BlockRetryExhaustedError(block_index, self.config.max_block_attempts)

    async def run_session(self, session: Optional[Session] = None) -> Session:
        session = session or self.new_session()
        self.recorder.open(session)
        logger.info("session %s started (target=%s)", session.session_id, session.target.label)
        try:
            for block_index in range(self.config.blocks_total):
                if self.aborted:
                    break
                block = await self.run_block(session, block_index)
                if self.aborted:
                    break
                self._record(session, block)
        except BlockRetryExhaustedError:
            session.complete("retry_exhausted")
            self.recorder.complete(session.summary(alpha=self.config.block_alpha))
            raise
        session.complete("aborted" if self.aborted else "completed")
        self.recorder.complete(session.summary(alpha=self.config.block_alpha))
        logger.info(
            "session %s %s: %d/%d hits",
            session.session_id,
            session.exit_reason,
            session.total_hits,
            session.total_trials,
        )
        return session

    def _record(self, session: Session, block: Block) -> None:
        record = block_to_record(block, session_id=session.session_id, previous_end_ms=session.last_end_ms)
        session.add_block(record, decisions={channel: block.decisions(channel) for channel in block.channels})
        self.recorder.append(record)
        self._recent_bits.extend(block.raw_bits("subject"))
        every = self.config.audit_every_n_blocks
        if every and self.config.audit_bits and (block.index + 1) % every == 0:
            audit = run_audit(list(self._recent_bits))
            audit["after_block"] = block.index
            session.audits.append(audit)
            if not audit["all_pass"]:
                logger.warning("randomness audit failed after block %d", block.index)

    def abort(self) -> None:
        """Stop the session after releasing the active block's clock and source."""
        self.aborted = True
        if self._current is not None:
            self._current.abort()

    def run(self, session: Optional[Session] = None) -> Session:
        return asyncio.run(self.run_session(session))
