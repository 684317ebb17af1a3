"""trialstream package exports."""

from .analysis import StatisticsEngine
from .audit import run_audit, validate_randomness
from .block import Block, ChannelSummary, TrialOutcome, finalize_block
from .buffer import BitChunk, BufferedUnit, StreamBuffer
from .config import ExperimentConfig, GovernorConfig, SourceConfig, build_config, load_config
from .entropy import EntropyWindow, EntropyWindower
from .errors import (
    BlockFinalizedError,
    BlockRetryExhaustedError,
    BufferUnderrun,
    ConfigurationError,
    DuplicateBlockError,
    FallbackSourceWarning,
    MalformedChunkError,
    PersistenceError,
    PersistenceWarning,
    RecordValidationError,
    SchedulerStateError,
    SourceUnavailableError,
    TrialStreamError,
)
from .governor import BufferGovernor, GovernorState, GuardrailPolicy, PauseStats, WarmupStatus
from .records import block_to_record, validate_record
from .runner import BlockRunner, ExperimentRunner
from .scheduler import SchedulerState, StopReason, TrialScheduler
from .session import (
    InMemorySessionStore,
    JsonlSessionStore,
    Session,
    SessionStore,
    TargetAssignment,
    load_sessions,
)
from .sources import EntropySource, LocalRandomSource, ResilientSource, ScriptedSource
from .strategy import ChannelStrategy, DrawPlan, strategy_for_trial

__all__ = [
    "BitChunk",
    "BufferedUnit",
    "StreamBuffer",
    "BufferGovernor",
    "GovernorState",
    "GuardrailPolicy",
    "PauseStats",
    "WarmupStatus",
    "TrialScheduler",
    "SchedulerState",
    "StopReason",
    "ChannelStrategy",
    "DrawPlan",
    "strategy_for_trial",
    "Block",
    "ChannelSummary",
    "TrialOutcome",
    "finalize_block",
    "EntropyWindow",
    "EntropyWindower",
    "StatisticsEngine",
    "run_audit",
    "validate_randomness",
    "ExperimentConfig",
    "GovernorConfig",
    "SourceConfig",
    "build_config",
    "load_config",
    "EntropySource",
    "LocalRandomSource",
    "ResilientSource",
    "ScriptedSource",
    "Session",
    "SessionStore",
    "InMemorySessionStore",
    "JsonlSessionStore",
    "TargetAssignment",
    "load_sessions",
    "block_to_record",
    "validate_record",
    "BlockRunner",
    "ExperimentRunner",
    "TrialStreamError",
    "ConfigurationError",
    "BufferUnderrun",
    "SourceUnavailableError",
    "MalformedChunkError",
    "SchedulerStateError",
    "BlockFinalizedError",
    "BlockRetryExhaustedError",
    "PersistenceError",
    "DuplicateBlockError",
    "RecordValidationError",
    "PersistenceWarning",
    "FallbackSourceWarning",
]
