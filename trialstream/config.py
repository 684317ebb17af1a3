"""Immutable experiment configuration, validated once at startup.

Example:
    >>> from trialstream.config import ExperimentConfig
    >>> cfg = ExperimentConfig(visual_hz=5, block_ms=2000)
    >>> cfg.tick_ms, cfg.trials_per_block
    (200.0, 10)
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError

ENV_PREFIX = "TRIALSTREAM_"


class GovernorConfig(BaseModel):
    """Hysteresis thresholds (in buffered units) and invalidation guardrails.

    Pause limits are expressed in ticks of the trial clock so that they scale
    with the visual cadence; ``ExperimentConfig`` converts them to milliseconds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    pause_threshold: int = Field(default=50, ge=0)
    resume_threshold: int = Field(default=120, ge=1)
    warmup_threshold: int = Field(default=250, ge=0)
    warmup_timeout_ms: float = Field(default=25_000.0, ge=0.0)
    max_pauses: int = Field(default=5, ge=0)
    max_total_pause_ticks: float = Field(default=10.0, ge=0.0)
    max_single_pause_ticks: float = Field(default=5.0, ge=0.0)

    @model_validator(mode="after")
    def _validate_dead_zone(self) -> "GovernorConfig":
        if self.pause_threshold >= self.resume_threshold:
            raise ValueError(
                "pause_threshold must be strictly below resume_threshold "
                f"(got {self.pause_threshold} >= {self.resume_threshold})"
            )
        return self


class SourceConfig(BaseModel):
    """Retry, backoff and chunk-size bounds for the entropy source."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    label: str = "remote"
    max_retries: int = Field(default=3, ge=0)
    backoff_base_ms: float = Field(default=1000.0, ge=0.0)
    backoff_cap_ms: float = Field(default=5000.0, ge=0.0)
    chunk_bits: int = Field(default=256, ge=1)
    min_chunk_bits: int = Field(default=8, ge=1)

    def backoff_ms(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (1-based): doubling, capped."""
        return min(self.backoff_base_ms * (2 ** max(attempt - 1, 0)), self.backoff_cap_ms)


class ExperimentConfig(BaseModel):
    """Top-level configuration passed by reference to every component."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    experiment_id: str = "focus_stream_v1"
    visual_hz: float = Field(default=5.0)
    block_ms: float = Field(default=30_000.0)
    blocks_total: int = Field(default=30)
    prime_probability: float = Field(default=0.75)
    allowed_targets: Tuple[str, ...] = ("BLUE", "ORANGE")
    unit_bits: int = Field(default=1, ge=1, le=64)
    demon_enabled: bool = False
    independent_gap: int = Field(default=1, ge=0)
    grace_ms: float = Field(default=5000.0, ge=0.0)
    entropy_window_size: int = Field(default=1000, ge=1)
    max_block_attempts: int = Field(default=3, ge=1)
    block_alpha: float = Field(default=0.01, gt=0.0, lt=1.0)
    audit_every_n_blocks: int = Field(default=5, ge=0)
    audit_bits: int = Field(default=1000, ge=0)
    governor: GovernorConfig = Field(default_factory=GovernorConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)

    @field_validator("visual_hz", "block_ms")
    @classmethod
    def _require_positive(cls, value: float, info: Any) -> float:
        if not value > 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("blocks_total")
    @classmethod
    def _require_blocks(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("blocks_total must be > 0")
        return value

    @field_validator("prime_probability")
    @classmethod
    def _require_probability(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("prime_probability must be within [0, 1]")
        return value

    @field_validator("allowed_targets")
    @classmethod
    def _require_targets(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        cleaned = tuple(str(item).strip() for item in value if str(item).strip())
        if not cleaned:
            raise ValueError("allowed_targets must contain at least one value")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("allowed_targets must not contain duplicates")
        return cleaned

    @property
    def tick_ms(self) -> float:
        """Trial clock period ``T = 1000 / Hz``."""
        return 1000.0 / self.visual_hz

    @property
    def trials_per_block(self) -> int:
        return max(1, int(round(self.block_ms / self.tick_ms)))

    @property
    def hard_cap_ms(self) -> float:
        """Wall-clock cap after which a block is force-finalized."""
        return self.trials_per_block * self.tick_ms + self.grace_ms

    @property
    def max_total_pause_ms(self) -> float:
        return self.governor.max_total_pause_ticks * self.tick_ms

    @property
    def max_single_pause_ms(self) -> float:
        return self.governor.max_single_pause_ticks * self.tick_ms

    def describe_policy(self) -> dict[str, str]:
        """Human-readable buffering policy, as shown to operators."""
        return {
            "warmup": f"Warm-up until buffer >= {self.governor.warmup_threshold} units",
            "pause": f"Pause if buffer < {self.governor.pause_threshold} units",
            "resume": f"Resume when buffer >= {self.governor.resume_threshold} units",
            "guardrails": (
                f"Invalidate if >{self.governor.max_pauses} pauses, total pauses > "
                f"{self.max_total_pause_ms / 1000:.1f}s, or any pause > "
                f"{self.max_single_pause_ms / 1000:.1f}s"
            ),
        }


def build_config(data: Optional[Mapping[str, Any]] = None, **overrides: Any) -> ExperimentConfig:
    """Validate raw settings into an ``ExperimentConfig``.

    Raises:
        ConfigurationError: If any field is missing, malformed or out of range.
    """
    payload = dict(data or {})
    payload.update(overrides)
    try:
        return ExperimentConfig.model_validate(payload)
    except ValidationError as exc:
        problems = [
            {"field": ".".join(str(part) for part in item["loc"]), "message": item["msg"]}
            for item in exc.errors()
        ]
        raise ConfigurationError(
            "Invalid experiment configuration; the run cannot start.",
            details={"errors": problems},
        ) from exc


def _coerce_env_value(raw: str) -> Any:
    text = raw.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``TRIALSTREAM_*`` overrides; ``__`` separates nested sections."""
    overrides: dict[str, Any] = {}
    for name, raw in env.items():
        if not name.startswith(ENV_PREFIX):
            continue
        path = name[len(ENV_PREFIX):].lower().split("__")
        cursor = overrides
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = _coerce_env_value(raw)
    return overrides


def _merge(base: dict[str, Any], extra: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def load_config(
    path: Optional[str | Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> ExperimentConfig:
    """Load configuration from an optional JSON file plus environment overrides."""
    data: dict[str, Any] = {}
    if path is not None:
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(
                f"Unable to read configuration file {path}.",
                details={"path": str(path), "reason": str(exc)},
            ) from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(
                "Configuration file must contain a JSON object.",
                details={"path": str(path)},
            )
        data = raw
    data = _merge(data, _env_overrides(os.environ if env is None else env))
    return build_config(data)
