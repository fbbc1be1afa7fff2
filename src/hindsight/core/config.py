"""Configuration models for the learning core.

One pydantic section per component, aggregated into LearningConfig. Every
default matches the behaviour described by the component modules, so an
empty YAML document (or ``LearningConfig()``) is a complete configuration.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator

from hindsight.core import constants
from hindsight.storage.files import LearningPaths


class LogConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum log level to capture",
    )
    format: Literal["json", "console", "both"] = Field(
        default="console",
        description="Output format: json for structured, console for human-readable, "
        "both for console to stderr and JSON to file",
    )
    file_path: Path | None = Field(
        default=None,
        description="Path for log file output (required if format='both')",
    )
    max_file_size_mb: int = Field(default=10, gt=0, le=1000)
    backup_count: int = Field(default=3, ge=0, le=100)
    include_timestamps: bool = True
    include_context: bool = Field(
        default=True,
        description="Include session correlation fields (session_id, run_id)",
    )

    @model_validator(mode="after")
    def _check_file_path_required(self) -> LogConfig:
        if self.format == "both" and self.file_path is None:
            raise ValueError(f"file_path is required when format='{self.format}'")
        return self


class GrpoConfig(BaseModel):
    """Group relative policy optimization over task strategies and teams."""

    learning_rate: float = Field(
        default=constants.GRPO_LEARNING_RATE,
        gt=0.0,
        le=1.0,
        description="Step size: new = old + learning_rate * advantage * composite",
    )
    min_weight: float = Field(default=constants.GRPO_MIN_WEIGHT, gt=0.0)
    max_weight: float = Field(default=constants.GRPO_MAX_WEIGHT, gt=0.0)
    max_rounds: int = Field(
        default=constants.GRPO_MAX_ROUNDS,
        ge=1,
        description="Rolling cap of optimization rounds kept in grpo-history.json",
    )

    @model_validator(mode="after")
    def _check_weight_bounds(self) -> GrpoConfig:
        if self.min_weight > self.max_weight:
            raise ValueError(
                f"min_weight ({self.min_weight}) must not exceed max_weight ({self.max_weight})"
            )
        return self


class ToolLearnerConfig(BaseModel):
    """Time-decayed tool preference learning."""

    max_records_per_context: int = Field(default=200, ge=1)
    min_samples: int = Field(
        default=3,
        ge=1,
        description="Usage records required before a tool can be suggested",
    )
    decay_half_life_days: float = Field(default=7.0, gt=0.0)
    grpo_learning_rate: float = Field(default=constants.GRPO_LEARNING_RATE, gt=0.0, le=1.0)
    max_groups_per_context: int = Field(default=50, ge=1)
    flush_interval_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Delay between the first unsaved change and the write to disk",
    )
    retention_days: int = Field(default=constants.LONG_TERM_TTL_DAYS, ge=1)


class MemoryConfig(BaseModel):
    """TTL memory stores and TF-IDF retrieval."""

    short_term_ttl_days: int = Field(default=constants.SHORT_TERM_TTL_DAYS, ge=1)
    long_term_ttl_days: int = Field(default=constants.LONG_TERM_TTL_DAYS, ge=1)
    max_command_history: int = Field(default=500, ge=1)
    max_error_patterns: int = Field(default=200, ge=1)
    max_preferences: int = Field(default=1000, ge=1)
    max_contexts: int = Field(default=1000, ge=1)
    search_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    search_limit: int = Field(default=10, ge=1)


class EvaluatorConfig(BaseModel):
    """Self-evaluation history."""

    max_evaluations: int = Field(default=500, ge=1)


class TransferConfig(BaseModel):
    """Promotion and demotion between pattern memory and the fast table."""

    promotion_min_successes: int = Field(default=constants.PROMOTION_MIN_SUCCESSES, ge=1)
    promotion_min_confidence: float = Field(
        default=constants.PROMOTION_MIN_CONFIDENCE, ge=0.0, le=1.0
    )
    demotion_consecutive_failures: int = Field(
        default=constants.DEMOTION_CONSECUTIVE_FAILURES, ge=1
    )
    demotion_error_rate: float = Field(default=constants.DEMOTION_ERROR_RATE, ge=0.0, le=1.0)
    demotion_min_usage: int = Field(default=constants.DEMOTION_MIN_USAGE, ge=1)
    max_transfer_log: int = Field(default=200, ge=1)
    lock_max_wait_seconds: float = Field(
        default=constants.HOTSWAP_LOCK_MAX_WAIT_SECONDS, gt=0.0
    )
    lock_stale_seconds: float = Field(default=constants.HOTSWAP_LOCK_STALE_SECONDS, gt=0.0)


class LifelongConfig(BaseModel):
    """Experience collection and batch learning."""

    max_experiences: int = Field(default=1000, ge=1)
    max_log_entries: int = Field(default=200, ge=1)
    min_group_size: int = Field(default=2, ge=2)
    pattern_margin: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        description="Best composite must exceed the group mean by this much",
    )


class LearningConfig(BaseModel):
    """Top-level configuration of the learning core."""

    data_dir: Path = Field(
        default_factory=lambda: Path.home() / constants.DEFAULT_DATA_DIR_NAME,
        description="Root directory for all learning state files",
    )
    grpo: GrpoConfig = Field(default_factory=GrpoConfig)
    tool_learner: ToolLearnerConfig = Field(default_factory=ToolLearnerConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    evaluator: EvaluatorConfig = Field(default_factory=EvaluatorConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    lifelong: LifelongConfig = Field(default_factory=LifelongConfig)
    logging: LogConfig = Field(default_factory=LogConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> LearningConfig:
        """Load configuration from a YAML file."""
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml_string(cls, yaml_str: str) -> LearningConfig:
        """Load configuration from a YAML string."""
        data = yaml.safe_load(yaml_str)
        return cls.model_validate(data or {})

    def get_paths(self) -> LearningPaths:
        """Resolve the on-disk layout under ``data_dir``."""
        return LearningPaths(self.data_dir.expanduser())
