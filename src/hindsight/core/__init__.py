"""Configuration, logging, errors and shared constants."""

from hindsight.core.config import (
    EvaluatorConfig,
    GrpoConfig,
    LearningConfig,
    LifelongConfig,
    LogConfig,
    MemoryConfig,
    ToolLearnerConfig,
    TransferConfig,
)
from hindsight.core.errors import (
    InvalidGroupError,
    LearningError,
    LockTimeoutError,
    PatternKeyError,
    UnknownMemoryTypeError,
)

__all__ = [
    "EvaluatorConfig",
    "GrpoConfig",
    "InvalidGroupError",
    "LearningConfig",
    "LearningError",
    "LifelongConfig",
    "LockTimeoutError",
    "LogConfig",
    "MemoryConfig",
    "PatternKeyError",
    "ToolLearnerConfig",
    "TransferConfig",
    "UnknownMemoryTypeError",
]
