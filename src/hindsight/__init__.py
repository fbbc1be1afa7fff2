"""Hindsight: self-optimizing learning core for an AI coding assistant.

Scores the outcomes of assistant actions with deterministic rules, learns
tool and strategy preferences from them, and promotes stable winners into
fast lookups.
"""

from hindsight.core.config import LearningConfig
from hindsight.learning.system import LearningSystem

__version__ = "0.1.0"

__all__ = ["LearningConfig", "LearningSystem", "__version__"]
