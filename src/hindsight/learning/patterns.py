"""Learned pattern storage (System 2 memory).

Batch learning produces one Pattern per ``type::category`` group whose best
experience clearly beat the group. Patterns are kept per experience type in
``patterns/<type>-patterns.json``. Re-learning a known key merges into the
stored pattern and moves its streak counters:

- confidence strictly up: success streak +1, failure streak reset
- confidence strictly down: failure streak +1, success streak reset
- unchanged: both streaks kept

A long enough success streak at high confidence makes a pattern eligible
for promotion into the fast table (see ``knowledge_transfer``).
"""

from __future__ import annotations

from collections.abc import Iterable

from hindsight.core.logging import get_logger
from hindsight.learning.models import Pattern, PatternFile
from hindsight.storage.files import LearningPaths, ensure_dir, load_model, save_model
from hindsight.utils.time import utc_now

_logger = get_logger("patterns")

PATTERN_FILE_SUFFIX = "-patterns.json"


def merge_pattern(existing: Pattern | None, incoming: Pattern) -> Pattern:
    """Fold a freshly extracted pattern into the stored one with the same key."""
    if existing is None:
        return incoming.model_copy(
            update={
                "previous_confidence": None,
                "consecutive_successes": 0,
                "consecutive_failures": 0,
                "first_seen": incoming.extracted_at,
                "update_count": 0,
            }
        )

    successes = existing.consecutive_successes
    failures = existing.consecutive_failures
    if incoming.confidence > existing.confidence:
        successes, failures = successes + 1, 0
    elif incoming.confidence < existing.confidence:
        successes, failures = 0, failures + 1

    return incoming.model_copy(
        update={
            "previous_confidence": existing.confidence,
            "consecutive_successes": successes,
            "consecutive_failures": failures,
            "first_seen": existing.first_seen,
            "update_count": existing.update_count + 1,
        }
    )


class PatternStore:
    """Per-type pattern files under one directory."""

    def __init__(self, paths: LearningPaths) -> None:
        self.paths = paths
        self.patterns_dir = paths.patterns_dir

    def known_types(self) -> list[str]:
        """Types that have a pattern file, sorted."""
        if not self.patterns_dir.is_dir():
            return []
        return sorted(
            path.name[: -len(PATTERN_FILE_SUFFIX)]
            for path in self.patterns_dir.glob(f"*{PATTERN_FILE_SUFFIX}")
        )

    def load(self, pattern_type: str) -> list[Pattern]:
        data = load_model(self.paths.pattern_file(pattern_type), PatternFile, PatternFile)
        return list(data.patterns.values())

    def load_all(self) -> dict[str, list[Pattern]]:
        """Stored patterns of every type, keyed by type."""
        return {t: self.load(t) for t in self.known_types()}

    def merge(self, patterns: Iterable[Pattern]) -> list[Pattern]:
        """Merge patterns into their type files.

        Returns:
            The stored versions of the given patterns, after merging.
        """
        by_type: dict[str, list[Pattern]] = {}
        for pattern in patterns:
            by_type.setdefault(pattern.type or "general", []).append(pattern)
        if not by_type:
            return []

        ensure_dir(self.patterns_dir)
        merged: list[Pattern] = []
        for pattern_type, incoming in by_type.items():
            path = self.paths.pattern_file(pattern_type)
            data = load_model(path, PatternFile, PatternFile)
            for pattern in incoming:
                stored = merge_pattern(data.patterns.get(pattern.key), pattern)
                data.patterns[pattern.key] = stored
                merged.append(stored)
            data.updated_at = utc_now()
            save_model(path, data)
            _logger.debug("patterns.merged", pattern_type=pattern_type, count=len(incoming))
        return merged
