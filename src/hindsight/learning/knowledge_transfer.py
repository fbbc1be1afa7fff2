"""System 2 to System 1 knowledge transfer.

Patterns learned by deliberate batch analysis (System 2) are promoted into
a fast lookup table (System 1) once they are proven: a run of confidence
gains and high confidence. Promoted entries are then tracked on every use
and demoted (deleted from the table) when they start failing.

The table lives in ``system1-patterns.json`` and is cached in memory per
:class:`KnowledgeTransfer` instance. ``hot_swap()`` reconciles the table
with the pattern files in one step under a cross-process directory lock.
Every promotion, demotion and hot-swap is appended to ``transfer-log.json``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from hindsight.core.config import TransferConfig
from hindsight.core.errors import PatternKeyError
from hindsight.core.logging import get_logger
from hindsight.learning.models import (
    Pattern,
    System1Pattern,
    System1Status,
    System1Table,
    TransferAction,
    TransferLog,
    TransferLogEntry,
)
from hindsight.learning.patterns import PatternStore
from hindsight.learning.rules import round_score
from hindsight.storage.files import LearningPaths, load_model, save_model
from hindsight.storage.lock import DirectoryLock
from hindsight.utils.time import ensure_utc, utc_now

_logger = get_logger("transfer")

MANUAL_DEMOTION_REASON = "Manual demotion"


@dataclass
class PromotionResult:
    promoted: bool
    reason: str
    pattern: System1Pattern | None = None


@dataclass
class DemotionResult:
    demoted: bool
    reason: str
    pattern: System1Pattern | None = None


@dataclass
class UsageResult:
    updated: bool
    auto_demoted: bool
    reason: str | None = None


@dataclass
class BelowThreshold:
    """A stored pattern that is not yet eligible, and what it still lacks."""

    key: str
    confidence: float
    consecutive_successes: int
    needs_successes: int
    needs_confidence: float


@dataclass
class PromotionCandidates:
    candidates: list[Pattern] = field(default_factory=list)
    already_promoted: list[str] = field(default_factory=list)
    below_threshold: list[BelowThreshold] = field(default_factory=list)


@dataclass
class HotSwapResult:
    promoted: list[str]
    demoted: list[str]
    unchanged: int
    timestamp: datetime


@dataclass
class TransferStats:
    system1_count: int
    total_promotions: int
    total_demotions: int
    avg_confidence: float
    avg_usage_count: float
    hot_swap_count: int


def _as_pattern(pattern: Pattern | Mapping[str, Any]) -> Pattern:
    if isinstance(pattern, Pattern):
        if not pattern.key:
            raise PatternKeyError("Pattern missing key")
        return pattern
    key = pattern.get("key")
    if not key:
        raise PatternKeyError("Pattern missing key")
    head, _, tail = str(key).partition("::")
    values = {"type": head or "general", "category": tail or "unknown", "confidence": 0.0}
    values.update({k: v for k, v in pattern.items() if v is not None})
    return Pattern.model_validate(values)


class KnowledgeTransfer:
    """Promotion, demotion and hot-swap between pattern files and the fast table."""

    def __init__(
        self,
        paths: LearningPaths,
        config: TransferConfig | None = None,
        pattern_store: PatternStore | None = None,
    ) -> None:
        self.paths = paths
        self.config = config or TransferConfig()
        self.pattern_store = pattern_store or PatternStore(paths)
        self._table: System1Table | None = None
        self._lock = asyncio.Lock()

    # ─── Persistence ──────────────────────────────────────────────────

    def _load_table(self) -> System1Table:
        if self._table is None:
            self._table = load_model(self.paths.system1_patterns, System1Table, System1Table)
        return self._table

    def _persist_table(self) -> None:
        table = self._load_table()
        table.updated_at = utc_now()
        save_model(self.paths.system1_patterns, table)

    def _load_log(self) -> list[TransferLogEntry]:
        return load_model(self.paths.transfer_log, TransferLog, TransferLog).entries

    def _append_log(self, entry: TransferLogEntry) -> None:
        kept = [*self._load_log(), entry][-self.config.max_transfer_log:]
        save_model(self.paths.transfer_log, TransferLog(entries=kept))

    def clear_cache(self) -> None:
        """Drop the in-memory table; the next access reloads it from disk."""
        self._table = None

    # ─── Criteria ─────────────────────────────────────────────────────

    def is_eligible(self, pattern: Pattern) -> bool:
        return (
            pattern.consecutive_successes >= self.config.promotion_min_successes
            and pattern.confidence >= self.config.promotion_min_confidence
        )

    def demotion_reason(self, entry: System1Pattern) -> str | None:
        """Why ``entry`` should leave the table, or None if it is healthy."""
        if entry.consecutive_failures >= self.config.demotion_consecutive_failures:
            return f"{entry.consecutive_failures} consecutive failures"
        if (
            entry.usage_count >= self.config.demotion_min_usage
            and entry.failure_rate > self.config.demotion_error_rate
        ):
            return (
                f"Error rate {round_score(entry.failure_rate * 100):g}% exceeds "
                f"{self.config.demotion_error_rate * 100:g}% threshold"
            )
        return None

    # ─── Promotion / demotion ─────────────────────────────────────────

    def _promote(self, pattern: Pattern, now: datetime | None) -> PromotionResult:
        min_successes = self.config.promotion_min_successes
        min_confidence = self.config.promotion_min_confidence
        if pattern.consecutive_successes < min_successes:
            return PromotionResult(
                False, f"Insufficient successes: {pattern.consecutive_successes}/{min_successes}"
            )
        if pattern.confidence < min_confidence:
            return PromotionResult(
                False, f"Confidence too low: {round_score(pattern.confidence):g}/{min_confidence:g}"
            )

        table = self._load_table()
        existing = table.patterns.get(pattern.key)
        promoted = System1Pattern(
            key=pattern.key,
            type=pattern.type,
            category=pattern.category,
            confidence=pattern.confidence,
            insight=pattern.insight,
            best_data=pattern.best_data,
            promoted_at=ensure_utc(now) if now else utc_now(),
            promotion_count=(existing.promotion_count if existing else 0) + 1,
            last_success_streak=pattern.consecutive_successes,
            usage_count=existing.usage_count if existing else 0,
            failure_count=existing.failure_count if existing else 0,
            consecutive_failures=0,
            last_success_at=existing.last_success_at if existing else None,
        )
        table.patterns[pattern.key] = promoted
        self._persist_table()
        self._append_log(
            TransferLogEntry(
                action=TransferAction.PROMOTE,
                timestamp=promoted.promoted_at,
                pattern_key=pattern.key,
                confidence=pattern.confidence,
                consecutive_successes=pattern.consecutive_successes,
            )
        )
        _logger.info(
            "transfer.promoted",
            pattern_key=pattern.key,
            confidence=pattern.confidence,
            promotion_count=promoted.promotion_count,
        )
        return PromotionResult(True, "Meets all promotion criteria", promoted)

    def _demote(self, key: str, reason: str | None, source: str | None = None) -> DemotionResult:
        table = self._load_table()
        existing = table.patterns.pop(key, None)
        if existing is None:
            return DemotionResult(False, "Pattern not found in System 1")
        self._persist_table()
        reason = reason or MANUAL_DEMOTION_REASON
        self._append_log(
            TransferLogEntry(
                action=TransferAction.DEMOTE,
                pattern_key=key,
                reason=reason,
                source=source,
                previous_confidence=existing.confidence,
                failure_count=existing.failure_count,
            )
        )
        _logger.info("transfer.demoted", pattern_key=key, reason=reason, source=source)
        return DemotionResult(
            True, reason, existing.model_copy(update={"status": System1Status.DEMOTED})
        )

    async def promote(
        self, pattern: Pattern | Mapping[str, Any], now: datetime | None = None
    ) -> PromotionResult:
        """Copy a proven pattern into the fast table.

        Args:
            pattern: The stored pattern (or its dict form).
            now: Promotion time, defaults to the current time.

        Returns:
            ``promoted=False`` with the unmet criterion as ``reason`` when
            the pattern does not qualify; otherwise the new table entry.

        Raises:
            PatternKeyError: The pattern has no key.
        """
        candidate = _as_pattern(pattern)
        async with self._lock:
            return self._promote(candidate, now)

    async def demote(self, key: str, reason: str | None = None) -> DemotionResult:
        """Remove ``key`` from the fast table."""
        if not key:
            raise PatternKeyError("Pattern missing key")
        async with self._lock:
            return self._demote(key, reason)

    async def record_usage(
        self, key: str, success: bool, now: datetime | None = None
    ) -> UsageResult:
        """Count one use of a promoted pattern, demoting it if it now fails the criteria."""
        async with self._lock:
            table = self._load_table()
            entry = table.patterns.get(key)
            if entry is None:
                return UsageResult(False, False, "Pattern not in System 1")

            entry.usage_count += 1
            if success:
                entry.consecutive_failures = 0
                entry.last_success_at = ensure_utc(now) if now else utc_now()
            else:
                entry.failure_count += 1
                entry.consecutive_failures += 1

            reason = self.demotion_reason(entry)
            if reason is not None:
                self._demote(key, reason)
                return UsageResult(True, True, reason)
            self._persist_table()
            return UsageResult(True, False)

    # ─── Candidates and hot-swap ──────────────────────────────────────

    def _candidates(self) -> PromotionCandidates:
        table = self._load_table()
        result = PromotionCandidates(already_promoted=list(table.patterns))
        for patterns in self.pattern_store.load_all().values():
            for pattern in patterns:
                if pattern.key in table.patterns:
                    continue
                if self.is_eligible(pattern):
                    result.candidates.append(pattern)
                else:
                    result.below_threshold.append(
                        BelowThreshold(
                            key=pattern.key,
                            confidence=pattern.confidence,
                            consecutive_successes=pattern.consecutive_successes,
                            needs_successes=max(
                                0, self.config.promotion_min_successes - pattern.consecutive_successes
                            ),
                            needs_confidence=max(
                                0.0, round_score(self.config.promotion_min_confidence - pattern.confidence)
                            ),
                        )
                    )
        result.candidates.sort(key=lambda p: p.confidence, reverse=True)
        return result

    async def get_promotion_candidates(self) -> PromotionCandidates:
        """Stored patterns split into eligible, already promoted and not yet eligible."""
        return self._candidates()

    async def hot_swap(self, now: datetime | None = None) -> HotSwapResult:
        """Demote failing entries, then promote every eligible pattern.

        Runs under the hot-swap directory lock so concurrent callers (in
        this or another process) apply the swap one at a time; the table is
        reloaded from disk once the lock is held.

        Raises:
            LockTimeoutError: Another holder kept the lock past the wait limit.
        """
        lock = DirectoryLock(
            self.paths.hotswap_lock,
            max_wait=self.config.lock_max_wait_seconds,
            stale_after=self.config.lock_stale_seconds,
        )
        async with lock, self._lock:
            self.clear_cache()
            table = self._load_table()

            demoted = []
            for key, entry in list(table.patterns.items()):
                reason = self.demotion_reason(entry)
                if reason is not None:
                    self._demote(key, reason, source="hot-swap")
                    demoted.append(key)

            promoted = []
            for candidate in self._candidates().candidates:
                if self._promote(candidate, now).promoted:
                    promoted.append(candidate.key)

            timestamp = ensure_utc(now) if now else utc_now()
            if promoted or demoted:
                self._append_log(
                    TransferLogEntry(
                        action=TransferAction.HOT_SWAP,
                        timestamp=timestamp,
                        promoted=promoted,
                        demoted=demoted,
                    )
                )
            _logger.info(
                "transfer.hot_swapped",
                promoted=len(promoted),
                demoted=len(demoted),
                table_size=len(table.patterns),
            )
            return HotSwapResult(promoted, demoted, len(table.patterns), timestamp)

    # ─── Queries ──────────────────────────────────────────────────────

    async def get_system1_patterns(self) -> list[System1Pattern]:
        return [
            p for p in self._load_table().patterns.values() if p.status == System1Status.ACTIVE
        ]

    async def get_system1_pattern(self, key: str) -> System1Pattern | None:
        return self._load_table().patterns.get(key)

    async def get_transfer_history(
        self, limit: int = 50, action: TransferAction | str | None = None
    ) -> list[TransferLogEntry]:
        """Most recent transfer log entries, optionally of one action only."""
        entries = self._load_log()
        if action is not None:
            wanted = TransferAction(action)
            entries = [e for e in entries if e.action == wanted]
        return entries[-limit:] if limit > 0 else []

    async def get_transfer_stats(self) -> TransferStats:
        patterns = list(self._load_table().patterns.values())
        log = self._load_log()
        count = len(patterns)
        return TransferStats(
            system1_count=count,
            total_promotions=sum(1 for e in log if e.action == TransferAction.PROMOTE),
            total_demotions=sum(1 for e in log if e.action == TransferAction.DEMOTE),
            avg_confidence=round_score(sum(p.confidence for p in patterns) / count) if count else 0.0,
            avg_usage_count=round_score(sum(p.usage_count for p in patterns) / count) if count else 0.0,
            hot_swap_count=sum(1 for e in log if e.action == TransferAction.HOT_SWAP),
        )
