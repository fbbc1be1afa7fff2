"""Tool selection learning.

Two complementary signals decide which tool suits a context such as
``search:typescript``:

- Usage history: every tool call is recorded with a success score in
  [0, 1]. Scores are averaged with an exponential recency decay
  (half-life 7 days), so recent experience dominates.
- Group comparisons: when several tools were tried for the same context,
  their results are ranked against each other. Each tool's cumulative
  score (neutral 0.5) moves by its advantage over the group mean.

History lives in memory and is written back lazily: the first change
schedules a flush a few seconds later, so bursts of records cost a single
write. ``flush()`` writes immediately and ``aclose()`` (or leaving an
``async with`` block) guarantees nothing buffered is lost.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from types import TracebackType
from typing import Any, Literal

from hindsight.core.config import ToolLearnerConfig
from hindsight.core.constants import (
    NEUTRAL_SCORE,
    SCORE_WEIGHT_ACCURACY,
    SCORE_WEIGHT_EFFICIENCY,
    SCORE_WEIGHT_SPEED,
    SCORE_WEIGHT_SUCCESS,
)
from hindsight.core.errors import InvalidGroupError
from hindsight.core.logging import get_logger
from hindsight.learning.models import (
    GrpoGroup,
    GrpoRankedEntry,
    ToolHistory,
    ToolStats,
    UsageRecord,
)
from hindsight.learning.rules import clamp01, round_score
from hindsight.storage.files import load_model, save_model
from hindsight.utils.time import MS_PER_DAY, age_ms, ensure_utc, utc_now

_logger = get_logger("tool_learner")

Confidence = Literal["low", "medium", "high"]

HIGH_CONFIDENCE_SAMPLES = 20
GROUP_SCORE_BLEND = 0.6
RELATED_CONTEXT_DISCOUNT = 0.5
COLD_START_FLOOR = 0.1
MIN_GROUP_COMPARISONS = 2


def build_context_key(operation: str, target: str, scope: str | None = None) -> str:
    """Normalized context key, e.g. ``build_context_key("Search", "TypeScript")``
    gives ``"search:typescript"``."""
    parts = [operation, target]
    if scope:
        parts.append(scope)
    return ":".join(part.strip().lower() for part in parts)


def _grpo_key(context: str, tool: str) -> str:
    return f"{context}::{tool}"


def _split_grpo_key(key: str) -> tuple[str, str]:
    context, _, tool = key.partition("::")
    return context, tool


def _operation_prefix(context: str) -> str | None:
    operation, sep, _ = context.partition(":")
    return f"{operation}:" if sep else None


@dataclass
class ToolSuggestion:
    tool: str
    weighted_score: float
    raw_avg: float
    samples: int
    confidence: Confidence


@dataclass
class ToolCandidate:
    """A tool ranked by the blend of usage history and group comparisons."""

    tool: str
    usage_score: float = 0.0
    usage_samples: int = 0
    grpo_score: float = 0.0
    grpo_comparisons: int = 0
    combined_score: float = 0.0


@dataclass
class ToolResult:
    """Outcome of one tool in a group comparison.

    ``accuracy`` and ``brevity`` are the caller's own [0, 1] assessments.
    A non-positive ``duration_ms`` means the duration is unknown.
    """

    tool: str
    success: bool
    duration_ms: float = 0.0
    accuracy: float = 0.0
    brevity: float = 0.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ToolResult:
        return cls(
            tool=data["tool"],
            success=bool(data.get("success")),
            duration_ms=float(data.get("duration_ms") or 0.0),
            accuracy=float(data.get("accuracy") or 0.0),
            brevity=float(data.get("brevity") or 0.0),
        )


def confidence_for(samples: int, min_samples: int) -> Confidence:
    if samples >= HIGH_CONFIDENCE_SAMPLES:
        return "high"
    if samples >= min_samples:
        return "medium"
    return "low"


def compute_tool_scores(
    records: Iterable[UsageRecord],
    half_life_days: float,
    min_samples: int,
    now: datetime | None = None,
) -> list[ToolSuggestion]:
    """Per-tool recency-weighted average score, best first.

    Each record weighs ``0.5 ** (age / half_life)``.
    """
    now = now or utc_now()
    half_life_ms = half_life_days * MS_PER_DAY
    totals: dict[str, list[float]] = {}  # tool -> [weight, weighted sum, raw sum, count]
    for record in records:
        weight = 0.5 ** (age_ms(record.timestamp, now) / half_life_ms)
        entry = totals.setdefault(record.tool, [0.0, 0.0, 0.0, 0])
        entry[0] += weight
        entry[1] += record.score * weight
        entry[2] += record.score
        entry[3] += 1

    suggestions = []
    for tool, (total_weight, weighted_sum, raw_sum, count) in totals.items():
        suggestions.append(
            ToolSuggestion(
                tool=tool,
                weighted_score=round_score(weighted_sum / total_weight if total_weight > 0 else 0.0),
                raw_avg=round_score(raw_sum / count),
                samples=int(count),
                confidence=confidence_for(int(count), min_samples),
            )
        )
    suggestions.sort(key=lambda s: s.weighted_score, reverse=True)
    return suggestions


def group_composite(result: ToolResult, group: Sequence[ToolResult]) -> float:
    """Weighted composite of one tool result, speed normalized inside the group.

    The fastest known duration scores 1.0 and the slowest 0.0; identical
    durations all score 1.0; an unknown duration scores 0.5.
    """
    durations = [r.duration_ms for r in group if r.duration_ms > 0]
    speed = NEUTRAL_SCORE
    if result.duration_ms > 0 and len(durations) > 1:
        fastest, slowest = min(durations), max(durations)
        if slowest == fastest:
            speed = 1.0
        else:
            speed = 1.0 - (result.duration_ms - fastest) / (slowest - fastest)
    elif result.duration_ms > 0 and len(durations) == 1:
        speed = 1.0

    return (
        SCORE_WEIGHT_SUCCESS * (1.0 if result.success else 0.0)
        + SCORE_WEIGHT_SPEED * speed
        + SCORE_WEIGHT_ACCURACY * clamp01(result.accuracy)
        + SCORE_WEIGHT_EFFICIENCY * clamp01(result.brevity)
    )


class ToolLearner:
    """Learns which tools work best per context.

    Example:
        async with ToolLearner(paths.tool_history) as learner:
            await learner.record_usage("Grep", "search:typescript", 0.9)
            best = await learner.suggest_tool("search:typescript")
    """

    def __init__(self, history_path: Path, config: ToolLearnerConfig | None = None) -> None:
        self.history_path = history_path
        self.config = config or ToolLearnerConfig()
        self._history: ToolHistory | None = None
        self._dirty = False
        self._flush_task: asyncio.Task[None] | None = None

    # ─── Cache and write-back ──────────────────────────────────────────

    def _load(self) -> ToolHistory:
        if self._history is None:
            self._history = load_model(self.history_path, ToolHistory, ToolHistory)
        return self._history

    def _write(self) -> None:
        history = self._load()
        history.last_updated = utc_now()
        self._dirty = False
        save_model(self.history_path, history)

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._delayed_flush())

    async def _delayed_flush(self) -> None:
        await asyncio.sleep(self.config.flush_interval_seconds)
        self._flush_task = None
        if not self._dirty:
            return
        try:
            self._write()
        except OSError:
            self._dirty = True
            _logger.exception("tool_learner.flush_failed", path=str(self.history_path))

    def _cancel_pending_flush(self) -> None:
        task, self._flush_task = self._flush_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    @property
    def buffer_state(self) -> tuple[bool, bool]:
        """``(dirty, flush_scheduled)`` of the write-back buffer."""
        scheduled = self._flush_task is not None and not self._flush_task.done()
        return self._dirty, scheduled

    async def flush(self) -> None:
        """Write pending changes now; a no-op when nothing changed."""
        self._cancel_pending_flush()
        if self._dirty and self._history is not None:
            self._write()

    async def aclose(self) -> None:
        """Flush and stop the background writer."""
        await self.flush()

    async def __aenter__(self) -> ToolLearner:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def clear_cache(self) -> None:
        """Drop the in-memory history and any unsaved changes."""
        self._cancel_pending_flush()
        self._history = None
        self._dirty = False

    async def reset_history(self) -> None:
        """Erase all learned tool data, on disk too."""
        self._cancel_pending_flush()
        self._history = ToolHistory()
        self._write()
        _logger.info("tool_learner.history_reset", path=str(self.history_path))

    # ─── Usage history ─────────────────────────────────────────────────

    @staticmethod
    def _add_to_aggregate(history: ToolHistory, record: UsageRecord) -> None:
        stats = history.aggregates.setdefault(record.tool, ToolStats())
        stats.total_uses += 1
        stats.total_score += record.score
        stats.avg_score = round_score(stats.total_score / stats.total_uses)
        stats.last_used = record.timestamp

    async def record_usage(
        self,
        tool: str,
        context: str,
        score: float,
        command: str | None = None,
        domain: str | None = None,
        timestamp: datetime | None = None,
    ) -> UsageRecord:
        """Record one tool use and its success score (clamped to [0, 1])."""
        history = self._load()
        record = UsageRecord(
            tool=tool,
            context=context,
            score=clamp01(score),
            timestamp=ensure_utc(timestamp) if timestamp else utc_now(),
            command=command,
            domain=domain,
        )
        bucket = history.contexts.setdefault(context, [])
        bucket.append(record)
        if len(bucket) > self.config.max_records_per_context:
            history.contexts[context] = bucket[-self.config.max_records_per_context:]
        self._add_to_aggregate(history, record)
        self._mark_dirty()
        return record

    def _related_records(self, history: ToolHistory, context: str) -> list[UsageRecord]:
        prefix = _operation_prefix(context)
        if prefix is None:
            return []
        related: list[UsageRecord] = []
        for other, records in history.contexts.items():
            if other != context and other.startswith(prefix):
                related.extend(records)
        return related

    async def suggest_tool(
        self,
        context: str,
        limit: int = 3,
        min_score: float = 0.4,
        now: datetime | None = None,
    ) -> list[ToolSuggestion]:
        """Best tools for ``context`` by recency-weighted score.

        A tool qualifies with a weighted score of at least ``min_score`` and
        at least ``min_samples`` records. A context never seen before falls
        back to contexts sharing its operation (``search:*``); those
        suggestions are always "low" confidence.
        """
        history = self._load()
        records = history.contexts.get(context)
        fallback = not records
        if fallback:
            records = self._related_records(history, context)
        scored = compute_tool_scores(
            records or [],
            self.config.decay_half_life_days,
            self.config.min_samples,
            now=now,
        )
        qualifying = [
            s for s in scored
            if s.weighted_score >= min_score and s.samples >= self.config.min_samples
        ][:limit]
        if fallback:
            for suggestion in qualifying:
                suggestion.confidence = "low"
        return qualifying

    async def get_tool_stats(self, tool: str | None = None) -> dict[str, ToolStats] | ToolStats | None:
        """Aggregate for one tool (None if unknown), or a copy of all of them."""
        history = self._load()
        if tool is not None:
            return history.aggregates.get(tool)
        return dict(history.aggregates)

    async def get_context_map(self) -> dict[str, int]:
        """Number of usage records held per context."""
        history = self._load()
        return {context: len(records) for context, records in history.contexts.items()}

    async def prune_old_records(
        self,
        retention: timedelta | None = None,
        now: datetime | None = None,
    ) -> int:
        """Drop records and comparison groups older than the retention period.

        Cumulative scores whose context no longer has any data are dropped
        too, and aggregates are rebuilt from what remains.

        Returns:
            Number of records and groups removed.
        """
        retention = retention or timedelta(days=self.config.retention_days)
        cutoff = (ensure_utc(now) if now else utc_now()) - retention
        history = self._load()
        pruned = 0

        for context in list(history.contexts):
            kept = [r for r in history.contexts[context] if r.timestamp >= cutoff]
            pruned += len(history.contexts[context]) - len(kept)
            if kept:
                history.contexts[context] = kept
            else:
                del history.contexts[context]

        for context in list(history.grpo_groups):
            kept_groups = [g for g in history.grpo_groups[context] if g.timestamp >= cutoff]
            pruned += len(history.grpo_groups[context]) - len(kept_groups)
            if kept_groups:
                history.grpo_groups[context] = kept_groups
            else:
                del history.grpo_groups[context]

        orphaned = [
            key for key in history.grpo_scores
            if _split_grpo_key(key)[0] not in history.contexts
            and _split_grpo_key(key)[0] not in history.grpo_groups
        ]
        for key in orphaned:
            del history.grpo_scores[key]

        if pruned > 0:
            history.aggregates = {}
            for records in history.contexts.values():
                for record in records:
                    self._add_to_aggregate(history, record)
        if pruned > 0 or orphaned:
            self._mark_dirty()
            _logger.info("tool_learner.pruned", pruned=pruned, orphaned_scores=len(orphaned))
        return pruned

    # ─── Group comparisons ─────────────────────────────────────────────

    async def record_group_comparison(
        self,
        context: str,
        results: Sequence[ToolResult | Mapping[str, Any]],
        timestamp: datetime | None = None,
    ) -> GrpoGroup:
        """Rank tools tried for the same context and update cumulative scores.

        Raises:
            InvalidGroupError: If fewer than two results are given.
        """
        if len(results) < 2:
            raise InvalidGroupError(f"Comparing tools needs at least 2 results, got {len(results)}")
        group = [r if isinstance(r, ToolResult) else ToolResult.from_dict(r) for r in results]
        history = self._load()

        composites = [(r.tool, group_composite(r, group)) for r in group]
        mean = sum(score for _, score in composites) / len(composites)
        composites.sort(key=lambda item: item[1], reverse=True)
        rankings = [
            GrpoRankedEntry(
                tool=tool,
                composite_score=round_score(score),
                relative_advantage=round_score(score - mean),
                rank=position,
            )
            for position, (tool, score) in enumerate(composites, start=1)
        ]
        comparison = GrpoGroup(
            context=context,
            rankings=rankings,
            timestamp=ensure_utc(timestamp) if timestamp else utc_now(),
        )

        groups = history.grpo_groups.setdefault(context, [])
        groups.append(comparison)
        if len(groups) > self.config.max_groups_per_context:
            history.grpo_groups[context] = groups[-self.config.max_groups_per_context:]

        for entry in rankings:
            key = _grpo_key(context, entry.tool)
            current = history.grpo_scores.get(key, NEUTRAL_SCORE)
            history.grpo_scores[key] = clamp01(
                current + self.config.grpo_learning_rate * entry.relative_advantage
            )

        self._mark_dirty()
        _logger.debug("tool_learner.group_recorded", context=context, winner=rankings[0].tool)
        return comparison

    async def get_grpo_history(self, context: str, limit: int = 10) -> list[GrpoGroup]:
        """Most recent comparison groups of a context, oldest first."""
        groups = self._load().grpo_groups.get(context, [])
        return groups[-limit:] if limit > 0 else []

    async def get_grpo_scores(self, context: str) -> dict[str, float]:
        """Cumulative comparison score per tool in ``context``."""
        scores = {}
        for key, score in self._load().grpo_scores.items():
            key_context, tool = _split_grpo_key(key)
            if key_context == context:
                scores[tool] = score
        return scores

    async def suggest_tool_candidates(
        self,
        context: str,
        count: int = 5,
        now: datetime | None = None,
    ) -> list[ToolCandidate]:
        """Tools ranked by usage history blended with comparison scores.

        With at least two comparisons and enough usage samples a tool scores
        ``0.6 * grpo + 0.4 * usage``; with only one signal that signal is
        used; otherwise the larger of the two (floored at 0.1). Tools seen
        only in sibling contexts enter at half their best score there.
        """
        history = self._load()
        candidates: dict[str, ToolCandidate] = {}

        for suggestion in compute_tool_scores(
            history.contexts.get(context, []),
            self.config.decay_half_life_days,
            self.config.min_samples,
            now=now,
        ):
            candidates[suggestion.tool] = ToolCandidate(
                tool=suggestion.tool,
                usage_score=suggestion.weighted_score,
                usage_samples=suggestion.samples,
            )

        groups = history.grpo_groups.get(context, [])
        for key, score in history.grpo_scores.items():
            key_context, tool = _split_grpo_key(key)
            if key_context != context:
                continue
            candidate = candidates.setdefault(tool, ToolCandidate(tool=tool))
            candidate.grpo_score = score
            candidate.grpo_comparisons = sum(
                1 for g in groups if any(entry.tool == tool for entry in g.rankings)
            )

        if len(candidates) < count:
            related_best: dict[str, float] = {}
            for record in self._related_records(history, context):
                related_best[record.tool] = max(related_best.get(record.tool, 0.0), record.score)
            for tool, best in related_best.items():
                if tool not in candidates:
                    candidates[tool] = ToolCandidate(
                        tool=tool, usage_score=best * RELATED_CONTEXT_DISCOUNT
                    )

        for candidate in candidates.values():
            has_grpo = candidate.grpo_comparisons >= MIN_GROUP_COMPARISONS
            has_usage = candidate.usage_samples >= self.config.min_samples
            if has_grpo and has_usage:
                combined = (
                    GROUP_SCORE_BLEND * candidate.grpo_score
                    + (1 - GROUP_SCORE_BLEND) * candidate.usage_score
                )
            elif has_grpo:
                combined = candidate.grpo_score
            elif has_usage:
                combined = candidate.usage_score
            else:
                combined = max(candidate.grpo_score, candidate.usage_score, COLD_START_FLOOR)
            candidate.combined_score = round_score(combined)

        ranked = sorted(candidates.values(), key=lambda c: c.combined_score, reverse=True)
        return ranked[:count]
