"""Self-evaluation of completed tasks.

Every finished task is graded on four 1-5 dimensions from signals the host
already has (success, tests, duration, user feedback), with no judge
model involved:

- accuracy (0.35): success, adjusted by whether tests pass
- completeness (0.25): success and modified files, or requirement coverage
- efficiency (0.20): wall-clock duration buckets
- satisfaction (0.20): explicit feedback and revision requests

Evaluations accumulate in ``evaluations.json`` (last 500) and feed the
improvement report and trend analysis.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from hindsight.core.config import EvaluatorConfig
from hindsight.core.logging import get_logger
from hindsight.learning.models import (
    DimensionScore,
    Evaluation,
    EvaluationHistory,
    TaskDescriptor,
)
from hindsight.storage.files import load_model, save_model
from hindsight.utils.time import ensure_utc, utc_now

_logger = get_logger("self_evaluator")

Trend = Literal["improving", "declining", "stable", "insufficient_data"]

DIMENSION_WEIGHTS: Mapping[str, float] = {
    "accuracy": 0.35,
    "completeness": 0.25,
    "efficiency": 0.20,
    "satisfaction": 0.20,
}

# Upper bounds (exclusive, milliseconds) of the efficiency buckets 5..2.
EFFICIENCY_BUCKETS_MS: tuple[tuple[float, int], ...] = (
    (30_000, 5),
    (60_000, 4),
    (120_000, 3),
    (300_000, 2),
)

DIMENSION_ADVICE: Mapping[str, str] = {
    "accuracy": "Increase test coverage and add validation checks before completing tasks.",
    "completeness": "Review task requirements more carefully and create checklists before starting.",
    "efficiency": "Consider breaking large tasks into smaller sub-tasks for faster execution.",
    "satisfaction": "Seek explicit user feedback and align output format with expectations.",
}

NO_HISTORY_SUGGESTION = "No evaluations recorded yet. Complete tasks to build evaluation history."
ALL_GOOD_SUGGESTION = "All dimensions performing well. Continue current approach."
DECLINING_SUGGESTION = "Overall trend is declining. Review recent changes to approach and strategy."

DIMENSION_TREND_MARGIN = 0.2
OVERALL_TREND_MARGIN = 0.3
MIN_EVALUATIONS_FOR_TREND = 4


@dataclass
class TaskOutcome:
    """What happened when a task was carried out.

    ``metrics`` may hold ``requirements_covered`` (0-1),
    ``user_feedback`` ("positive" / "negative") and ``revision_requested``.
    """

    success: bool
    files_modified: list[str] = field(default_factory=list)
    duration_ms: float | None = None
    tests_pass: bool | None = None
    metrics: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TaskOutcome:
        return cls(
            success=bool(data.get("success")),
            files_modified=list(data.get("files_modified") or []),
            duration_ms=data.get("duration_ms"),
            tests_pass=data.get("tests_pass"),
            metrics=dict(data.get("metrics") or {}),
        )


# ─── Dimension scoring ─────────────────────────────────────────────────


def score_accuracy(outcome: TaskOutcome) -> float:
    score = 4 if outcome.success else 1
    if outcome.tests_pass is True:
        score = min(5, score + 1)
    elif outcome.tests_pass is False:
        score = max(1, score - 1)
    return float(score)


def score_completeness(task: TaskDescriptor, outcome: TaskOutcome) -> float:
    score = 3.0
    if outcome.success:
        score += 1
    if outcome.files_modified:
        score += 0.5
    covered = outcome.metrics.get("requirements_covered")
    if task.description and covered:
        score = min(5.0, 1 + 4 * float(covered))
    return min(5.0, max(1.0, round(score, 1)))


def score_efficiency(outcome: TaskOutcome) -> float:
    if outcome.duration_ms is None:
        return 3.0
    for upper_bound, score in EFFICIENCY_BUCKETS_MS:
        if outcome.duration_ms < upper_bound:
            return float(score)
    return 1.0


def score_satisfaction(outcome: TaskOutcome) -> float:
    score = 4 if outcome.success else 2
    feedback = outcome.metrics.get("user_feedback")
    if feedback == "positive":
        score = 5
    elif feedback == "negative":
        score = 1
    if outcome.metrics.get("revision_requested"):
        score = max(1, score - 1)
    return float(score)


def grade_for(overall: float) -> Literal["A", "B", "C", "D", "F"]:
    if overall >= 4.5:
        return "A"
    if overall >= 3.5:
        return "B"
    if overall >= 2.5:
        return "C"
    if overall >= 1.5:
        return "D"
    return "F"


def feedback_for(dimensions: Mapping[str, DimensionScore], overall: float) -> str:
    if overall >= 4.0:
        parts = ["Strong performance overall."]
    elif overall >= 3.0:
        parts = ["Adequate performance with room for improvement."]
    else:
        parts = ["Below expectations. Review approach and strategy."]
    name, weakest = min(dimensions.items(), key=lambda item: item[1].score)
    if weakest.score < 3:
        parts.append(f"Weakest area: {name} ({weakest.score:g}/5).")
    return " ".join(parts)


def _trend(first: float, second: float, margin: float) -> Trend:
    if second > first + margin:
        return "improving"
    if second < first - margin:
        return "declining"
    return "stable"


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# ─── Reports ───────────────────────────────────────────────────────────


@dataclass
class WeakDimension:
    dimension: str
    avg_score: float
    trend: Trend


@dataclass
class WeakTaskType:
    task_type: str
    avg_score: float
    count: int


@dataclass
class ImprovementReport:
    weak_dimensions: list[WeakDimension]
    weak_task_types: list[WeakTaskType]
    suggestions: list[str]
    overall_trend: Trend


@dataclass
class TaskTypePerformance:
    task_type: str
    count: int
    avg_score: float


@dataclass
class TeamPerformance:
    by_task_type: dict[str, TaskTypePerformance]
    top_performers: list[TaskTypePerformance]
    bottom_performers: list[TaskTypePerformance]
    total_evaluations: int


@dataclass
class TrendWindow:
    index: int
    avg_score: float
    count: int


@dataclass
class LearningTrends:
    windows: list[TrendWindow]
    trend: Trend
    latest_avg: float
    earliest_avg: float


class SelfEvaluator:
    """Grades task outcomes and analyses the grade history."""

    def __init__(self, evaluations_path: Path, config: EvaluatorConfig | None = None) -> None:
        self.evaluations_path = evaluations_path
        self.config = config or EvaluatorConfig()

    def _load(self) -> list[Evaluation]:
        return load_model(self.evaluations_path, EvaluationHistory, EvaluationHistory).evaluations

    def _save(self, evaluations: list[Evaluation]) -> None:
        kept = evaluations[-self.config.max_evaluations:]
        save_model(self.evaluations_path, EvaluationHistory(evaluations=kept))

    async def evaluate_result(
        self,
        task: TaskDescriptor | Mapping[str, Any],
        outcome: TaskOutcome | Mapping[str, Any],
        persist: bool = True,
        now: datetime | None = None,
    ) -> Evaluation:
        """Grade one task outcome.

        Args:
            task: The task that was attempted.
            outcome: What happened.
            persist: Append the evaluation to the history file.
            now: Evaluation time, defaults to the current time.

        Returns:
            The evaluation with per-dimension scores, a weighted overall
            score (1-5, two decimals), a letter grade and short feedback.
        """
        task = task if isinstance(task, TaskDescriptor) else TaskDescriptor.model_validate(task)
        outcome = outcome if isinstance(outcome, TaskOutcome) else TaskOutcome.from_dict(outcome)
        raw_scores = {
            "accuracy": score_accuracy(outcome),
            "completeness": score_completeness(task, outcome),
            "efficiency": score_efficiency(outcome),
            "satisfaction": score_satisfaction(outcome),
        }
        dimensions = {
            name: DimensionScore(score=score, weight=DIMENSION_WEIGHTS[name])
            for name, score in raw_scores.items()
        }
        overall = sum(d.score * d.weight for d in dimensions.values())
        evaluation = Evaluation(
            id=f"eval-{uuid.uuid4().hex[:12]}",
            task_id=task.id or "unknown",
            task_type=task.type,
            timestamp=ensure_utc(now) if now else utc_now(),
            dimensions=dimensions,
            overall=round(overall, 2),
            grade=grade_for(overall),
            feedback=feedback_for(dimensions, overall),
        )
        if persist:
            self._save([*self._load(), evaluation])
        _logger.debug(
            "self_evaluator.evaluated",
            task_id=evaluation.task_id,
            overall=evaluation.overall,
            grade=evaluation.grade,
        )
        return evaluation

    async def get_improvement_suggestions(
        self,
        lookback: int = 50,
        threshold: float = 3.0,
    ) -> ImprovementReport:
        """Weak spots in the last ``lookback`` evaluations and what to do about them.

        A dimension or task type is weak when its average is below
        ``threshold``. Trends compare the first half of the window with the
        second half.
        """
        recent = self._load()[-lookback:] if lookback > 0 else []
        if not recent:
            return ImprovementReport([], [], [NO_HISTORY_SUGGESTION], "insufficient_data")

        half = len(recent) // 2
        weak_dimensions = []
        for name in DIMENSION_WEIGHTS:
            scores = [e.dimensions[name].score for e in recent if name in e.dimensions]
            avg = _mean(scores)
            if not scores or avg >= threshold:
                continue
            first = _mean([e.dimensions[name].score for e in recent[:half] if name in e.dimensions])
            second = _mean([e.dimensions[name].score for e in recent[half:] if name in e.dimensions])
            weak_dimensions.append(
                WeakDimension(name, round(avg, 2), _trend(first, second, DIMENSION_TREND_MARGIN))
            )
        weak_dimensions.sort(key=lambda d: d.avg_score)

        by_type: dict[str, list[float]] = {}
        for evaluation in recent:
            by_type.setdefault(evaluation.task_type or "unknown", []).append(evaluation.overall)
        weak_task_types = [
            WeakTaskType(task_type, round(_mean(scores), 2), len(scores))
            for task_type, scores in by_type.items()
            if _mean(scores) < threshold
        ]
        weak_task_types.sort(key=lambda t: t.avg_score)

        overall_trend: Trend = "insufficient_data"
        if len(recent) >= MIN_EVALUATIONS_FOR_TREND:
            overall_trend = _trend(
                _mean([e.overall for e in recent[:half]]),
                _mean([e.overall for e in recent[half:]]),
                OVERALL_TREND_MARGIN,
            )

        suggestions = [
            DIMENSION_ADVICE.get(d.dimension, f"Improve {d.dimension} scores.")
            for d in weak_dimensions
        ]
        suggestions.extend(
            f'Task type "{t.task_type}" has low scores ({t.avg_score:g}/5). '
            "Consider using specialized agents or different strategies."
            for t in weak_task_types
        )
        if overall_trend == "declining":
            suggestions.append(DECLINING_SUGGESTION)
        if not suggestions:
            suggestions.append(ALL_GOOD_SUGGESTION)
        return ImprovementReport(weak_dimensions, weak_task_types, suggestions, overall_trend)

    async def get_team_performance(self, lookback: int = 100) -> TeamPerformance:
        """Average overall score per task type over the last ``lookback`` evaluations."""
        recent = self._load()[-lookback:] if lookback > 0 else []
        by_type: dict[str, list[float]] = {}
        for evaluation in recent:
            by_type.setdefault(evaluation.task_type or "unknown", []).append(evaluation.overall)
        performance = {
            task_type: TaskTypePerformance(task_type, len(scores), round(_mean(scores), 2))
            for task_type, scores in by_type.items()
        }
        ranked = sorted(performance.values(), key=lambda p: p.avg_score, reverse=True)
        return TeamPerformance(
            by_task_type=performance,
            top_performers=ranked[:3],
            bottom_performers=list(reversed(ranked[-3:])),
            total_evaluations=len(recent),
        )

    async def get_learning_trends(self, window_size: int = 10) -> LearningTrends:
        """Average overall score per consecutive window of evaluations.

        The trend compares the first window with the last one.
        """
        evaluations = self._load()
        if len(evaluations) < 2:
            only = evaluations[0].overall if evaluations else 0.0
            return LearningTrends([], "insufficient_data", only, only)

        size = max(1, window_size)
        windows = []
        for index, start in enumerate(range(0, len(evaluations), size)):
            chunk = evaluations[start:start + size]
            windows.append(TrendWindow(index, round(_mean([e.overall for e in chunk]), 2), len(chunk)))
        earliest, latest = windows[0].avg_score, windows[-1].avg_score
        return LearningTrends(
            windows=windows,
            trend=_trend(earliest, latest, OVERALL_TREND_MARGIN),
            latest_avg=latest,
            earliest_avg=earliest,
        )
