"""Tests for hindsight.learning.self_evaluator module."""

from __future__ import annotations

from pathlib import Path

import pytest

from hindsight.core.config import EvaluatorConfig
from hindsight.learning.models import TaskDescriptor
from hindsight.learning.self_evaluator import (
    ALL_GOOD_SUGGESTION,
    DECLINING_SUGGESTION,
    DIMENSION_ADVICE,
    NO_HISTORY_SUGGESTION,
    SelfEvaluator,
    TaskOutcome,
    grade_for,
    score_completeness,
    score_efficiency,
)

PERFECT = {
    "success": True,
    "tests_pass": True,
    "files_modified": ["app.py"],
    "duration_ms": 10_000,
    "metrics": {"user_feedback": "positive"},
}
FAILED = {"success": False, "tests_pass": False, "duration_ms": 400_000}


@pytest.fixture
def evaluator(tmp_path: Path) -> SelfEvaluator:
    return SelfEvaluator(tmp_path / "evaluations.json")


async def _evaluate_many(evaluator: SelfEvaluator, task_type: str, outcome: dict, times: int) -> None:
    for i in range(times):
        await evaluator.evaluate_result({"id": f"{task_type}-{i}", "type": task_type}, outcome)


# ─── Grading ───────────────────────────────────────────────────────────


class TestEvaluateResult:
    """Tests for dimension scores, grades and feedback."""

    @pytest.mark.asyncio
    async def test_perfect_outcome(self, evaluator: SelfEvaluator):
        """A clean success with positive feedback grades A."""
        evaluation = await evaluator.evaluate_result({"id": "t1", "type": "feature"}, PERFECT)

        scores = {name: d.score for name, d in evaluation.dimensions.items()}
        assert scores == {"accuracy": 5.0, "completeness": 4.5, "efficiency": 5.0, "satisfaction": 5.0}
        assert evaluation.overall == pytest.approx(4.88, abs=0.01)
        assert evaluation.grade == "A"
        assert evaluation.feedback == "Strong performance overall."
        assert evaluation.task_type == "feature"

    @pytest.mark.asyncio
    async def test_failed_outcome(self, evaluator: SelfEvaluator):
        """A slow failure with failing tests grades D and names the weakest dimension."""
        evaluation = await evaluator.evaluate_result(TaskDescriptor(id="t2"), FAILED)

        assert evaluation.overall == pytest.approx(1.7)
        assert evaluation.grade == "D"
        assert evaluation.feedback == (
            "Below expectations. Review approach and strategy. Weakest area: accuracy (1/5)."
        )

    @pytest.mark.asyncio
    async def test_minimal_success(self, evaluator: SelfEvaluator):
        """Missing signals score neutral."""
        evaluation = await evaluator.evaluate_result({}, TaskOutcome(success=True))
        assert evaluation.overall == pytest.approx(3.8)
        assert evaluation.grade == "B"
        assert evaluation.task_id == "unknown"
        assert evaluation.feedback.startswith("Adequate performance")

    @pytest.mark.asyncio
    async def test_revision_lowers_satisfaction(self, evaluator: SelfEvaluator):
        """A revision request costs one point even with positive feedback."""
        outcome = {"success": True, "metrics": {"user_feedback": "positive", "revision_requested": True}}
        evaluation = await evaluator.evaluate_result({}, outcome, persist=False)
        assert evaluation.dimensions["satisfaction"].score == 4.0

    def test_requirement_coverage_overrides_completeness(self):
        """Coverage of a described task maps linearly onto 1-5."""
        task = TaskDescriptor(description="add login page")
        outcome = TaskOutcome(success=True, files_modified=["a"], metrics={"requirements_covered": 0.5})
        assert score_completeness(task, outcome) == 3.0

    @pytest.mark.parametrize(
        ("duration_ms", "expected"),
        [(None, 3.0), (29_999, 5.0), (30_000, 4.0), (119_999, 3.0), (299_999, 2.0), (300_000, 1.0)],
    )
    def test_efficiency_buckets(self, duration_ms, expected):
        """Duration buckets map to efficiency scores."""
        assert score_efficiency(TaskOutcome(success=True, duration_ms=duration_ms)) == expected

    @pytest.mark.parametrize(
        ("overall", "grade"),
        [(4.5, "A"), (4.49, "B"), (3.5, "B"), (2.5, "C"), (1.5, "D"), (1.49, "F")],
    )
    def test_grade_boundaries(self, overall, grade):
        """Grade thresholds are inclusive lower bounds."""
        assert grade_for(overall) == grade


class TestPersistence:
    """Tests for the evaluation history file."""

    @pytest.mark.asyncio
    async def test_persist_false_writes_nothing(self, evaluator: SelfEvaluator):
        """Dry evaluations leave no history."""
        await evaluator.evaluate_result({}, PERFECT, persist=False)
        assert not evaluator.evaluations_path.exists()

    @pytest.mark.asyncio
    async def test_history_is_capped(self, tmp_path: Path):
        """Only the newest evaluations are kept."""
        evaluator = SelfEvaluator(tmp_path / "evaluations.json", EvaluatorConfig(max_evaluations=3))
        await _evaluate_many(evaluator, "feature", PERFECT, 5)
        performance = await evaluator.get_team_performance()
        assert performance.total_evaluations == 3


# ─── Reports ───────────────────────────────────────────────────────────


class TestImprovementSuggestions:
    """Tests for get_improvement_suggestions."""

    @pytest.mark.asyncio
    async def test_no_history(self, evaluator: SelfEvaluator):
        """An empty history asks for more data."""
        report = await evaluator.get_improvement_suggestions()
        assert report.suggestions == [NO_HISTORY_SUGGESTION]
        assert report.overall_trend == "insufficient_data"

    @pytest.mark.asyncio
    async def test_weak_dimensions_and_task_types(self, evaluator: SelfEvaluator):
        """Dimensions and task types below the threshold get advice."""
        await _evaluate_many(evaluator, "bugfix", FAILED, 4)

        report = await evaluator.get_improvement_suggestions()

        assert [d.dimension for d in report.weak_dimensions] == ["accuracy", "efficiency", "satisfaction"]
        assert all(d.trend == "stable" for d in report.weak_dimensions)
        assert [(t.task_type, t.count) for t in report.weak_task_types] == [("bugfix", 4)]
        assert report.overall_trend == "stable"
        assert report.suggestions[:3] == [
            DIMENSION_ADVICE["accuracy"],
            DIMENSION_ADVICE["efficiency"],
            DIMENSION_ADVICE["satisfaction"],
        ]
        assert report.suggestions[3].startswith('Task type "bugfix" has low scores (1.7/5).')

    @pytest.mark.asyncio
    async def test_declining_trend(self, evaluator: SelfEvaluator):
        """A drop between the two halves is reported."""
        await _evaluate_many(evaluator, "feature", PERFECT, 2)
        await _evaluate_many(evaluator, "feature", FAILED, 2)

        report = await evaluator.get_improvement_suggestions()

        assert report.overall_trend == "declining"
        assert report.weak_dimensions == []
        assert report.suggestions == [DECLINING_SUGGESTION]

    @pytest.mark.asyncio
    async def test_all_good(self, evaluator: SelfEvaluator):
        """Strong history gets the all-good message."""
        await _evaluate_many(evaluator, "feature", PERFECT, 4)
        report = await evaluator.get_improvement_suggestions()
        assert report.suggestions == [ALL_GOOD_SUGGESTION]
        assert report.overall_trend == "stable"

    @pytest.mark.asyncio
    async def test_few_evaluations_have_no_trend(self, evaluator: SelfEvaluator):
        """Fewer than four evaluations give insufficient_data."""
        await _evaluate_many(evaluator, "feature", PERFECT, 3)
        report = await evaluator.get_improvement_suggestions()
        assert report.overall_trend == "insufficient_data"


class TestPerformanceAndTrends:
    """Tests for team performance and learning trends."""

    @pytest.mark.asyncio
    async def test_team_performance_ranks_task_types(self, evaluator: SelfEvaluator):
        """Task types are ranked by average overall score."""
        await _evaluate_many(evaluator, "feature", PERFECT, 1)
        await _evaluate_many(evaluator, "bugfix", FAILED, 2)
        await evaluator.evaluate_result({"type": "docs"}, {"success": True})

        performance = await evaluator.get_team_performance()

        assert performance.total_evaluations == 4
        assert performance.by_task_type["bugfix"].count == 2
        assert [p.task_type for p in performance.top_performers] == ["feature", "docs", "bugfix"]
        assert [p.task_type for p in performance.bottom_performers] == ["bugfix", "docs", "feature"]

    @pytest.mark.asyncio
    async def test_trends_need_two_evaluations(self, evaluator: SelfEvaluator):
        """One evaluation is not a trend."""
        await _evaluate_many(evaluator, "feature", PERFECT, 1)
        trends = await evaluator.get_learning_trends()
        assert trends.trend == "insufficient_data"
        assert trends.windows == []

    @pytest.mark.asyncio
    async def test_improving_trend_across_windows(self, evaluator: SelfEvaluator):
        """The first and last windows are compared."""
        await _evaluate_many(evaluator, "feature", FAILED, 4)
        await _evaluate_many(evaluator, "feature", PERFECT, 4)

        trends = await evaluator.get_learning_trends(window_size=4)

        assert [w.count for w in trends.windows] == [4, 4]
        assert trends.earliest_avg == pytest.approx(1.7)
        assert trends.latest_avg == pytest.approx(4.88, abs=0.01)
        assert trends.trend == "improving"
