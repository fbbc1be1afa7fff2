"""Tests for hindsight.learning.lifelong and hindsight.learning.patterns."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from hindsight.core.config import LifelongConfig
from hindsight.learning.lifelong import (
    INSUFFICIENT_EXPERIENCES,
    LifelongLearner,
    composite_score,
    rank_group,
    score_experience,
)
from hindsight.learning.models import (
    EXPERIENCE_ADAPTER,
    ErrorExperience,
    ExperienceType,
    Pattern,
    SuccessExperience,
)
from hindsight.learning.patterns import PatternStore, merge_pattern
from hindsight.storage.files import LearningPaths

STRONG_TOOL = {"calls": 10, "successes": 10, "success_rate": 1.0}
WEAK_TOOL = {"calls": 10, "successes": 0, "success_rate": 0.0}


@pytest.fixture
def learner(paths: LearningPaths) -> LifelongLearner:
    return LifelongLearner(paths)


def _tool(category: str, data: dict) -> dict:
    return {"id": f"exp-{category}", "type": "tool", "category": category, "data": {"tool": category, **data}}


def _pattern(confidence: float, **extra) -> Pattern:
    return Pattern(key="tool::Grep", type="tool", category="Grep", confidence=confidence, **extra)


# ─── Scoring ───────────────────────────────────────────────────────────


class TestScoring:
    """Tests for per-type experience scoring."""

    def test_tool_scores(self):
        """A fast, fully successful tool run scores 1 everywhere."""
        experience = EXPERIENCE_ADAPTER.validate_python(_tool("Grep", STRONG_TOOL))
        scores = score_experience(experience)
        assert scores == {"success": 1.0, "speed": 1.0, "error_rate": 1.0, "resource_efficiency": 1.0}
        assert composite_score(scores) == pytest.approx(1.0)

    def test_error_scores(self):
        """Errors score low; recoverable ones keep some efficiency."""
        recoverable = ErrorExperience(id="e1", data={"message": "x", "recoverable": True})
        fatal = ErrorExperience(id="e2", data={"message": "x"})
        assert score_experience(recoverable)["resource_efficiency"] == 0.3
        assert composite_score(score_experience(fatal)) == pytest.approx(0.125)

    def test_success_scores(self):
        """Passing tests and few files score higher."""
        experience = SuccessExperience(
            id="s1", data={"duration_ms": 60_000, "tests_pass": False, "files_modified": 20}
        )
        scores = score_experience(experience)
        assert scores["success"] == 1.0
        assert scores["speed"] == pytest.approx(0.5)
        assert scores["error_rate"] == pytest.approx(0.3)
        assert scores["resource_efficiency"] == pytest.approx(0.5)

    def test_rank_group_keeps_input_order_on_ties(self):
        """Equal composites stay in input order."""
        first = EXPERIENCE_ADAPTER.validate_python({**_tool("Grep", STRONG_TOOL), "id": "first"})
        second = EXPERIENCE_ADAPTER.validate_python({**_tool("Grep", STRONG_TOOL), "id": "second"})
        entries, mean = rank_group([first, second])
        assert [e.experience.id for e in entries] == ["first", "second"]
        assert mean == pytest.approx(1.0)
        assert all(e.relative_advantage == 0 for e in entries)


# ─── Pattern store ─────────────────────────────────────────────────────


class TestMergePattern:
    """Tests for streak bookkeeping when a pattern is re-learned."""

    def test_new_pattern(self, now: datetime):
        """A first sighting starts with empty streaks."""
        merged = merge_pattern(None, _pattern(0.6, extracted_at=now, consecutive_successes=4))
        assert merged.consecutive_successes == 0
        assert merged.consecutive_failures == 0
        assert merged.previous_confidence is None
        assert merged.first_seen == now
        assert merged.update_count == 0

    def test_higher_confidence_extends_success_streak(self, now: datetime):
        """Rising confidence counts as a success and clears failures."""
        existing = _pattern(0.6, consecutive_successes=1, consecutive_failures=2, first_seen=now)
        merged = merge_pattern(existing, _pattern(0.7))
        assert merged.consecutive_successes == 2
        assert merged.consecutive_failures == 0
        assert merged.previous_confidence == 0.6
        assert merged.first_seen == now
        assert merged.update_count == 1

    def test_lower_confidence_extends_failure_streak(self):
        """Falling confidence counts as a failure and clears successes."""
        existing = _pattern(0.6, consecutive_successes=3)
        merged = merge_pattern(existing, _pattern(0.5))
        assert merged.consecutive_successes == 0
        assert merged.consecutive_failures == 1

    def test_equal_confidence_keeps_streaks(self):
        """Unchanged confidence leaves both streaks alone."""
        existing = _pattern(0.6, consecutive_successes=2, consecutive_failures=0, update_count=5)
        merged = merge_pattern(existing, _pattern(0.6))
        assert merged.consecutive_successes == 2
        assert merged.update_count == 6


class TestPatternStore:
    """Tests for per-type pattern files."""

    def test_merge_writes_one_file_per_type(self, paths: LearningPaths):
        """Patterns land in patterns/<type>-patterns.json."""
        store = PatternStore(paths)
        assert store.known_types() == []

        store.merge([
            _pattern(0.6),
            Pattern(key="team::leader", type="team", category="leader", confidence=0.7),
        ])

        assert paths.pattern_file("tool").exists()
        assert store.known_types() == ["team", "tool"]
        assert [p.key for p in store.load("tool")] == ["tool::Grep"]
        assert set(store.load_all()) == {"team", "tool"}

    def test_merge_nothing(self, paths: LearningPaths):
        """An empty batch writes no files."""
        assert PatternStore(paths).merge([]) == []
        assert not paths.patterns_dir.exists()


# ─── Batch learning ────────────────────────────────────────────────────


class TestBatchLearn:
    """Tests for grouping, ranking and pattern extraction."""

    @pytest.mark.asyncio
    async def test_too_few_experiences(self, learner: LifelongLearner):
        """One experience is not enough to learn from."""
        await learner.collect_experience("tool", "Grep", STRONG_TOOL)
        result = await learner.batch_learn()
        assert result.message == INSUFFICIENT_EXPERIENCES
        assert result.groups_processed == 0
        assert result.patterns == []

    @pytest.mark.asyncio
    async def test_extracts_clear_winner(self, learner: LifelongLearner, now: datetime):
        """A group whose best entry beats the mean yields one pattern."""
        await learner.collect_experience("tool", "Grep", STRONG_TOOL, session_id="s1")
        await learner.collect_experience("tool", "Grep", WEAK_TOOL, session_id="s1")
        await learner.collect_experience("tool", "Read", STRONG_TOOL, session_id="s1")

        result = await learner.batch_learn(now=now)

        assert result.groups_processed == 2
        assert result.patterns_extracted == 1
        [pattern] = result.patterns
        assert pattern.key == "tool::Grep"
        assert pattern.category == "Grep"
        assert pattern.confidence == pytest.approx(0.5)
        assert pattern.group_mean == pytest.approx(0.7)
        assert pattern.sample_size == 2
        assert pattern.insight == 'Tool "Grep" performs 30% above average. Best success rate: 100%.'
        assert pattern.best_data["tool"] == "Grep"
        assert pattern.extracted_at == now
        assert result.summary.pattern_summary[0]["key"] == "tool::Grep"
        assert result.summary.id.startswith("learn-")

    @pytest.mark.asyncio
    async def test_no_pattern_without_clear_winner(self, learner: LifelongLearner):
        """Identical experiences extract nothing but still count as a group."""
        experiences = [_tool("Grep", STRONG_TOOL), _tool("Grep", STRONG_TOOL)]
        result = await learner.batch_learn(experiences)
        assert result.groups_processed == 1
        assert result.patterns_extracted == 0

    @pytest.mark.asyncio
    async def test_success_insight_names_strategy(self, learner: LifelongLearner):
        """Success patterns describe the winning strategy."""
        experiences = [
            {"id": "a", "type": "success", "category": "feature",
             "data": {"duration_ms": 0, "tests_pass": True, "strategy": "tdd"}},
            {"id": "b", "type": "success", "category": "feature",
             "data": {"duration_ms": 60_000, "tests_pass": False, "files_modified": 20}},
        ]
        result = await learner.batch_learn(experiences)
        [pattern] = result.patterns
        assert pattern.insight.startswith('Task type "feature" best approach scores')
        assert pattern.insight.endswith("Strategy: tdd.")

    @pytest.mark.asyncio
    async def test_relearning_merges_into_stored_pattern(self, learner: LifelongLearner, now: datetime):
        """Learning the same group again updates the stored pattern."""
        experiences = [_tool("Grep", STRONG_TOOL), _tool("Grep", WEAK_TOOL)]
        await learner.batch_learn(experiences, now=now)
        result = await learner.batch_learn(experiences, now=now + timedelta(days=1))

        [pattern] = result.patterns
        assert pattern.update_count == 1
        assert pattern.previous_confidence == pytest.approx(0.5)
        assert pattern.first_seen == now
        assert len(learner.pattern_store.load("tool")) == 1


class TestCollection:
    """Tests for experience collection."""

    @pytest.mark.asyncio
    async def test_tool_payload_defaults_tool_name(self, learner: LifelongLearner):
        """A tool payload without a tool name takes the category."""
        experience = await learner.collect_experience(ExperienceType.TOOL, "Grep", {"calls": 1})
        assert experience.data.tool == "Grep"
        assert experience.id.startswith("exp-")

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, learner: LifelongLearner):
        """Unknown experience types raise ValueError."""
        with pytest.raises(ValueError):
            await learner.collect_experience("dream", "x", {})

    @pytest.mark.asyncio
    async def test_collect_daily_experiences(self, learner: LifelongLearner):
        """Tool usage, errors, tasks and team config become experiences."""
        collected = await learner.collect_daily_experiences({
            "session_id": "sess-1",
            "tool_usage": {"Grep": {"calls": 4, "successes": 3, "total_ms": 1000}},
            "errors": [{"type": "TypeError", "message": "x is undefined", "recoverable": True}],
            "completed_tasks": [
                {"type": "feature", "duration": 1200, "files_modified": ["a.py", "b.py"], "tests_pass": True}
            ],
            "team_config": {"pattern": "leader", "size": 3, "success_rate": 0.9},
        })

        assert [e.type for e in collected] == ["tool", "error", "success", "team"]
        assert all(e.session_id == "sess-1" for e in collected)
        tool, error, success, team = collected
        assert tool.data.avg_ms == 250
        assert tool.data.success_rate == pytest.approx(0.75)
        assert error.category == "TypeError"
        assert error.data.recoverable is True
        assert success.data.duration_ms == 1200
        assert success.data.files_modified == 2
        assert team.category == "leader"
        assert len(await learner.load_experiences()) == 4

    @pytest.mark.asyncio
    async def test_experience_log_is_capped(self, paths: LearningPaths):
        """Only the newest experiences are kept."""
        learner = LifelongLearner(paths, LifelongConfig(max_experiences=3))
        for i in range(5):
            await learner.collect_experience("tool", f"T{i}", {"calls": 1})
        assert [e.category for e in await learner.load_experiences()] == ["T2", "T3", "T4"]


# ─── Summary and scheduling ────────────────────────────────────────────


class TestSummary:
    """Tests for get_learning_summary and schedule_learning."""

    @pytest.mark.asyncio
    async def test_empty_summary(self, learner: LifelongLearner):
        """A fresh learner asks for more data."""
        summary = await learner.get_learning_summary()
        assert summary.trend == "insufficient_data"
        assert summary.total_patterns_extracted == 0
        assert summary.recommendations == [
            "Collect more experiences to improve learning quality.",
            "No patterns extracted yet. Run batch_learn after collecting sufficient experiences.",
        ]

    @pytest.mark.asyncio
    async def test_accelerating_trend(self, learner: LifelongLearner):
        """More patterns in the later half of the log is acceleration."""
        flat = [_tool("Grep", STRONG_TOOL), _tool("Grep", STRONG_TOOL)]
        winning = [_tool("Grep", STRONG_TOOL), _tool("Grep", WEAK_TOOL)]
        for batch in (flat, flat, winning, winning):
            await learner.batch_learn(batch)

        summary = await learner.get_learning_summary()

        assert summary.trend == "accelerating"
        assert summary.total_sessions == 4
        assert summary.patterns_by_type["tool"].count == 1
        assert summary.patterns_by_type["tool"].top_patterns[0].key == "tool::Grep"

    @pytest.mark.asyncio
    async def test_error_heavy_recommendation(self, learner: LifelongLearner):
        """More error than success patterns asks for prevention."""
        await learner.update_patterns([
            {"key": "error::TypeError", "type": "error", "category": "TypeError", "confidence": 0.5}
        ])
        summary = await learner.get_learning_summary()
        assert (
            "Error patterns outnumber success patterns. Focus on error prevention strategies."
            in summary.recommendations
        )

    @pytest.mark.asyncio
    async def test_session_end_hook(self, learner: LifelongLearner):
        """The hook collects the session and runs batch learning."""
        hook = learner.schedule_learning("sess-9")

        result = await hook.on_session_end({
            "tool_usage": {
                "Grep": {"calls": 2, "successes": 2, "total_ms": 100},
                "Read": {"calls": 1, "successes": 1, "total_ms": 10},
            }
        })

        assert result.groups_processed == 2
        assert result.patterns_extracted == 0
        experiences = await learner.load_experiences()
        assert {e.session_id for e in experiences} == {"sess-9"}
