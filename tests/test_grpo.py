"""Tests for hindsight.learning.grpo and hindsight.learning.rules."""

from __future__ import annotations

import json
import math
from pathlib import Path

import pytest

from hindsight.core.config import GrpoConfig
from hindsight.core.errors import InvalidGroupError, LearningError
from hindsight.learning.grpo import (
    DEFAULT_TASK_RECOMMENDATION,
    DEFAULT_TEAM_RECOMMENDATION,
    Candidate,
    GrpoOptimizer,
    TeamCandidate,
    evaluate_group,
    evaluate_team_group,
    generate_candidates,
    generate_team_candidates,
    relative_advantage,
)
from hindsight.learning.models import TaskDescriptor
from hindsight.learning.rules import CLI_RULES, clamp01, score_result

BALANCED = {"id": "c1", "strategy": "balanced", "result": {"exit_code": 0, "errors": 0, "duration_ms": 200}}
RAPID = {"id": "c2", "strategy": "rapid", "result": {"exit_code": 1, "errors": 2, "duration_ms": 50}}


@pytest.fixture
def optimizer(tmp_path: Path) -> GrpoOptimizer:
    return GrpoOptimizer(tmp_path / "grpo-history.json")


# ─── Rules ─────────────────────────────────────────────────────────────


class TestRules:
    """Tests for rule scoring."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(0.5, 0.5), (-1, 0.0), (7, 1.0), (float("nan"), 0.0), ("x", 0.0), (None, 0.0), (True, 0.0)],
    )
    def test_clamp01(self, value, expected):
        """Rule outputs are clamped to [0, 1]; non-numbers score 0."""
        assert clamp01(value) == expected

    def test_cli_scores(self):
        """Each default CLI rule maps its result key as documented."""
        scores, composite = score_result(
            {"exit_code": 0, "errors": 0, "duration_ms": 1000, "command_length": 50, "side_effects": 0},
            CLI_RULES,
        )
        assert scores == {
            "exit_code": 1.0,
            "error_free": 1.0,
            "speed": 0.5,
            "brevity": 0.5,
            "side_effects": 1.0,
        }
        assert composite == pytest.approx(0.8)

    def test_custom_rule_is_clamped(self):
        """A caller rule returning out-of-range values is clamped."""
        scores, composite = score_result({}, {"wild": lambda r: 3.0, "bad": lambda r: "n/a"})
        assert scores == {"wild": 1.0, "bad": 0.0}
        assert composite == pytest.approx(0.5)


# ─── Group evaluation ──────────────────────────────────────────────────


class TestEvaluateGroup:
    """Tests for relative ranking of candidate groups."""

    def test_balanced_beats_rapid(self):
        """A clean run outranks a fast failing one."""
        group = evaluate_group([RAPID, BALANCED])

        assert group.best.strategy == "balanced"
        assert group.worst.strategy == "rapid"
        assert group.best.rank == 1
        assert group.spread > 0
        assert group.best.composite == pytest.approx(0.867)
        assert group.worst.composite == pytest.approx(0.49)

    def test_single_candidate_rejected(self):
        """A group of one cannot be ranked."""
        with pytest.raises(InvalidGroupError):
            evaluate_group([BALANCED])

    def test_invalid_group_is_value_error(self):
        """InvalidGroupError is catchable as LearningError and ValueError."""
        with pytest.raises(LearningError):
            evaluate_group([])
        with pytest.raises(ValueError):
            evaluate_group([])

    @pytest.mark.parametrize("size", [2, 3, 5, 8])
    def test_advantages_sum_to_zero(self, size: int):
        """Rank advantages are symmetric around zero."""
        candidates = [
            Candidate(strategy=f"s{i}", result={"exit_code": i % 2, "errors": 0, "duration_ms": i * 100})
            for i in range(size)
        ]
        group = evaluate_group(candidates)
        assert math.isclose(sum(group.advantages()), 0.0, abs_tol=1e-9)
        assert group.rankings[0].composite >= group.rankings[-1].composite

    def test_ties_keep_input_order(self):
        """Equal composites are ranked in input order."""
        same = {"exit_code": 0, "errors": 0, "duration_ms": 100}
        group = evaluate_group([
            Candidate(strategy="first", result=same),
            Candidate(strategy="second", result=same),
        ])
        assert [r.strategy for r in group.rankings] == ["first", "second"]
        assert group.spread == 0

    def test_relative_advantage_endpoints(self):
        """Rank 1 maps to +1, rank N to -1."""
        assert relative_advantage(1, 5) == 1.0
        assert relative_advantage(5, 5) == -1.0
        assert relative_advantage(3, 5) == 0.0
        assert relative_advantage(1, 1) == 0.0

    def test_team_group(self):
        """Team compositions rank by the team rules."""
        group = evaluate_team_group([
            TeamCandidate(
                pattern="swarm",
                size=5,
                result={"task_count": 4, "success_count": 2, "completed_count": 2, "duration_ms": 120000, "team_size": 5},
            ),
            TeamCandidate(
                pattern="leader",
                size=3,
                domain="backend",
                result={"task_count": 4, "success_count": 4, "completed_count": 4, "duration_ms": 60000, "team_size": 3},
            ),
        ])
        assert group.best.pattern == "leader"
        assert group.best.weight_key == "leader|3|backend"


class TestCandidateGeneration:
    """Tests for candidate and team generation."""

    def test_generate_candidates_cycles_domain_strategies(self):
        """Domain strategies follow the base ones and wrap around."""
        task = TaskDescriptor(id="t1", type="feature", domain="backend")
        candidates = generate_candidates(task, count=9)
        names = [c.strategy for c in candidates]
        assert names[:7] == ["balanced", "thorough", "rapid", "parallel", "iterative", "api-first", "tdd"]
        assert names[7] == "balanced"
        assert all(c.task_id == "t1" and c.domain == "backend" for c in candidates)

    def test_generate_team_candidates(self):
        """Known patterns get their size and domain agents; unknown ones are skipped."""
        task = TaskDescriptor(domain="security")
        teams = generate_team_candidates(task, ["leader", "mob", "solo"])
        assert [t.pattern for t in teams] == ["leader", "solo"]
        assert teams[0].size == 3
        assert teams[0].agents[0] == "security-reviewer"
        assert teams[1].agents == []


# ─── Weights ───────────────────────────────────────────────────────────


class TestWeights:
    """Tests for persistent strategy weights."""

    @pytest.mark.asyncio
    async def test_update_moves_winner_up(self, optimizer: GrpoOptimizer):
        """The winner gains, the loser drops."""
        weights = await optimizer.update_weights(evaluate_group([BALANCED, RAPID]))
        assert weights["balanced"] == pytest.approx(1.087)
        assert weights["rapid"] == pytest.approx(0.951)

    @pytest.mark.asyncio
    async def test_weights_stay_in_bounds(self, optimizer: GrpoOptimizer):
        """Repeated extreme updates never leave [min_weight, max_weight]."""
        group = evaluate_group([BALANCED, RAPID])
        for _ in range(100):
            weights = await optimizer.update_weights(group, learning_rate=1.0)
        assert all(0.01 <= w <= 5.0 for w in weights.values())
        assert weights["balanced"] == pytest.approx(5.0)

        losing = evaluate_group([
            {"strategy": "good", "result": {"exit_code": 0, "errors": 0}},
            {"strategy": "bad", "result": {"exit_code": 0, "errors": 0, "duration_ms": 10**6}},
        ])
        for _ in range(200):
            weights = await optimizer.update_weights(losing, learning_rate=1.0)
        assert weights["bad"] == pytest.approx(0.01)

    @pytest.mark.asyncio
    async def test_no_persist(self, optimizer: GrpoOptimizer):
        """persist=False computes without writing."""
        await optimizer.update_weights(evaluate_group([BALANCED, RAPID]), persist=False)
        assert not optimizer.history_path.exists()

    @pytest.mark.asyncio
    async def test_round_log_is_capped(self, tmp_path: Path):
        """Only the most recent max_rounds rounds are kept."""
        optimizer = GrpoOptimizer(tmp_path / "grpo.json", GrpoConfig(max_rounds=3))
        group = evaluate_group([BALANCED, RAPID])
        for _ in range(5):
            await optimizer.update_weights(group)
        stats = await optimizer.get_stats()
        assert stats.total_rounds == 3
        assert stats.task_rounds == 3


class TestRecommendations:
    """Tests for recommendations and stats."""

    @pytest.mark.asyncio
    async def test_defaults_without_history(self, optimizer: GrpoOptimizer):
        """Fresh history recommends the defaults."""
        task = await optimizer.get_recommendation()
        team = await optimizer.get_recommendation("team")
        assert task.recommendation == DEFAULT_TASK_RECOMMENDATION
        assert team.recommendation == DEFAULT_TEAM_RECOMMENDATION
        assert task.weight == 1.0

    @pytest.mark.asyncio
    async def test_recommends_best_strategy(self, optimizer: GrpoOptimizer):
        """The highest weight wins and the rest are alternatives."""
        await optimizer.update_weights(evaluate_group([BALANCED, RAPID]))
        rec = await optimizer.get_recommendation()
        assert rec.recommendation == "balanced"
        assert rec.alternatives == [{"strategy": "rapid", "weight": pytest.approx(0.951)}]

    @pytest.mark.asyncio
    async def test_team_recommendation_filters_domain(self, optimizer: GrpoOptimizer):
        """Team recommendations only consider the requested domain."""
        group = evaluate_team_group([
            TeamCandidate(pattern="swarm", size=5, domain="frontend",
                          result={"task_count": 1, "success_count": 1, "completed_count": 1}),
            TeamCandidate(pattern="leader", size=3, domain="backend",
                          result={"task_count": 1, "success_count": 0, "completed_count": 0}),
        ])
        await optimizer.update_team_weights(group)

        backend = await optimizer.get_recommendation("team", domain="backend")
        overall = await optimizer.get_recommendation("team")
        assert backend.recommendation == "leader|3"
        assert overall.recommendation == "swarm|5"

        stats = await optimizer.get_stats()
        assert stats.team_rounds == 1
        assert stats.recent_rounds[-1].best_pattern == "swarm"

    @pytest.mark.asyncio
    async def test_malformed_team_keys_are_skipped(self, tmp_path: Path):
        """Hand-edited team weights that do not parse are ignored."""
        history_path = tmp_path / "grpo-history.json"
        history_path.write_text(
            json.dumps({"team_weights": {
                "broken": 1.9,
                "leader|x|backend": 1.8,
                "a|b|c|backend": 1.7,
                "leader|3|backend": 1.1,
            }}),
            encoding="utf-8",
        )
        optimizer = GrpoOptimizer(history_path)

        overall = await optimizer.get_recommendation("team")
        backend = await optimizer.get_recommendation("team", domain="backend")

        assert overall.recommendation == "leader|3"
        assert overall.weight == pytest.approx(1.1)
        assert overall.alternatives == []
        assert backend.recommendation == "leader|3"
