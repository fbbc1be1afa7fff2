"""Group Relative Policy Optimization over task strategies and team shapes.

Rule-based self-learning without an external judge: the host runs several
candidate approaches for the same task, reports their results, and this
module ranks the candidates against each other with deterministic rules
(``hindsight.learning.rules``). Only relative performance inside the group
matters. Rank-derived advantages then nudge a persistent weight per
strategy (or per ``pattern|size|domain`` team composition), which later
feeds recommendations.

Ranking is pure and synchronous; weight updates, recommendations and stats
read and write ``grpo-history.json``.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, Literal, TypeVar

from hindsight.core.config import GrpoConfig
from hindsight.core.constants import GRPO_DEFAULT_WEIGHT
from hindsight.core.errors import InvalidGroupError
from hindsight.core.logging import get_logger
from hindsight.learning.models import GrpoHistory, GrpoRound, TaskDescriptor
from hindsight.learning.rules import CLI_RULES, TEAM_RULES, RuleSet, round_score, score_result
from hindsight.storage.files import load_model, save_model

_logger = get_logger("grpo")

DEFAULT_TASK_RECOMMENDATION = "balanced"
DEFAULT_TEAM_RECOMMENDATION = "leader|3"


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ─── Catalogues ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Strategy:
    name: str
    description: str
    params: Mapping[str, Any] = field(default_factory=dict)


BASE_STRATEGIES: tuple[Strategy, ...] = (
    Strategy("balanced", "Balanced approach with moderate depth", {"depth": "moderate", "parallel": False}),
    Strategy("thorough", "Deep analysis with comprehensive coverage", {"depth": "deep", "parallel": False}),
    Strategy("rapid", "Quick execution with minimal overhead", {"depth": "shallow", "parallel": False}),
    Strategy("parallel", "Parallel execution with multiple sub-agents", {"depth": "moderate", "parallel": True}),
    Strategy(
        "iterative",
        "Iterative refinement with progressive enhancement",
        {"depth": "moderate", "parallel": False, "iterations": 3},
    ),
)

DOMAIN_STRATEGIES: Mapping[str, tuple[Strategy, ...]] = {
    "frontend": (
        Strategy("component-first", "Component-driven development with a design system", {"depth": "moderate", "focus": "components"}),
        Strategy("accessibility-first", "Accessibility-driven with WCAG compliance", {"depth": "deep", "focus": "a11y"}),
    ),
    "backend": (
        Strategy("api-first", "API contract-first development", {"depth": "moderate", "focus": "api"}),
        Strategy("tdd", "Test-driven development with full coverage", {"depth": "deep", "focus": "testing"}),
    ),
    "security": (
        Strategy("threat-model", "Threat modeling with the STRIDE framework", {"depth": "deep", "focus": "threats"}),
        Strategy("audit-scan", "Automated vulnerability scanning", {"depth": "moderate", "focus": "vulnerabilities"}),
    ),
}

DOMAIN_AGENTS: Mapping[str, tuple[str, ...]] = {
    "frontend": ("frontend-developer", "code-reviewer", "e2e-runner", "architect", "tdd-guide"),
    "backend": ("backend-developer", "code-reviewer", "database-reviewer", "security-reviewer", "tdd-guide"),
    "security": ("security-reviewer", "code-reviewer", "backend-developer", "architect", "devops-engineer"),
    "infrastructure": ("devops-engineer", "architect", "security-reviewer", "backend-developer", "build-error-resolver"),
    "documentation": ("doc-updater", "code-reviewer", "architect", "planner", "tdd-guide"),
    "general": ("architect", "code-reviewer", "planner", "tdd-guide", "backend-developer"),
}

# pattern -> (team size, description)
TEAM_PATTERNS: Mapping[str, tuple[int, str]] = {
    "solo": (0, "Direct execution, no team"),
    "leader": (3, "Leader assigns tasks, collects results"),
    "council": (3, "Teammates discuss via messaging, leader decides"),
    "swarm": (5, "Independent parallel tasks, self-claim from shared list"),
    "pipeline": (4, "Sequential tasks with dependency chains"),
}


def strategies_for_domain(domain: str) -> list[Strategy]:
    """Base strategies followed by the domain's specialised ones."""
    return [*BASE_STRATEGIES, *DOMAIN_STRATEGIES.get(domain, ())]


def agents_for_domain(domain: str, count: int) -> list[str]:
    pool = DOMAIN_AGENTS.get(domain, DOMAIN_AGENTS["general"])
    return list(pool[:count])


# ─── Candidates and rankings ───────────────────────────────────────────


@dataclass
class Candidate:
    """One strategy attempt; ``result`` is filled in after execution."""

    strategy: str
    result: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: _new_id("cand"))
    task_id: str | None = None
    task_type: str = "unknown"
    domain: str = "general"
    description: str = ""
    params: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Candidate:
        return cls(
            strategy=data.get("strategy") or "unknown",
            result=data.get("result") or {},
            id=data.get("id") or _new_id("cand"),
            task_id=data.get("task_id"),
            task_type=data.get("task_type") or "unknown",
            domain=data.get("domain") or "general",
            description=data.get("description") or "",
            params=data.get("params") or {},
        )


@dataclass
class TeamCandidate:
    """One team composition attempt."""

    pattern: str
    size: int = 0
    agents: list[str] = field(default_factory=list)
    domain: str = "general"
    result: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: _new_id("team-cand"))
    task_id: str | None = None
    description: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TeamCandidate:
        return cls(
            pattern=data.get("pattern") or "unknown",
            size=int(data.get("size") or 0),
            agents=list(data.get("agents") or []),
            domain=data.get("domain") or "general",
            result=data.get("result") or {},
            id=data.get("id") or _new_id("team-cand"),
            task_id=data.get("task_id"),
            description=data.get("description") or "",
        )


@dataclass
class RankedCandidate:
    candidate_id: str
    strategy: str
    scores: dict[str, float]
    composite: float
    rank: int = 0

    @property
    def weight_key(self) -> str:
        return self.strategy


@dataclass
class RankedTeam:
    candidate_id: str
    pattern: str
    team_size: int
    domain: str
    agents: list[str]
    scores: dict[str, float]
    composite: float
    rank: int = 0

    @property
    def weight_key(self) -> str:
        """Team weight key, ``pattern|size|domain``."""
        return f"{self.pattern}|{self.team_size}|{self.domain}"


RankedT = TypeVar("RankedT", RankedCandidate, RankedTeam)


@dataclass
class GroupResult(Generic[RankedT]):
    """Rankings of one candidate group, best first."""

    rankings: list[RankedT]
    best: RankedT
    worst: RankedT
    spread: float

    def advantages(self) -> list[float]:
        """Rank-derived advantage of each ranking, in ranking order."""
        n = len(self.rankings)
        return [relative_advantage(entry.rank, n) for entry in self.rankings]


def relative_advantage(rank: int, group_size: int) -> float:
    """Map rank 1..N linearly onto [+1, -1]; a lone candidate gets 0."""
    if group_size <= 1:
        return 0.0
    return 1 - 2 * (rank - 1) / (group_size - 1)


def _rank(scored: list[RankedT]) -> GroupResult[RankedT]:
    # sorted() is stable, so tied composites keep their input order.
    ordered = sorted(scored, key=lambda entry: entry.composite, reverse=True)
    for position, entry in enumerate(ordered, start=1):
        entry.rank = position
    best, worst = ordered[0], ordered[-1]
    return GroupResult(
        rankings=ordered,
        best=best,
        worst=worst,
        spread=round_score(best.composite - worst.composite),
    )


def evaluate_group(
    candidates: Sequence[Candidate | Mapping[str, Any]],
    rules: RuleSet | None = None,
) -> GroupResult[RankedCandidate]:
    """Score and rank strategy candidates against each other.

    Args:
        candidates: At least two candidates with their results.
        rules: Rule set to score with; defaults to ``CLI_RULES``.

    Returns:
        Rankings (best first) with best, worst and spread.

    Raises:
        InvalidGroupError: If fewer than two candidates are given.
    """
    if len(candidates) < 2:
        raise InvalidGroupError(f"GRPO needs at least 2 candidates, got {len(candidates)}")
    active = CLI_RULES if rules is None else rules
    scored: list[RankedCandidate] = []
    for raw in candidates:
        candidate = raw if isinstance(raw, Candidate) else Candidate.from_dict(raw)
        scores, composite = score_result(candidate.result, active)
        scored.append(RankedCandidate(candidate.id, candidate.strategy, scores, composite))
    return _rank(scored)


def evaluate_team_group(
    candidates: Sequence[TeamCandidate | Mapping[str, Any]],
    rules: RuleSet | None = None,
) -> GroupResult[RankedTeam]:
    """Score and rank team compositions; see ``evaluate_group``."""
    if len(candidates) < 2:
        raise InvalidGroupError(f"GRPO needs at least 2 team candidates, got {len(candidates)}")
    active = TEAM_RULES if rules is None else rules
    scored: list[RankedTeam] = []
    for raw in candidates:
        team = raw if isinstance(raw, TeamCandidate) else TeamCandidate.from_dict(raw)
        scores, composite = score_result(team.result, active)
        scored.append(
            RankedTeam(team.id, team.pattern, team.size, team.domain, list(team.agents), scores, composite)
        )
    return _rank(scored)


def generate_candidates(task: TaskDescriptor, count: int = 5) -> list[Candidate]:
    """Candidate descriptors for a task, cycling through the domain's strategies.

    The candidates describe approaches only; the host executes them and
    fills in ``result``.
    """
    strategies = strategies_for_domain(task.domain)
    candidates = []
    for index in range(count):
        strategy = strategies[index % len(strategies)]
        candidates.append(
            Candidate(
                strategy=strategy.name,
                task_id=task.id,
                task_type=task.type,
                domain=task.domain,
                description=strategy.description,
                params=dict(strategy.params),
            )
        )
    return candidates


def generate_team_candidates(
    task: TaskDescriptor,
    patterns: Sequence[str] | None = None,
) -> list[TeamCandidate]:
    """Team compositions to try for a task; unknown pattern names are skipped."""
    selected = list(TEAM_PATTERNS) if patterns is None else patterns
    teams = []
    for pattern in selected:
        if pattern not in TEAM_PATTERNS:
            continue
        size, description = TEAM_PATTERNS[pattern]
        teams.append(
            TeamCandidate(
                pattern=pattern,
                size=size,
                agents=agents_for_domain(task.domain, size),
                domain=task.domain,
                task_id=task.id,
                description=description,
            )
        )
    return teams


# ─── Persistent weights ────────────────────────────────────────────────


@dataclass
class Recommendation:
    recommendation: str
    weight: float
    alternatives: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class GrpoStats:
    total_rounds: int
    task_rounds: int
    team_rounds: int
    weights: dict[str, float]
    team_weights: dict[str, float]
    recent_rounds: list[GrpoRound]


class GrpoOptimizer:
    """Persists strategy and team weights learned from ranked groups.

    Every call reads ``grpo-history.json`` afresh; there is no cache to
    invalidate.
    """

    def __init__(self, history_path: Path, config: GrpoConfig | None = None) -> None:
        self.history_path = history_path
        self.config = config or GrpoConfig()

    def _load(self) -> GrpoHistory:
        return load_model(self.history_path, GrpoHistory, GrpoHistory)

    def _save(self, history: GrpoHistory) -> None:
        history.rounds = history.rounds[-self.config.max_rounds:]
        save_model(self.history_path, history)

    def _apply(
        self,
        weights: dict[str, float],
        group: GroupResult[Any],
        learning_rate: float,
    ) -> dict[str, float]:
        updated = dict(weights)
        for entry, advantage in zip(group.rankings, group.advantages(), strict=True):
            current = updated.get(entry.weight_key, GRPO_DEFAULT_WEIGHT)
            value = current + learning_rate * advantage * entry.composite
            updated[entry.weight_key] = round_score(
                max(self.config.min_weight, min(self.config.max_weight, value))
            )
        return updated

    async def update_weights(
        self,
        group: GroupResult[RankedCandidate],
        learning_rate: float | None = None,
        persist: bool = True,
    ) -> dict[str, float]:
        """Shift strategy weights by rank advantage times composite.

        Args:
            group: Output of ``evaluate_group``.
            learning_rate: Step size; defaults to the configured rate.
            persist: Write the new weights and a round record to disk.

        Returns:
            The full strategy weight map after the update.
        """
        rate = self.config.learning_rate if learning_rate is None else learning_rate
        history = self._load()
        weights = self._apply(history.weights, group, rate)
        if persist:
            history.weights = weights
            history.rounds.append(
                GrpoRound(
                    id=_new_id("grpo"),
                    type="task",
                    candidate_count=len(group.rankings),
                    best_strategy=group.best.strategy,
                    best_score=group.best.composite,
                    spread=group.spread,
                )
            )
            self._save(history)
            _logger.debug(
                "grpo.weights_updated",
                best_strategy=group.best.strategy,
                spread=group.spread,
            )
        return weights

    async def update_team_weights(
        self,
        group: GroupResult[RankedTeam],
        learning_rate: float | None = None,
        persist: bool = True,
    ) -> dict[str, float]:
        """Team counterpart of ``update_weights``, keyed ``pattern|size|domain``."""
        rate = self.config.learning_rate if learning_rate is None else learning_rate
        history = self._load()
        team_weights = self._apply(history.team_weights, group, rate)
        if persist:
            history.team_weights = team_weights
            history.rounds.append(
                GrpoRound(
                    id=_new_id("grpo-team"),
                    type="team",
                    candidate_count=len(group.rankings),
                    best_pattern=group.best.pattern,
                    best_size=group.best.team_size,
                    domain=group.best.domain,
                    best_score=group.best.composite,
                    spread=group.spread,
                )
            )
            self._save(history)
            _logger.debug(
                "grpo.team_weights_updated",
                best_key=group.best.weight_key,
                spread=group.spread,
            )
        return team_weights

    async def get_recommendation(
        self,
        kind: Literal["task", "team"] = "task",
        domain: str = "general",
    ) -> Recommendation:
        """Highest-weighted strategy or team composition so far.

        For teams, only compositions learned in ``domain`` are considered,
        unless the domain is "general", which considers all of them.
        """
        history = self._load()
        if kind == "team":
            teams = []
            for key, weight in history.team_weights.items():
                if domain != "general" and not key.endswith(f"|{domain}"):
                    continue
                parts = key.split("|")
                if len(parts) != 3 or not parts[1].isdigit():
                    _logger.warning("grpo.team_key_invalid", key=key)
                    continue
                pattern, size, team_domain = parts
                teams.append({
                    "key": key,
                    "pattern": pattern,
                    "size": int(size),
                    "domain": team_domain,
                    "weight": weight,
                })
            if not teams:
                return Recommendation(DEFAULT_TEAM_RECOMMENDATION, GRPO_DEFAULT_WEIGHT)
            teams.sort(key=lambda t: t["weight"], reverse=True)
            top = teams[0]
            return Recommendation(f"{top['pattern']}|{top['size']}", top["weight"], teams[1:4])

        ranked = sorted(history.weights.items(), key=lambda item: item[1], reverse=True)
        if not ranked:
            return Recommendation(DEFAULT_TASK_RECOMMENDATION, GRPO_DEFAULT_WEIGHT)
        strategy, weight = ranked[0]
        alternatives = [{"strategy": name, "weight": w} for name, w in ranked[1:4]]
        return Recommendation(strategy, weight, alternatives)

    async def get_stats(self, lookback: int = 50) -> GrpoStats:
        """Round counts over the last ``lookback`` rounds plus current weights."""
        history = self._load()
        recent = history.rounds[-lookback:] if lookback > 0 else []
        return GrpoStats(
            total_rounds=len(history.rounds),
            task_rounds=sum(1 for r in recent if r.type == "task"),
            team_rounds=sum(1 for r in recent if r.type == "team"),
            weights=dict(history.weights),
            team_weights=dict(history.team_weights),
            recent_rounds=recent,
        )
