"""Lifelong learning pipeline: collect experiences, learn in batches, keep patterns.

During a session the host reports notable events (tool usage, errors,
completed tasks, team compositions). At session end the accumulated
experiences are grouped by ``type::category`` and each group is ranked
against itself with fixed rules, GRPO style: no judge, only relative
performance inside the group. A group whose best experience clearly beats
the group mean yields a Pattern, merged into ``patterns/<type>-patterns.json``
by :class:`~hindsight.learning.patterns.PatternStore`.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel

from hindsight.core.config import LifelongConfig
from hindsight.core.constants import (
    SCORE_WEIGHT_ACCURACY,
    SCORE_WEIGHT_EFFICIENCY,
    SCORE_WEIGHT_SPEED,
    SCORE_WEIGHT_SUCCESS,
)
from hindsight.core.logging import get_logger
from hindsight.learning.models import (
    EXPERIENCE_ADAPTER,
    ErrorExperience,
    Experience,
    ExperienceLog,
    ExperienceType,
    LearningLog,
    LearningLogEntry,
    Pattern,
    SessionData,
    SuccessExperience,
    TeamExperience,
    ToolExperience,
)
from hindsight.learning.patterns import PatternStore
from hindsight.learning.rules import clamp01, round_score
from hindsight.storage.files import LearningPaths, load_model, save_model
from hindsight.utils.time import ensure_utc, utc_now

_logger = get_logger("lifelong")

EXPERIENCE_WEIGHTS: Mapping[str, float] = {
    "success": SCORE_WEIGHT_SUCCESS,
    "speed": SCORE_WEIGHT_SPEED,
    "error_rate": SCORE_WEIGHT_ACCURACY,
    "resource_efficiency": SCORE_WEIGHT_EFFICIENCY,
}
"""Composite weights per scoring dimension of an experience."""

TOOL_SPEED_SCALE_MS = 5000
SUCCESS_SPEED_SCALE_MS = 60_000
TEAM_SPEED_SCALE_MS = 120_000
TOOL_CALL_BUDGET = 10
FILES_SCALE = 20
TEAM_SIZE_SCALE = 5
LOG_TREND_MARGIN = 0.5
MIN_LOG_ENTRIES_FOR_TREND = 4
TOP_PATTERNS_PER_TYPE = 3
RECENT_LEARNINGS = 5
MIN_HEALTHY_EXPERIENCES = 10

INSUFFICIENT_EXPERIENCES = "Insufficient experiences for batch learning"

LearningTrend = Literal["accelerating", "decelerating", "stable", "insufficient_data"]


# ─── Scoring ───────────────────────────────────────────────────────────


def score_experience(experience: Experience) -> dict[str, float]:
    """Score one experience on success, speed, error rate and resource use."""
    if isinstance(experience, ToolExperience):
        data = experience.data
        return {
            "success": clamp01(data.success_rate),
            "speed": clamp01(1.0 / (1 + data.avg_ms / TOOL_SPEED_SCALE_MS)),
            "error_rate": clamp01(
                1.0 - ((data.calls - data.successes) / data.calls if data.calls > 0 else 0.0)
            ),
            "resource_efficiency": clamp01(
                min(1.0, TOOL_CALL_BUDGET / data.calls) if data.calls > 0 else 0.5
            ),
        }

    if isinstance(experience, ErrorExperience):
        return {
            "success": 0.0,
            "speed": 0.5,
            "error_rate": 0.0,
            "resource_efficiency": 0.3 if experience.data.recoverable else 0.0,
        }

    if isinstance(experience, SuccessExperience):
        data = experience.data
        if data.tests_pass is True:
            error_rate = 1.0
        elif data.tests_pass is False:
            error_rate = 0.3
        else:
            error_rate = 0.5
        return {
            "success": 1.0,
            "speed": (
                clamp01(1.0 / (1 + data.duration_ms / SUCCESS_SPEED_SCALE_MS))
                if data.duration_ms is not None
                else 0.5
            ),
            "error_rate": error_rate,
            "resource_efficiency": clamp01(1.0 / (1 + data.files_modified / FILES_SCALE)),
        }

    if isinstance(experience, TeamExperience):
        data = experience.data
        return {
            "success": clamp01(data.success_rate if data.success_rate is not None else 0.0),
            "speed": (
                clamp01(1.0 / (1 + data.duration_ms / TEAM_SPEED_SCALE_MS))
                if data.duration_ms is not None
                else 0.5
            ),
            "error_rate": clamp01(data.success_rate if data.success_rate is not None else 0.5),
            "resource_efficiency": clamp01(1.0 / (1 + data.size / TEAM_SIZE_SCALE)),
        }

    return dict.fromkeys(EXPERIENCE_WEIGHTS, 0.5)


def composite_score(scores: Mapping[str, float]) -> float:
    return round_score(sum(scores.get(k, 0.0) * w for k, w in EXPERIENCE_WEIGHTS.items()))


@dataclass
class ScoredExperience:
    experience: Experience
    scores: dict[str, float]
    composite: float
    relative_advantage: float = 0.0


def rank_group(group: Sequence[Experience]) -> tuple[list[ScoredExperience], float]:
    """Score a group and sort it best first.

    Returns:
        The scored entries (ties keep input order) and the rounded group
        mean of the composites.
    """
    entries = []
    for experience in group:
        scores = score_experience(experience)
        entries.append(ScoredExperience(experience, scores, composite_score(scores)))
    group_mean = sum(e.composite for e in entries) / len(entries) if entries else 0.0
    for entry in entries:
        entry.relative_advantage = round_score(entry.composite - group_mean)
    entries.sort(key=lambda e: e.composite, reverse=True)
    return entries, round_score(group_mean)


def generate_insight(pattern_type: str, category: str, best: ScoredExperience, group_mean: float) -> str:
    advantage = round_score((best.composite - group_mean) * 100)
    data = best.experience.data
    if pattern_type == ExperienceType.TOOL.value:
        best_rate = round_score(best.scores["success"] * 100)
        return (
            f'Tool "{category}" performs {advantage:g}% above average. '
            f"Best success rate: {best_rate:g}%."
        )
    if pattern_type == ExperienceType.ERROR.value:
        recoverable = str(getattr(data, "recoverable", "unknown")).lower()
        return f'Error pattern "{category}" detected. Recoverable: {recoverable}.'
    if pattern_type == ExperienceType.SUCCESS.value:
        strategy = getattr(data, "strategy", None) or "default"
        return (
            f'Task type "{category}" best approach scores {advantage:g}% above group mean. '
            f"Strategy: {strategy}."
        )
    if pattern_type == ExperienceType.TEAM.value:
        size = getattr(data, "size", None)
        return (
            f'Team pattern "{category}" scores {advantage:g}% above average. '
            f"Optimal size: {size if size is not None else 'unknown'}."
        )
    return f'Pattern "{category}" shows {advantage:g}% advantage over group mean.'


def extract_pattern(
    group_key: str,
    entries: Sequence[ScoredExperience],
    group_mean: float,
    margin: float,
    min_group_size: int = 2,
    now: datetime | None = None,
) -> Pattern | None:
    """Turn a ranked group into a Pattern when its best entry clearly wins.

    Nothing is extracted unless the best composite exceeds the group mean by
    more than ``margin``. Confidence is the share of entries above the mean
    scaled by the best composite, capped at 1.
    """
    if not entries or len(entries) < min_group_size:
        return None
    best = entries[0]
    if best.composite <= group_mean + margin:
        return None

    pattern_type, _, category = group_key.partition("::")
    above = sum(1 for e in entries if e.composite > group_mean)
    extracted_at = ensure_utc(now) if now else utc_now()
    return Pattern(
        key=group_key,
        type=pattern_type,
        category=category,
        confidence=round_score(min(1.0, above / len(entries) * best.composite)),
        best_composite=best.composite,
        group_mean=group_mean,
        sample_size=len(entries),
        insight=generate_insight(pattern_type, category, best, group_mean),
        best_data=best.experience.data.model_dump(mode="json"),
        extracted_at=extracted_at,
        first_seen=extracted_at,
    )


# ─── Results ───────────────────────────────────────────────────────────


@dataclass
class BatchLearningResult:
    groups_processed: int
    patterns_extracted: int
    patterns: list[Pattern] = field(default_factory=list)
    summary: LearningLogEntry | None = None
    message: str | None = None


@dataclass
class PatternTypeSummary:
    count: int
    avg_confidence: float
    top_patterns: list[Pattern]


@dataclass
class LearningSummary:
    total_sessions: int
    total_experiences: int
    total_patterns_extracted: int
    patterns_by_type: dict[str, PatternTypeSummary]
    recent_learnings: list[LearningLogEntry]
    trend: LearningTrend
    recommendations: list[str]


@dataclass
class SessionEndHook:
    """Runs collection and batch learning when a session ends."""

    learner: LifelongLearner
    session_id: str | None = None

    async def on_session_end(
        self, session_data: SessionData | Mapping[str, Any] | None = None
    ) -> BatchLearningResult:
        data = _as_session(session_data or {})
        session_id = data.session_id or self.session_id or f"session-{uuid.uuid4().hex[:12]}"
        await self.learner.collect_daily_experiences(data.model_copy(update={"session_id": session_id}))
        return await self.learner.batch_learn()


def _as_session(value: SessionData | Mapping[str, Any]) -> SessionData:
    return value if isinstance(value, SessionData) else SessionData.model_validate(value)


def _payload(data: BaseModel | Mapping[str, Any] | None) -> dict[str, Any]:
    if data is None:
        return {}
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def _files_count(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return max(0, value)
    if isinstance(value, (list, tuple, set)):
        return len(value)
    return 0


# ─── Learner ───────────────────────────────────────────────────────────


class LifelongLearner:
    """Owns the experience log, the learning log and batch learning."""

    def __init__(
        self,
        paths: LearningPaths,
        config: LifelongConfig | None = None,
        pattern_store: PatternStore | None = None,
    ) -> None:
        self.paths = paths
        self.config = config or LifelongConfig()
        self.pattern_store = pattern_store or PatternStore(paths)

    def _load_experiences(self) -> list[Experience]:
        return load_model(self.paths.experiences, ExperienceLog, ExperienceLog).experiences

    def _append_experiences(self, new: Sequence[Experience]) -> None:
        kept = [*self._load_experiences(), *new][-self.config.max_experiences:]
        save_model(self.paths.experiences, ExperienceLog(experiences=kept, updated_at=utc_now()))

    def _load_log(self) -> list[LearningLogEntry]:
        return load_model(self.paths.learning_log, LearningLog, LearningLog).entries

    def _append_log(self, entry: LearningLogEntry) -> None:
        kept = [*self._load_log(), entry][-self.config.max_log_entries:]
        save_model(self.paths.learning_log, LearningLog(entries=kept))

    @staticmethod
    def _build(
        experience_type: ExperienceType | str,
        category: str | None,
        data: BaseModel | Mapping[str, Any] | None,
        session_id: str | None,
        now: datetime | None,
    ) -> Experience:
        kind = ExperienceType(experience_type)
        payload = _payload(data)
        if kind is ExperienceType.TOOL:
            payload.setdefault("tool", category or "unknown")
        return EXPERIENCE_ADAPTER.validate_python(
            {
                "id": f"exp-{uuid.uuid4().hex[:12]}",
                "type": kind.value,
                "category": category or "general",
                "data": payload,
                "timestamp": ensure_utc(now) if now else utc_now(),
                "session_id": session_id,
            }
        )

    async def load_experiences(self) -> list[Experience]:
        return self._load_experiences()

    async def collect_experience(
        self,
        experience_type: ExperienceType | str,
        category: str | None = None,
        data: BaseModel | Mapping[str, Any] | None = None,
        session_id: str | None = None,
        now: datetime | None = None,
    ) -> Experience:
        """Record one notable event.

        Args:
            experience_type: What kind of event this is.
            category: Grouping key inside the type, e.g. the tool name.
            data: Payload for the type (validated against its payload model).
            session_id: Session the event belongs to.
            now: Event time, defaults to the current time.

        Returns:
            The stored experience.

        Raises:
            ValueError: Unknown experience type.
            pydantic.ValidationError: Payload does not fit the type.
        """
        experience = self._build(experience_type, category, data, session_id, now)
        self._append_experiences([experience])
        _logger.debug(
            "lifelong.experience_collected",
            experience_type=experience.type,
            category=experience.category,
        )
        return experience

    async def collect_daily_experiences(
        self, session_data: SessionData | Mapping[str, Any]
    ) -> list[Experience]:
        """Turn a finished session's records into experiences, stored in one write."""
        session = _as_session(session_data)
        sid = session.session_id
        collected: list[Experience] = []

        for tool, usage in session.tool_usage.items():
            calls = usage.calls
            collected.append(
                self._build(
                    ExperienceType.TOOL,
                    tool,
                    {
                        "tool": tool,
                        "calls": calls,
                        "successes": usage.successes,
                        "total_ms": usage.total_ms,
                        "avg_ms": round(usage.total_ms / calls) if calls > 0 else 0,
                        "success_rate": min(1.0, usage.successes / calls) if calls > 0 else 0.0,
                    },
                    sid,
                    None,
                )
            )

        for error in session.errors:
            code = error.get("code")
            collected.append(
                self._build(
                    ExperienceType.ERROR,
                    str(error.get("type") or code or "unknown"),
                    {
                        "message": str(error.get("message") or error),
                        "code": str(code) if code is not None else None,
                        "tool": error.get("tool"),
                        "recoverable": bool(error.get("recoverable", False)),
                    },
                    sid,
                    None,
                )
            )

        for task in session.completed_tasks:
            duration = task.get("duration_ms", task.get("duration"))
            collected.append(
                self._build(
                    ExperienceType.SUCCESS,
                    str(task.get("type") or task.get("task_type") or "task"),
                    {
                        "task_id": task.get("id"),
                        "duration_ms": duration,
                        "strategy": task.get("strategy"),
                        "files_modified": _files_count(task.get("files_modified")),
                        "tests_pass": task.get("tests_pass"),
                    },
                    sid,
                    None,
                )
            )

        team = session.team_config
        if team:
            collected.append(
                self._build(
                    ExperienceType.TEAM,
                    str(team.get("pattern") or "unknown"),
                    {
                        "pattern": team.get("pattern"),
                        "size": team.get("size", 0),
                        "agents": list(team.get("agents") or []),
                        "domain": team.get("domain") or "general",
                        "success_rate": team.get("success_rate"),
                        "duration_ms": team.get("duration_ms", team.get("duration")),
                    },
                    sid,
                    None,
                )
            )

        if collected:
            self._append_experiences(collected)
        _logger.info("lifelong.experiences_collected", session_id=sid, count=len(collected))
        return collected

    async def batch_learn(
        self,
        experiences: Iterable[Experience | Mapping[str, Any]] | None = None,
        now: datetime | None = None,
    ) -> BatchLearningResult:
        """Rank every ``type::category`` group and extract winning patterns.

        Args:
            experiences: Experiences to learn from; the stored log when None.
            now: Time stamped on patterns and the log entry.

        Returns:
            Group and pattern counts, the stored (merged) patterns and the
            learning log entry written for this round.
        """
        if experiences is None:
            pool = self._load_experiences()
        else:
            pool = [
                e if isinstance(e, BaseModel) else EXPERIENCE_ADAPTER.validate_python(e)
                for e in experiences
            ]
        if len(pool) < self.config.min_group_size:
            return BatchLearningResult(0, 0, message=INSUFFICIENT_EXPERIENCES)

        groups: dict[str, list[Experience]] = {}
        for experience in pool:
            groups.setdefault(experience.group_key, []).append(experience)

        extracted: list[Pattern] = []
        for group_key, members in groups.items():
            if len(members) < self.config.min_group_size:
                continue
            entries, group_mean = rank_group(members)
            pattern = extract_pattern(
                group_key,
                entries,
                group_mean,
                self.config.pattern_margin,
                self.config.min_group_size,
                now,
            )
            if pattern is not None:
                extracted.append(pattern)

        stored = await self.update_patterns(extracted) if extracted else []
        entry = LearningLogEntry(
            id=f"learn-{uuid.uuid4().hex[:12]}",
            timestamp=ensure_utc(now) if now else utc_now(),
            experience_count=len(pool),
            groups_processed=len(groups),
            patterns_extracted=len(stored),
            pattern_summary=[
                {"key": p.key, "confidence": p.confidence, "insight": p.insight} for p in stored
            ],
        )
        self._append_log(entry)
        _logger.info(
            "lifelong.batch_learned",
            experience_count=len(pool),
            groups=len(groups),
            patterns=len(stored),
        )
        return BatchLearningResult(len(groups), len(stored), stored, entry)

    async def update_patterns(self, patterns: Iterable[Pattern | Mapping[str, Any]]) -> list[Pattern]:
        """Merge patterns into the per-type pattern files."""
        return self.pattern_store.merge(
            p if isinstance(p, Pattern) else Pattern.model_validate(p) for p in patterns
        )

    async def get_learning_summary(self, lookback: int = 50) -> LearningSummary:
        """What has been learned so far and how learning is going."""
        experiences = self._load_experiences()
        recent_log = self._load_log()[-lookback:] if lookback > 0 else []

        by_type: dict[str, PatternTypeSummary] = {}
        for pattern_type, patterns in self.pattern_store.load_all().items():
            if not patterns:
                continue
            ranked = sorted(patterns, key=lambda p: p.confidence, reverse=True)
            by_type[pattern_type] = PatternTypeSummary(
                count=len(patterns),
                avg_confidence=round_score(sum(p.confidence for p in patterns) / len(patterns)),
                top_patterns=ranked[:TOP_PATTERNS_PER_TYPE],
            )

        trend: LearningTrend = "insufficient_data"
        if len(recent_log) >= MIN_LOG_ENTRIES_FOR_TREND:
            half = len(recent_log) // 2
            first = sum(e.patterns_extracted for e in recent_log[:half]) / half
            second = sum(e.patterns_extracted for e in recent_log[half:]) / (len(recent_log) - half)
            if second > first + LOG_TREND_MARGIN:
                trend = "accelerating"
            elif second < first - LOG_TREND_MARGIN:
                trend = "decelerating"
            else:
                trend = "stable"

        total_patterns = sum(s.count for s in by_type.values())
        recommendations = []
        if len(experiences) < MIN_HEALTHY_EXPERIENCES:
            recommendations.append("Collect more experiences to improve learning quality.")
        if total_patterns == 0:
            recommendations.append(
                "No patterns extracted yet. Run batch_learn after collecting sufficient experiences."
            )
        error_count = by_type["error"].count if "error" in by_type else 0
        success_count = by_type["success"].count if "success" in by_type else 0
        if error_count > success_count:
            recommendations.append(
                "Error patterns outnumber success patterns. Focus on error prevention strategies."
            )
        if not recommendations:
            recommendations.append("Learning pipeline is healthy. Continue normal operation.")

        return LearningSummary(
            total_sessions=len(recent_log),
            total_experiences=len(experiences),
            total_patterns_extracted=total_patterns,
            patterns_by_type=by_type,
            recent_learnings=recent_log[-RECENT_LEARNINGS:],
            trend=trend,
            recommendations=recommendations,
        )

    def schedule_learning(self, session_id: str | None = None) -> SessionEndHook:
        """A hook that collects and learns when the session ends."""
        return SessionEndHook(self, session_id)
