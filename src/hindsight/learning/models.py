"""Persisted records of the learning core.

Everything written to disk is a pydantic model so loads are validated at
the boundary: a store that fails validation is logged and replaced with an
empty default (see ``hindsight.storage.files.load_model``).

Experiences are a discriminated union on ``type``; each experience type
carries its own payload model instead of a free-form dict.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from hindsight.utils.time import utc_now

# =============================================================================
# Experiences
# =============================================================================


class ExperienceType(str, Enum):
    """Kinds of experience the lifelong learner collects."""

    TOOL = "tool"
    ERROR = "error"
    SUCCESS = "success"
    TEAM = "team"
    SELF_EVALUATION = "self-evaluation"


class _Payload(BaseModel):
    # Callers may attach extra context; it is kept and ends up in best_data.
    model_config = ConfigDict(extra="allow")


class ToolUsageData(_Payload):
    tool: str
    calls: int = Field(default=0, ge=0)
    successes: int = Field(default=0, ge=0)
    total_ms: float = Field(default=0.0, ge=0.0)
    avg_ms: float = Field(default=0.0, ge=0.0)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)


class ErrorData(_Payload):
    message: str = ""
    code: str | None = None
    tool: str | None = None
    recoverable: bool = False


class TaskSuccessData(_Payload):
    task_id: str | None = None
    duration_ms: float | None = None
    strategy: str | None = None
    files_modified: int = Field(default=0, ge=0)
    tests_pass: bool | None = None


class TeamData(_Payload):
    pattern: str | None = None
    size: int = Field(default=1, ge=0)
    agents: list[str] = Field(default_factory=list)
    domain: str = "general"
    success_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    duration_ms: float | None = None


class SelfEvaluationData(_Payload):
    session_id: str | None = None
    project: str | None = None
    overall_trend: str = "insufficient_data"
    weak_dimensions: list[str] = Field(default_factory=list)
    suggestion_count: int = 0


class _ExperienceBase(BaseModel):
    id: str
    category: str = "general"
    timestamp: datetime = Field(default_factory=utc_now)
    session_id: str | None = None

    @property
    def group_key(self) -> str:
        """Batch-learning group key, ``type::category``."""
        return f"{self.type}::{self.category}"  # type: ignore[attr-defined]


class ToolExperience(_ExperienceBase):
    type: Literal["tool"] = "tool"
    data: ToolUsageData


class ErrorExperience(_ExperienceBase):
    type: Literal["error"] = "error"
    data: ErrorData


class SuccessExperience(_ExperienceBase):
    type: Literal["success"] = "success"
    data: TaskSuccessData


class TeamExperience(_ExperienceBase):
    type: Literal["team"] = "team"
    data: TeamData


class SelfEvaluationExperience(_ExperienceBase):
    type: Literal["self-evaluation"] = "self-evaluation"
    data: SelfEvaluationData


Experience = Annotated[
    ToolExperience
    | ErrorExperience
    | SuccessExperience
    | TeamExperience
    | SelfEvaluationExperience,
    Field(discriminator="type"),
]

EXPERIENCE_ADAPTER: TypeAdapter[Experience] = TypeAdapter(Experience)


class ExperienceLog(BaseModel):
    """Rolling log of collected experiences (daily-experiences.json)."""

    experiences: list[Experience] = Field(default_factory=list)
    updated_at: datetime | None = None


class LearningLogEntry(BaseModel):
    """One batch-learning round."""

    id: str
    timestamp: datetime = Field(default_factory=utc_now)
    experience_count: int
    groups_processed: int
    patterns_extracted: int
    pattern_summary: list[dict[str, Any]] = Field(default_factory=list)


class LearningLog(BaseModel):
    entries: list[LearningLogEntry] = Field(default_factory=list)


# =============================================================================
# Patterns (System 2) and the fast table (System 1)
# =============================================================================


class Pattern(BaseModel):
    """A learned insight extracted from a group of experiences.

    Streak counters track how confidence moved across successive batch
    rounds; they drive promotion into the fast table.
    """

    key: str
    type: str
    category: str = "general"
    confidence: float = Field(ge=0.0, le=1.0)
    best_composite: float = 0.0
    group_mean: float = 0.0
    sample_size: int = 0
    insight: str = ""
    best_data: dict[str, Any] = Field(default_factory=dict)
    extracted_at: datetime = Field(default_factory=utc_now)
    previous_confidence: float | None = None
    consecutive_successes: int = Field(default=0, ge=0)
    consecutive_failures: int = Field(default=0, ge=0)
    first_seen: datetime = Field(default_factory=utc_now)
    update_count: int = Field(default=0, ge=0)


class PatternFile(BaseModel):
    """Contents of one ``patterns/<type>-patterns.json`` file."""

    patterns: dict[str, Pattern] = Field(default_factory=dict)
    updated_at: datetime | None = None


class System1Status(str, Enum):
    ACTIVE = "active"
    DEMOTED = "demoted"


class System1Pattern(BaseModel):
    """A promoted pattern served from the fast lookup table."""

    key: str
    type: str
    category: str = "general"
    confidence: float = Field(ge=0.0, le=1.0)
    insight: str = ""
    best_data: dict[str, Any] = Field(default_factory=dict)
    promoted_at: datetime = Field(default_factory=utc_now)
    promotion_count: int = Field(default=1, ge=1)
    last_success_streak: int = 0
    usage_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)
    consecutive_failures: int = Field(default=0, ge=0)
    last_success_at: datetime | None = None
    source: str = "system2"
    status: System1Status = System1Status.ACTIVE

    @property
    def failure_rate(self) -> float:
        if self.usage_count == 0:
            return 0.0
        return self.failure_count / self.usage_count


class System1Table(BaseModel):
    """Contents of system1-patterns.json."""

    patterns: dict[str, System1Pattern] = Field(default_factory=dict)
    updated_at: datetime | None = None


class TransferAction(str, Enum):
    PROMOTE = "promote"
    DEMOTE = "demote"
    HOT_SWAP = "hot-swap"


class TransferLogEntry(BaseModel):
    """Audit record of one promotion, demotion or hot-swap."""

    action: TransferAction
    timestamp: datetime = Field(default_factory=utc_now)
    pattern_key: str | None = None
    reason: str | None = None
    source: str | None = None
    confidence: float | None = None
    consecutive_successes: int | None = None
    previous_confidence: float | None = None
    failure_count: int | None = None
    promoted: list[str] = Field(default_factory=list)
    demoted: list[str] = Field(default_factory=list)


class TransferLog(BaseModel):
    entries: list[TransferLogEntry] = Field(default_factory=list)


# =============================================================================
# Tool learner
# =============================================================================


class UsageRecord(BaseModel):
    tool: str
    context: str
    score: float = Field(ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=utc_now)
    command: str | None = None
    domain: str | None = None


class ToolStats(BaseModel):
    """Running aggregate for one tool across every context."""

    total_uses: int = 0
    total_score: float = 0.0
    avg_score: float = 0.0
    last_used: datetime | None = None


class GrpoRankedEntry(BaseModel):
    tool: str
    composite_score: float
    relative_advantage: float
    rank: int


class GrpoGroup(BaseModel):
    """One recorded comparison of tools inside a context."""

    context: str
    rankings: list[GrpoRankedEntry]
    timestamp: datetime = Field(default_factory=utc_now)


class ToolHistory(BaseModel):
    """Contents of tool-history.json."""

    version: int = 2
    contexts: dict[str, list[UsageRecord]] = Field(default_factory=dict)
    aggregates: dict[str, ToolStats] = Field(default_factory=dict)
    grpo_groups: dict[str, list[GrpoGroup]] = Field(default_factory=dict)
    grpo_scores: dict[str, float] = Field(default_factory=dict)
    last_updated: datetime | None = None


# =============================================================================
# GRPO optimizer
# =============================================================================


class GrpoRound(BaseModel):
    """Summary of one evaluated candidate group."""

    id: str
    timestamp: datetime = Field(default_factory=utc_now)
    type: Literal["task", "team"]
    candidate_count: int
    best_strategy: str | None = None
    best_pattern: str | None = None
    best_size: int | None = None
    domain: str | None = None
    best_score: float
    spread: float


class GrpoHistory(BaseModel):
    """Contents of grpo-history.json."""

    rounds: list[GrpoRound] = Field(default_factory=list)
    weights: dict[str, float] = Field(default_factory=dict)
    team_weights: dict[str, float] = Field(default_factory=dict)


# =============================================================================
# Memory
# =============================================================================


class MemoryType(str, Enum):
    PREFERENCE = "preference"
    CONTEXT = "context"
    COMMAND = "command"
    ERROR = "error"


class MemoryEntry(BaseModel):
    id: str
    type: MemoryType
    data: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    source: str = "system"
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime | None = None
    access_count: int = Field(default=0, ge=0)
    last_accessed_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class MemoryStore(BaseModel):
    """Contents of one memory store file."""

    entries: list[MemoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None


# =============================================================================
# Self evaluation
# =============================================================================


class DimensionScore(BaseModel):
    score: float = Field(ge=1.0, le=5.0)
    weight: float


class Evaluation(BaseModel):
    id: str
    task_id: str
    task_type: str = "unknown"
    timestamp: datetime = Field(default_factory=utc_now)
    dimensions: dict[str, DimensionScore]
    overall: float
    grade: Literal["A", "B", "C", "D", "F"]
    feedback: str


class EvaluationHistory(BaseModel):
    evaluations: list[Evaluation] = Field(default_factory=list)


# =============================================================================
# Caller-supplied task description
# =============================================================================


class TaskDescriptor(BaseModel):
    """A task as described by the host: what kind of work, in which domain."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    type: str = "unknown"
    domain: str = "general"
    description: str | None = None


# =============================================================================
# Session data handed over by the host at session end
# =============================================================================


class SessionEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str
    data: dict[str, Any] = Field(default_factory=dict)


class ToolUsageSummary(BaseModel):
    calls: int = Field(default=0, ge=0)
    successes: int = Field(default=0, ge=0)
    total_ms: float = Field(default=0.0, ge=0.0)


class SessionData(BaseModel):
    """Everything the host knows about a finished session.

    Unknown keys are kept so hosts can pass richer records without the
    core rejecting them.
    """

    model_config = ConfigDict(extra="allow")

    session_id: str | None = None
    project: str | None = None
    history: list[SessionEvent] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    tool_usage: dict[str, ToolUsageSummary] = Field(default_factory=dict)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    completed_tasks: list[dict[str, Any]] = Field(default_factory=list)
    team_config: dict[str, Any] | None = None
