"""Learning components: GRPO ranking, tool learning, memory, evaluation and transfer."""

from hindsight.learning.grpo import (
    Candidate,
    GroupResult,
    GrpoOptimizer,
    TeamCandidate,
    evaluate_group,
    evaluate_team_group,
    generate_candidates,
    generate_team_candidates,
)
from hindsight.learning.knowledge_transfer import KnowledgeTransfer, PromotionResult
from hindsight.learning.lifelong import LifelongLearner
from hindsight.learning.memory import MemoryManager
from hindsight.learning.models import (
    Experience,
    ExperienceType,
    MemoryEntry,
    MemoryType,
    Pattern,
    SessionData,
    System1Pattern,
    TaskDescriptor,
)
from hindsight.learning.patterns import PatternStore
from hindsight.learning.rules import CLI_RULES, TEAM_RULES
from hindsight.learning.self_evaluator import SelfEvaluator, TaskOutcome
from hindsight.learning.system import LearningSystem
from hindsight.learning.tool_learner import ToolLearner, ToolResult, build_context_key

__all__ = [
    # GRPO
    "Candidate",
    "TeamCandidate",
    "GroupResult",
    "GrpoOptimizer",
    "CLI_RULES",
    "TEAM_RULES",
    "evaluate_group",
    "evaluate_team_group",
    "generate_candidates",
    "generate_team_candidates",
    # Tool learning
    "ToolLearner",
    "ToolResult",
    "build_context_key",
    # Memory
    "MemoryManager",
    "MemoryEntry",
    "MemoryType",
    # Evaluation
    "SelfEvaluator",
    "TaskOutcome",
    # Lifelong learning and transfer
    "Experience",
    "ExperienceType",
    "LifelongLearner",
    "Pattern",
    "PatternStore",
    "KnowledgeTransfer",
    "PromotionResult",
    "System1Pattern",
    # Orchestration
    "LearningSystem",
    "SessionData",
    "TaskDescriptor",
]
