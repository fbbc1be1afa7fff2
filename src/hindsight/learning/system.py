"""The learning system: every component wired to one data directory.

The host talks to :class:`LearningSystem` at three points:

- ``initialize()`` at startup prunes stale tool records and memories;
- ``run_learning_cycle()`` after trying several strategies for one task;
- ``shutdown()`` at session end, which persists pending state and runs the
  nightly pipeline (summarise, self-evaluate, learn, hot-swap).

Only precondition errors of ``run_learning_cycle`` propagate. Startup and
shutdown steps are independent: a failing step is logged and reported in
the result, and the remaining steps still run.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any

from hindsight.core.config import LearningConfig
from hindsight.core.logging import SessionContext, get_logger, with_context
from hindsight.learning.grpo import Candidate, GrpoOptimizer, RankedCandidate, evaluate_group
from hindsight.learning.knowledge_transfer import HotSwapResult, KnowledgeTransfer
from hindsight.learning.lifelong import BatchLearningResult, LifelongLearner
from hindsight.learning.memory import MemoryManager
from hindsight.learning.models import (
    Evaluation,
    ExperienceType,
    MemoryType,
    SelfEvaluationData,
    SessionData,
    TaskDescriptor,
)
from hindsight.learning.patterns import PatternStore
from hindsight.learning.rules import RuleSet
from hindsight.learning.self_evaluator import ImprovementReport, SelfEvaluator, TaskOutcome
from hindsight.learning.tool_learner import ToolLearner

_logger = get_logger("system")


@dataclass
class InitResult:
    initialized: bool
    errors: int
    pruned_records: int = 0
    pruned_memories: int = 0


@dataclass
class ShutdownResult:
    summarized: bool = False
    evaluated: ImprovementReport | None = None
    learned: BatchLearningResult | None = None
    hot_swapped: HotSwapResult | None = None
    failed_steps: list[str] = field(default_factory=list)


@dataclass
class LearningCycleResult:
    rankings: list[RankedCandidate]
    weights: dict[str, float]
    evaluation: Evaluation | None
    memory_saved: bool


class LearningSystem:
    """Owns one instance of every learning component."""

    def __init__(self, config: LearningConfig | None = None) -> None:
        self.config = config or LearningConfig()
        self.paths = self.config.get_paths()
        self.patterns = PatternStore(self.paths)
        self.grpo = GrpoOptimizer(self.paths.grpo_history, self.config.grpo)
        self.tool_learner = ToolLearner(self.paths.tool_history, self.config.tool_learner)
        self.memory = MemoryManager(self.paths.memory_dir, self.config.memory)
        self.evaluator = SelfEvaluator(self.paths.evaluations, self.config.evaluator)
        self.transfer = KnowledgeTransfer(self.paths, self.config.transfer, self.patterns)
        self.lifelong = LifelongLearner(self.paths, self.config.lifelong, self.patterns)

    async def initialize(self) -> InitResult:
        """Prune stale tool records and expired memories, concurrently."""
        with with_context(SessionContext(component="system.initialize")):
            records, memories = await asyncio.gather(
                self.tool_learner.prune_old_records(),
                self.memory.prune_old_memories(),
                return_exceptions=True,
            )
            errors = 0
            for step, outcome in (("prune_tool_records", records), ("prune_memories", memories)):
                if isinstance(outcome, BaseException):
                    errors += 1
                    _logger.warning("system.init_step_failed", step=step, error=str(outcome))
            result = InitResult(
                initialized=True,
                errors=errors,
                pruned_records=0 if isinstance(records, BaseException) else records,
                pruned_memories=0 if isinstance(memories, BaseException) else memories.pruned,
            )
            _logger.info("system.initialized", errors=errors)
            return result

    async def shutdown(self, session_data: SessionData | Mapping[str, Any] | None = None) -> ShutdownResult:
        """Persist pending state and, given session data, run the learning pipeline.

        Args:
            session_data: What happened in the session that is ending. When
                None only the tool learner's buffer is flushed.

        Returns:
            What each step produced, plus the names of the steps that failed.
        """
        session = None
        if session_data is not None:
            session = (
                session_data
                if isinstance(session_data, SessionData)
                else SessionData.model_validate(session_data)
            )
        result = ShutdownResult()
        ctx = SessionContext(
            session_id=session.session_id if session else None,
            component="system.shutdown",
        )

        with with_context(ctx):
            try:
                await self.tool_learner.aclose()
            except Exception as e:
                result.failed_steps.append("flush_tools")
                _logger.warning("system.shutdown_step_failed", step="flush_tools", error=str(e))

            if session is None:
                return result

            try:
                await self.memory.summarize_session(session)
                result.summarized = True
            except Exception as e:
                result.failed_steps.append("summarize")
                _logger.warning("system.shutdown_step_failed", step="summarize", error=str(e))

            try:
                report = await self.evaluator.get_improvement_suggestions()
                result.evaluated = report
                await self.lifelong.collect_experience(
                    ExperienceType.SELF_EVALUATION,
                    "session",
                    SelfEvaluationData(
                        session_id=session.session_id,
                        project=session.project,
                        overall_trend=report.overall_trend,
                        weak_dimensions=[d.dimension for d in report.weak_dimensions],
                        suggestion_count=len(report.suggestions),
                    ),
                    session_id=session.session_id,
                )
            except Exception as e:
                result.failed_steps.append("self_evaluate")
                _logger.warning("system.shutdown_step_failed", step="self_evaluate", error=str(e))

            try:
                await self.lifelong.collect_daily_experiences(session)
                result.learned = await self.lifelong.batch_learn()
            except Exception as e:
                result.failed_steps.append("learn")
                _logger.warning("system.shutdown_step_failed", step="learn", error=str(e))

            try:
                result.hot_swapped = await self.transfer.hot_swap()
            except Exception as e:
                result.failed_steps.append("hot_swap")
                _logger.warning("system.shutdown_step_failed", step="hot_swap", error=str(e))

            _logger.info("system.shutdown_complete", failed_steps=result.failed_steps)
            return result

    async def run_learning_cycle(
        self,
        task: TaskDescriptor | Mapping[str, Any],
        candidates: Sequence[Candidate | Mapping[str, Any]],
        rules: RuleSet | None = None,
    ) -> LearningCycleResult:
        """Rank tried strategies, learn from the ranking and remember the winner.

        Raises:
            InvalidGroupError: Fewer than two candidates.
        """
        task = task if isinstance(task, TaskDescriptor) else TaskDescriptor.model_validate(task)
        parsed = [c if isinstance(c, Candidate) else Candidate.from_dict(c) for c in candidates]

        with with_context(SessionContext(component="system.learning_cycle")):
            group = evaluate_group(parsed, rules)
            weights = await self.grpo.update_weights(group)

            best = group.best
            best_candidate = next((c for c in parsed if c.id == best.candidate_id), None)
            evaluation = None
            if best_candidate is not None:
                result = best_candidate.result
                evaluation = await self.evaluator.evaluate_result(
                    task,
                    TaskOutcome(
                        success=result.get("exit_code", 1) == 0,
                        duration_ms=result.get("duration_ms"),
                        tests_pass=result.get("errors", 1) == 0,
                    ),
                )

            memory_saved = False
            try:
                await self.memory.save_memory(
                    MemoryType.CONTEXT,
                    {
                        "task_id": task.id,
                        "domain": task.domain,
                        "best_strategy": best.strategy,
                        "best_score": best.composite,
                        "spread": group.spread,
                        "evaluation": (
                            {"overall": evaluation.overall, "grade": evaluation.grade}
                            if evaluation
                            else None
                        ),
                    },
                    source="learning-cycle",
                )
                memory_saved = True
            except Exception as e:
                _logger.warning("system.cycle_memory_failed", task_id=task.id, error=str(e))

            _logger.info(
                "system.learning_cycle",
                task_id=task.id,
                best_strategy=best.strategy,
                spread=group.spread,
            )
            return LearningCycleResult(group.rankings, weights, evaluation, memory_saved)

    async def __aenter__(self) -> LearningSystem:
        await self.initialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.tool_learner.aclose()
