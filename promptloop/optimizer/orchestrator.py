"""
Task orchestration for one optimization session.

Runs the four stages strictly in order (feedback, implementation, QA,
evaluation), routes each task to the agent registered for its type, retries
unexpected errors a bounded number of times and decides between commit and
rollback once the evaluation is in.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Sequence

from promptloop.const import MAX_RETRIES
from promptloop.errors import (
    PromptLoopError,
    RollbackFailure,
    SafetyViolation,
    SessionCancelled,
    ValidationError,
)
from promptloop.models import (
    AgentResult,
    GuardAction,
    GuardType,
    Priority,
    QualityRejection,
    SafetyGuard,
    Task,
    TaskStatus,
    TaskType,
)
from promptloop.optimizer.agents import AgentRegistry
from promptloop.optimizer.commit_manager import BackupInfo, CommitManager, CommitResult
from promptloop.optimizer.evaluator import EvaluationReport
from promptloop.optimizer.safety import DEFAULT_GUARDS, ChangeSet, evaluate_phase

logger = logging.getLogger("promptloop.orchestrator")

# Evaluation results at or above this improvement are always accepted.
ACCEPT_IMPROVEMENT = 5.0
# Rollback floor used when no rollback guard is active.
CONSERVATIVE_ROLLBACK_FLOOR = -10.0

NON_RETRYABLE = (ValidationError, SafetyViolation, RollbackFailure, SessionCancelled)


@dataclass
class OrchestrationRequest:
    """
    Inputs for one run through the four stages.

    Attributes:
        target_path: File holding the prompt, relative to the workspace root
        original_prompt: Prompt text currently in the file
        optimized_prompt: Content of the selected candidate
        reason: Human-readable reason carried into the change proposal
        priority: Priority given to every task
        current_metrics: Optional metrics handed to the feedback stage
        candidate_improvement: Expected improvement of the candidate over the baseline, in percent
    """

    target_path: str
    original_prompt: str
    optimized_prompt: str
    reason: str = "Automated prompt optimization"
    priority: Priority = Priority.MEDIUM
    current_metrics: dict[str, float] = field(default_factory=dict)
    candidate_improvement: float | None = None


@dataclass
class OrchestrationOutcome:
    success: bool = False
    results: dict[TaskType, AgentResult] = field(default_factory=dict)
    tasks: list[Task] = field(default_factory=list)
    rollback_performed: bool = False
    commit: CommitResult | None = None
    backups: list[BackupInfo] = field(default_factory=list)
    changed_paths: list[str] = field(default_factory=list)
    improvement: float | None = None
    error: str | None = None
    error_type: str | None = None
    failed_stage: TaskType | None = None
    guard_id: str | None = None
    rejection: QualityRejection | None = None
    notifications: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def record_error(self, error: Exception, stage: TaskType | None) -> None:
        self.error = str(error)
        self.error_type = type(error).__name__
        self.failed_stage = stage
        self.guard_id = getattr(error, "guard_id", None)


def stage_of(error: PromptLoopError) -> TaskType | None:
    try:
        return TaskType(error.stage)
    except ValueError:
        return None


def build_commit_message(evaluation: EvaluationReport, change_count: int) -> str:
    return (
        f"Optimize prompt: {evaluation.improvement:.1f}% improvement\n\n"
        f"- Applied {change_count} optimization changes\n"
        f"- Test results: {evaluation.passed_tests}/{evaluation.total_tests} passed\n"
        f"- Overall score: {evaluation.after.overall * 100:.1f}%"
    )


class TaskOrchestrator:
    """
    Args:
        registry: Agents by capability
        commit_manager: Performs rollback and the final commit
        guards: Guard values; evaluation, rollback and post-commit phases run here
        max_retries: Attempts per task for unexpected errors
        rollback_enabled: Whether the automatic rollback guard applies
    """

    def __init__(
        self,
        registry: AgentRegistry,
        commit_manager: CommitManager,
        guards: Sequence[SafetyGuard] = DEFAULT_GUARDS,
        max_retries: int = MAX_RETRIES,
        rollback_enabled: bool = True
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.registry = registry
        self.commit_manager = commit_manager
        self.guards = tuple(guards)
        self.max_retries = max_retries
        self.rollback_enabled = rollback_enabled
        self.last_outcome: OrchestrationOutcome | None = None

    def execute_task(self, task: Task) -> AgentResult:
        """
        Route ``task`` to its agent and run it with bounded retries.

        Only raised errors are retried. A result with ``success=False`` is a
        logical rejection and is returned as is.

        Raises:
            ValidationError: If no agent handles the task type, or input is missing
            SafetyViolation: If a block guard trips
            RollbackFailure: If an agent's own restore failed
        """
        agent = self.registry.find(task.type)
        if agent is None:
            task.advance(TaskStatus.RUNNING)
            task.advance(TaskStatus.FAILED)
            raise ValidationError(f"No agent registered for {task.type.value} tasks", stage=task.type.value)

        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            task.advance(TaskStatus.RUNNING)
            try:
                result = agent.execute(task)
            except NON_RETRYABLE:
                task.advance(TaskStatus.FAILED)
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    f"[bold yellow][ORCHESTRATOR][/bold yellow] {agent.name} attempt {attempt}/{self.max_retries} "
                    f"failed: {e}"
                )
                continue

            task.advance(TaskStatus.COMPLETED if result.success else TaskStatus.FAILED)
            logger.info(
                f"[bold blue][ORCHESTRATOR][/bold blue] {task.type.value} finished "
                f"{'successfully' if result.success else 'with rejection'}"
            )
            return result

        task.advance(TaskStatus.FAILED)
        logger.error(f"[bold red][ORCHESTRATOR][/bold red] {task.type.value} failed after {self.max_retries} attempts")
        return AgentResult(
            task_id=task.id,
            success=False,
            error=f"Failed after {self.max_retries} attempts: {last_error}",
            logs=[f"Last error: {type(last_error).__name__}: {last_error}"]
        )

    def should_rollback(self, evaluation: EvaluationReport, confidence: float | None = None) -> tuple[bool, list[str]]:
        """
        Decide whether an evaluated change has to be rolled back.

        Results at or above ``ACCEPT_IMPROVEMENT`` are kept. Below it, the
        rollback guard (when enabled) and any evaluation-phase rollback guard
        decide; with no rollback guard active a conservative floor applies.

        Returns:
            The decision and the notifications raised by notify guards
        """
        change_set = ChangeSet(improvement=evaluation.improvement, confidence=confidence)
        evaluation_report = evaluate_phase(self.guards, GuardType.EVALUATION, change_set)
        notifications = [
            f"{r.guard_name}: {r.message}" for r in evaluation_report.failures if r.action == GuardAction.NOTIFY
        ]
        if evaluation.improvement >= ACCEPT_IMPROVEMENT:
            return False, notifications

        failures = [r for r in evaluation_report.failures if r.action == GuardAction.ROLLBACK]
        rollback_guards = [g for g in self.guards if g.type == GuardType.ROLLBACK and g.enabled]
        if self.rollback_enabled and rollback_guards:
            rollback_report = evaluate_phase(rollback_guards, GuardType.ROLLBACK, change_set)
            failures += rollback_report.failures
            return bool(failures), notifications

        return bool(failures) or evaluation.improvement < CONSERVATIVE_ROLLBACK_FLOOR, notifications

    def _rollback(self, outcome: OrchestrationOutcome, reason: str) -> None:
        logger.warning(f"[bold yellow][ORCHESTRATOR][/bold yellow] Rolling back: {reason}")
        self.commit_manager.restore_backups(outcome.backups)
        outcome.rollback_performed = True

    def _stage(
        self,
        outcome: OrchestrationOutcome,
        task_type: TaskType,
        request: OrchestrationRequest,
        metadata: dict[str, Any],
        cancel_event: threading.Event | None
    ) -> AgentResult:
        if cancel_event is not None and cancel_event.is_set():
            raise SessionCancelled(f"Session cancelled before {task_type.value}", stage=task_type.value)
        task = Task(
            type=task_type,
            priority=request.priority,
            description=f"{task_type.value} for {request.target_path}",
            metadata=metadata
        )
        outcome.tasks.append(task)
        result = self.execute_task(task)
        outcome.results[task_type] = result
        return result

    def run(self, request: OrchestrationRequest, cancel_event: threading.Event | None = None) -> OrchestrationOutcome:
        """
        Run the four stages and commit or roll back.

        Pipeline errors, cancellation included, are recorded in the outcome.
        Once changes are in place every failure restores them first, and
        unexpected exceptions are re-raised after the restore.

        Raises:
            RollbackFailure: If restoring the backups failed
        """
        outcome = OrchestrationOutcome()
        self.last_outcome = outcome
        stage = TaskType.FEEDBACK
        try:
            feedback = self._stage(outcome, stage, request, {
                "prompt": request.original_prompt,
                "target_path": request.target_path,
                "current_metrics": request.current_metrics,
                "candidate_improvement": request.candidate_improvement,
            }, cancel_event)
            if not feedback.success:
                outcome.record_error(PromptLoopError(feedback.error or "Feedback analysis failed"), stage)
                return outcome

            stage = TaskType.IMPLEMENTATION
            implementation = self._stage(outcome, stage, request, {
                "target_path": request.target_path,
                "original_prompt": request.original_prompt,
                "optimized_prompt": request.optimized_prompt,
                "reason": request.reason,
                "feedback": feedback.data,
            }, cancel_event)
            if not implementation.success:
                outcome.record_error(PromptLoopError(implementation.error or "Implementation failed"), stage)
                return outcome
        except RollbackFailure:
            raise
        except PromptLoopError as e:
            logger.error(f"[bold red][ORCHESTRATOR][/bold red] {stage.value} aborted: {e}")
            outcome.record_error(e, stage)
            return outcome

        report = implementation.data
        outcome.backups = list(report.backups)
        outcome.changed_paths = report.changed_paths
        try:
            self._after_implementation(outcome, request, report, cancel_event)
        except RollbackFailure:
            raise
        except PromptLoopError as e:
            outcome.record_error(e, stage_of(e))
            self._rollback(outcome, f"{type(e).__name__}: {e}")
        except Exception as e:
            self._rollback(outcome, f"unexpected {type(e).__name__}: {e}")
            raise
        return outcome

    def _after_implementation(
        self,
        outcome: OrchestrationOutcome,
        request: OrchestrationRequest,
        report: Any,
        cancel_event: threading.Event | None
    ) -> None:
        qa = self._stage(outcome, TaskType.QA, request, {"proposal": report.proposal}, cancel_event)
        if not qa.success:
            outcome.failed_stage = TaskType.QA
            outcome.rejection = QualityRejection(stage=TaskType.QA, reason=qa.error or "QA failed", metrics=qa.metrics)
            outcome.error = "rolled back due to QA failure"
            self._rollback(outcome, outcome.error)
            return

        evaluation = self._stage(outcome, TaskType.EVALUATION, request, {
            "before": request.original_prompt,
            "after": request.optimized_prompt,
            "qa": qa.data,
        }, cancel_event)
        if not evaluation.success:
            outcome.failed_stage = TaskType.EVALUATION
            outcome.error = evaluation.error or "Evaluation failed"
            self._rollback(outcome, outcome.error)
            return

        scores: EvaluationReport = evaluation.data
        outcome.improvement = scores.improvement
        feedback = outcome.results[TaskType.FEEDBACK].data
        rollback, notifications = self.should_rollback(scores, getattr(feedback, "confidence", None))
        outcome.notifications.extend(notifications)
        if rollback:
            outcome.failed_stage = TaskType.EVALUATION
            outcome.rejection = QualityRejection(
                stage=TaskType.EVALUATION,
                reason=f"Improvement {scores.improvement:.1f}% below the rollback floor",
                metrics={"improvement": scores.improvement, "overall_score": scores.after.overall}
            )
            outcome.error = "rolled back due to insufficient improvement"
            self._rollback(outcome, outcome.error)
            return

        if cancel_event is not None and cancel_event.is_set():
            raise SessionCancelled("Session cancelled before commit", stage="commit")

        outcome.commit = self.commit_manager.commit(
            build_commit_message(scores, len(report.proposal.changes)), outcome.changed_paths
        )
        post_commit = evaluate_phase(
            self.guards, GuardType.POST_COMMIT, ChangeSet(changes=report.proposal.changes, test_coverage=qa.data.test_coverage)
        )
        outcome.warnings.extend(f"{r.guard_name}: {r.message}" for r in post_commit.failures)
        outcome.success = True
        logger.info(
            f"[bold green][ORCHESTRATOR][/bold green] Accepted with {scores.improvement:.1f}% improvement"
            + (f" ({outcome.commit.commit_hash})" if outcome.commit.commit_hash else "")
        )
