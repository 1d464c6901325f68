"""
Autonomous optimizer: the entry point tying the pipeline together.

This module implements the AutonomousOptimizer class that coordinates a
session from decision to landed change:
1. Decision: should this (user, app) be optimized now?
2. Candidates: generate, score against the model panel, select the best
3. Orchestration: feedback, implementation, QA, evaluation
4. Outcome: commit or rollback, session status, learning history
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from pydantic import ValidationError as PydanticValidationError

from promptloop.const import APPLIED_COLLECTION, POLICIES_COLLECTION, SESSIONS_COLLECTION
from promptloop.errors import PromptLoopError, RollbackFailure, SessionBusyError, ValidationError
from promptloop.external import call_with_timeout
from promptloop.generation import GenerationService
from promptloop.models import (
    AutonomousPolicy,
    HistoryRecord,
    OptimizationCandidate,
    OptimizationDecision,
    OptimizationSession,
    OptimizationSource,
    RecommendedAction,
    SafetyGuard,
    SessionOutcome,
    SessionStatus,
)
from promptloop.optimizer.agents import AgentRegistry
from promptloop.optimizer.candidates import (
    CandidateContext,
    CandidateEvaluator,
    CandidateGenerator,
    SimilaritySearch,
    select_best,
)
from promptloop.optimizer.commit_manager import CommitManager
from promptloop.optimizer.config import PipelineConfig
from promptloop.optimizer.decision import DecisionEngine, baseline_score, build_context, extract_prompt
from promptloop.optimizer.draft_manager import DraftManager
from promptloop.optimizer.evaluator import EvaluationAgent
from promptloop.optimizer.feedback import FeedbackAgent
from promptloop.optimizer.implementation import ImplementationAgent
from promptloop.optimizer.learning import LearningStore
from promptloop.optimizer.orchestrator import OrchestrationOutcome, OrchestrationRequest, TaskOrchestrator
from promptloop.optimizer.qa import QAAgent
from promptloop.optimizer.safety import DEFAULT_GUARDS
from promptloop.optimizer.scoring import HeuristicPromptScorer
from promptloop.optimizer.validator import ValidationEngine
from promptloop.storage import RecordStore
from promptloop.workspace import Workspace

logger = logging.getLogger("promptloop.optimizer")


@dataclass
class SessionResult:
    """What one call to ``run_optimization`` or ``approve_session`` produced."""

    session: OptimizationSession
    candidates: list[OptimizationCandidate] = field(default_factory=list)
    best_candidate: OptimizationCandidate | None = None
    orchestration: OrchestrationOutcome | None = None

    @property
    def outcome(self) -> SessionOutcome | None:
        return self.session.result


def coerce_policy(policy: Any, user_id: str, app_id: str) -> AutonomousPolicy | None:
    """The policy as a model, or None when it is missing or malformed."""
    if policy is None or isinstance(policy, AutonomousPolicy):
        return policy
    try:
        return AutonomousPolicy.model_validate({"user_id": user_id, "app_id": app_id, **dict(policy)})
    except (PydanticValidationError, TypeError, ValueError) as e:
        logger.warning(f"Ignoring malformed autonomous policy for {user_id}/{app_id}: {e}")
        return None


class AutonomousOptimizer:
    """
    Main entry point of the autonomous optimization pipeline.

    At most one session per (user, app) runs at a time; a second request
    for the same pair is refused with ``SessionBusyError`` instead of
    waiting.

    Args:
        workspace: Source tree holding the prompts
        store: Persistent store for sessions, history, policies and logs
        generation_service: Scoring panel backend; local heuristics without one
        config: Pipeline configuration (defaults from the environment)
        guards: Guard values applied to every session
        similarity: Optional prior-art lookup for example injection
    """

    def __init__(
        self,
        workspace: Workspace,
        store: RecordStore,
        generation_service: GenerationService | None = None,
        config: PipelineConfig | None = None,
        guards: Sequence[SafetyGuard] = DEFAULT_GUARDS,
        similarity: SimilaritySearch | None = None
    ) -> None:
        self.workspace = workspace
        self.store = store
        self.config = config or PipelineConfig()
        self.guards = tuple(guards)

        self.engine = DecisionEngine()
        self.learning = LearningStore(store, timeout=self.config.external_timeout)
        self.generator = CandidateGenerator(self.learning, similarity, self.config.max_candidates)
        self.evaluator = CandidateEvaluator(generation_service, self.config.evaluation_models)
        self.scorer = HeuristicPromptScorer()

        self.validator = ValidationEngine(workspace.root, timeout=self.config.test_timeout)
        self.commit_manager = CommitManager(
            workspace,
            self.validator,
            test_command=self.config.test_command,
            dry_run=self.config.dry_run,
            create_review_branch=self.config.create_review_branch,
            retention_days=self.config.backup_retention_days,
            timeout=self.config.external_timeout
        )
        self.draft_manager = DraftManager()
        self.registry = AgentRegistry([
            FeedbackAgent(),
            ImplementationAgent(
                workspace,
                self.commit_manager,
                self.draft_manager,
                self.guards,
                tests_dir=self.config.validation_tests_dir
            ),
            QAAgent(self.guards),
            EvaluationAgent(self.scorer),
        ])

        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._cancel_events: dict[str, threading.Event] = {}

    # --- store helpers ---------------------------------------------------

    def _store(self, func, *args):
        return call_with_timeout(func, *args, service="store", timeout=self.config.external_timeout)

    def _save_session(self, session: OptimizationSession) -> None:
        self._store(self.store.put, SESSIONS_COLLECTION, session.id, session.model_dump(mode="json"))

    def _lock_for(self, user_id: str, app_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault((user_id, app_id), threading.Lock())

    # --- policies --------------------------------------------------------

    def set_policy(self, policy: AutonomousPolicy) -> None:
        key = f"{policy.user_id}:{policy.app_id}"
        self._store(self.store.put, POLICIES_COLLECTION, key, policy.model_dump(mode="json"))
        logger.info(f"[bold blue][POLICY][/bold blue] Stored policy for {key}")

    def get_policy(self, user_id: str, app_id: str) -> AutonomousPolicy | None:
        record = self._store(self.store.get, POLICIES_COLLECTION, f"{user_id}:{app_id}")
        if record is None:
            return None
        return AutonomousPolicy.model_validate(record)

    # --- public operations -----------------------------------------------

    def decide(self, issues: Iterable[Any], policy: Any, recent_activity: Iterable[Any] = ()) -> OptimizationDecision:
        """Pure decision for ``issues`` under ``policy``; see ``DecisionEngine.evaluate``."""
        return self.engine.evaluate(issues, recent_activity, policy)

    def get_session_status(self, session_id: str) -> OptimizationSession | None:
        record = self._store(self.store.get, SESSIONS_COLLECTION, session_id)
        if record is None:
            return None
        return OptimizationSession.model_validate(record)

    def get_agent_status(self) -> list[dict[str, Any]]:
        return self.registry.status()

    def recent_session_count(self, user_id: str, app_id: str, now: datetime | None = None) -> int:
        """Sessions for (user, app) that went past approval within the last hour."""
        cutoff = ((now or datetime.now()) - timedelta(hours=1)).isoformat()
        ran = {SessionStatus.APPROVED.value, SessionStatus.COMPLETED.value,
               SessionStatus.FAILED.value, SessionStatus.ROLLED_BACK.value}
        rows = self._store(
            self.store.query,
            SESSIONS_COLLECTION,
            lambda r: (
                r.get("user_id") == user_id and r.get("app_id") == app_id
                and r.get("status") in ran and r.get("created_at", "") >= cutoff
            )
        )
        return len(rows)

    def run_optimization(self, source: OptimizationSource, policy: Any = None) -> SessionResult:
        """
        Decide on and, when warranted, run one optimization session.

        Args:
            source: What to optimize and the issues observed for it
            policy: The (user, app) policy; the stored one is used when omitted

        Returns:
            SessionResult with the persisted session and, when candidates
            were produced, the ranked candidates

        Raises:
            ValidationError: If the target path is missing or does not exist
            SessionBusyError: If a session for the same (user, app) is active
            RollbackFailure: If a rollback could not restore the working tree
        """
        if not source.target_path:
            raise ValidationError("A target path is required to run an optimization", stage="decision")
        if not call_with_timeout(self.workspace.exists, source.target_path, service="workspace",
                                 timeout=self.config.external_timeout):
            raise ValidationError(f"Target file {source.target_path} does not exist", stage="decision")

        if policy is None:
            policy = self.get_policy(source.user_id, source.app_id)
        resolved = coerce_policy(policy, source.user_id, source.app_id)

        lock = self._lock_for(source.user_id, source.app_id)
        if not lock.acquire(blocking=False):
            raise SessionBusyError(source.user_id, source.app_id)
        try:
            decision = self.engine.evaluate(source.issues, source.recent_activity, resolved)
            session = OptimizationSession(
                user_id=source.user_id,
                app_id=source.app_id,
                triggered_by=source.triggered_by,
                issues=source.issues,
                decision=decision,
                prompt=source.prompt,
                target_path=source.target_path,
                domain=source.domain,
                reason=decision.reason
            )
            logger.info(
                f"[bold blue][SESSION][/bold blue] {session.id} for {source.user_id}/{source.app_id}: {decision.reason}"
            )

            rejection = self._rejection_reason(decision, resolved, source)
            if rejection:
                session.transition(SessionStatus.REJECTED, rejection)
                self._save_session(session)
                logger.info(f"[bold blue][SESSION][/bold blue] {session.id} rejected: {rejection}")
                return SessionResult(session=session)

            if decision.requires_approval:
                self._save_session(session)
                logger.info(f"[bold blue][SESSION][/bold blue] {session.id} awaiting approval")
                return SessionResult(session=session)

            session.transition(SessionStatus.APPROVED)
            return self._execute(session, source, resolved)
        finally:
            lock.release()

    def approve_session(self, session_id: str, policy: Any = None) -> SessionResult:
        """
        Approve a pending session and run it.

        Raises:
            ValidationError: If the session is unknown or not pending
            SessionBusyError: If a session for the same (user, app) is active
        """
        session = self.get_session_status(session_id)
        if session is None:
            raise ValidationError(f"Unknown session {session_id}")
        if session.status != SessionStatus.PENDING:
            raise ValidationError(f"Session {session_id} is {session.status.value}, not pending")

        if policy is None:
            policy = self.get_policy(session.user_id, session.app_id)
        resolved = coerce_policy(policy, session.user_id, session.app_id) or AutonomousPolicy(
            user_id=session.user_id, app_id=session.app_id
        )

        lock = self._lock_for(session.user_id, session.app_id)
        if not lock.acquire(blocking=False):
            raise SessionBusyError(session.user_id, session.app_id)
        try:
            # the record may have moved on since the unlocked read above
            session = self.get_session_status(session_id)
            if session is None or session.status != SessionStatus.PENDING:
                state = session.status.value if session else "gone"
                raise ValidationError(f"Session {session_id} is {state}, not pending")
            session.transition(SessionStatus.APPROVED, "Approved")
            return self._execute(session, session.to_source(), resolved)
        finally:
            lock.release()

    def reject_session(self, session_id: str, reason: str = "Rejected by user") -> OptimizationSession:
        session = self.get_session_status(session_id)
        if session is None:
            raise ValidationError(f"Unknown session {session_id}")
        try:
            session.transition(SessionStatus.REJECTED, reason)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        self._save_session(session)
        return session

    def cancel_session(self, session_id: str) -> bool:
        """
        Cancel a session.

        A running session stops before its next stage and rolls back whatever
        it already applied. A pending session is rejected.

        Returns:
            True if anything was cancelled
        """
        event = self._cancel_events.get(session_id)
        if event is not None:
            event.set()
            logger.info(f"[bold yellow][SESSION][/bold yellow] Cancellation requested for {session_id}")
            return True

        session = self.get_session_status(session_id)
        if session is None or session.status != SessionStatus.PENDING:
            return False
        self.reject_session(session_id, "Cancelled")
        return True

    # --- internals -------------------------------------------------------

    def _rejection_reason(
        self,
        decision: OptimizationDecision,
        policy: AutonomousPolicy | None,
        source: OptimizationSource
    ) -> str | None:
        if not decision.should_optimize:
            return decision.reason
        if decision.recommended_action != RecommendedAction.OPTIMIZE:
            return f"Recommended action is {decision.recommended_action.value}: {decision.reason}"

        limit = policy.optimization_settings.max_optimizations_per_hour
        if self.recent_session_count(source.user_id, source.app_id) >= limit:
            return f"Rate limit reached ({limit} optimizations per hour)"
        return None

    def _execute(
        self,
        session: OptimizationSession,
        source: OptimizationSource,
        policy: AutonomousPolicy
    ) -> SessionResult:
        self._save_session(session)
        result = SessionResult(session=session)

        prompt = source.prompt or extract_prompt(source.issues)
        baseline = baseline_score(source.issues)
        if baseline >= self.config.score_threshold:
            session.result = SessionOutcome(baseline_score=baseline, error="Current performance is acceptable")
            return self._finish(session, SessionStatus.FAILED, f"Baseline score {baseline:.0f} needs no optimization", result)

        context = CandidateContext(
            user_id=source.user_id, app_id=source.app_id, issues=source.issues, domain=source.domain
        )
        try:
            result.candidates = self.evaluator.evaluate(self.generator.generate(prompt, context))
        except PromptLoopError as e:
            session.result = SessionOutcome(baseline_score=baseline, error=str(e), error_type=type(e).__name__)
            self._finish(session, SessionStatus.FAILED, f"Candidate generation failed: {e}", result)
            raise
        best = select_best(result.candidates, baseline)
        result.best_candidate = best
        if best is None:
            session.result = SessionOutcome(baseline_score=baseline, error="No candidate beats the baseline score")
            if result.candidates:
                self._record_history(session, prompt, result.candidates[0], success=False, improvement=0.0)
            return self._finish(session, SessionStatus.FAILED, "No candidate beats the baseline score", result)

        cancel_event = threading.Event()
        self._cancel_events[session.id] = cancel_event
        orchestrator = TaskOrchestrator(
            self.registry,
            self.commit_manager,
            self.guards,
            max_retries=self.config.max_retries,
            rollback_enabled=policy.risk_assessment.rollback_enabled
        )
        metrics = self.scorer.measure(prompt)
        request = OrchestrationRequest(
            target_path=source.target_path,
            original_prompt=prompt,
            optimized_prompt=best.content,
            reason=build_context(source.issues, session.decision),
            priority=session.decision.priority,
            current_metrics={
                "hallucination_rate": metrics.hallucination_rate,
                "response_quality": metrics.response_quality,
            },
            candidate_improvement=((best.score or 0.0) - baseline) / baseline * 100 if baseline else 100.0
        )
        try:
            outcome = orchestrator.run(request, cancel_event)
        except RollbackFailure as e:
            session.result = SessionOutcome(
                baseline_score=baseline, error=str(e), error_type=type(e).__name__, rollback_performed=False
            )
            self._finish(session, SessionStatus.FAILED, f"Rollback failed: {e}", result)
            raise
        except Exception as e:
            partial = orchestrator.last_outcome
            rolled_back = partial is not None and partial.rollback_performed
            result.orchestration = partial
            session.result = SessionOutcome(
                baseline_score=baseline,
                error=str(e),
                error_type=type(e).__name__,
                rollback_performed=rolled_back,
                failed_stage=partial.tasks[-1].type if partial and partial.tasks else None
            )
            if rolled_back:
                self._finish(session, SessionStatus.ROLLED_BACK, f"Rolled back after unexpected error: {e}", result)
            else:
                self._finish(session, SessionStatus.FAILED, f"Failed with unexpected error: {e}", result)
            raise
        finally:
            self._cancel_events.pop(session.id, None)

        result.orchestration = outcome
        session.result = SessionOutcome(
            success=outcome.success,
            improvement=outcome.improvement or 0.0,
            strategy=best.strategy.id,
            candidate_id=best.id,
            candidate_score=best.score,
            baseline_score=baseline,
            optimized_content=best.content,
            commit_hash=outcome.commit.commit_hash if outcome.commit else None,
            branch=outcome.commit.branch if outcome.commit else None,
            changed_paths=outcome.changed_paths,
            rollback_performed=outcome.rollback_performed,
            error=outcome.error,
            error_type=outcome.error_type,
            failed_stage=outcome.failed_stage,
            rejection=outcome.rejection,
            notifications=outcome.notifications,
            warnings=outcome.warnings
        )
        if outcome.success:
            if not policy.optimization_settings.backup_enabled:
                self.commit_manager.discard_backups(outcome.backups)
            self._finish(session, SessionStatus.COMPLETED, f"Optimization applied with {strategy_label(best)}", result)
        elif outcome.rollback_performed:
            self._finish(session, SessionStatus.ROLLED_BACK, outcome.error or "Rolled back", result)
        else:
            self._finish(session, SessionStatus.FAILED, outcome.error or "Optimization failed", result)

        # the session is final by now; a failed bookkeeping write only gets logged
        try:
            self._record_history(session, prompt, best, success=outcome.success, improvement=outcome.improvement or 0.0)
            if outcome.success:
                self._log_applied(session, best)
        except PromptLoopError as e:
            logger.error(f"[bold red][SESSION][/bold red] Could not record the outcome of {session.id}: {e}")
        return result

    def _finish(
        self,
        session: OptimizationSession,
        status: SessionStatus,
        reason: str,
        result: SessionResult
    ) -> SessionResult:
        session.transition(status, reason)
        self._save_session(session)
        logger.info(f"[bold blue][SESSION][/bold blue] {session.id} {status.value}: {reason}")
        return result

    def _record_history(
        self,
        session: OptimizationSession,
        prompt: str,
        candidate: OptimizationCandidate,
        success: bool,
        improvement: float
    ) -> None:
        self.learning.record_attempt(HistoryRecord(
            user_id=session.user_id,
            app_id=session.app_id,
            original_prompt=prompt,
            optimized_prompt=candidate.content,
            strategy=candidate.strategy.id,
            improvement=improvement,
            issue_types=sorted({issue.type.value for issue in session.issues}),
            domain=session.domain,
            success=success,
            context={"session_id": session.id, "score": candidate.score}
        ))

    def _log_applied(self, session: OptimizationSession, candidate: OptimizationCandidate) -> None:
        outcome = session.result
        self._store(self.store.put, APPLIED_COLLECTION, session.id, {
            "session_id": session.id,
            "user_id": session.user_id,
            "app_id": session.app_id,
            "target_path": session.target_path,
            "strategy": candidate.strategy.id,
            "improvement": outcome.improvement,
            "commit_hash": outcome.commit_hash,
            "changed_paths": outcome.changed_paths,
            "applied_at": datetime.now().isoformat(),
        })


def strategy_label(candidate: OptimizationCandidate) -> str:
    return f"{candidate.strategy.name} ({candidate.strategy.id})"
