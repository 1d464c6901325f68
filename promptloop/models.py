from datetime import datetime
from enum import Enum
from typing import Any, List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

from promptloop.const import DEFAULT_SUCCESS_RATE, Severity

Priority = Severity
RiskLevel = Severity


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class IssueType(str, Enum):
    HALLUCINATION = "hallucination"
    STRUCTURE_ERROR = "structure_error"
    ACCURACY_ISSUE = "accuracy_issue"
    PERFORMANCE_DEGRADATION = "performance_degradation"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


class DecisionStrategy(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class RecommendedAction(str, Enum):
    OPTIMIZE = "optimize"
    ALERT_ONLY = "alert_only"
    INVESTIGATE = "investigate"
    ROLLBACK = "rollback"


class TaskType(str, Enum):
    FEEDBACK = "feedback"
    IMPLEMENTATION = "implementation"
    QA = "qa"
    EVALUATION = "evaluation"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class TriggerSource(str, Enum):
    ISSUES = "issues"
    PERFORMANCE = "performance"
    SCHEDULE = "schedule"
    MANUAL = "manual"


class GuardType(str, Enum):
    PRE_COMMIT = "pre_commit"
    POST_COMMIT = "post_commit"
    EVALUATION = "evaluation"
    ROLLBACK = "rollback"


class GuardAction(str, Enum):
    BLOCK = "block"
    WARN = "warn"
    ROLLBACK = "rollback"
    NOTIFY = "notify"


class FileOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# --- Monitoring inputs -------------------------------------------------------

class DetectedIssue(BaseModel):
    type: IssueType = Field(description="Category of the detected problem.")
    severity: Severity = Field(default=Severity.MEDIUM, description="How bad the issue is.")
    description: str = Field(default="", description="Human-readable summary of the issue.")
    confidence: float = Field(default=1.0, ge=0.0, le=1.0, description="Detector confidence.")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Detector context, e.g. the offending prompt or evidence.")


class LogEntry(BaseModel):
    log_content: str = Field(default="", description="Raw log text.")
    level: LogLevel = Field(default=LogLevel.INFO, description="Log level of the entry.")
    timestamp: Optional[datetime] = Field(default=None, description="When the entry was produced.")
    context: dict[str, Any] = Field(default_factory=dict, description="Model, prompt id, latency, etc.")


# --- Policy -------------------------------------------------------------------

class PolicyThresholds(BaseModel):
    issue_count: int = Field(default=5, ge=0, description="Number of issues before triggering optimization.")
    error_rate: float = Field(default=10.0, ge=0.0, description="Error rate percentage (0-100).")
    critical_issue_threshold: int = Field(default=1, ge=0, description="Number of critical issues.")
    time_window: int = Field(default=60, ge=1, description="Time window in minutes.")


class OptimizationSettings(BaseModel):
    max_optimizations_per_hour: int = Field(default=3, ge=0)
    require_approval: bool = Field(default=True, description="Require a human before changes land.")
    auto_apply: bool = Field(default=False, description="Apply optimizations without approval.")
    backup_enabled: bool = Field(default=True, description="Create backups before changes.")


class RiskAssessment(BaseModel):
    max_risk_level: RiskLevel = Field(default=RiskLevel.HIGH)
    approval_required: bool = Field(default=False)
    rollback_enabled: bool = Field(default=True)


class AutonomousPolicy(BaseModel):
    user_id: str
    app_id: str
    enabled: bool = True
    thresholds: PolicyThresholds = Field(default_factory=PolicyThresholds)
    optimization_settings: OptimizationSettings = Field(default_factory=OptimizationSettings)
    risk_assessment: RiskAssessment = Field(default_factory=RiskAssessment)


class OptimizationDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    should_optimize: bool
    reason: str
    priority: Priority = Priority.LOW
    strategy: DecisionStrategy = DecisionStrategy.CONSERVATIVE
    estimated_impact: float = Field(default=0.0, ge=0.0, le=1.0)
    risk_level: RiskLevel = RiskLevel.LOW
    requires_approval: bool = False
    recommended_action: RecommendedAction = RecommendedAction.ALERT_ONLY
    patterns: tuple[str, ...] = Field(default=(), description="Recurring issue patterns seen during analysis.")


# --- Tasks and agents --------------------------------------------------------

_TASK_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.RUNNING},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}


class Task(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("task"))
    type: TaskType
    status: TaskStatus = TaskStatus.PENDING
    priority: Priority = Priority.MEDIUM
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def advance(self, status: TaskStatus) -> None:
        """Moves the task forward; repeated RUNNING during retries is allowed."""
        if status == self.status == TaskStatus.RUNNING:
            self.updated_at = datetime.now()
            return
        if status not in _TASK_TRANSITIONS[self.status]:
            raise ValueError(f"Task {self.id} cannot move from {self.status.value} to {status.value}")
        self.status = status
        self.updated_at = datetime.now()

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class AgentResult(BaseModel):
    task_id: str
    success: bool
    data: Any = None
    error: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
    metrics: dict[str, float] = Field(default_factory=dict)


# --- Safety guards -----------------------------------------------------------

class SafetyGuard(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: GuardType
    condition: str = Field(description="Name of the built-in check this guard runs.")
    action: GuardAction
    threshold: Optional[float] = None
    enabled: bool = True


class GuardResult(BaseModel):
    guard_id: str
    guard_name: str
    action: GuardAction
    passed: bool
    message: Optional[str] = None


class GuardReport(BaseModel):
    phase: GuardType
    passed: int = 0
    total: int = 0
    critical_failures: int = 0
    results: List[GuardResult] = Field(default_factory=list)

    @property
    def failures(self) -> List[GuardResult]:
        return [r for r in self.results if not r.passed]


# --- Candidates --------------------------------------------------------------

class Strategy(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    focus: str
    modifications: tuple[str, ...] = ()


class ModelEvaluation(BaseModel):
    model_id: str
    hallucination_rate: float = Field(ge=0.0, le=1.0)
    structure_score: float = Field(ge=0.0, le=1.0)
    consistency_score: float = Field(ge=0.0, le=1.0)
    fallback: bool = Field(default=False, description="True when computed locally instead of by the model.")


class OptimizationCandidate(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("candidate"))
    content: str
    strategy: Strategy
    generated_at: datetime = Field(default_factory=datetime.now)
    score: Optional[float] = None
    evaluation_results: Optional[List[ModelEvaluation]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# --- Changes and tests -------------------------------------------------------

class FileChange(BaseModel):
    path: str
    operation: FileOperation
    content: Optional[str] = None
    old_content: Optional[str] = None
    reason: str = ""


class ChangeProposal(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("impl"))
    title: str
    description: str = ""
    changes: List[FileChange] = Field(default_factory=list)
    reasoning: str = ""
    impact: Severity = Severity.LOW
    auto_approve: bool = False

    @property
    def paths(self) -> List[str]:
        return [c.path for c in self.changes]


class TestCaseResult(BaseModel):
    __test__ = False

    name: str
    status: str = Field(description="pass, fail or skip")
    duration: float = 0.0
    error: Optional[str] = None
    coverage: Optional[float] = None


class TestSuiteResult(BaseModel):
    __test__ = False

    passed: int = 0
    total: int = 0
    results: List[TestCaseResult] = Field(default_factory=list)

    @property
    def pass_ratio(self) -> float:
        if self.total == 0:
            return 1.0
        return self.passed / self.total

    @classmethod
    def from_results(cls, results: List[TestCaseResult]) -> "TestSuiteResult":
        return cls(
            passed=sum(1 for r in results if r.status == "pass"),
            total=len(results),
            results=results
        )


class QualityRejection(BaseModel):
    """A normal, expected outcome: a stage did not meet its threshold."""

    stage: TaskType
    reason: str
    metrics: dict[str, float] = Field(default_factory=dict)


# --- Learning ----------------------------------------------------------------

class HistoryRecord(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("hist"))
    user_id: str
    app_id: str
    original_prompt: str = ""
    optimized_prompt: str = ""
    strategy: str
    improvement: float = 0.0
    issue_types: List[str] = Field(default_factory=list)
    domain: Optional[str] = None
    success: bool
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)


class LearningInsights(BaseModel):
    success_counts: dict[str, int] = Field(default_factory=dict)
    failure_counts: dict[str, int] = Field(default_factory=dict)
    issue_type_to_strategies: dict[str, List[str]] = Field(default_factory=dict)
    domain_to_strategies: dict[str, List[str]] = Field(default_factory=dict)

    def net_score(self, strategy_id: str) -> float:
        return self.success_counts.get(strategy_id, 0) - 0.5 * self.failure_counts.get(strategy_id, 0)

    def success_rate(self, strategy_id: str) -> float:
        successes = self.success_counts.get(strategy_id, 0)
        attempts = successes + self.failure_counts.get(strategy_id, 0)
        return successes / attempts if attempts else DEFAULT_SUCCESS_RATE


# --- Sessions ----------------------------------------------------------------

_SESSION_TRANSITIONS = {
    SessionStatus.PENDING: {SessionStatus.APPROVED, SessionStatus.REJECTED, SessionStatus.FAILED},
    SessionStatus.APPROVED: {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.ROLLED_BACK},
    SessionStatus.REJECTED: set(),
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
    SessionStatus.ROLLED_BACK: set(),
}


class SessionOutcome(BaseModel):
    success: bool = False
    improvement: float = 0.0
    strategy: Optional[str] = None
    candidate_id: Optional[str] = None
    candidate_score: Optional[float] = None
    baseline_score: Optional[float] = None
    optimized_content: Optional[str] = None
    commit_hash: Optional[str] = None
    branch: Optional[str] = None
    changed_paths: List[str] = Field(default_factory=list)
    rollback_performed: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None
    failed_stage: Optional[TaskType] = None
    rejection: Optional[QualityRejection] = None
    notifications: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class OptimizationSource(BaseModel):
    """Everything the pipeline needs to know about what to optimize."""

    user_id: str
    app_id: str
    target_path: Optional[str] = Field(default=None, description="File under the workspace root holding the prompt.")
    prompt: Optional[str] = Field(default=None, description="Prompt text; extracted from issues when omitted.")
    issues: List[DetectedIssue] = Field(default_factory=list)
    recent_activity: List[LogEntry] = Field(default_factory=list)
    domain: Optional[str] = None
    triggered_by: TriggerSource = TriggerSource.ISSUES


class OptimizationSession(BaseModel):
    id: str = Field(default_factory=lambda: f"auto_{uuid.uuid4().hex[:16]}")
    user_id: str
    app_id: str
    triggered_by: TriggerSource = TriggerSource.ISSUES
    issues: List[DetectedIssue] = Field(default_factory=list)
    decision: OptimizationDecision
    result: Optional[SessionOutcome] = None
    status: SessionStatus = SessionStatus.PENDING
    prompt: Optional[str] = None
    target_path: Optional[str] = None
    domain: Optional[str] = None
    reason: str = ""
    created_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    def transition(self, status: SessionStatus, reason: str | None = None) -> None:
        """Moves the session forward. Terminal states are never left."""
        if status not in _SESSION_TRANSITIONS[self.status]:
            raise ValueError(f"Session {self.id} cannot move from {self.status.value} to {status.value}")
        self.status = status
        if reason:
            self.reason = reason
        if self.is_terminal:
            self.completed_at = datetime.now()

    @property
    def is_terminal(self) -> bool:
        return not _SESSION_TRANSITIONS[self.status]

    def to_source(self) -> OptimizationSource:
        return OptimizationSource(
            user_id=self.user_id,
            app_id=self.app_id,
            target_path=self.target_path,
            prompt=self.prompt,
            issues=self.issues,
            domain=self.domain,
            triggered_by=self.triggered_by
        )
