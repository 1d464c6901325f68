"""
QA agent: gates an applied change proposal.

Runs the pre-commit guards, the functional and regression suites, and the
quality scorer, and reduces them to one ``overall_success``. The structured
issue list is produced whatever the outcome.
"""

import logging
from dataclasses import dataclass, field
from typing import Sequence

from promptloop.errors import ValidationError
from promptloop.models import (
    AgentResult,
    ChangeProposal,
    GuardReport,
    GuardType,
    SafetyGuard,
    Task,
    TaskType,
    TestSuiteResult,
)
from promptloop.optimizer.safety import ChangeSet, enforce, evaluate_phase
from promptloop.optimizer.scoring import QualityScorer, StaticQualityScorer, StaticTestRunner, TestRunner

logger = logging.getLogger("promptloop.optimizer")

MIN_TEST_PASS_RATIO = 0.8
MIN_REGRESSION_PASS_RATIO = 0.9
MIN_QUALITY_SCORE = 70.0


@dataclass
class QAReport:
    safety: GuardReport
    tests: TestSuiteResult
    regression: TestSuiteResult
    quality_score: float
    overall_success: bool
    issues: list[str] = field(default_factory=list)

    @property
    def recommendation(self) -> str:
        return "APPROVE" if self.overall_success else "REJECT"

    @property
    def test_coverage(self) -> float | None:
        measured = [r.coverage for r in self.tests.results if r.coverage is not None]
        return sum(measured) / len(measured) if measured else None


def collect_issues(
    safety: GuardReport,
    tests: TestSuiteResult,
    regression: TestSuiteResult,
    quality_score: float
) -> list[str]:
    issues = [f"Safety: {r.guard_name}: {r.message}" for r in safety.failures]
    issues += [f"Test failed: {r.name}: {r.error}" for r in tests.results if r.status == "fail"]
    issues += [f"Regression: {r.name}: {r.error}" for r in regression.results if r.status == "fail"]
    if quality_score < MIN_QUALITY_SCORE:
        issues.append(f"Quality score {quality_score:.0f} below {MIN_QUALITY_SCORE:.0f}")
    return issues


class QAAgent:
    """
    Args:
        guards: Guard values; the pre-commit ones are evaluated here
        test_runner: Functional and regression suites
        quality_scorer: Quality score in [0, 100]
    """

    name = "qa-agent"
    capabilities = frozenset({TaskType.QA})

    def __init__(
        self,
        guards: Sequence[SafetyGuard],
        test_runner: TestRunner | None = None,
        quality_scorer: QualityScorer | None = None
    ) -> None:
        self.guards = tuple(guards)
        self.test_runner = test_runner or StaticTestRunner()
        self.quality_scorer = quality_scorer or StaticQualityScorer()

    def can_handle(self, task_type: TaskType) -> bool:
        return task_type in self.capabilities

    def execute(self, task: Task) -> AgentResult:
        proposal = task.metadata.get("proposal")
        if not isinstance(proposal, ChangeProposal):
            raise ValidationError("No change proposal provided for QA validation", stage=TaskType.QA.value)

        safety = evaluate_phase(self.guards, GuardType.PRE_COMMIT, ChangeSet(changes=proposal.changes))
        enforce(safety, stage=TaskType.QA.value)

        tests = self.test_runner.run_functional(proposal)
        regression = self.test_runner.run_regression(proposal)
        quality_score = self.quality_scorer.score(proposal)

        overall_success = (
            safety.critical_failures == 0
            and tests.passed >= tests.total * MIN_TEST_PASS_RATIO
            and regression.passed >= regression.total * MIN_REGRESSION_PASS_RATIO
            and quality_score >= MIN_QUALITY_SCORE
        )
        report = QAReport(
            safety=safety,
            tests=tests,
            regression=regression,
            quality_score=quality_score,
            overall_success=overall_success,
            issues=collect_issues(safety, tests, regression, quality_score)
        )

        logs = [
            f"Safety checks completed: {safety.passed}/{safety.total} passed",
            f"Test execution completed: {tests.passed}/{tests.total} tests passed",
            f"Regression tests completed: {regression.passed}/{regression.total} passed",
            f"Code quality validation completed with score: {quality_score:.0f}/100",
        ]
        logger.info(f"[bold blue][QA][/bold blue] {report.recommendation} with {len(report.issues)} issue(s)")

        return AgentResult(
            task_id=task.id,
            success=overall_success,
            data=report,
            error=None if overall_success else f"QA gates not met: {'; '.join(report.issues) or 'thresholds not reached'}",
            logs=logs,
            metrics={
                "tests_run": float(tests.total + regression.total),
                "tests_passed": float(tests.passed + regression.passed),
                "quality_score": quality_score,
                "safety_score": (safety.passed / safety.total) * 100 if safety.total else 100.0,
            }
        )
