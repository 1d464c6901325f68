"""
Safety guards for the optimization pipeline.

Guards are immutable ``SafetyGuard`` values passed into every evaluation
call; there is no guard registry. Each guard names a built-in check through
its ``condition``. A check that raises is recorded as a failed guard.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Sequence

from promptloop.errors import SafetyViolation
from promptloop.models import (
    FileChange,
    FileOperation,
    GuardAction,
    GuardReport,
    GuardResult,
    GuardType,
    SafetyGuard,
)

logger = logging.getLogger("promptloop.safety")

SECRET_KEYWORDS: tuple[str, ...] = ("password", "secret", "api_key", "private_key", "access_token")

NO_SECRETS = SafetyGuard(
    id="no-secrets",
    name="Secret Detection",
    type=GuardType.PRE_COMMIT,
    condition="secret_patterns",
    action=GuardAction.BLOCK,
)
MAX_CHANGES = SafetyGuard(
    id="max-changes",
    name="Change Limit",
    type=GuardType.PRE_COMMIT,
    condition="max_changes",
    action=GuardAction.WARN,
    threshold=10,
)
TEST_COVERAGE = SafetyGuard(
    id="test-coverage",
    name="Test Coverage",
    type=GuardType.POST_COMMIT,
    condition="min_test_coverage",
    action=GuardAction.WARN,
    threshold=80,
)
PERFORMANCE_REGRESSION = SafetyGuard(
    id="performance-regression",
    name="Performance Guard",
    type=GuardType.EVALUATION,
    condition="max_performance_regression",
    action=GuardAction.ROLLBACK,
    threshold=-20,
)
ROLLBACK_ON_FAILURE = SafetyGuard(
    id="rollback-on-failure",
    name="Automatic Rollback on Failure",
    type=GuardType.ROLLBACK,
    condition="min_improvement",
    action=GuardAction.ROLLBACK,
    threshold=0,
)
HUMAN_REVIEW = SafetyGuard(
    id="human-review-threshold",
    name="Human Review Required",
    type=GuardType.EVALUATION,
    condition="min_confidence",
    action=GuardAction.NOTIFY,
    threshold=0.7,
)

DEFAULT_GUARDS: tuple[SafetyGuard, ...] = (
    NO_SECRETS,
    MAX_CHANGES,
    TEST_COVERAGE,
    PERFORMANCE_REGRESSION,
    ROLLBACK_ON_FAILURE,
    HUMAN_REVIEW,
)


@dataclass
class ChangeSet:
    """Everything a guard may inspect. Fields not yet known are None."""

    changes: Sequence[FileChange] = field(default_factory=list)
    test_coverage: float | None = None
    improvement: float | None = None
    confidence: float | None = None


def added_lines(change: FileChange) -> list[str]:
    """Lines of the new content that were not already present before the change."""
    previous = set((change.old_content or "").splitlines())
    return [line for line in (change.content or "").splitlines() if line not in previous]


def _secret_patterns(guard: SafetyGuard, change_set: ChangeSet) -> tuple[bool, str | None]:
    pattern = re.compile("|".join(re.escape(k) for k in SECRET_KEYWORDS), re.IGNORECASE)
    for change in change_set.changes:
        if change.operation == FileOperation.DELETE:
            continue
        for line in added_lines(change):
            match = pattern.search(line)
            if match:
                return False, f"Potential secret detected: '{match.group(0).lower()}' in {change.path}"
    return True, None


def _max_changes(guard: SafetyGuard, change_set: ChangeSet) -> tuple[bool, str | None]:
    limit = guard.threshold if guard.threshold is not None else 10
    count = len(change_set.changes)
    if count > limit:
        return False, f"{count} changes exceed the limit of {limit:g}"
    return True, None


def _min_test_coverage(guard: SafetyGuard, change_set: ChangeSet) -> tuple[bool, str | None]:
    if change_set.test_coverage is None:
        return True, "Coverage not measured"
    if change_set.test_coverage < guard.threshold:
        return False, f"Coverage {change_set.test_coverage:.1f}% below {guard.threshold:g}%"
    return True, None


def _max_performance_regression(guard: SafetyGuard, change_set: ChangeSet) -> tuple[bool, str | None]:
    if change_set.improvement is None:
        return True, None
    if change_set.improvement < guard.threshold:
        return False, f"Performance changed by {change_set.improvement:.1f}% (floor {guard.threshold:g}%)"
    return True, None


def _min_improvement(guard: SafetyGuard, change_set: ChangeSet) -> tuple[bool, str | None]:
    if change_set.improvement is None:
        return True, None
    if change_set.improvement < guard.threshold:
        return False, f"Improvement {change_set.improvement:.1f}% below {guard.threshold:g}%"
    return True, None


def _min_confidence(guard: SafetyGuard, change_set: ChangeSet) -> tuple[bool, str | None]:
    if change_set.confidence is None:
        return True, None
    if change_set.confidence < guard.threshold:
        return False, f"Confidence {change_set.confidence:.2f} below {guard.threshold:g}; human review recommended"
    return True, None


CHECKS: dict[str, Callable[[SafetyGuard, ChangeSet], tuple[bool, str | None]]] = {
    "secret_patterns": _secret_patterns,
    "max_changes": _max_changes,
    "min_test_coverage": _min_test_coverage,
    "max_performance_regression": _max_performance_regression,
    "min_improvement": _min_improvement,
    "min_confidence": _min_confidence,
}


def evaluate_guard(guard: SafetyGuard, change_set: ChangeSet) -> GuardResult:
    """Run one guard. Unknown conditions and raising checks count as failures."""
    check = CHECKS.get(guard.condition)
    try:
        if check is None:
            raise KeyError(f"Unknown guard condition: {guard.condition}")
        passed, message = check(guard, change_set)
    except Exception as e:
        logger.error(f"[bold red][SAFETY][/bold red] Guard {guard.id} could not be evaluated: {e}")
        passed, message = False, f"Guard evaluation failed: {e}"

    return GuardResult(guard_id=guard.id, guard_name=guard.name, action=guard.action, passed=passed, message=message)


def evaluate_phase(guards: Sequence[SafetyGuard], phase: GuardType, change_set: ChangeSet) -> GuardReport:
    """
    Evaluate every enabled guard of ``phase``.

    Any failing ``block`` guard counts as a critical failure, however many
    other guards pass.
    """
    report = GuardReport(phase=phase)
    for guard in guards:
        if not guard.enabled or guard.type != phase:
            continue
        result = evaluate_guard(guard, change_set)
        report.results.append(result)
        report.total += 1
        if result.passed:
            report.passed += 1
        else:
            if guard.action == GuardAction.BLOCK:
                report.critical_failures += 1
            logger.warning(f"[bold yellow][SAFETY][/bold yellow] {guard.name} ({guard.action.value}): {result.message}")
    return report


def enforce(report: GuardReport, stage: str) -> None:
    """Raise ``SafetyViolation`` for the first failed ``block`` guard in ``report``."""
    if report.critical_failures == 0:
        return
    blocking = next(r for r in report.failures if r.action == GuardAction.BLOCK)
    raise SafetyViolation(
        f"{blocking.guard_name}: {blocking.message}",
        guard_id=blocking.guard_id,
        stage=stage,
        context={"critical_failures": report.critical_failures, "passed": report.passed, "total": report.total}
    )
