"""
Decision engine: decides whether a prompt needs an optimization attempt.

``DecisionEngine.evaluate`` is a pure function of its inputs. It never
touches the store or the clock, so the same issues, activity sample and
policy always produce an identical decision.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from pydantic import ValidationError as PydanticValidationError

from promptloop.const import SEVERITY_RANK, Severity
from promptloop.models import (
    AutonomousPolicy,
    DecisionStrategy,
    DetectedIssue,
    LogEntry,
    LogLevel,
    OptimizationDecision,
    RecommendedAction,
    Trend,
)

logger = logging.getLogger("promptloop.decision")

TREND_MIN_SAMPLE = 10


@dataclass(frozen=True)
class IssueAnalysis:
    """Aggregate signals computed from one batch of issues and activity."""

    severity: Severity
    issue_count: int
    critical_count: int
    error_rate: float
    trend: Trend
    patterns: tuple[str, ...]
    urgency: float


def _coerce_policy(policy: Any) -> AutonomousPolicy | None:
    if isinstance(policy, AutonomousPolicy):
        return policy
    if isinstance(policy, dict):
        try:
            return AutonomousPolicy.model_validate(policy)
        except PydanticValidationError as e:
            logger.warning(f"Malformed autonomous policy treated as disabled: {e.error_count()} error(s)")
            return None
    return None


def _coerce_issues(issues: Iterable[Any] | None) -> list[DetectedIssue]:
    coerced = []
    for issue in issues or []:
        if isinstance(issue, DetectedIssue):
            coerced.append(issue)
            continue
        try:
            coerced.append(DetectedIssue.model_validate(issue))
        except PydanticValidationError:
            logger.warning(f"Skipping malformed issue: {issue!r}")
    return coerced


def _coerce_activity(activity: Iterable[Any] | None) -> list[LogEntry]:
    coerced = []
    for entry in activity or []:
        if isinstance(entry, LogEntry):
            coerced.append(entry)
            continue
        try:
            coerced.append(LogEntry.model_validate(entry))
        except PydanticValidationError:
            logger.warning(f"Skipping malformed log entry: {entry!r}")
    return coerced


def analyze_trend(activity: Sequence[LogEntry]) -> Trend:
    """
    Compare the error rate of the most recent half of the sample with the older half.

    The sample is ordered newest first. Fewer than ten entries is too little
    signal and reads as stable.
    """
    if len(activity) < TREND_MIN_SAMPLE:
        return Trend.STABLE

    middle = len(activity) // 2
    recent, older = activity[:middle], activity[middle:]
    recent_rate = sum(1 for e in recent if e.level == LogLevel.ERROR) / len(recent)
    older_rate = sum(1 for e in older if e.level == LogLevel.ERROR) / len(older)

    if recent_rate > older_rate * 1.2:
        return Trend.DEGRADING
    if recent_rate < older_rate * 0.8:
        return Trend.IMPROVING
    return Trend.STABLE


def identify_patterns(issues: Sequence[DetectedIssue]) -> tuple[str, ...]:
    """Issue types seen more than twice in the batch."""
    counts = Counter(issue.type.value for issue in issues)
    return tuple(
        f"Recurring {issue_type} issues ({count} instances)"
        for issue_type, count in sorted(counts.items())
        if count > 2
    )


def extract_prompt(issues: Sequence[DetectedIssue]) -> str:
    """
    Find the prompt the issues were raised against.

    Prefers an explicit ``prompt`` in issue metadata, then any ``evidence``
    long enough to be a prompt. Falls back to a synthesized baseline prompt
    that names the detected problems.
    """
    for issue in issues:
        prompt = issue.metadata.get("prompt")
        if isinstance(prompt, str) and prompt.strip():
            return prompt
        evidence = issue.metadata.get("evidence")
        if isinstance(evidence, str) and len(evidence) > 50:
            return evidence

    described = ", ".join(issue.description for issue in issues if issue.description)
    return (
        "You are an AI assistant. Please provide accurate, well-structured responses "
        f"without hallucinations or errors. Avoid the following issues that have been detected: {described}"
    )


def baseline_score(issues: Sequence[DetectedIssue]) -> float:
    """Current quality estimate in [0, 100], lowered by every open issue."""
    if not issues:
        return 85.0

    severities = Counter(issue.severity for issue in issues)
    critical = severities[Severity.CRITICAL]
    high = severities[Severity.HIGH]
    medium = severities[Severity.MEDIUM]
    other = len(issues) - critical - high - medium

    score = 100 - 30 * critical - 15 * high - 8 * medium - 3 * other
    return float(max(0, min(100, score)))


def build_context(issues: Sequence[DetectedIssue], decision: OptimizationDecision) -> str:
    issue_types = sorted({issue.type.value for issue in issues})
    severities = sorted({issue.severity.value for issue in issues}, key=lambda s: SEVERITY_RANK[Severity(s)])
    focus = "; ".join(issue.description for issue in issues[:3])
    return (
        "Optimization context:\n"
        f"- Detected issue types: {', '.join(issue_types)}\n"
        f"- Severity levels: {', '.join(severities)}\n"
        f"- Strategy: {decision.strategy.value}\n"
        f"- Priority: {decision.priority.value}\n"
        f"- Focus on addressing: {focus}"
    )


class DecisionEngine:
    """
    Turns detected issues and a policy into an ``OptimizationDecision``.

    The engine holds no state. A missing, malformed or disabled policy always
    yields a non-triggering decision.
    """

    def analyze(
        self,
        issues: Sequence[DetectedIssue],
        activity: Sequence[LogEntry],
        policy: AutonomousPolicy
    ) -> IssueAnalysis:
        thresholds = policy.thresholds
        critical_count = sum(1 for i in issues if i.severity == Severity.CRITICAL)
        high_count = sum(1 for i in issues if i.severity == Severity.HIGH)
        error_count = sum(1 for e in activity if e.level == LogLevel.ERROR)
        error_rate = (error_count / len(activity)) * 100 if activity else 0.0

        if critical_count > 0:
            severity = Severity.CRITICAL
        elif high_count > 2:
            severity = Severity.HIGH
        elif len(issues) > 5:
            severity = Severity.MEDIUM
        else:
            severity = Severity.LOW

        trend = analyze_trend(activity)

        urgency = 0.0
        if critical_count > 0:
            urgency += 0.4
        if error_rate > thresholds.error_rate:
            urgency += 0.3
        if len(issues) > thresholds.issue_count:
            urgency += 0.2
        if trend == Trend.DEGRADING:
            urgency += 0.1

        return IssueAnalysis(
            severity=severity,
            issue_count=len(issues),
            critical_count=critical_count,
            error_rate=error_rate,
            trend=trend,
            patterns=identify_patterns(issues),
            urgency=round(min(1.0, urgency), 6)
        )

    def evaluate(
        self,
        issues: Iterable[Any] | None,
        recent_activity: Iterable[Any] | None,
        policy: Any
    ) -> OptimizationDecision:
        """
        Decide whether and how to run an optimization attempt.

        Args:
            issues: Detected issues (models or plain dicts)
            recent_activity: Recent log entries, newest first
            policy: The (user, app) ``AutonomousPolicy`` or its dict form

        Returns:
            The decision. Never raises for well-formed input.
        """
        resolved = _coerce_policy(policy)
        if resolved is None:
            return OptimizationDecision(should_optimize=False, reason="No valid autonomous policy configured")
        if not resolved.enabled:
            return OptimizationDecision(should_optimize=False, reason="Autonomous optimization is disabled")

        issue_list = _coerce_issues(issues)
        activity = _coerce_activity(recent_activity)
        analysis = self.analyze(issue_list, activity, resolved)
        return self._decide(analysis, resolved)

    def _decide(self, analysis: IssueAnalysis, policy: AutonomousPolicy) -> OptimizationDecision:
        thresholds = policy.thresholds
        settings = policy.optimization_settings
        risk = policy.risk_assessment

        exceeds_issue_count = analysis.issue_count >= thresholds.issue_count
        exceeds_error_rate = analysis.error_rate >= thresholds.error_rate
        exceeds_critical = analysis.critical_count >= thresholds.critical_issue_threshold

        if not (exceeds_issue_count or exceeds_error_rate or exceeds_critical):
            return OptimizationDecision(
                should_optimize=False,
                reason=(
                    f"Issues below threshold ({analysis.issue_count}/{thresholds.issue_count}, "
                    f"error rate: {analysis.error_rate:.1f}%)"
                ),
                patterns=analysis.patterns
            )

        if analysis.severity == Severity.CRITICAL or analysis.critical_count > 0:
            priority, strategy, risk_level = Severity.CRITICAL, DecisionStrategy.AGGRESSIVE, Severity.HIGH
        elif analysis.severity == Severity.HIGH or analysis.error_rate > thresholds.error_rate * 2:
            priority, strategy, risk_level = Severity.HIGH, DecisionStrategy.MODERATE, Severity.MEDIUM
        else:
            priority, strategy, risk_level = Severity.MEDIUM, DecisionStrategy.MODERATE, Severity.MEDIUM

        estimated_impact = min(1.0, round(analysis.urgency + 0.2 * analysis.critical_count, 6))
        exceeds_max_risk = SEVERITY_RANK[risk_level] > SEVERITY_RANK[risk.max_risk_level]

        requires_approval = (
            settings.require_approval
            or risk_level in (Severity.HIGH, Severity.CRITICAL)
            or not settings.auto_apply
            or risk.approval_required
            or exceeds_max_risk
        )

        if exceeds_max_risk or (risk_level == Severity.CRITICAL and not settings.auto_apply):
            action = RecommendedAction.INVESTIGATE
        elif analysis.urgency < 0.3:
            action = RecommendedAction.ALERT_ONLY
        else:
            action = RecommendedAction.OPTIMIZE

        reasons = []
        if exceeds_issue_count:
            reasons.append(f"Issue count: {analysis.issue_count}")
        if exceeds_error_rate:
            reasons.append(f"Error rate: {analysis.error_rate:.1f}%")
        if exceeds_critical:
            reasons.append(f"Critical issues: {analysis.critical_count}")

        return OptimizationDecision(
            should_optimize=True,
            reason=f"Thresholds exceeded: {', '.join(reasons)}",
            priority=priority,
            strategy=strategy,
            estimated_impact=estimated_impact,
            risk_level=risk_level,
            requires_approval=requires_approval,
            recommended_action=action,
            patterns=analysis.patterns
        )
