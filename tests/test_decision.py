"""
Tests for promptloop.optimizer.decision (DecisionEngine).
"""
import pytest

from promptloop.models import (
    AutonomousPolicy,
    DecisionStrategy,
    DetectedIssue,
    IssueType,
    LogEntry,
    LogLevel,
    RecommendedAction,
    Severity,
    Trend,
)
from promptloop.optimizer.decision import (
    DecisionEngine,
    analyze_trend,
    baseline_score,
    extract_prompt,
    identify_patterns,
)


@pytest.fixture
def engine():
    return DecisionEngine()


def make_policy(**overrides):
    data = {"user_id": "user-1", "app_id": "app-1"}
    data.update(overrides)
    return AutonomousPolicy.model_validate(data)


class TestScenarioA:
    """Six high issues at a 12% error rate against the default thresholds."""

    def test_triggers_with_high_priority(self, engine, high_issues, activity_12_percent):
        decision = engine.evaluate(high_issues, activity_12_percent, make_policy())

        assert decision.should_optimize is True
        assert decision.priority == Severity.HIGH
        assert decision.strategy == DecisionStrategy.MODERATE
        assert decision.risk_level == Severity.MEDIUM
        assert decision.estimated_impact == pytest.approx(0.5)
        assert decision.recommended_action == RecommendedAction.OPTIMIZE
        assert decision.reason.startswith("Thresholds exceeded")

    def test_requires_approval_by_default(self, engine, high_issues, activity_12_percent):
        decision = engine.evaluate(high_issues, activity_12_percent, make_policy())
        assert decision.requires_approval is True

    def test_no_approval_with_auto_apply_and_no_required_approval(
        self, engine, high_issues, activity_12_percent, auto_policy
    ):
        decision = engine.evaluate(high_issues, activity_12_percent, auto_policy)
        assert decision.requires_approval is False

    def test_auto_apply_alone_still_requires_approval(self, engine, high_issues, activity_12_percent):
        policy = make_policy(optimization_settings={"auto_apply": True, "require_approval": True})
        decision = engine.evaluate(high_issues, activity_12_percent, policy)
        assert decision.requires_approval is True


class TestThresholds:
    """Test threshold comparisons and the non-triggering path."""

    @pytest.mark.parametrize("severity", list(Severity))
    @pytest.mark.parametrize("issue_type", list(IssueType))
    def test_zero_thresholds_always_trigger(self, engine, severity, issue_type):
        """With every threshold at zero, a single issue of any kind triggers."""
        policy = make_policy(thresholds={"issue_count": 0, "error_rate": 0, "critical_issue_threshold": 0})
        decision = engine.evaluate([DetectedIssue(type=issue_type, severity=severity)], [], policy)
        assert decision.should_optimize is True

    def test_below_thresholds_alert_only(self, engine):
        issues = [DetectedIssue(type=IssueType.STRUCTURE_ERROR, severity=Severity.LOW) for _ in range(2)]
        decision = engine.evaluate(issues, [], make_policy())

        assert decision.should_optimize is False
        assert decision.recommended_action == RecommendedAction.ALERT_ONLY
        assert "below threshold" in decision.reason

    def test_threshold_met_exactly_triggers(self, engine):
        issues = [DetectedIssue(type=IssueType.ACCURACY_ISSUE, severity=Severity.LOW) for _ in range(5)]
        decision = engine.evaluate(issues, [], make_policy())

        assert decision.should_optimize is True
        assert "Issue count: 5" in decision.reason

    def test_low_urgency_is_alert_only(self, engine):
        """Meeting the issue count without exceeding it gives no urgency."""
        issues = [DetectedIssue(type=IssueType.ACCURACY_ISSUE, severity=Severity.MEDIUM) for _ in range(5)]
        decision = engine.evaluate(issues, [], make_policy())

        assert decision.should_optimize is True
        assert decision.priority == Severity.MEDIUM
        assert decision.recommended_action == RecommendedAction.ALERT_ONLY


class TestCriticalIssues:
    """Test classification of critical issues."""

    def test_critical_issue_is_aggressive(self, engine):
        issues = [DetectedIssue(type=IssueType.HALLUCINATION, severity=Severity.CRITICAL)]
        decision = engine.evaluate(issues, [], make_policy())

        assert decision.should_optimize is True
        assert decision.priority == Severity.CRITICAL
        assert decision.strategy == DecisionStrategy.AGGRESSIVE
        assert decision.risk_level == Severity.HIGH
        assert decision.requires_approval is True
        assert decision.estimated_impact == pytest.approx(0.6)
        assert decision.recommended_action == RecommendedAction.OPTIMIZE

    def test_risk_above_policy_maximum_is_investigated(self, engine):
        issues = [DetectedIssue(type=IssueType.HALLUCINATION, severity=Severity.CRITICAL)]
        policy = make_policy(
            optimization_settings={"auto_apply": True, "require_approval": False},
            risk_assessment={"max_risk_level": "medium"}
        )
        decision = engine.evaluate(issues, [], policy)

        assert decision.recommended_action == RecommendedAction.INVESTIGATE
        assert decision.requires_approval is True

    def test_estimated_impact_is_capped(self, engine):
        issues = [DetectedIssue(type=IssueType.HALLUCINATION, severity=Severity.CRITICAL) for _ in range(6)]
        decision = engine.evaluate(issues, [], make_policy())
        assert decision.estimated_impact == 1.0


class TestPolicyHandling:
    """A missing, malformed or disabled policy never triggers and never raises."""

    def test_missing_policy(self, engine, high_issues):
        decision = engine.evaluate(high_issues, [], None)
        assert decision.should_optimize is False

    def test_malformed_policy(self, engine, high_issues):
        decision = engine.evaluate(high_issues, [], {"thresholds": "not-a-mapping"})
        assert decision.should_optimize is False

    def test_policy_as_dict(self, engine, high_issues, activity_12_percent):
        decision = engine.evaluate(high_issues, activity_12_percent, make_policy().model_dump())
        assert decision.should_optimize is True

    def test_disabled_policy(self, engine, high_issues):
        decision = engine.evaluate(high_issues, [], make_policy(enabled=False))

        assert decision.should_optimize is False
        assert "disabled" in decision.reason

    def test_malformed_issues_are_skipped(self, engine):
        issues = [{"type": "hallucination", "severity": "critical"}, {"type": "not-a-type"}, 42]
        decision = engine.evaluate(issues, [], make_policy())

        assert decision.should_optimize is True
        assert decision.priority == Severity.CRITICAL


class TestPurity:
    """Test that evaluation is a pure function of its inputs."""

    def test_repeated_calls_are_identical(self, engine, high_issues, activity_12_percent):
        policy = make_policy()
        first = engine.evaluate(high_issues, activity_12_percent, policy)
        second = engine.evaluate(high_issues, activity_12_percent, policy)

        assert first == second
        assert first.model_dump() == second.model_dump()

    def test_decision_is_immutable(self, engine, high_issues):
        decision = engine.evaluate(high_issues, [], make_policy())
        with pytest.raises(Exception):
            decision.should_optimize = False


class TestTrend:
    """Test trend analysis over the activity sample."""

    def test_short_sample_is_stable(self):
        activity = [LogEntry(level=LogLevel.ERROR) for _ in range(9)]
        assert analyze_trend(activity) == Trend.STABLE

    def test_recent_errors_are_degrading(self):
        activity = [LogEntry(level=LogLevel.ERROR)] * 5 + [LogEntry(level=LogLevel.INFO)] * 5
        assert analyze_trend(activity) == Trend.DEGRADING

    def test_older_errors_are_improving(self):
        activity = [LogEntry(level=LogLevel.INFO)] * 5 + [LogEntry(level=LogLevel.ERROR)] * 5
        assert analyze_trend(activity) == Trend.IMPROVING

    def test_even_spread_is_stable(self, activity_12_percent):
        assert analyze_trend(activity_12_percent) == Trend.STABLE


class TestIssueHelpers:
    """Test pattern detection, prompt extraction and baseline scoring."""

    def test_recurring_patterns(self, high_issues):
        assert identify_patterns(high_issues) == ("Recurring hallucination issues (6 instances)",)

    def test_no_pattern_for_two_issues(self):
        issues = [DetectedIssue(type=IssueType.STRUCTURE_ERROR)] * 2
        assert identify_patterns(issues) == ()

    def test_extract_prompt_from_metadata(self, high_issues):
        assert extract_prompt(high_issues) == high_issues[0].metadata["prompt"]

    def test_extract_prompt_from_long_evidence(self):
        evidence = "You are a billing assistant. Answer questions about invoices and refunds only."
        issues = [DetectedIssue(type=IssueType.ACCURACY_ISSUE, metadata={"evidence": evidence})]
        assert extract_prompt(issues) == evidence

    def test_extract_prompt_fallback_names_issues(self):
        issues = [DetectedIssue(type=IssueType.ACCURACY_ISSUE, description="wrong dates")]
        prompt = extract_prompt(issues)

        assert prompt.startswith("You are an AI assistant.")
        assert "wrong dates" in prompt

    @pytest.mark.parametrize("severities, expected", [
        ([], 85.0),
        ([Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW], 44.0),
        ([Severity.HIGH] * 6, 10.0),
        ([Severity.CRITICAL] * 4, 0.0),
    ])
    def test_baseline_score(self, severities, expected):
        issues = [DetectedIssue(type=IssueType.HALLUCINATION, severity=s) for s in severities]
        assert baseline_score(issues) == expected
