"""
Tests for promptloop.optimizer.learning (LearningStore and strategy prioritization).
"""
import pytest
from datetime import datetime, timedelta

from promptloop.models import DetectedIssue, HistoryRecord, IssueType
from promptloop.optimizer.learning import LearningStore, build_insights, prioritize_strategies


def record(strategy, success, issue_types=(), domain=None, age_days=0, user_id="user-1", app_id="app-1"):
    return HistoryRecord(
        user_id=user_id,
        app_id=app_id,
        strategy=strategy,
        success=success,
        issue_types=list(issue_types),
        domain=domain,
        timestamp=datetime.now() - timedelta(days=age_days)
    )


@pytest.fixture
def learning(store):
    return LearningStore(store)


class TestLearningStore:
    """Test persistence of attempts and derived history."""

    def test_record_and_read_back(self, learning):
        learning.record_attempt(record("hybrid", True, ["hallucination"]))

        history = learning.history("user-1", "app-1")
        assert len(history) == 1
        assert history[0].strategy == "hybrid"
        assert history[0].issue_types == ["hallucination"]

    def test_history_is_scoped_to_user_and_app(self, learning):
        learning.record_attempt(record("hybrid", True))
        learning.record_attempt(record("hybrid", True, app_id="other-app"))

        assert len(learning.history("user-1", "app-1")) == 1

    def test_old_history_is_ignored(self, learning):
        learning.record_attempt(record("hybrid", True, age_days=45))
        learning.record_attempt(record("clarity-focus", True, age_days=1))

        history = learning.history("user-1", "app-1")
        assert [r.strategy for r in history] == ["clarity-focus"]

    def test_history_is_newest_first_and_limited(self, store):
        learning = LearningStore(store, limit=2)
        for age, strategy in enumerate(["hybrid", "clarity-focus", "example-driven"]):
            learning.record_attempt(record(strategy, True, age_days=age))

        assert [r.strategy for r in learning.history("user-1", "app-1")] == ["hybrid", "clarity-focus"]

    def test_historical_success_rate(self, learning):
        assert learning.historical_success_rate("user-1", "app-1") == 0.5

        for success in (True, True, True, False):
            learning.record_attempt(record("hybrid", success))
        assert learning.historical_success_rate("user-1", "app-1") == 0.75

    def test_insights_are_not_cached(self, learning):
        assert learning.insights("user-1", "app-1").success_counts == {}

        learning.record_attempt(record("hybrid", True))
        assert learning.insights("user-1", "app-1").success_counts == {"hybrid": 1}


class TestBuildInsights:
    """Test insight derivation from raw history."""

    def test_defaults_without_history(self):
        insights = build_insights([])
        assert insights.issue_type_to_strategies["hallucination"] == ["clarity-focus", "constraint-heavy"]
        assert insights.success_rate("hybrid") == 0.5

    def test_success_extends_issue_and_domain_maps(self):
        insights = build_insights([record("hybrid", True, ["hallucination"], domain="legal")])

        assert insights.issue_type_to_strategies["hallucination"] == ["clarity-focus", "constraint-heavy", "hybrid"]
        assert insights.domain_to_strategies == {"legal": ["hybrid"]}
        assert insights.success_counts == {"hybrid": 1}

    def test_failures_only_count(self):
        insights = build_insights([record("hybrid", False, ["hallucination"], domain="legal")])

        assert insights.failure_counts == {"hybrid": 1}
        assert "hybrid" not in insights.issue_type_to_strategies["hallucination"]
        assert insights.domain_to_strategies == {}

    def test_net_score_and_success_rate(self):
        history = [record("hybrid", True), record("hybrid", True), record("hybrid", False)]
        insights = build_insights(history)

        assert insights.net_score("hybrid") == 1.5
        assert insights.success_rate("hybrid") == pytest.approx(2 / 3)


class TestPrioritizeStrategies:
    """Test strategy ordering for a generation round."""

    def test_all_strategies_without_issues(self):
        ids = [s.id for s in prioritize_strategies(build_insights([]))]
        assert ids == ["clarity-focus", "example-driven", "structure-optimization", "constraint-heavy", "hybrid"]

    def test_filters_to_issue_affinity(self, high_issues):
        ids = [s.id for s in prioritize_strategies(build_insights([]), high_issues)]
        assert ids == ["clarity-focus", "constraint-heavy"]

    def test_restores_general_strategies_when_filter_is_too_strict(self):
        issues = [DetectedIssue(type=IssueType.PERFORMANCE_DEGRADATION)]
        ids = [s.id for s in prioritize_strategies(build_insights([]), issues)]
        assert ids == ["constraint-heavy", "clarity-focus", "example-driven"]

    def test_domain_strategies_come_first(self, high_issues):
        insights = build_insights([record("hybrid", True, domain="legal")])
        ids = [s.id for s in prioritize_strategies(insights, high_issues, domain="legal")]
        assert ids == ["hybrid", "clarity-focus", "constraint-heavy"]

    def test_net_success_reorders(self, high_issues):
        insights = build_insights([record("constraint-heavy", True), record("clarity-focus", False)])
        ids = [s.id for s in prioritize_strategies(insights, high_issues)]
        assert ids == ["constraint-heavy", "clarity-focus"]

    def test_limit(self):
        assert len(prioritize_strategies(build_insights([]), limit=3)) == 3
