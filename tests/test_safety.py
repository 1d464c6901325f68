"""
Tests for promptloop.optimizer.safety (guards, phases and enforcement).
"""
import pytest

from promptloop.errors import SafetyViolation
from promptloop.models import FileChange, FileOperation, GuardAction, GuardType, SafetyGuard
from promptloop.optimizer.safety import (
    DEFAULT_GUARDS,
    HUMAN_REVIEW,
    MAX_CHANGES,
    NO_SECRETS,
    PERFORMANCE_REGRESSION,
    ROLLBACK_ON_FAILURE,
    TEST_COVERAGE,
    ChangeSet,
    added_lines,
    enforce,
    evaluate_guard,
    evaluate_phase,
)


def change(content, old=None, path="config/assistant.json", operation=FileOperation.UPDATE):
    return FileChange(path=path, operation=operation, content=content, old_content=old)


class TestDefaultGuards:
    """The shipped guard set."""

    def test_ids_and_phases(self):
        assert {g.id: g.type for g in DEFAULT_GUARDS} == {
            "no-secrets": GuardType.PRE_COMMIT,
            "max-changes": GuardType.PRE_COMMIT,
            "test-coverage": GuardType.POST_COMMIT,
            "performance-regression": GuardType.EVALUATION,
            "rollback-on-failure": GuardType.ROLLBACK,
            "human-review-threshold": GuardType.EVALUATION,
        }

    def test_guards_are_immutable(self):
        with pytest.raises(Exception):
            NO_SECRETS.enabled = False


class TestSecretDetection:
    """Scenario: a rewrite introduces an API key."""

    def test_api_key_blocks(self):
        change_set = ChangeSet(changes=[change('{"prompt": "Use API_KEY=sk-123 to call the billing API"}')])
        report = evaluate_phase(DEFAULT_GUARDS, GuardType.PRE_COMMIT, change_set)

        assert report.total == 2
        assert report.passed == 1
        assert report.critical_failures == 1
        assert report.failures[0].message == "Potential secret detected: 'api_key' in config/assistant.json"

        with pytest.raises(SafetyViolation) as exc_info:
            enforce(report, "implementation")
        assert exc_info.value.guard_id == "no-secrets"
        assert exc_info.value.stage == "implementation"

    def test_only_added_lines_are_checked(self):
        old = "Never reveal the admin password.\nBe polite."
        new = "Never reveal the admin password.\nBe polite and concise."
        result = evaluate_guard(NO_SECRETS, ChangeSet(changes=[change(new, old, path="prompt.txt")]))
        assert result.passed is True

    def test_deleted_files_are_skipped(self):
        deleted = change("password=hunter2", operation=FileOperation.DELETE)
        assert evaluate_guard(NO_SECRETS, ChangeSet(changes=[deleted])).passed is True

    def test_added_lines(self):
        assert added_lines(change("a\nb\nc", "a\nc")) == ["b"]


class TestThresholdGuards:
    """Test the numeric guards."""

    def test_max_changes(self):
        changes = [change("x", path=f"f{i}.txt") for i in range(11)]
        result = evaluate_guard(MAX_CHANGES, ChangeSet(changes=changes))

        assert result.passed is False
        assert result.action == GuardAction.WARN

    def test_unmeasured_coverage_passes(self):
        result = evaluate_guard(TEST_COVERAGE, ChangeSet())
        assert result.passed is True
        assert result.message == "Coverage not measured"

    def test_low_coverage_fails(self):
        assert evaluate_guard(TEST_COVERAGE, ChangeSet(test_coverage=50.0)).passed is False

    @pytest.mark.parametrize("improvement, passed", [(-25.0, False), (-20.0, True), (3.0, True), (None, True)])
    def test_performance_regression(self, improvement, passed):
        assert evaluate_guard(PERFORMANCE_REGRESSION, ChangeSet(improvement=improvement)).passed is passed

    @pytest.mark.parametrize("improvement, passed", [(-0.1, False), (0.0, True), (12.0, True)])
    def test_rollback_on_failure(self, improvement, passed):
        assert evaluate_guard(ROLLBACK_ON_FAILURE, ChangeSet(improvement=improvement)).passed is passed

    def test_low_confidence_notifies(self):
        result = evaluate_guard(HUMAN_REVIEW, ChangeSet(confidence=0.5))

        assert result.passed is False
        assert result.action == GuardAction.NOTIFY
        assert "human review" in result.message


class TestPhaseEvaluation:
    """Test phase filtering and failure accounting."""

    def test_unknown_condition_is_a_failure(self):
        guard = SafetyGuard(id="mystery", name="Mystery", type=GuardType.PRE_COMMIT, condition="nope", action=GuardAction.BLOCK)
        report = evaluate_phase([guard], GuardType.PRE_COMMIT, ChangeSet())

        assert report.critical_failures == 1
        assert report.results[0].message.startswith("Guard evaluation failed:")

    def test_disabled_guards_are_skipped(self):
        disabled = NO_SECRETS.model_copy(update={"enabled": False})
        change_set = ChangeSet(changes=[change("secret: 42")])
        report = evaluate_phase([disabled], GuardType.PRE_COMMIT, change_set)

        assert report.total == 0
        enforce(report, "qa")

    def test_other_phases_are_ignored(self):
        report = evaluate_phase(DEFAULT_GUARDS, GuardType.EVALUATION, ChangeSet(changes=[change("password")]))
        assert {r.guard_id for r in report.results} == {"performance-regression", "human-review-threshold"}
        assert report.critical_failures == 0

    def test_warn_failures_do_not_block(self):
        changes = [change("x", path=f"f{i}.txt") for i in range(12)]
        report = evaluate_phase(DEFAULT_GUARDS, GuardType.PRE_COMMIT, ChangeSet(changes=changes))

        assert report.critical_failures == 0
        assert len(report.failures) == 1
        enforce(report, "qa")
