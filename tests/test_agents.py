"""
Tests for the agent registry and the feedback, QA and evaluation agents.
"""
import json
import pytest

from promptloop.errors import SafetyViolation, ValidationError
from promptloop.models import ChangeProposal, FileChange, FileOperation, Task, TaskType, TestSuiteResult
from promptloop.optimizer.agents import AgentRegistry
from promptloop.optimizer.evaluator import EvaluationAgent, calculate_improvement, secondary_metrics
from promptloop.optimizer.feedback import FeedbackAgent, SuggestionType, analyze_prompt
from promptloop.optimizer.qa import QAAgent
from promptloop.optimizer.safety import DEFAULT_GUARDS
from promptloop.optimizer.scoring import PromptMetrics

from conftest import ORIGINAL_PROMPT

TARGET = "config/assistant.json"
OLD_JSON = json.dumps({"name": "support-bot", "prompt": ORIGINAL_PROMPT}, indent=2) + "\n"


def proposal_with(content):
    return ChangeProposal(
        title="Optimize prompt",
        changes=[FileChange(path=TARGET, operation=FileOperation.UPDATE, content=content, old_content=OLD_JSON)]
    )


def good_proposal():
    return proposal_with(json.dumps({"name": "support-bot", "prompt": "You are precise. " + ORIGINAL_PROMPT}, indent=2))


class TestAgentRegistry:
    """Test capability lookup."""

    def test_find_by_capability(self):
        feedback, qa = FeedbackAgent(), QAAgent(DEFAULT_GUARDS)
        registry = AgentRegistry([feedback, qa])

        assert registry.find(TaskType.FEEDBACK) is feedback
        assert registry.find(TaskType.QA) is qa
        assert registry.find(TaskType.EVALUATION) is None

    def test_duplicate_capability_rejected(self):
        registry = AgentRegistry([FeedbackAgent()])
        with pytest.raises(ValueError):
            registry.register(FeedbackAgent())

    def test_status(self):
        registry = AgentRegistry([FeedbackAgent(), EvaluationAgent()])
        assert registry.status() == [
            {"name": "feedback-agent", "capabilities": ["feedback"], "available": True},
            {"name": "evaluation-agent", "capabilities": ["evaluation"], "available": True},
        ]


class TestFeedbackAgent:
    """Test prompt analysis and confidence."""

    def test_bare_prompt_suggestions(self):
        suggestions = analyze_prompt(ORIGINAL_PROMPT)
        assert [s.suggestion_type for s in suggestions] == [
            SuggestionType.STRUCTURE, SuggestionType.SAFETY, SuggestionType.CLARITY
        ]

    def test_metrics_raise_performance_suggestions(self):
        suggestions = analyze_prompt(ORIGINAL_PROMPT, {"hallucination_rate": 0.3, "response_quality": 0.5})

        assert suggestions[0].priority == 9
        assert sum(1 for s in suggestions if s.suggestion_type == SuggestionType.PERFORMANCE) == 2

    def test_complete_prompt_needs_nothing(self):
        prompt = "You are a support agent. Follow the output format. Rule: never guess."
        assert analyze_prompt(prompt) == []

    @pytest.mark.parametrize("improvement, confidence", [(None, 0.8), (20.0, 0.7), (60.0, 0.95), (-5.0, 0.3)])
    def test_confidence(self, improvement, confidence):
        task = Task(type=TaskType.FEEDBACK, metadata={"prompt": ORIGINAL_PROMPT, "candidate_improvement": improvement})
        result = FeedbackAgent().execute(task)

        assert result.success is True
        assert result.data.confidence == pytest.approx(confidence)
        assert result.metrics["suggestions_count"] == 3.0

    def test_missing_prompt(self):
        with pytest.raises(ValidationError):
            FeedbackAgent().execute(Task(type=TaskType.FEEDBACK))


class TestQAAgent:
    """Test the QA gates."""

    def test_good_proposal_is_approved(self):
        result = QAAgent(DEFAULT_GUARDS).execute(Task(type=TaskType.QA, metadata={"proposal": good_proposal()}))

        assert result.success is True
        assert result.data.recommendation == "APPROVE"
        assert result.data.issues == []
        assert result.metrics["safety_score"] == 100.0
        assert result.data.test_coverage is None

    def test_lost_placeholder_is_rejected(self):
        proposal = proposal_with(json.dumps({"name": "support-bot", "prompt": "Summarize the ticket in three sentences."}))
        result = QAAgent(DEFAULT_GUARDS).execute(Task(type=TaskType.QA, metadata={"proposal": proposal}))

        assert result.success is False
        assert result.data.recommendation == "REJECT"
        assert result.error.startswith("QA gates not met:")
        assert any("placeholders_preserved" in issue for issue in result.data.issues)

    def test_low_quality_is_rejected(self):
        class LowQuality:
            def score(self, proposal):
                return 40.0

        agent = QAAgent(DEFAULT_GUARDS, quality_scorer=LowQuality())
        result = agent.execute(Task(type=TaskType.QA, metadata={"proposal": good_proposal()}))

        assert result.success is False
        assert "Quality score 40 below 70" in result.data.issues

    def test_custom_runner(self):
        class FailingRunner:
            def run_functional(self, proposal):
                return TestSuiteResult(passed=3, total=5)

            def run_regression(self, proposal):
                return TestSuiteResult(passed=5, total=5)

        agent = QAAgent(DEFAULT_GUARDS, test_runner=FailingRunner())
        result = agent.execute(Task(type=TaskType.QA, metadata={"proposal": good_proposal()}))

        assert result.success is False
        assert result.metrics["tests_run"] == 10.0
        assert result.metrics["tests_passed"] == 8.0

    def test_secret_raises(self):
        proposal = proposal_with(json.dumps({"name": "support-bot", "prompt": ORIGINAL_PROMPT + " password: x"}))
        with pytest.raises(SafetyViolation):
            QAAgent(DEFAULT_GUARDS).execute(Task(type=TaskType.QA, metadata={"proposal": proposal}))

    def test_missing_proposal(self):
        with pytest.raises(ValidationError):
            QAAgent(DEFAULT_GUARDS).execute(Task(type=TaskType.QA))


class TestEvaluationAgent:
    """Test before/after scoring."""

    def test_improvement(self):
        after = (
            "You are a support agent. Instructions: use the output format shown in the example. "
            "Only state verifiable facts and avoid guessing. Be clear, structured and detailed."
        )
        task = Task(type=TaskType.EVALUATION, metadata={"before": "You are a helpful assistant.", "after": after})
        result = EvaluationAgent().execute(task)

        assert result.success is True
        assert result.data.improvement == pytest.approx(35.7143, abs=1e-3)
        assert result.metrics["overall_score"] == pytest.approx(0.95)

    def test_counts_come_from_qa(self):
        qa = QAAgent(DEFAULT_GUARDS).execute(Task(type=TaskType.QA, metadata={"proposal": good_proposal()})).data
        task = Task(type=TaskType.EVALUATION, metadata={"before": ORIGINAL_PROMPT, "after": ORIGINAL_PROMPT, "qa": qa})
        report = EvaluationAgent().execute(task).data

        assert (report.passed_tests, report.total_tests) == (5, 5)
        assert report.improvement == 0.0

    def test_missing_inputs(self):
        with pytest.raises(ValidationError):
            EvaluationAgent().execute(Task(type=TaskType.EVALUATION, metadata={"before": "x"}))

    def test_calculate_improvement_from_zero(self):
        zero = PromptMetrics(structure_compliance=0.0, hallucination_rate=1.0, response_quality=0.0)
        some = PromptMetrics(structure_compliance=0.5, hallucination_rate=0.5, response_quality=0.5)

        assert calculate_improvement(zero, some) == 100.0
        assert calculate_improvement(zero, zero) == 0.0

    def test_secondary_metrics(self):
        metrics = secondary_metrics("a b", "a b c")
        assert metrics == {"token_overlap": 0.6667, "original_retained": 1.0, "length_ratio": 1.6667, "added_lines": 1.0}
