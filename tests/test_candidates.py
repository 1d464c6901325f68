"""
Tests for candidate generation, rewrite strategies and panel evaluation.
"""
import json
import pytest

from promptloop.errors import ValidationError
from promptloop.models import DetectedIssue, HistoryRecord, IssueType, ModelEvaluation, OptimizationCandidate, Strategy
from promptloop.optimizer.candidates import (
    CandidateContext,
    CandidateEvaluator,
    CandidateGenerator,
    combine_metrics,
    panel_score,
    rank_candidates,
    select_best,
)
from promptloop.optimizer.learning import LearningStore
from promptloop.optimizer.scoring import HeuristicPromptScorer
from promptloop.optimizer.strategies import (
    CLARITY,
    CONSTRAINTS,
    HYBRID,
    ISSUE_ENHANCEMENTS,
    STRUCTURE,
    RewriteContext,
    apply_strategy,
)

from conftest import ORIGINAL_PROMPT, FakeGenerationService, UnavailableGenerationService

PANEL = ["model-a", "model-b"]


def candidate(strategy, score, success_rate=0.5):
    return OptimizationCandidate(content="x", strategy=strategy, score=score, metadata={"success_rate": success_rate})


class TestStrategies:
    """Test the templated rewrites."""

    def test_clarity_adds_role_and_enhancement(self, high_issues):
        content = apply_strategy(ORIGINAL_PROMPT, CLARITY, RewriteContext(issues=high_issues))

        assert content.startswith("You are a precise, fact-focused AI assistant")
        assert ORIGINAL_PROMPT in content
        assert content.endswith(ISSUE_ENHANCEMENTS[IssueType.HALLUCINATION])

    def test_clarity_keeps_existing_role(self):
        prompt = "You are a support agent. Answer briefly."
        content = apply_strategy(prompt, CLARITY, RewriteContext())
        assert content == prompt

    def test_structure_wraps_task(self):
        content = apply_strategy(ORIGINAL_PROMPT, STRUCTURE, RewriteContext())
        assert f"Task: {ORIGINAL_PROMPT}" in content
        assert "Response Structure:" in content

    def test_constraints_are_issue_specific(self, high_issues):
        content = apply_strategy(ORIGINAL_PROMPT, CONSTRAINTS, RewriteContext(issues=high_issues))
        assert "Constraints:" in content
        assert "- Avoid making up facts or providing unverified information" in content

    def test_unknown_focus_uses_hybrid(self):
        odd = Strategy(id="odd", name="Odd", description="", focus="unknown")
        ctx = RewriteContext()
        assert apply_strategy(ORIGINAL_PROMPT, odd, ctx) == apply_strategy(ORIGINAL_PROMPT, HYBRID, ctx)

    def test_rewrites_are_deterministic(self, high_issues):
        ctx = RewriteContext(issues=high_issues, domain="support")
        assert apply_strategy(ORIGINAL_PROMPT, HYBRID, ctx) == apply_strategy(ORIGINAL_PROMPT, HYBRID, ctx)


class TestCandidateGenerator:
    """Test candidate generation."""

    def test_one_candidate_per_relevant_strategy(self, high_issues):
        generator = CandidateGenerator()
        candidates = generator.generate(ORIGINAL_PROMPT, CandidateContext(issues=high_issues))

        assert [c.strategy.id for c in candidates] == ["clarity-focus", "constraint-heavy"]
        for c in candidates:
            assert c.metadata["success_rate"] == 0.5
            assert c.metadata["context_match"] == 1.0
            assert c.metadata["issue_affinity"] is True

    def test_empty_prompt_raises(self):
        with pytest.raises(ValidationError):
            CandidateGenerator().generate("   ", CandidateContext())

    def test_uses_learning_store(self, store, high_issues):
        learning = LearningStore(store)
        learning.record_attempt(HistoryRecord(user_id="u", app_id="a", strategy="hybrid", success=True, domain="legal"))

        generator = CandidateGenerator(learning=learning)
        context = CandidateContext(user_id="u", app_id="a", issues=high_issues, domain="legal")
        candidates = generator.generate(ORIGINAL_PROMPT, context)

        assert candidates[0].strategy.id == "hybrid"
        assert candidates[0].metadata["success_rate"] == 1.0

    def test_similarity_examples_are_used(self):
        class Similar:
            def similar_prompts(self, prompt, limit):
                return ["Reply with the ticket id first"]

        generator = CandidateGenerator(similarity=Similar())
        issues = [DetectedIssue(type=IssueType.STRUCTURE_ERROR)]
        candidates = generator.generate(ORIGINAL_PROMPT, CandidateContext(issues=issues))

        examples = next(c for c in candidates if c.strategy.id == "example-driven")
        assert "1. Reply with the ticket id first" in examples.content

    def test_broken_similarity_is_ignored(self):
        class Broken:
            def similar_prompts(self, prompt, limit):
                raise RuntimeError("index offline")

        generator = CandidateGenerator(similarity=Broken())
        assert generator.generate(ORIGINAL_PROMPT, CandidateContext())


class TestCandidateEvaluator:
    """Test panel scoring and its local fallback."""

    def test_requires_a_panel(self):
        with pytest.raises(ValueError):
            CandidateEvaluator(None, [])

    def test_panel_scores(self, high_issues):
        service = FakeGenerationService()
        evaluator = CandidateEvaluator(service, PANEL)
        candidates = CandidateGenerator().generate(ORIGINAL_PROMPT, CandidateContext(issues=high_issues))

        ranked = evaluator.evaluate(candidates)

        assert len(service.calls) == 4
        assert [c.strategy.id for c in ranked] == ["clarity-focus", "constraint-heavy"]
        for c in ranked:
            assert c.score == pytest.approx(87.0)
            assert [e.model_id for e in c.evaluation_results] == PANEL
            assert not any(e.fallback for e in c.evaluation_results)

    def test_fenced_json_is_accepted(self):
        body = json.dumps({"hallucination_rate": 0.0, "structure_score": 1.0, "consistency_score": 1.0})
        service = FakeGenerationService(responses={"model-a": f"```json\n{body}\n```"})
        evaluator = CandidateEvaluator(service, ["model-a"])

        evaluation = evaluator.score_with_model(ORIGINAL_PROMPT, "model-a")
        assert evaluation.fallback is False
        assert combine_metrics(evaluation) == pytest.approx(100.0)

    def test_unparseable_response_falls_back(self):
        service = FakeGenerationService(responses={"model-a": "I think this prompt is great!"})
        evaluator = CandidateEvaluator(service, PANEL)

        ranked = evaluator.evaluate([OptimizationCandidate(content=ORIGINAL_PROMPT, strategy=CLARITY)])
        results = {e.model_id: e for e in ranked[0].evaluation_results}

        assert results["model-a"].fallback is True
        assert results["model-b"].fallback is False

    def test_unavailable_service_falls_back(self):
        evaluator = CandidateEvaluator(UnavailableGenerationService(), PANEL)
        ranked = evaluator.evaluate([OptimizationCandidate(content=ORIGINAL_PROMPT, strategy=CLARITY)])

        assert all(e.fallback for e in ranked[0].evaluation_results)
        assert ranked[0].score > 0

    def test_fallback_matches_heuristic(self):
        evaluator = CandidateEvaluator(None, ["model-a"])
        evaluation = evaluator.score_with_model("You are a helpful assistant.", "model-a")
        metrics = HeuristicPromptScorer().measure("You are a helpful assistant.")

        assert evaluation.fallback is True
        assert evaluation.structure_score == metrics.structure_compliance
        assert evaluation.hallucination_rate == metrics.hallucination_rate
        assert evaluation.consistency_score == metrics.response_quality

    def test_empty_input(self):
        assert CandidateEvaluator(None, PANEL).evaluate([]) == []


class TestRankingAndSelection:
    """Test the total order over candidates and baseline selection."""

    def test_panel_score_averages(self):
        evaluations = [
            ModelEvaluation(model_id="a", hallucination_rate=0.0, structure_score=1.0, consistency_score=1.0),
            ModelEvaluation(model_id="b", hallucination_rate=1.0, structure_score=0.0, consistency_score=0.0),
        ]
        assert panel_score(evaluations) == 50.0
        assert panel_score([]) == 0.0

    def test_score_then_success_rate_then_strategy_id(self):
        ranked = rank_candidates([
            candidate(HYBRID, 80.0, success_rate=0.9),
            candidate(STRUCTURE, 90.0, success_rate=0.1),
            candidate(CONSTRAINTS, 80.0, success_rate=0.5),
            candidate(CLARITY, 80.0, success_rate=0.5),
        ])
        assert [c.strategy.id for c in ranked] == [
            "structure-optimization", "hybrid", "clarity-focus", "constraint-heavy"
        ]

    def test_ranking_ignores_input_order(self):
        items = [candidate(CLARITY, 70.0), candidate(CONSTRAINTS, 70.0), candidate(HYBRID, 75.0)]
        assert [c.id for c in rank_candidates(items)] == [c.id for c in rank_candidates(list(reversed(items)))]

    def test_select_best_must_beat_baseline(self):
        ranked = [candidate(CLARITY, 60.0)]
        assert select_best(ranked, 60.0) is None
        assert select_best(ranked, 59.9) is ranked[0]
        assert select_best([], 0.0) is None
