"""
Candidate generation and panel evaluation.

Generation applies the prioritized strategies to the source prompt.
Evaluation sends every candidate to a fixed panel of models concurrently and
combines the returned metrics into a single score. A model that fails or
answers with something unparseable is replaced by the local heuristic for
that candidate, so evaluation itself never fails a session.
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from textwrap import dedent
from typing import Protocol, Sequence

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from promptloop.errors import ExternalServiceError, ValidationError
from promptloop.generation import GenerationService
from promptloop.models import DetectedIssue, LearningInsights, ModelEvaluation, OptimizationCandidate
from promptloop.optimizer.learning import LearningStore, build_insights, prioritize_strategies
from promptloop.optimizer.scoring import HeuristicPromptScorer, PromptScorer
from promptloop.optimizer.strategies import RewriteContext, apply_strategy

logger = logging.getLogger("promptloop.candidates")

EVALUATION_INSTRUCTIONS = dedent("""
    You are a strict evaluator of LLM system prompts.

    Judge how a capable model would behave when given the prompt below and
    return ONLY a JSON object with these fields, each a number between 0 and 1:
    - hallucination_rate: how likely responses are to contain invented facts
    - structure_score: how well responses would follow a clear, valid structure
    - consistency_score: how consistent responses would be across similar inputs
""").strip()


class PanelScores(BaseModel):
    hallucination_rate: float = Field(ge=0.0, le=1.0, description="Likelihood of invented facts.")
    structure_score: float = Field(ge=0.0, le=1.0, description="Adherence to a clear, valid structure.")
    consistency_score: float = Field(ge=0.0, le=1.0, description="Consistency across similar inputs.")


class SimilaritySearch(Protocol):
    def similar_prompts(self, prompt: str, limit: int) -> list[str]: ...


@dataclass
class CandidateContext:
    user_id: str | None = None
    app_id: str | None = None
    issues: Sequence[DetectedIssue] = field(default_factory=list)
    domain: str | None = None


def combine_metrics(evaluation: ModelEvaluation) -> float:
    return 100 * (
        0.4 * (1 - evaluation.hallucination_rate)
        + 0.3 * evaluation.structure_score
        + 0.3 * evaluation.consistency_score
    )


def panel_score(evaluations: Sequence[ModelEvaluation]) -> float:
    if not evaluations:
        return 0.0
    return round(sum(combine_metrics(e) for e in evaluations) / len(evaluations), 4)


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rsplit("```", 1)[0]
    return text.strip()


class CandidateGenerator:
    """
    Builds one candidate per prioritized strategy.

    Args:
        learning: Source of learning insights; defaults are used without it
        similarity: Optional prior-art lookup seeding the example strategies
        max_candidates: Cap on strategies tried per round
    """

    def __init__(
        self,
        learning: LearningStore | None = None,
        similarity: SimilaritySearch | None = None,
        max_candidates: int = 5
    ) -> None:
        self.learning = learning
        self.similarity = similarity
        self.max_candidates = max_candidates

    def insights_for(self, context: CandidateContext) -> LearningInsights:
        if self.learning and context.user_id and context.app_id:
            return self.learning.insights(context.user_id, context.app_id)
        return build_insights([])

    def _examples(self, prompt: str) -> list[str]:
        if self.similarity is None:
            return []
        try:
            return list(self.similarity.similar_prompts(prompt, 2))
        except Exception as e:
            logger.warning(f"Similarity search unavailable, continuing without examples: {e}")
            return []

    def generate(
        self,
        prompt: str,
        context: CandidateContext,
        insights: LearningInsights | None = None
    ) -> list[OptimizationCandidate]:
        """
        Generate candidates for ``prompt``.

        Args:
            prompt: The current prompt text
            context: Issues, domain and owner of the prompt
            insights: Precomputed insights; rebuilt from the store when omitted

        Returns:
            One candidate per strategy, in priority order

        Raises:
            ValidationError: If the prompt is empty
        """
        if not prompt or not prompt.strip():
            raise ValidationError("Cannot generate candidates for an empty prompt", stage="generation")

        insights = insights or self.insights_for(context)
        strategies = prioritize_strategies(insights, context.issues, context.domain, self.max_candidates)
        rewrite_ctx = RewriteContext(issues=context.issues, domain=context.domain, examples=self._examples(prompt))

        relevant = {
            sid for issue in context.issues for sid in insights.issue_type_to_strategies.get(issue.type.value, [])
        }
        candidates = []
        for strategy in strategies:
            context_match = 0.5
            context_match += 0.2 * sum(
                1 for issue in context.issues
                if strategy.id in insights.issue_type_to_strategies.get(issue.type.value, [])
            )
            if context.domain and strategy.id in insights.domain_to_strategies.get(context.domain, []):
                context_match += 0.3

            candidates.append(OptimizationCandidate(
                content=apply_strategy(prompt, strategy, rewrite_ctx),
                strategy=strategy,
                metadata={
                    "success_rate": insights.success_rate(strategy.id),
                    "context_match": round(min(1.0, context_match), 4),
                    "issue_affinity": strategy.id in relevant,
                }
            ))

        logger.info(
            f"[bold cyan][CANDIDATES][/bold cyan] Generated {len(candidates)} candidates: "
            f"{', '.join(c.strategy.id for c in candidates)}"
        )
        return candidates


class CandidateEvaluator:
    """
    Scores candidates against a fixed model panel.

    Args:
        service: Generation service; every score falls back to heuristics without one
        models: The evaluation panel
        scorer: Local heuristic used when a model cannot be used
        max_workers: Concurrent evaluation calls
    """

    def __init__(
        self,
        service: GenerationService | None,
        models: Sequence[str],
        scorer: PromptScorer | None = None,
        max_workers: int = 4
    ) -> None:
        if not models:
            raise ValueError("The evaluation panel needs at least one model")
        self.service = service
        self.models = list(models)
        self.scorer = scorer or HeuristicPromptScorer()
        self.max_workers = max_workers

    def heuristic_evaluation(self, content: str, model_id: str) -> ModelEvaluation:
        metrics = self.scorer.measure(content)
        return ModelEvaluation(
            model_id=model_id,
            hallucination_rate=metrics.hallucination_rate,
            structure_score=metrics.structure_compliance,
            consistency_score=metrics.response_quality,
            fallback=True
        )

    def score_with_model(self, content: str, model_id: str) -> ModelEvaluation:
        if self.service is None:
            return self.heuristic_evaluation(content, model_id)

        try:
            response = self.service.complete(EVALUATION_INSTRUCTIONS, content, model_id, response_schema=PanelScores)
            if isinstance(response.parsed, PanelScores):
                scores = response.parsed
            else:
                scores = PanelScores.model_validate_json(_strip_fences(response.text))
        except ExternalServiceError as e:
            logger.warning(f"{model_id} unavailable, using local scoring: {e.message}")
            return self.heuristic_evaluation(content, model_id)
        except (PydanticValidationError, json.JSONDecodeError, ValueError) as e:
            logger.warning(f"{model_id} returned unparseable scores, using local scoring: {e}")
            return self.heuristic_evaluation(content, model_id)

        return ModelEvaluation(model_id=model_id, **scores.model_dump())

    def evaluate(self, candidates: Sequence[OptimizationCandidate]) -> list[OptimizationCandidate]:
        """Score every candidate on every panel model concurrently, then rank."""
        if not candidates:
            return []

        jobs = [(c, m) for c in candidates for m in self.models]
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="promptloop-panel") as pool:
            evaluations = list(pool.map(lambda job: self.score_with_model(job[0].content, job[1]), jobs))

        scored = []
        for index, candidate in enumerate(candidates):
            panel = evaluations[index * len(self.models):(index + 1) * len(self.models)]
            scored.append(candidate.model_copy(update={"evaluation_results": panel, "score": panel_score(panel)}))

        return rank_candidates(scored)


def rank_candidates(candidates: Sequence[OptimizationCandidate]) -> list[OptimizationCandidate]:
    """
    Total order over scored candidates.

    Descending by score; equal scores are ordered by the strategy's
    historical success rate, then by strategy id.
    """
    def success_rate(c: OptimizationCandidate) -> float:
        return float(c.metadata.get("success_rate", 0.0))

    return sorted(candidates, key=lambda c: (-(c.score or 0.0), -success_rate(c), c.strategy.id, c.id))


def select_best(
    ranked: Sequence[OptimizationCandidate],
    baseline_score: float
) -> OptimizationCandidate | None:
    """The top candidate, or None when it does not beat the baseline."""
    if not ranked:
        return None
    best = ranked[0]
    if (best.score or 0.0) <= baseline_score:
        logger.info(
            f"[bold cyan][CANDIDATES][/bold cyan] Best candidate {best.strategy.id} scored "
            f"{best.score} which does not beat baseline {baseline_score}"
        )
        return None
    return best
