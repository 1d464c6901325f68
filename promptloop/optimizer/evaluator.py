"""
Evaluation agent: before/after scoring of the prompt change.
"""

import logging
import re
from dataclasses import dataclass, field

from promptloop.errors import ValidationError
from promptloop.models import AgentResult, Task, TaskType
from promptloop.optimizer.agents import missing_input
from promptloop.optimizer.scoring import HeuristicPromptScorer, PromptMetrics, PromptScorer

logger = logging.getLogger("promptloop.optimizer")

_WORD = re.compile(r"[a-z0-9_]+")


@dataclass
class EvaluationReport:
    before: PromptMetrics
    after: PromptMetrics
    improvement: float
    passed_tests: int = 0
    total_tests: int = 0
    secondary: dict[str, float] = field(default_factory=dict)


def calculate_improvement(before: PromptMetrics, after: PromptMetrics) -> float:
    """Relative change of the overall score, in percent."""
    if before.overall == 0:
        return 100.0 if after.overall > 0 else 0.0
    return round((after.overall - before.overall) / before.overall * 100, 4)


def secondary_metrics(before: str, after: str) -> dict[str, float]:
    """Descriptive, non-gating comparisons between the two prompt versions."""
    before_words = set(_WORD.findall(before.lower()))
    after_words = set(_WORD.findall(after.lower()))
    union = before_words | after_words
    before_lines = set(before.splitlines())
    return {
        "token_overlap": round(len(before_words & after_words) / len(union), 4) if union else 1.0,
        "original_retained": round(len(before_words & after_words) / len(before_words), 4) if before_words else 1.0,
        "length_ratio": round(len(after) / len(before), 4) if before else 0.0,
        "added_lines": float(sum(1 for line in after.splitlines() if line.strip() and line not in before_lines)),
    }


class EvaluationAgent:
    name = "evaluation-agent"
    capabilities = frozenset({TaskType.EVALUATION})

    def __init__(self, scorer: PromptScorer | None = None) -> None:
        self.scorer = scorer or HeuristicPromptScorer()

    def can_handle(self, task_type: TaskType) -> bool:
        return task_type in self.capabilities

    def execute(self, task: Task) -> AgentResult:
        missing = missing_input(task, "before", "after")
        if missing:
            raise ValidationError("Before and after prompts are required for evaluation", stage=TaskType.EVALUATION.value)

        before_prompt: str = task.metadata["before"]
        after_prompt: str = task.metadata["after"]
        before = self.scorer.measure(before_prompt)
        after = self.scorer.measure(after_prompt)

        qa = task.metadata.get("qa")
        passed = total = 0
        if qa is not None:
            passed = qa.tests.passed + qa.regression.passed
            total = qa.tests.total + qa.regression.total

        report = EvaluationReport(
            before=before,
            after=after,
            improvement=calculate_improvement(before, after),
            passed_tests=passed,
            total_tests=total,
            secondary=secondary_metrics(before_prompt, after_prompt)
        )
        logger.info(
            f"[bold blue][EVALUATION][/bold blue] Overall {before.overall:.3f} -> {after.overall:.3f} "
            f"({report.improvement:+.1f}%)"
        )

        return AgentResult(
            task_id=task.id,
            success=True,
            data=report,
            logs=[f"Evaluation completed with overall score: {after.overall:.3f}"],
            metrics={"improvement_score": report.improvement, "overall_score": after.overall}
        )
