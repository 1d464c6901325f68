"""
Feedback agent: analyzes the current prompt for improvement opportunities.

Suggestions come from structural and safety heuristics over the prompt and
its file, plus the current metrics when they are known.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from promptloop.errors import ValidationError
from promptloop.models import AgentResult, Task, TaskType
from promptloop.optimizer.agents import missing_input

logger = logging.getLogger("promptloop.optimizer")


class SuggestionType(Enum):
    """Kinds of improvement suggestions."""

    STRUCTURE = "structure"
    CLARITY = "clarity"
    PERFORMANCE = "performance"
    SAFETY = "safety"


@dataclass
class Suggestion:
    """
    A ranked improvement suggestion.

    Attributes:
        suggestion_type: Area of the prompt the suggestion targets
        description: Human-readable description
        priority: Priority score (1-10, higher = more important)
        implementation: How the suggestion would be applied
    """

    suggestion_type: SuggestionType
    description: str
    priority: int
    implementation: str = ""


@dataclass
class FeedbackReport:
    suggestions: list[Suggestion] = field(default_factory=list)
    confidence: float = 0.8
    reasoning: str = ""


def analyze_prompt(prompt: str, current_metrics: dict[str, float] | None = None) -> list[Suggestion]:
    """
    Scan a prompt for missing structure, format and safety elements.

    Args:
        prompt: The prompt text
        current_metrics: Optional ``hallucination_rate`` and ``response_quality``

    Returns:
        Suggestions sorted by priority, highest first
    """
    content = prompt.lower()
    metrics = current_metrics or {}
    suggestions: list[Suggestion] = []

    if "system" not in content and "role" not in content and "you are" not in content:
        suggestions.append(Suggestion(
            SuggestionType.STRUCTURE,
            "Add explicit system role definition",
            priority=8,
            implementation="Define clear system role with specific instructions and constraints"
        ))

    if "format" not in content and "output" not in content:
        suggestions.append(Suggestion(
            SuggestionType.CLARITY,
            "Specify output format requirements",
            priority=5,
            implementation="Add structured output format specification with examples"
        ))

    if "constraint" not in content and "rule" not in content:
        suggestions.append(Suggestion(
            SuggestionType.SAFETY,
            "Add behavioral constraints and safety rules",
            priority=8,
            implementation="Include explicit safety constraints and behavioral guidelines"
        ))

    if metrics.get("hallucination_rate", 0.0) > 0.2:
        suggestions.append(Suggestion(
            SuggestionType.PERFORMANCE,
            "Reduce hallucination rate through better prompt engineering",
            priority=9,
            implementation="Add fact-checking instructions and source requirements"
        ))

    if metrics.get("response_quality", 1.0) < 0.7:
        suggestions.append(Suggestion(
            SuggestionType.PERFORMANCE,
            "Improve response quality with examples and templates",
            priority=5,
            implementation="Include high-quality response examples and templates"
        ))

    suggestions.sort(key=lambda s: s.priority, reverse=True)
    return suggestions


class FeedbackAgent:
    name = "feedback-agent"
    capabilities = frozenset({TaskType.FEEDBACK})

    def can_handle(self, task_type: TaskType) -> bool:
        return task_type in self.capabilities

    def execute(self, task: Task) -> AgentResult:
        missing = missing_input(task, "prompt")
        if missing:
            raise ValidationError("No prompt provided for feedback analysis", stage=TaskType.FEEDBACK.value)

        prompt: str = task.metadata["prompt"]
        suggestions = analyze_prompt(prompt, task.metadata.get("current_metrics"))

        improvement = task.metadata.get("candidate_improvement")
        if improvement is None:
            confidence = 0.8
        elif improvement > 0:
            confidence = min(0.95, improvement / 100 + 0.5)
        else:
            confidence = 0.3

        report = FeedbackReport(
            suggestions=suggestions,
            confidence=round(confidence, 4),
            reasoning=(
                f"Analysis based on prompt structure and current metrics. "
                f"{len(suggestions)} optimization opportunities identified."
            )
        )

        if suggestions:
            logger.info(f"Found {len(suggestions)} improvement suggestions")
            for i, suggestion in enumerate(suggestions[:3], 1):
                logger.info(f"  #{i} [{suggestion.priority}/10] {suggestion.suggestion_type.value}: {suggestion.description}")

        return AgentResult(
            task_id=task.id,
            success=True,
            data=report,
            logs=[f"Generated {len(suggestions)} optimization suggestions"],
            metrics={"suggestions_count": float(len(suggestions)), "confidence_score": report.confidence}
        )
