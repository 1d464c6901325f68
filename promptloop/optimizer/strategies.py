"""
Prompt rewrite strategies.

Each strategy is a templated, issue-aware transformation of the source
prompt. None of them call a model; the same prompt and context always
produce the same rewrite.
"""

from dataclasses import dataclass, field
from typing import Callable, Sequence

from promptloop.models import DetectedIssue, IssueType, Strategy

CLARITY = Strategy(
    id="clarity-focus",
    name="Clarity Enhancement",
    description="Improve prompt clarity and specificity",
    focus="clarity",
    modifications=(
        "Add specific instructions based on successful patterns",
        "Remove ambiguous language",
        "Clarify expected output format",
    ),
)

EXAMPLES = Strategy(
    id="example-driven",
    name="Example Integration",
    description="Add examples and demonstrations of the expected output",
    focus="examples",
    modifications=(
        "Include contextually relevant examples",
        "Show expected format from successful cases",
    ),
)

STRUCTURE = Strategy(
    id="structure-optimization",
    name="Structure Improvement",
    description="Organize the prompt into role, task and response structure",
    focus="structure",
    modifications=(
        "Add a role definition",
        "Structure the task as explicit steps",
    ),
)

CONSTRAINTS = Strategy(
    id="constraint-heavy",
    name="Enhanced Constraints",
    description="Apply explicit constraints that prevent common issues",
    focus="constraints",
    modifications=(
        "Add issue-specific constraints",
        "Apply quality controls",
    ),
)

HYBRID = Strategy(
    id="hybrid",
    name="Hybrid Approach",
    description="Combine role definition, structured approach and examples",
    focus="hybrid",
    modifications=(
        "Add a role definition",
        "Add a step-by-step approach",
        "Include up to two examples",
    ),
)

BASE_STRATEGIES: tuple[Strategy, ...] = (CLARITY, EXAMPLES, STRUCTURE, CONSTRAINTS, HYBRID)
STRATEGIES_BY_ID = {s.id: s for s in BASE_STRATEGIES}

# Strategies known to work per issue type before any history exists.
DEFAULT_ISSUE_PATTERNS: dict[str, list[str]] = {
    IssueType.HALLUCINATION.value: [CLARITY.id, CONSTRAINTS.id],
    IssueType.STRUCTURE_ERROR.value: [STRUCTURE.id, EXAMPLES.id],
    IssueType.ACCURACY_ISSUE.value: [CONSTRAINTS.id, CLARITY.id],
    IssueType.PERFORMANCE_DEGRADATION.value: [CONSTRAINTS.id],
}

ISSUE_ENHANCEMENTS: dict[IssueType, str] = {
    IssueType.HALLUCINATION: (
        "CRITICAL: Avoid hallucinations. Only provide verifiable, factual information. "
        "If unsure, explicitly state uncertainty."
    ),
    IssueType.STRUCTURE_ERROR: (
        "FORMAT CHECK: Ensure all output follows proper structure. Validate JSON, code, and markup syntax."
    ),
    IssueType.ACCURACY_ISSUE: (
        "ACCURACY VERIFICATION: Double-check all facts, numbers, dates, and specific claims before including them."
    ),
    IssueType.PERFORMANCE_DEGRADATION: (
        "EFFICIENCY: Provide concise, relevant responses without unnecessary elaboration."
    ),
}


@dataclass
class RewriteContext:
    """What a strategy may look at besides the prompt itself."""

    issues: Sequence[DetectedIssue] = ()
    domain: str | None = None
    examples: Sequence[str] = field(default_factory=list)

    def has_issue(self, issue_type: IssueType) -> bool:
        return any(issue.type == issue_type for issue in self.issues)

    @property
    def issue_types(self) -> list[IssueType]:
        seen: list[IssueType] = []
        for issue in self.issues:
            if issue.type not in seen:
                seen.append(issue.type)
        return seen


def role_definition(ctx: RewriteContext) -> str:
    if ctx.domain == "software-development":
        return "You are an expert software developer and technical consultant."
    if ctx.has_issue(IssueType.HALLUCINATION):
        return "You are a precise, fact-focused AI assistant that prioritizes accuracy above all else."
    return "You are an expert AI assistant focused on providing accurate, helpful responses."


def structured_intro(ctx: RewriteContext) -> str:
    if ctx.has_issue(IssueType.STRUCTURE_ERROR):
        return "You are a meticulous AI assistant specializing in well-structured, properly formatted responses."
    return "You are an expert assistant that provides structured, comprehensive solutions."


def relevant_examples(ctx: RewriteContext) -> list[str]:
    """Prior-art examples first, then built-in ones for the domain or issue mix."""
    examples = list(ctx.examples)
    if ctx.domain == "software-development":
        examples += [
            "Provide code examples with proper syntax and comments",
            "Explain technical concepts with practical applications",
        ]
    elif ctx.has_issue(IssueType.ACCURACY_ISSUE):
        examples += [
            "Always cite sources when making factual claims",
            'Use phrases like "According to..." or "Based on..." for verifiable information',
        ]
    return examples


def _clarity(prompt: str, ctx: RewriteContext) -> str:
    enhanced = prompt
    lowered = enhanced.lower()
    if "you are" not in lowered and "role:" not in lowered:
        enhanced = f"{role_definition(ctx)} {enhanced}"

    if ctx.has_issue(IssueType.HALLUCINATION):
        enhanced += (
            "\n\nIMPORTANT: Provide only factual, verifiable information. If uncertain about any details, "
            "explicitly state your uncertainty rather than guessing."
        )
    if ctx.has_issue(IssueType.ACCURACY_ISSUE):
        enhanced += (
            "\n\nAccuracy Guidelines: Double-check all facts, dates, and specific claims before including "
            "them in your response."
        )
    return enhanced


def _examples(prompt: str, ctx: RewriteContext) -> str:
    enhanced = prompt
    examples = relevant_examples(ctx)
    if examples:
        enhanced += "\n\nExamples:"
        for index, example in enumerate(examples, start=1):
            enhanced += f"\n{index}. {example}"

    if ctx.has_issue(IssueType.STRUCTURE_ERROR):
        enhanced += (
            "\n\nExpected output format:\n- Use clear headings\n- Structure information logically"
            "\n- Ensure proper JSON/markup syntax if applicable"
        )
    return enhanced


def _structure(prompt: str, ctx: RewriteContext) -> str:
    enhanced = f"{structured_intro(ctx)}\n\nTask: {prompt}"
    if ctx.has_issue(IssueType.STRUCTURE_ERROR):
        enhanced += (
            "\n\nStructure Requirements:\n1. Use proper formatting\n2. Validate any JSON or code syntax"
            "\n3. Ensure logical flow and organization"
        )
    enhanced += (
        "\n\nResponse Structure:\n1. Understand the request clearly\n2. Provide a structured, comprehensive answer"
        "\n3. Verify accuracy and completeness"
    )
    return enhanced


_ISSUE_CONSTRAINTS: dict[IssueType, tuple[str, ...]] = {
    IssueType.HALLUCINATION: (
        "Avoid making up facts or providing unverified information",
        "Clearly indicate when information is uncertain or approximate",
    ),
    IssueType.STRUCTURE_ERROR: (
        "Ensure proper formatting and syntax in all output",
        "Validate JSON, code, or markup before including in response",
    ),
    IssueType.PERFORMANCE_DEGRADATION: (
        "Provide concise, efficient responses",
        "Focus on essential information",
    ),
}


def _constraints(prompt: str, ctx: RewriteContext) -> str:
    lines = [
        "Keep responses accurate and factual",
        "Use professional, clear language",
        "Structure information logically",
    ]
    for issue_type in ctx.issue_types:
        lines.extend(_ISSUE_CONSTRAINTS.get(issue_type, ()))
    return f"{prompt}\n\nConstraints:" + "".join(f"\n- {line}" for line in lines)


def _hybrid(prompt: str, ctx: RewriteContext) -> str:
    enhanced = (
        f"{role_definition(ctx)}\n\nTask: {prompt}\n\nApproach:"
        "\n1. Analyze the request thoroughly"
        "\n2. Provide accurate, well-structured information"
        "\n3. Include relevant examples when helpful"
        "\n4. Ensure completeness and accuracy"
    )
    examples = relevant_examples(ctx)[:2]
    if examples:
        enhanced += "\n\nRelevant Examples:"
        for index, example in enumerate(examples, start=1):
            enhanced += f"\n{index}. {example}"
    return enhanced


_TRANSFORMS: dict[str, Callable[[str, RewriteContext], str]] = {
    "clarity": _clarity,
    "examples": _examples,
    "structure": _structure,
    "constraints": _constraints,
}


def apply_issue_enhancements(prompt: str, ctx: RewriteContext) -> str:
    enhanced = prompt
    for issue_type in IssueType:
        if ctx.has_issue(issue_type):
            enhanced += f"\n\n{ISSUE_ENHANCEMENTS[issue_type]}"
    return enhanced


def apply_strategy(prompt: str, strategy: Strategy, ctx: RewriteContext) -> str:
    """Rewrite ``prompt`` with ``strategy``; unknown focuses fall back to the hybrid rewrite."""
    transform = _TRANSFORMS.get(strategy.focus, _hybrid)
    return apply_issue_enhancements(transform(prompt, ctx), ctx)
