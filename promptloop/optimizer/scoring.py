"""
Pluggable test-runner and scorer interfaces with deterministic defaults.

The defaults only inspect the proposed content: they parse it, compare it
against what it replaces, and look for well-known prompt features. Results
for the same input never vary between runs.
"""

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from promptloop.models import ChangeProposal, FileOperation, TestCaseResult, TestSuiteResult
from promptloop.optimizer.validator import check_syntax

PLACEHOLDER_PATTERN = re.compile(r"\{\{?\s*[A-Za-z_][A-Za-z0-9_.]*\s*\}?\}")
CODE_SUFFIXES = {".py", ".js", ".ts", ".tsx", ".jsx"}


@dataclass(frozen=True)
class PromptMetrics:
    structure_compliance: float
    hallucination_rate: float
    response_quality: float

    @property
    def overall(self) -> float:
        return (self.structure_compliance + (1 - self.hallucination_rate) + self.response_quality) / 3


class TestRunner(Protocol):
    def run_functional(self, proposal: ChangeProposal) -> TestSuiteResult: ...

    def run_regression(self, proposal: ChangeProposal) -> TestSuiteResult: ...


class QualityScorer(Protocol):
    def score(self, proposal: ChangeProposal) -> float: ...


class PromptScorer(Protocol):
    def measure(self, prompt: str) -> PromptMetrics: ...


def _contains_any(text: str, *needles: str) -> bool:
    return any(n in text for n in needles)


class HeuristicPromptScorer:
    """Keyword heuristics over the prompt text, each metric in [0, 1]."""

    def measure(self, prompt: str) -> PromptMetrics:
        text = prompt.lower()

        structure = 0.5
        if _contains_any(text, "system", "role", "you are"):
            structure += 0.2
        if _contains_any(text, "instructions", "guidelines", "task:"):
            structure += 0.15
        if _contains_any(text, "format", "output"):
            structure += 0.1
        if _contains_any(text, "example", "sample"):
            structure += 0.05

        hallucination = 0.2
        if _contains_any(text, "fact", "verif", "source"):
            hallucination -= 0.1
        if _contains_any(text, "constraint", "rule", "must not", "avoid"):
            hallucination -= 0.05

        quality = 0.6
        if _contains_any(text, "clear", "specific"):
            quality += 0.1
        if _contains_any(text, "structured", "organized"):
            quality += 0.1
        if _contains_any(text, "detailed", "comprehensive"):
            quality += 0.1

        return PromptMetrics(
            structure_compliance=round(min(1.0, structure), 4),
            hallucination_rate=round(max(0.0, min(1.0, hallucination)), 4),
            response_quality=round(min(1.0, quality), 4)
        )


def _json_keys(content: str) -> set[str]:
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return set()
    return set(data) if isinstance(data, dict) else set()


class StaticTestRunner:
    """
    Functional and regression checks computed from the change set itself.

    Functional: every written file is non-empty and parses for its type.
    Regression: placeholders and top-level JSON keys of the old content
    survive, and prompt files are not truncated below half their length.
    """

    def run_functional(self, proposal: ChangeProposal) -> TestSuiteResult:
        results: list[TestCaseResult] = []
        for change in proposal.changes:
            if change.operation == FileOperation.DELETE:
                continue
            content = change.content or ""
            results.append(TestCaseResult(
                name=f"{change.path}::non_empty",
                status="pass" if content.strip() else "fail",
                error=None if content.strip() else "content is empty"
            ))
            error = check_syntax(content, change.path)
            results.append(TestCaseResult(
                name=f"{change.path}::parses",
                status="fail" if error else "pass",
                error=error
            ))
        return TestSuiteResult.from_results(results)

    def run_regression(self, proposal: ChangeProposal) -> TestSuiteResult:
        results: list[TestCaseResult] = []
        for change in proposal.changes:
            if change.operation != FileOperation.UPDATE or change.old_content is None:
                continue
            old, new = change.old_content, change.content or ""

            missing = set(PLACEHOLDER_PATTERN.findall(old)) - set(PLACEHOLDER_PATTERN.findall(new))
            results.append(TestCaseResult(
                name=f"{change.path}::placeholders_preserved",
                status="fail" if missing else "pass",
                error=f"missing placeholders: {sorted(missing)}" if missing else None
            ))

            if Path(change.path).suffix.lower() == ".json":
                lost = _json_keys(old) - _json_keys(new)
                results.append(TestCaseResult(
                    name=f"{change.path}::json_keys_preserved",
                    status="fail" if lost else "pass",
                    error=f"missing keys: {sorted(lost)}" if lost else None
                ))

            truncated = len(new) < len(old) * 0.5
            results.append(TestCaseResult(
                name=f"{change.path}::not_truncated",
                status="fail" if truncated else "pass",
                error=f"content shrank from {len(old)} to {len(new)} characters" if truncated else None
            ))
        return TestSuiteResult.from_results(results)


class StaticQualityScorer:
    """Starts at 100 and deducts for oversized, uncommented or unparseable files."""

    def score(self, proposal: ChangeProposal) -> float:
        score = 100.0
        for change in proposal.changes:
            if change.operation == FileOperation.DELETE:
                continue
            content = change.content or ""
            if len(content) > 10000:
                score -= 10
            suffix = Path(change.path).suffix.lower()
            if suffix in CODE_SUFFIXES and "#" not in content and "//" not in content:
                score -= 5
            if check_syntax(content, change.path):
                score -= 15
        return max(0.0, score)
