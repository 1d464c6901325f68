"""
Implementation agent: turns the selected candidate into file changes.

The prompt is replaced in its file according to the file type, a validation
test is generated alongside, the whole proposal is tried in a sandbox draft,
pre-commit guards run, and only then are the changes applied to the real
workspace through the commit manager.
"""

import ast
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from promptloop.errors import ValidationError
from promptloop.external import call_with_timeout
from promptloop.models import (
    AgentResult,
    ChangeProposal,
    FileChange,
    FileOperation,
    GuardReport,
    GuardType,
    SafetyGuard,
    Severity,
    Task,
    TaskType,
)
from promptloop.optimizer.agents import missing_input
from promptloop.optimizer.commit_manager import BackupInfo, CommitManager
from promptloop.optimizer.draft_manager import DraftManager
from promptloop.optimizer.safety import ChangeSet, enforce, evaluate_phase
from promptloop.optimizer.scoring import PLACEHOLDER_PATTERN
from promptloop.workspace import Workspace

logger = logging.getLogger("promptloop.optimizer")

PROMPT_FIELDS = ("prompt", "system_prompt", "systemPrompt", "instructions", "template")
ASSIGNMENT_PATTERN = re.compile(r"^(\s*\w+\s*=\s*)([\"'])(.*?)\2(.*)$")


def _replace_json(content: str, original: str, optimized: str) -> str | None:
    try:
        config = json.loads(content)
    except json.JSONDecodeError:
        return None
    if not isinstance(config, dict):
        return None

    updated = False
    for name in PROMPT_FIELDS:
        if config.get(name) == original:
            config[name] = optimized
            updated = True

    nested = config.get("prompts")
    if isinstance(nested, dict):
        for key, value in nested.items():
            if value == original:
                nested[key] = optimized
                updated = True

    if not updated:
        return None
    trailing = "\n" if content.endswith("\n") else ""
    return json.dumps(config, indent=2, ensure_ascii=False) + trailing


def _replace_python(content: str, original: str, optimized: str) -> str | None:
    lines = content.split("\n")
    updated = False
    for index, line in enumerate(lines):
        match = ASSIGNMENT_PATTERN.match(line)
        if not match:
            continue
        prefix, quote, body, rest = match.groups()
        try:
            value = ast.literal_eval(f"{quote}{body}{quote}")
        except (SyntaxError, ValueError):
            continue
        if value == original:
            lines[index] = f"{prefix}{json.dumps(optimized, ensure_ascii=False)}{rest}"
            updated = True

    if updated:
        return "\n".join(lines)

    for quote in ('"""', "'''"):
        block = f"{quote}{original}{quote}"
        if block in content and quote not in optimized and not optimized.endswith(quote[0]):
            return content.replace(block, f"{quote}{optimized}{quote}", 1)
    return None


def _replace_text(content: str, original: str, optimized: str, count: int = 1) -> str | None:
    if original not in content:
        return None
    return content.replace(original, optimized, count)


def replace_prompt(content: str, path: str, original: str, optimized: str) -> str:
    """
    Swap ``original`` for ``optimized`` inside a file, respecting its type.

    JSON files update known prompt fields and nested ``prompts``; Python files
    update matching string assignments; JS/TS replace every occurrence; any
    other file replaces the first occurrence.

    Raises:
        ValidationError: If the prompt cannot be found in the file
    """
    suffix = Path(path).suffix.lower()
    if suffix == ".json":
        updated = _replace_json(content, original, optimized)
    elif suffix == ".py":
        updated = _replace_python(content, original, optimized)
    elif suffix in (".js", ".ts"):
        updated = _replace_text(content, original, optimized, count=-1)
    else:
        updated = _replace_text(content, original, optimized)

    if updated is None:
        raise ValidationError(f"Prompt not found in {path}", stage=TaskType.IMPLEMENTATION.value)
    return updated


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_") or "prompt"


def validation_test_path(target_path: str, tests_dir: str) -> str:
    return f"{tests_dir.rstrip('/')}/test_{_slug(Path(target_path).stem)}_prompt.py"


def render_validation_test(target_path: str, tests_dir: str, original: str) -> str:
    """A pytest module checking the optimized prompt file still loads and keeps its placeholders."""
    depth = len(Path(tests_dir).parts)
    placeholders = sorted(set(PLACEHOLDER_PATTERN.findall(original)))
    suffix = Path(target_path).suffix.lower()

    if suffix == ".json":
        parse_check = "    json.loads(content)\n"
    elif suffix == ".py":
        parse_check = "    ast.parse(content)\n"
    else:
        parse_check = "    assert content.strip()\n"

    return (
        f"# Generated by promptloop to validate {target_path}\n"
        "import ast\n"
        "import json\n"
        "from pathlib import Path\n"
        "\n"
        f"TARGET = Path(__file__).resolve().parents[{depth}] / {target_path!r}\n"
        f"PLACEHOLDERS = {placeholders!r}\n"
        "\n"
        "\n"
        "def test_prompt_file_parses():\n"
        "    content = TARGET.read_text(encoding='utf-8')\n"
        f"{parse_check}"
        "\n"
        "\n"
        "def test_prompt_placeholders_preserved():\n"
        "    content = TARGET.read_text(encoding='utf-8')\n"
        "    for placeholder in PLACEHOLDERS:\n"
        "        assert placeholder in content\n"
    )


def assess_impact(change_count: int, confidence: float) -> Severity:
    if change_count > 5 or confidence > 0.9:
        return Severity.HIGH
    if change_count > 2 or confidence > 0.7:
        return Severity.MEDIUM
    return Severity.LOW


@dataclass
class ImplementationReport:
    proposal: ChangeProposal
    backups: list[BackupInfo] = field(default_factory=list)
    safety: GuardReport | None = None
    draft_id: str | None = None

    @property
    def changed_paths(self) -> list[str]:
        return self.proposal.paths


class ImplementationAgent:
    """
    Args:
        workspace: The real source tree
        commit_manager: Applies the proposal with backups and validation
        draft_manager: Runs the sandbox pass
        guards: Guard values; the pre-commit ones run before anything is written
        tests_dir: Directory for generated validation tests, relative to the root
    """

    name = "implementation-agent"
    capabilities = frozenset({TaskType.IMPLEMENTATION})

    def __init__(
        self,
        workspace: Workspace,
        commit_manager: CommitManager,
        draft_manager: DraftManager,
        guards: Sequence[SafetyGuard],
        tests_dir: str = "tests/promptloop"
    ) -> None:
        self.workspace = workspace
        self.commit_manager = commit_manager
        self.draft_manager = draft_manager
        self.guards = tuple(guards)
        self.tests_dir = tests_dir

    def can_handle(self, task_type: TaskType) -> bool:
        return task_type in self.capabilities

    def create_proposal(
        self,
        target_path: str,
        current_content: str,
        original_prompt: str,
        optimized_prompt: str,
        reason: str,
        confidence: float = 0.8
    ) -> ChangeProposal:
        changes = [
            FileChange(
                path=target_path,
                operation=FileOperation.UPDATE,
                content=replace_prompt(current_content, target_path, original_prompt, optimized_prompt),
                old_content=current_content,
                reason=reason
            )
        ]

        test_path = validation_test_path(target_path, self.tests_dir)
        test_exists = call_with_timeout(self.workspace.exists, test_path, service="workspace")
        changes.append(FileChange(
            path=test_path,
            operation=FileOperation.UPDATE if test_exists else FileOperation.CREATE,
            content=render_validation_test(target_path, self.tests_dir, original_prompt),
            old_content=call_with_timeout(self.workspace.read, test_path, service="workspace") if test_exists else None,
            reason="Create validation tests for optimized prompt"
        ))

        return ChangeProposal(
            title=f"Optimize prompt in {target_path}",
            description=reason,
            changes=changes,
            reasoning=f"Replace the prompt in {target_path} with the selected candidate",
            impact=assess_impact(len(changes), confidence),
            auto_approve=confidence > 0.85 and len(changes) <= 3
        )

    def execute(self, task: Task) -> AgentResult:
        missing = missing_input(task, "target_path", "original_prompt", "optimized_prompt")
        if missing:
            raise ValidationError(
                f"Missing required data for implementation: {', '.join(missing)}",
                stage=TaskType.IMPLEMENTATION.value
            )

        target_path: str = task.metadata["target_path"]
        if not call_with_timeout(self.workspace.exists, target_path, service="workspace"):
            raise ValidationError(f"Target file {target_path} does not exist", stage=TaskType.IMPLEMENTATION.value)

        current = call_with_timeout(self.workspace.read, target_path, service="workspace")
        feedback = task.metadata.get("feedback")
        confidence = getattr(feedback, "confidence", 0.8)
        proposal = self.create_proposal(
            target_path,
            current,
            task.metadata["original_prompt"],
            task.metadata["optimized_prompt"],
            reason=task.metadata.get("reason", "Automated prompt optimization"),
            confidence=confidence
        )
        logs = [f"Created implementation plan with {len(proposal.changes)} changes"]

        draft = self.draft_manager.create_draft(proposal, self.workspace)
        try:
            logs.append(f"Sandbox execution completed: {'SUCCESS' if draft.success else 'FAILED'}")
            if not draft.success:
                return AgentResult(
                    task_id=task.id,
                    success=False,
                    error=f"Sandbox execution failed: {'; '.join(draft.errors)}",
                    logs=logs
                )
        finally:
            self.draft_manager.cleanup_draft(draft.draft_id)

        safety = evaluate_phase(self.guards, GuardType.PRE_COMMIT, ChangeSet(changes=proposal.changes))
        enforce(safety, stage=TaskType.IMPLEMENTATION.value)
        logs.append(f"Pre-commit guards: {safety.passed}/{safety.total} passed")

        outcome = self.commit_manager.apply_changes(proposal)
        report = ImplementationReport(proposal=proposal, backups=outcome.backups, safety=safety, draft_id=draft.draft_id)
        if not outcome.success:
            logs.append("Changes failed validation and were restored")
            return AgentResult(task_id=task.id, success=False, data=report, error=outcome.error_message, logs=logs)

        logs.append(f"Applied {len(outcome.written)} changes successfully")
        return AgentResult(
            task_id=task.id,
            success=True,
            data=report,
            logs=logs,
            metrics={"changes_applied": float(len(outcome.written))}
        )
