"""
Shared fixtures and fakes for the promptloop test suite.
"""
import json
import pytest
from pathlib import Path

from promptloop.errors import ExternalServiceError
from promptloop.generation import GenerationResponse
from promptloop.models import AutonomousPolicy, DetectedIssue, IssueType, LogEntry, LogLevel, Severity
from promptloop.storage import RecordStore
from promptloop.workspace import LocalWorkspace

ORIGINAL_PROMPT = "Summarize the customer ticket for {customer_name} in three sentences."


class FakeGenerationService:
    """Returns canned panel scores, or raises, and records every call."""

    def __init__(self, responses=None, error=None):
        self.responses = responses or {}
        self.error = error
        self.calls = []

    def complete(self, system_instructions, user_content, model_id, response_schema=None):
        self.calls.append((model_id, user_content))
        if self.error is not None:
            raise self.error
        text = self.responses.get(model_id, json.dumps({
            "hallucination_rate": 0.1,
            "structure_score": 0.9,
            "consistency_score": 0.8,
        }))
        return GenerationResponse(text=text, model_id=model_id)


class UnavailableGenerationService(FakeGenerationService):
    def __init__(self):
        super().__init__(error=ExternalServiceError("service down", service="generation"))


class RecordingWorkspace(LocalWorkspace):
    """Local workspace that records commits instead of calling git."""

    def __init__(self, root):
        super().__init__(root)
        self.commits = []
        self.branches = []

    def commit(self, message, paths):
        self.commits.append((message, list(paths)))
        return f"{len(self.commits):040x}"

    def create_branch(self, name):
        self.branches.append(name)


@pytest.fixture
def repo_root(tmp_path):
    """A small source tree with one JSON prompt file and one Python prompt module."""
    root = tmp_path / "repo"
    (root / "config").mkdir(parents=True)
    (root / "config" / "assistant.json").write_text(
        json.dumps({"name": "support-bot", "prompt": ORIGINAL_PROMPT}, indent=2) + "\n",
        encoding="utf-8"
    )
    (root / "prompts.py").write_text(
        f"# Prompts used by the support bot\nSYSTEM_PROMPT = {ORIGINAL_PROMPT!r}\n",
        encoding="utf-8"
    )
    return root


@pytest.fixture
def workspace(repo_root):
    return RecordingWorkspace(repo_root)


@pytest.fixture
def store(tmp_path):
    return RecordStore(tmp_path / "store")


@pytest.fixture
def high_issues():
    """Six high-severity hallucination issues raised against the original prompt."""
    return [
        DetectedIssue(
            type=IssueType.HALLUCINATION,
            severity=Severity.HIGH,
            description=f"Invented order number #{i}",
            metadata={"prompt": ORIGINAL_PROMPT}
        )
        for i in range(6)
    ]


@pytest.fixture
def activity_12_percent():
    """Fifty log entries, newest first, six of them errors spread evenly across both halves."""
    error_positions = {0, 10, 20, 25, 35, 45}
    return [
        LogEntry(log_content=f"request {i}", level=LogLevel.ERROR if i in error_positions else LogLevel.INFO)
        for i in range(50)
    ]


@pytest.fixture
def auto_policy():
    """Policy that applies optimizations without waiting for approval."""
    return AutonomousPolicy.model_validate({
        "user_id": "user-1",
        "app_id": "app-1",
        "thresholds": {"issue_count": 5, "error_rate": 10.0, "critical_issue_threshold": 1},
        "optimization_settings": {"require_approval": False, "auto_apply": True},
    })


@pytest.fixture
def sample_file(repo_root) -> Path:
    return repo_root / "config" / "assistant.json"
