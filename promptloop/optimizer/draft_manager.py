"""
Sandbox drafts for change proposals.

Before anything touches the real workspace, a proposal is applied to a
throwaway copy of the affected files and validated there. Drafts live in a
temporary directory with unique identifiers so concurrent sessions never
collide.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from promptloop.external import call_with_timeout
from promptloop.models import ChangeProposal, FileOperation
from promptloop.optimizer.validator import ValidationEngine, ValidationResult
from promptloop.workspace import LocalWorkspace, Workspace

logger = logging.getLogger("promptloop.optimizer")


@dataclass
class Draft:
    """
    A sandboxed application of one proposal.

    Attributes:
        draft_id: Unique identifier for this draft
        root: Sandbox directory holding the copied and changed files
        proposal_id: The proposal applied in the sandbox
        results: Validation results from the sandbox pass
        created_at: Timestamp when draft was created
    """

    draft_id: str
    root: Path
    proposal_id: str
    created_at: datetime
    results: list[ValidationResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def errors(self) -> list[str]:
        return [r.error_message for r in self.results if not r.success]


class DraftManager:
    """
    Manages sandbox drafts during implementation.

    Args:
        draft_dir: Parent directory for sandboxes; the system temp dir when omitted
    """

    def __init__(self, draft_dir: Path | str | None = None) -> None:
        self.draft_dir = Path(draft_dir) if draft_dir else Path(tempfile.gettempdir()) / "promptloop-drafts"
        self.draft_dir.mkdir(parents=True, exist_ok=True)
        self._active_drafts: dict[str, Draft] = {}

    def create_draft(self, proposal: ChangeProposal, source: Workspace) -> Draft:
        """
        Copy the proposal's files from ``source`` into a sandbox, apply it and validate.

        Args:
            proposal: The changes to try
            source: The real workspace, only ever read

        Returns:
            The draft with its validation results
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        draft_id = f"{proposal.id}_{timestamp}"
        root = Path(tempfile.mkdtemp(prefix=f"{draft_id}_", dir=self.draft_dir))
        sandbox = LocalWorkspace(root)

        for path in proposal.paths:
            if call_with_timeout(source.exists, path, service="workspace"):
                sandbox.write(path, call_with_timeout(source.read, path, service="workspace"))

        for change in proposal.changes:
            if change.operation == FileOperation.DELETE:
                sandbox.delete(change.path)
            else:
                sandbox.write(change.path, change.content or "")

        validator = ValidationEngine(root)
        files = {
            c.path: sandbox.read(c.path) for c in proposal.changes if c.operation != FileOperation.DELETE
        }
        draft = Draft(
            draft_id=draft_id,
            root=root,
            proposal_id=proposal.id,
            created_at=datetime.now(),
            results=validator.validate_all(files)
        )
        self._active_drafts[draft_id] = draft

        logger.info(f"Created draft {draft_id} ({'valid' if draft.success else 'invalid'})")
        return draft

    def get_draft(self, draft_id: str) -> Draft | None:
        return self._active_drafts.get(draft_id)

    def cleanup_draft(self, draft_id: str) -> bool:
        """
        Remove a draft and its sandbox directory.

        Returns:
            True if draft was cleaned up, False if not found
        """
        draft = self._active_drafts.pop(draft_id, None)
        if draft is None:
            logger.warning(f"Draft {draft_id} not found for cleanup")
            return False
        shutil.rmtree(draft.root, ignore_errors=True)
        logger.info(f"Cleaned up draft {draft_id}")
        return True
