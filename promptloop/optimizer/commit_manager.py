"""
Commit management for prompt changes.

This module applies validated change proposals to the workspace, with
timestamped sibling backups taken before any mutation, automatic restore on
validation or test failure, and the terminal commit/branch actions.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import NamedTuple, Sequence

from promptloop.const import BACKUP_MARKER, BACKUP_RETENTION_DAYS, EXTERNAL_CALL_TIMEOUT
from promptloop.errors import PromptLoopError, RollbackFailure
from promptloop.external import call_with_timeout
from promptloop.models import ChangeProposal, FileOperation
from promptloop.optimizer.validator import ValidationEngine, ValidationResult
from promptloop.workspace import Workspace

logger = logging.getLogger("promptloop.optimizer")


class BackupInfo(NamedTuple):
    """Information about a file backup."""

    backup_id: str
    original_path: str
    backup_path: str | None  # None: the file did not exist before the change
    created_at: datetime


@dataclass
class ApplyOutcome:
    """Result of applying a change proposal."""

    success: bool
    backups: list[BackupInfo] = field(default_factory=list)
    written: list[str] = field(default_factory=list)
    validation: list[ValidationResult] = field(default_factory=list)
    restored: bool = False
    error_message: str = ""


@dataclass
class CommitResult:
    """Result of a commit operation."""

    success: bool
    commit_hash: str | None = None
    branch: str | None = None
    skipped: bool = False
    error_message: str = ""


class CommitManager:
    """
    Manages safe application, commits and rollbacks of prompt changes.

    Args:
        workspace: Source tree the changes land in
        validator: Runs syntax checks and the user's test command
        test_command: Optional command run after changes are written
        dry_run: Skip commit and branch creation
        create_review_branch: Commit onto a fresh review branch
        retention_days: Number of days to keep backups
        timeout: Timeout in seconds for each workspace call
    """

    def __init__(
        self,
        workspace: Workspace,
        validator: ValidationEngine,
        test_command: Sequence[str] | None = None,
        dry_run: bool = False,
        create_review_branch: bool = False,
        retention_days: int = BACKUP_RETENTION_DAYS,
        timeout: float = EXTERNAL_CALL_TIMEOUT
    ) -> None:
        self.workspace = workspace
        self.validator = validator
        self.test_command = test_command
        self.dry_run = dry_run
        self.create_review_branch = create_review_branch
        self.retention_days = retention_days
        self.timeout = timeout

    def _call(self, func, *args):
        return call_with_timeout(func, *args, service="workspace", timeout=self.timeout)

    def create_backups(self, paths: Sequence[str]) -> list[BackupInfo]:
        """
        Create a timestamped sibling backup of every existing path.

        Paths that do not exist yet get a backup record without a file, so
        that restoring removes them again.
        """
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
        backups: list[BackupInfo] = []
        for path in dict.fromkeys(paths):
            backup_id = f"{Path(path).name}_{timestamp}"
            if self._call(self.workspace.exists, path):
                backup_path = f"{path}{BACKUP_MARKER}{timestamp}"
                self._call(self.workspace.write, backup_path, self._call(self.workspace.read, path))
                logger.info(f"Created backup {backup_id} for {path}")
            else:
                backup_path = None
            backups.append(BackupInfo(backup_id, path, backup_path, datetime.now()))
        return backups

    def restore_backups(self, backups: Sequence[BackupInfo]) -> list[str]:
        """
        Put every backed-up path back into its pre-change state.

        Restoring twice is a no-op the second time: paths that already match
        their backup are left untouched.

        Returns:
            Paths that were actually changed by this call

        Raises:
            RollbackFailure: If any path could not be restored
        """
        restored: list[str] = []
        failed: list[str] = []
        for info in backups:
            try:
                if info.backup_path is None:
                    if self._call(self.workspace.exists, info.original_path):
                        self._call(self.workspace.delete, info.original_path)
                        restored.append(info.original_path)
                    continue

                original = self._call(self.workspace.read, info.backup_path)
                current = (
                    self._call(self.workspace.read, info.original_path)
                    if self._call(self.workspace.exists, info.original_path) else None
                )
                if current != original:
                    self._call(self.workspace.write, info.original_path, original)
                    restored.append(info.original_path)
            except (PromptLoopError, OSError) as e:
                logger.error(f"Failed to restore {info.original_path} from {info.backup_path}: {e}")
                failed.append(info.original_path)

        if failed:
            raise RollbackFailure(
                f"Could not restore {len(failed)} path(s); the working tree may be inconsistent",
                paths=failed,
                stage="rollback"
            )
        if restored:
            logger.info(f"[bold yellow][ROLLBACK][/bold yellow] Restored {', '.join(restored)}")
        return restored

    def apply_changes(self, proposal: ChangeProposal) -> ApplyOutcome:
        """
        Back up, write, validate and test a change proposal.

        A validation or test failure restores the backups before returning.
        Any error raised after the backups exist restores them before it
        propagates.

        Args:
            proposal: The changes to apply

        Returns:
            ApplyOutcome describing what happened
        """
        backups = self.create_backups(proposal.paths)
        outcome = ApplyOutcome(success=False, backups=backups)

        try:
            for change in proposal.changes:
                if change.operation == FileOperation.DELETE:
                    self._call(self.workspace.delete, change.path)
                else:
                    self._call(self.workspace.write, change.path, change.content or "")
                outcome.written.append(change.path)

            files = {
                c.path: c.content or "" for c in proposal.changes if c.operation != FileOperation.DELETE
            }
            outcome.validation = self.validator.validate_all(files, self.test_command)
        except Exception:
            self.restore_backups(backups)
            raise

        if not self.validator.is_valid(outcome.validation):
            failure = next(r for r in outcome.validation if not r.success)
            outcome.error_message = failure.error_message
            self.restore_backups(backups)
            outcome.restored = True
            logger.error(f"[bold red][COMMIT][/bold red] Changes failed {failure.level.value} validation and were restored")
            return outcome

        outcome.success = True
        logger.info(f"[bold green][COMMIT][/bold green] Applied {len(outcome.written)} change(s)")
        return outcome

    def commit(self, message: str, paths: Sequence[str]) -> CommitResult:
        """Commit ``paths``, optionally on a new review branch. Skipped in dry-run mode."""
        if self.dry_run:
            logger.info("[bold green][COMMIT][/bold green] Dry run: skipping commit")
            return CommitResult(success=True, skipped=True)

        branch = None
        if self.create_review_branch:
            branch = f"promptloop-optimization-{datetime.now().strftime('%Y%m%d%H%M%S')}"
            self._call(self.workspace.create_branch, branch)

        commit_hash = call_with_timeout(
            self.workspace.commit, message, list(paths), service="workspace", timeout=self.timeout
        )
        return CommitResult(success=True, commit_hash=commit_hash, branch=branch)

    def discard_backups(self, backups: Sequence[BackupInfo]) -> int:
        """Remove backup files once they are no longer needed."""
        removed = 0
        for info in backups:
            if info.backup_path and self._call(self.workspace.exists, info.backup_path):
                self._call(self.workspace.delete, info.backup_path)
                removed += 1
        return removed

    def cleanup_old_backups(self, now: datetime | None = None) -> int:
        """
        Remove backups under the workspace root older than the retention period.

        Returns:
            Number of backups cleaned up
        """
        cutoff = (now or datetime.now()) - timedelta(days=self.retention_days)
        removed_count = 0
        for backup_file in Path(self.workspace.root).rglob(f"*{BACKUP_MARKER}*"):
            stamp = backup_file.name.rsplit(BACKUP_MARKER, 1)[-1]
            try:
                created_at = datetime.strptime(stamp, "%Y%m%d%H%M%S%f")
            except ValueError:
                continue
            if created_at < cutoff:
                try:
                    backup_file.unlink(missing_ok=True)
                    removed_count += 1
                    logger.info(f"Removed old backup {backup_file}")
                except OSError as e:
                    logger.warning(f"Failed to remove backup {backup_file}: {e}")
        return removed_count
