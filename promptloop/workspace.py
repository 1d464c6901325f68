"""
Source-tree collaborator.

All operations are path-scoped under a single working root. Version control
operations shell out to ``git`` with a timeout, the same way the optimizer's
validation engine runs its test command.
"""

import logging
import subprocess
from pathlib import Path
from typing import Protocol, Sequence

from promptloop.const import EXTERNAL_CALL_TIMEOUT
from promptloop.errors import ExternalServiceError, ValidationError

logger = logging.getLogger("promptloop.workspace")


class Workspace(Protocol):
    root: Path

    def read(self, path: str) -> str: ...

    def write(self, path: str, content: str) -> None: ...

    def delete(self, path: str) -> None: ...

    def exists(self, path: str) -> bool: ...

    def commit(self, message: str, paths: Sequence[str]) -> str: ...

    def create_branch(self, name: str) -> None: ...

    def revert(self, paths: Sequence[str]) -> None: ...


class LocalWorkspace:
    """
    A working tree on the local filesystem, optionally under git.

    Args:
        root: The working root; every path is resolved relative to it
        timeout: Timeout in seconds for git subprocesses
        git_executable: Name or path of the git binary
    """

    def __init__(self, root: Path | str, timeout: float = EXTERNAL_CALL_TIMEOUT, git_executable: str = "git") -> None:
        self.root = Path(root).resolve()
        self.timeout = timeout
        self.git_executable = git_executable

    def resolve(self, path: str) -> Path:
        """Resolve ``path`` under the root, refusing anything that escapes it."""
        candidate = (self.root / path).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError:
            raise ValidationError(f"Path {path} is outside the workspace root {self.root}")
        return candidate

    def read(self, path: str) -> str:
        target = self.resolve(path)
        try:
            return target.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise
        except OSError as e:
            raise ExternalServiceError(f"Could not read {path}: {e}", service="workspace") from e

    def write(self, path: str, content: str) -> None:
        """Atomically replace ``path`` with ``content``."""
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_path = target.with_name(f"{target.name}.tmp")
        try:
            temp_path.write_text(content, encoding="utf-8")
            temp_path.replace(target)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise ExternalServiceError(f"Could not write {path}: {e}", service="workspace") from e

    def delete(self, path: str) -> None:
        try:
            self.resolve(path).unlink(missing_ok=True)
        except OSError as e:
            raise ExternalServiceError(f"Could not delete {path}: {e}", service="workspace") from e

    def exists(self, path: str) -> bool:
        return self.resolve(path).exists()

    def _git(self, *args: str) -> str:
        cmd = [self.git_executable, *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=self.root,
                timeout=self.timeout,
                capture_output=True,
                text=True
            )
        except subprocess.TimeoutExpired as e:
            raise ExternalServiceError(f"git {args[0]} timed out after {self.timeout}s", service="workspace") from e
        except FileNotFoundError as e:
            raise ExternalServiceError(f"git executable not found: {self.git_executable}", service="workspace") from e

        if result.returncode != 0:
            raise ExternalServiceError(
                f"git {args[0]} failed (exit code {result.returncode}): {result.stderr.strip()}",
                service="workspace"
            )
        return result.stdout.strip()

    def commit(self, message: str, paths: Sequence[str]) -> str:
        """Stage ``paths`` and commit them. Returns the new commit hash."""
        for path in paths:
            self.resolve(path)
        self._git("add", "--all", "--", *paths)
        self._git("commit", "-m", message, "--", *paths)
        commit_hash = self._git("rev-parse", "HEAD")
        logger.info(f"[bold green][WORKSPACE][/bold green] Committed {len(paths)} path(s) as {commit_hash[:8]}")
        return commit_hash

    def create_branch(self, name: str) -> None:
        self._git("checkout", "-b", name)
        logger.info(f"[bold green][WORKSPACE][/bold green] Created branch {name}")

    def revert(self, paths: Sequence[str]) -> None:
        """Discard uncommitted modifications to ``paths``."""
        for path in paths:
            self.resolve(path)
        self._git("checkout", "--", *paths)
