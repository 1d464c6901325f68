"""
Validation engine for applied prompt changes.

Syntax checks appropriate to each file type run right after changes are
written; the optional user-configured test command runs next. Either failing
sends the commit manager down its restore path.
"""

import ast
import json
import logging
import subprocess
import tomllib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Sequence

logger = logging.getLogger("promptloop.optimizer")


class ValidationLevel(Enum):
    """Validation check levels."""

    SYNTAX = "syntax"
    TESTS = "tests"


@dataclass
class ValidationResult:
    """Result of a validation check."""

    level: ValidationLevel
    success: bool
    error_message: str = ""
    output: str = ""
    path: str = ""


def check_syntax(content: str, path: str) -> str | None:
    """
    Parse ``content`` according to the type implied by ``path``.

    Returns:
        An error message, or None when the content parses (or the file type
        has no parser)
    """
    suffix = Path(path).suffix.lower()
    try:
        if suffix == ".py":
            ast.parse(content)
        elif suffix == ".json":
            json.loads(content)
        elif suffix == ".toml":
            tomllib.loads(content)
    except SyntaxError as e:
        return f"Syntax error at line {e.lineno}: {e.msg}"
    except json.JSONDecodeError as e:
        return f"Invalid JSON at line {e.lineno}: {e.msg}"
    except tomllib.TOMLDecodeError as e:
        return f"Invalid TOML: {e}"
    return None


class ValidationEngine:
    """
    Validates written files and runs the user's test command.

    Args:
        project_root: Working directory for the test command
        timeout: Timeout in seconds for the test command
    """

    def __init__(self, project_root: Path | str, timeout: int = 120) -> None:
        self.project_root = Path(project_root)
        self.timeout = timeout

    def validate_syntax(self, content: str, path: str) -> ValidationResult:
        error = check_syntax(content, path)
        return ValidationResult(
            level=ValidationLevel.SYNTAX,
            success=error is None,
            error_message=f"{path}: {error}" if error else "",
            path=path
        )

    def run_test_command(self, command: Sequence[str]) -> ValidationResult:
        """
        Run the user-configured test command with a timeout.

        Args:
            command: argv of the test command

        Returns:
            ValidationResult with test execution status
        """
        logger.info(f"Running tests: {' '.join(command)}")

        try:
            result = subprocess.run(
                list(command),
                cwd=self.project_root,
                timeout=self.timeout,
                capture_output=True,
                text=True
            )
        except subprocess.TimeoutExpired:
            return ValidationResult(
                level=ValidationLevel.TESTS,
                success=False,
                error_message=f"Test execution timeout ({self.timeout}s)"
            )
        except FileNotFoundError:
            return ValidationResult(
                level=ValidationLevel.TESTS,
                success=False,
                error_message=f"Test command not found: {command[0]}"
            )
        except OSError as e:
            return ValidationResult(
                level=ValidationLevel.TESTS,
                success=False,
                error_message=f"Test command could not be started: {e}"
            )

        full_output = result.stdout + "\n" + result.stderr
        if len(full_output) > 1000:
            full_output = "...[truncated]...\n" + full_output[-1000:]

        if result.returncode == 0:
            return ValidationResult(level=ValidationLevel.TESTS, success=True, output=full_output)
        return ValidationResult(
            level=ValidationLevel.TESTS,
            success=False,
            error_message=f"Tests failed (exit code {result.returncode})",
            output=full_output
        )

    def validate_all(
        self,
        files: dict[str, str],
        test_command: Sequence[str] | None = None
    ) -> list[ValidationResult]:
        """
        Run all validation levels progressively, stopping at the first failure.

        Args:
            files: Written path -> content
            test_command: Optional test command run after syntax passes

        Returns:
            List of ValidationResults from each level
        """
        results: list[ValidationResult] = []

        for path, content in files.items():
            syntax_result = self.validate_syntax(content, path)
            results.append(syntax_result)
            if not syntax_result.success:
                logger.error(f"Syntax validation failed: {syntax_result.error_message}")
                return results

        if test_command:
            test_result = self.run_test_command(test_command)
            results.append(test_result)
            if not test_result.success:
                logger.error(f"Test validation failed: {test_result.error_message}")
                return results

        logger.info("All validations passed!")
        return results

    def is_valid(self, results: Sequence[ValidationResult]) -> bool:
        return all(result.success for result in results)
