"""
Runtime configuration for the optimization pipeline.
"""

import logging
import os
import shlex
from dataclasses import dataclass, field
from typing import Sequence

from promptloop.const import (
    BACKUP_RETENTION_DAYS,
    EVALUATION_MODELS,
    EXTERNAL_CALL_TIMEOUT,
    MAX_CANDIDATES,
    MAX_RETRIES,
    SCORE_THRESHOLD,
)

logger = logging.getLogger("promptloop.optimizer")


@dataclass
class PipelineConfig:
    """
    Configuration for one optimizer instance.

    Attributes:
        max_retries: Attempts per task before it is marked failed
        external_timeout: Timeout in seconds for generation, store and git calls
        evaluation_models: Fixed panel that scores every candidate
        max_candidates: Strategies tried per session
        score_threshold: Baseline score at or above which nothing is attempted
        dry_run: Apply and validate changes but never commit or branch
        test_command: Optional user command run after changes are written
        test_timeout: Timeout in seconds for the test command
        create_review_branch: Create a review branch before committing
        validation_tests_dir: Where generated validation tests are written
        backup_retention_days: How long sibling backups are kept
    """

    max_retries: int = MAX_RETRIES
    external_timeout: float = EXTERNAL_CALL_TIMEOUT
    evaluation_models: Sequence[str] = field(default_factory=lambda: list(EVALUATION_MODELS))
    max_candidates: int = MAX_CANDIDATES
    score_threshold: float = SCORE_THRESHOLD
    dry_run: bool = False
    test_command: Sequence[str] | None = None
    test_timeout: int = 120
    create_review_branch: bool = False
    validation_tests_dir: str = "tests/promptloop"
    backup_retention_days: int = BACKUP_RETENTION_DAYS

    def __post_init__(self) -> None:
        """Apply environment overrides."""
        if os.environ.get("PROMPTLOOP_DRY_RUN", "").lower() in ("1", "true", "yes"):
            self.dry_run = True

        if self.test_command is None and os.environ.get("PROMPTLOOP_TEST_COMMAND"):
            self.test_command = shlex.split(os.environ["PROMPTLOOP_TEST_COMMAND"])

        if 'PROMPTLOOP_TEST_TIMEOUT' in os.environ:
            try:
                self.test_timeout = int(os.environ['PROMPTLOOP_TEST_TIMEOUT'])
            except ValueError:
                logger.warning(f"Invalid PROMPTLOOP_TEST_TIMEOUT value, using default: {self.test_timeout}")

        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
