"""
Exception hierarchy for the optimization pipeline.

Every error carries enough context (stage, guard, metrics) to reconstruct
what happened after the fact. Quality rejections are not exceptions; see
``promptloop.models.QualityRejection``.
"""

from typing import Any


class PromptLoopError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, message: str, *, stage: str | None = None, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.context = context or {}


class ValidationError(PromptLoopError):
    """Raised when required input is missing or malformed. Never retried."""
    pass


class ExternalServiceError(PromptLoopError):
    """Raised when the generation service, store, or source tree fails or times out."""

    def __init__(self, message: str, *, service: str = "unknown", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.service = service


class SafetyViolation(PromptLoopError):
    """Raised when a block-type guard trips. Fatal for the attempt, never retried."""

    def __init__(self, message: str, *, guard_id: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.guard_id = guard_id


class RollbackFailure(PromptLoopError):
    """
    Raised when restoring backups fails.

    The working tree may be inconsistent after this; callers must surface it
    to the user.
    """

    def __init__(self, message: str, *, paths: list[str] | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.paths = paths or []


class SessionBusyError(PromptLoopError):
    """Raised when a session for the same (user, app) is already active."""

    def __init__(self, user_id: str, app_id: str) -> None:
        super().__init__(f"An optimization session is already active for {user_id}/{app_id}")
        self.user_id = user_id
        self.app_id = app_id


class SessionCancelled(PromptLoopError):
    """Raised between stages when a session has been cancelled."""
    pass
