from __future__ import annotations

from typing import Sequence


class GreatshieldError(Exception):
    """Base class for moderation engine errors."""


class ConfigurationError(GreatshieldError):
    """No active policy, model not configured or unavailable.

    Fatal to ``ModerationPipeline.initialize``; the caller must retry explicitly.
    """


class PolicyValidationError(ConfigurationError):
    def __init__(self, issues: Sequence[object]) -> None:
        self.issues = list(issues)
        preview = "; ".join(str(i) for i in self.issues[:10])
        super().__init__(f"Policy validation failed: {preview}")


class TransientProviderError(GreatshieldError):
    """Inference provider timed out or could not be reached."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class MalformedOutputError(GreatshieldError):
    """Model output could not be parsed into an analysis."""


class ActionExecutionError(GreatshieldError):
    """Missing platform capability or platform API failure."""

    def __init__(self, action: str, message: str) -> None:
        super().__init__(message)
        self.action = action
