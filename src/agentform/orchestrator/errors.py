"""Typed errors raised by steps, gates and dependencies."""

from __future__ import annotations

from agentform.orchestrator.models import ErrorCategory


class OrchestrationError(Exception):
    """Base error carrying the category the retry policy acts on."""

    category: ErrorCategory = ErrorCategory.UNKNOWN


class ValidationError(OrchestrationError):
    """Payload or prerequisite is invalid; retrying cannot help."""

    category = ErrorCategory.VALIDATION


class NotFoundError(OrchestrationError):
    category = ErrorCategory.NOT_FOUND


class RateLimitedError(OrchestrationError):
    category = ErrorCategory.RATE_LIMITED

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class DependencyTimeoutError(OrchestrationError):
    category = ErrorCategory.TIMEOUT


class ExternalApiError(OrchestrationError):
    category = ErrorCategory.EXTERNAL_API_ERROR

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CircuitOpenError(OrchestrationError):
    """Dependency circuit is open; the call was not attempted."""

    category = ErrorCategory.CIRCUIT_OPEN

    def __init__(self, dependency_key: str, *, retry_after: float) -> None:
        super().__init__(
            f"Circuit open for {dependency_key}; retry in {retry_after:.1f}s.",
        )
        self.dependency_key = dependency_key
        self.retry_after = retry_after


class InsufficientCreditsError(OrchestrationError):
    category = ErrorCategory.VALIDATION

    def __init__(self, user_id: str, *, remaining: float, requested: float) -> None:
        super().__init__(
            f"Insufficient AI credits for {user_id}: "
            f"remaining={remaining:.4f} requested={requested:.4f}",
        )
        self.user_id = user_id
        self.remaining = remaining
        self.requested = requested


class RequiredStepFailed(OrchestrationError):
    """A required step failed and the run ended in `failed`."""

    def __init__(
        self,
        *,
        step_name: str,
        category: ErrorCategory,
        message: str,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(f"{step_name}: {message}")
        self.step_name = step_name
        self.category = category
        self.retry_after_seconds = retry_after_seconds
