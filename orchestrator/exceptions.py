"""Shared exceptions for the orchestration core.

This module contains exception classes used across the queue, the pipeline
controller, the quality gate and the rate limiter, so that no component has
to import another one just to catch its errors.

Taxonomy:
    NotFoundError: Post or job absent.
    GenerationFailure: Generation collaborator failed (retried by the queue).
    ValidationFailure: Script still unacceptable after regeneration (terminal).
    RateLimiterClearedError: Waiting acquisition cancelled by clear_queue().
    RateLimitQueueFullError: Rate limiter wait list is at capacity.
    InvalidStateTransitionError: Post status change not allowed.
    ConfigurationError: Required configuration missing or invalid.

Admission of a post that already has an active job is NOT an error: the
existing job id is returned.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from orchestrator.models import PostStatus


# Error message stored on a job cancelled before it was claimed
CANCELLED_BY_USER = "Cancelled by user"


class OrchestratorError(Exception):
    """Base class for all orchestration core errors."""

    pass


class ConfigurationError(OrchestratorError):
    """Raised when required configuration is missing.

    This error indicates a configuration problem that prevents the
    orchestration core from starting (e.g., SCRIPT_GENERATOR_URL not set
    when the HTTP generator is requested).
    """

    pass


class NotFoundError(OrchestratorError):
    """Raised when a post or a generation job does not exist.

    Attributes:
        kind: Entity kind ("post" or "job").
        identifier: Identifier that was looked up.
    """

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")


class GenerationFailure(OrchestratorError):
    """Raised when the generation collaborator fails to produce a script.

    The queue treats this (and any other exception raised during execution)
    as a retriable failure counted against the job's max_attempts.
    """

    pass


class ValidationFailure(OrchestratorError):
    """Raised when the quality gate rejects the final script.

    Regeneration has already been attempted when this is raised, so the
    queue marks the job failed without further retries.

    Attributes:
        score: Final quality score (0-100).
        issues: Gate issues of the rejected script, in evaluation order.
    """

    def __init__(self, score: int, issues: list[Any]):
        self.score = score
        self.issues = issues
        critical = [issue for issue in issues if getattr(issue, "severity", None) == "critical"]
        summary = "; ".join(f"{issue.field}: {issue.message}" for issue in (critical or issues)[:3])
        message = f"Script rejected by quality gate (score {score})"
        if summary:
            message = f"{message}: {summary}"
        super().__init__(message)


class RateLimiterClearedError(OrchestratorError):
    """Raised in every caller waiting on the rate limiter when its queue is cleared."""

    def __init__(self, message: str = "Rate limiter cleared"):
        super().__init__(message)


class RateLimitQueueFullError(OrchestratorError):
    """Raised by acquire() when the wait list already holds max_queue_size callers."""

    pass


class InvalidStateTransitionError(OrchestratorError):
    """Raised when attempting an invalid post status transition.

    Only transitions listed in Post.VALID_TRANSITIONS are allowed.

    Attributes:
        message: Human-readable error message describing the invalid transition.
        from_status: The current PostStatus before the attempted transition.
        to_status: The PostStatus that was attempted but is not valid.

    Example:
        >>> post.status = PostStatus.SELECTED
        >>> post.status = PostStatus.APPROVED  # Invalid - skips generation
        InvalidStateTransitionError: Invalid transition: selected → approved
    """

    def __init__(self, message: str, from_status: "PostStatus", to_status: "PostStatus"):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        """Return error message with transition context."""
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"
