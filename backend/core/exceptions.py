"""Custom exceptions for the workflow engine."""

from typing import Any, Optional


class WorkflowEngineError(Exception):
    """Base exception for the workflow engine."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None,
    ):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code when surfaced through the API
            details: Structured context for the error payload
        """
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(WorkflowEngineError):
    """Malformed graph or unusable workflow request."""

    def __init__(self, message: str = "Validation failed", details: Optional[dict] = None):
        """Initialize ValidationError with 400 status code."""
        super().__init__(message, 400, details)


class UnauthorizedError(WorkflowEngineError):
    """Unauthorized access exception."""

    def __init__(self, message: str = "Unauthorized"):
        """Initialize UnauthorizedError with 401 status code."""
        super().__init__(message, 401)


class InvalidStateError(WorkflowEngineError):
    """Operation attempted against a terminal or nonexistent execution."""

    def __init__(self, message: str = "Invalid execution state", status_code: int = 409):
        """Initialize InvalidStateError with 409 status code."""
        super().__init__(message, status_code)


class ExecutionNotFoundError(InvalidStateError):
    """The execution does not exist (or belongs to another organization)."""

    def __init__(self, execution_id: str):
        super().__init__(f"Execution not found: {execution_id}", 404)
        self.execution_id = execution_id


class HandlerError(WorkflowEngineError):
    """A step handler's side effect failed."""

    def __init__(self, message: str, step_id: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, 500, details)
        self.step_id = step_id


class EscalationExhaustedError(HandlerError):
    """Escalation requested past the last entry of the escalation path."""

    def __init__(self, level: int, path_length: int, step_id: Optional[str] = None):
        super().__init__(
            f"Escalation path exhausted at level {level} (path has {path_length} entries)",
            step_id=step_id,
            details={"level": level, "path_length": path_length},
        )
        self.level = level
        self.path_length = path_length


class TransportError(WorkflowEngineError):
    """Notification dispatch failed or timed out."""

    def __init__(self, message: str, recipient: Optional[str] = None):
        super().__init__(message, 502, {"recipient": recipient} if recipient else None)
        self.recipient = recipient
