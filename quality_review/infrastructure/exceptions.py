"""
Custom exception classes for the quality review engine.

Every error carries a stable machine-readable ``kind`` and HTTP ``status_code``
together with a human-readable message, so the web layer can render failures
consistently without inspecting exception types.
"""

from __future__ import annotations

from typing import Any


class QualityReviewError(Exception):
    """Base exception for all engine errors."""

    kind: str = "internal"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.user_message = user_message or self._get_default_user_message()

    def _get_default_user_message(self) -> str:
        """Provide a user-friendly version of the error message."""
        return "An unexpected error occurred. Please try again."

    def to_payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.user_message, "details": self.details}

    def __str__(self) -> str:
        return f"{self.__class__.__name__}: {self.message}"


class UnauthorizedError(QualityReviewError):
    """Raised when a request carries no usable identity."""

    kind = "unauthorized"
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message=message, user_message=message)


class ForbiddenError(QualityReviewError):
    """Raised when the caller lacks the access tier an operation requires."""

    kind = "forbidden"
    status_code = 403

    def __init__(self, message: str, required: str | None = None):
        self.required = required
        super().__init__(
            message=message,
            details={"required": required} if required else {},
            user_message=message,
        )


class CycleLockedError(ForbiddenError):
    """Raised when an evaluation write targets a locked review cycle."""

    def __init__(self, cycle_id: int):
        self.cycle_id = cycle_id
        super().__init__("Card is completed. Evaluations are locked", required="unlocked_cycle")
        self.details = {"cycle_id": cycle_id}


class NotFoundError(QualityReviewError):
    """Raised when an identifier does not resolve."""

    kind = "not_found"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any = None):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            message=f"{resource} with ID {resource_id} not found",
            details={"resource": resource, "id": resource_id},
            user_message=f"{resource} not found",
        )


class DimensionNotFoundError(NotFoundError):
    def __init__(self, dimension_id: Any):
        super().__init__("Review question", dimension_id)


class CycleNotFoundError(NotFoundError):
    def __init__(self, cycle_id: Any):
        super().__init__("Review cycle", cycle_id)


class EvaluationNotFoundError(NotFoundError):
    def __init__(self, cycle_id: Any, reviewer_id: Any):
        super().__init__("Evaluation", None)
        self.details = {"resource": "Evaluation", "cycle_id": cycle_id, "reviewer_id": reviewer_id}


class CardNotFoundError(NotFoundError):
    def __init__(self, card_id: Any):
        super().__init__("Card", card_id)


class ProjectNotFoundError(NotFoundError):
    def __init__(self, project_id: Any):
        super().__init__("Project", project_id)


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: Any):
        super().__init__("User", user_id)


class ValidationError(QualityReviewError):
    """Raised when input validation fails."""

    kind = "validation"
    status_code = 400

    def __init__(
        self, field: str, message: str, value: Any = None, details: dict[str, Any] | None = None
    ):
        self.field = field
        self.value = value
        super().__init__(
            message=f"Validation failed for field '{field}': {message}",
            details=details or {"field": field, "value": value},
            user_message=message,
        )

    def _get_default_user_message(self) -> str:
        return f"Please check your input for {self.field.replace('_', ' ')} and try again."


class ConflictError(QualityReviewError):
    """Raised when a write would duplicate an existing record."""

    kind = "conflict"
    status_code = 409

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message=message, details=details, user_message=message)


class DatabaseError(QualityReviewError):
    """Raised when database operations fail."""

    def __init__(self, message: str, operation: str, details: dict[str, Any] | None = None):
        self.operation = operation
        super().__init__(
            message=f"Database error during {operation}: {message}",
            details=details or {"operation": operation},
            user_message="A database error occurred. Please try again in a moment.",
        )


class ConnectionError(DatabaseError):
    """Raised when database connection fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message=message, operation="connection", details=details)


def handle_database_error(e: Exception, operation: str = "database operation") -> QualityReviewError:
    """
    Convert generic database exceptions to engine exceptions.

    Unique-constraint violations become ``ConflictError`` so that a racing
    duplicate write surfaces the same way as a detected duplicate.

    Example:
        >>> try:
        ...     session.flush()
        >>> except SQLAlchemyError as e:
        ...     raise handle_database_error(e, "create evaluation")
    """
    error_msg = str(e).lower()

    if "unique constraint" in error_msg or "duplicate" in error_msg:
        return ConflictError(
            f"Duplicate record during {operation}",
            details={"operation": operation, "constraint": "unique"},
        )
    if "connection" in error_msg or "timeout" in error_msg:
        return ConnectionError(str(e))
    return DatabaseError(str(e), operation)


def create_user_friendly_error_message(error: Exception) -> str:
    """
    Create a user-friendly error message from any exception.

    Example:
        >>> error = ValidationError("name", "Question name is required")
        >>> create_user_friendly_error_message(error)
        'Question name is required'
    """
    if isinstance(error, QualityReviewError):
        return error.user_message

    error_type = type(error).__name__
    messages = {
        "ValueError": "Invalid input provided. Please check your data and try again.",
        "KeyError": "Required information is missing. Please check your input.",
        "TypeError": "Incorrect data type provided. Please check your input format.",
    }
    return messages.get(
        error_type, "An unexpected error occurred. Please try again or contact support."
    )


def log_error_details(error: Exception, context: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Create structured error details for logging.

    Example:
        >>> details = log_error_details(CycleNotFoundError(7), {"user_id": 3})
        >>> details["error_type"]
        'CycleNotFoundError'
    """
    details = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context or {},
    }

    if isinstance(error, QualityReviewError):
        details.update(
            {"error_kind": error.kind, "user_message": error.user_message, "error_details": error.details}
        )

    return details
