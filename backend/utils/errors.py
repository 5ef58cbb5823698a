"""
Deadline Engine Errors

Every failure the engine reports to a caller is one of four kinds. The kind
name travels verbatim in the response body so callers can branch on it
without parsing messages.

Error Response Format:
{
    "success": false,
    "error": {
        "kind": "ValidationError" | "ConflictError" | "NoApplicableRuleError" | "NotFoundError",
        "message": "days_from_trigger (15) cannot be less than statutory_minimum_days (21)",
        "field": "days_from_trigger",
        "details": {...}
    }
}
"""

from typing import Optional, Any, Dict

from fastapi import status


class DeadlineEngineError(Exception):
    """Base class for errors surfaced to callers of the deadline engine."""

    kind = "DeadlineEngineError"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details or {}

    def to_dict(self) -> dict:
        error = {
            "kind": self.kind,
            "message": self.message,
        }
        if self.field:
            error["field"] = self.field
        if self.details:
            error["details"] = self.details
        return error


class ValidationError(DeadlineEngineError):
    """Malformed or out-of-range input. Never retried automatically."""

    kind = "ValidationError"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class ConflictError(DeadlineEngineError):
    """Stale version on update, or deletion of a rule still referenced by history."""

    kind = "ConflictError"
    status_code = status.HTTP_409_CONFLICT


class NotFoundError(DeadlineEngineError):
    """Operation targets a nonexistent id."""

    kind = "NotFoundError"
    status_code = status.HTTP_404_NOT_FOUND


class NoApplicableRuleError(DeadlineEngineError):
    """No active rule covers the requested tax type and trigger date."""

    kind = "NoApplicableRuleError"
    status_code = status.HTTP_404_NOT_FOUND


def error_response(error: DeadlineEngineError) -> dict:
    """Response body for an engine error."""
    return {"success": False, "error": error.to_dict()}


def success_response(data: Any) -> dict:
    """Response body for a successful call."""
    return {"success": True, "data": data}


# ==================== VALIDATION HELPERS ====================

def require_text(value: Optional[str], field: str) -> str:
    """
    Validate that a required text field is present and not blank.

    Returns:
        The stripped value

    Raises:
        ValidationError if missing or blank
    """
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", field=field)
    return str(value).strip()


def require_present(value: Any, field: str) -> Any:
    """Validate that a required field was supplied."""
    if value is None:
        raise ValidationError(f"{field} is required", field=field)
    return value


def require_non_negative(value: Optional[int], field: str) -> int:
    """Validate that a required integer is present and >= 0."""
    require_present(value, field)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field=field, details={"received_value": str(value)[:100]})
    if value < 0:
        raise ValidationError(f"{field} cannot be negative", field=field, details={"received_value": value})
    return value
