"""
Error taxonomy for the intake assessment.

Every error carries a machine-readable ``code`` and belongs to one category;
the HTTP layer maps the category to a status code.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class IntakeError(Exception):
    """Base class for all intake errors."""

    category = "INTERNAL"
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (HTTP error body)."""
        return {
            "error_code": self.code,
            "category": self.category,
            "detail": self.message,
            "extra": self.extra,
        }


class AnswerValidationError(IntakeError):
    """Malformed answer shape. Rejected before grading."""

    category = "VALIDATION"
    default_code = "INVALID_ANSWER"


class GradingUnavailableError(IntakeError):
    """Sandbox or AI vendor unreachable or returned something unusable."""

    category = "EXTERNAL_UNAVAILABLE"
    default_code = "GRADING_UNAVAILABLE"


class StateConflictError(IntakeError):
    """Session state does not allow the operation; the caller should resync."""

    category = "STATE_CONFLICT"
    default_code = "STATE_CONFLICT"

    SESSION_ALREADY_ACTIVE = "SESSION_ALREADY_ACTIVE"
    STEP_MISMATCH = "STEP_MISMATCH"
    SESSION_CLOSED = "SESSION_CLOSED"
    CANNOT_GO_BACK = "CANNOT_GO_BACK"


class CatalogIntegrityError(IntakeError):
    """Static catalog is broken. Fatal for the deployment, not per request."""

    category = "CATALOG_INTEGRITY"
    default_code = "INVALID_CATALOG"

    CYCLE_DETECTED = "CYCLE_DETECTED"
    INVALID_CATALOG = "INVALID_CATALOG"
    UNKNOWN_REFERENCE = "UNKNOWN_REFERENCE"
    DUPLICATE_ID = "DUPLICATE_ID"


class NotFoundError(IntakeError):
    """Referenced session, step or roadmap item does not exist."""

    category = "NOT_FOUND"
    default_code = "NOT_FOUND"

    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    STEP_NOT_FOUND = "STEP_NOT_FOUND"
    ROADMAP_ITEM_NOT_FOUND = "ROADMAP_ITEM_NOT_FOUND"
