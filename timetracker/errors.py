"""
Typed errors raised by storage providers and the service layer.

The HTTP glue maps each class to a status code deterministically, so provider
methods never let engine-specific exceptions escape.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class TimeTrackerError(Exception):
    """Base exception for the time tracking core."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def as_dict(self) -> dict:
        payload = {"code": self.error_code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(TimeTrackerError):
    """Missing or malformed input (pagination, dates, ids, names)."""

    status_code = 400
    error_code = "validation_error"


class NotFoundError(TimeTrackerError):
    """Entity absent or not owned by the calling user."""

    status_code = 404
    error_code = "not_found"


class ConflictError(TimeTrackerError):
    """Uniqueness violation or a state transition the data forbids."""

    status_code = 409
    error_code = "conflict"


class InternalError(TimeTrackerError):
    """Storage I/O failure."""

    status_code = 500
    error_code = "internal_error"
