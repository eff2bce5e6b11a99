"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from fastapi import Depends, Header, Request

from timetracker.context import AppContext
from timetracker.errors import ValidationError
from timetracker.service import TimeTrackingService


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_service(context: AppContext = Depends(get_context)) -> TimeTrackingService:
    return context.service


def get_current_user_id(x_user_id: str = Header(..., alias="X-User-Id")) -> int:
    """
    The authenticated user id. Token verification happens upstream; this
    only reads the id the auth layer forwarded.
    """
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise ValidationError("X-User-Id must be an integer") from exc
    if user_id < 1:
        raise ValidationError("X-User-Id must be a positive integer")
    return user_id
