"""Translate engine errors into HTTP responses."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import HTTPException

from domain.errors import (
    ApprovalRequired,
    AuthorizationError,
    ConcurrencyConflict,
    InvalidStateTransition,
    LimitExceeded,
    NotFoundError,
    TimerEngineError,
    ValidationError,
)

STATUS_CODES = {
    AuthorizationError: 403,
    ApprovalRequired: 409,
    LimitExceeded: 409,
    ValidationError: 400,
    NotFoundError: 404,
    InvalidStateTransition: 409,
    ConcurrencyConflict: 409,
}


def to_http(exc: TimerEngineError) -> HTTPException:
    status_code = next((code for cls, code in STATUS_CODES.items() if isinstance(exc, cls)), 500)
    detail: Dict[str, Any] = {
        "code": exc.code,
        "message": str(exc),
        "retryable": exc.retryable,
    }
    if isinstance(exc, ApprovalRequired):
        detail["projectedCost"] = exc.projected_cost
        detail["threshold"] = exc.threshold
    elif isinstance(exc, InvalidStateTransition):
        detail["sessionId"] = exc.session_id
        detail["state"] = exc.state
    return HTTPException(status_code=status_code, detail=detail)
