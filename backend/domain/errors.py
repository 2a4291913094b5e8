"""Error taxonomy shared by every layer of the timer engine."""
from __future__ import annotations

from typing import Optional


class TimerEngineError(Exception):
    """Base class for all engine errors reported to callers."""

    code = "engine_error"
    retryable = False


class AuthorizationError(TimerEngineError):
    """Company not authorized, or the feature flag for the mode is off."""

    code = "not_authorized"


class ApprovalRequired(TimerEngineError):
    """Start request held back by the company approval policy."""

    code = "approval_required"

    def __init__(self, message: str, projected_cost: float, threshold: float):
        super().__init__(message)
        self.projected_cost = projected_cost
        self.threshold = threshold


class LimitExceeded(TimerEngineError):
    """Concurrency or duration cap reached."""

    code = "limit_exceeded"


class ValidationError(TimerEngineError):
    """Bad rate, non-positive duration or malformed reference."""

    code = "validation_error"


class NotFoundError(TimerEngineError):
    """Unknown session, resource, rate or company."""

    code = "not_found"


class InvalidStateTransition(TimerEngineError):
    """Operation not valid from the session's current state."""

    code = "invalid_state_transition"

    def __init__(self, session_id: str, state: str, operation: str, message: Optional[str] = None):
        super().__init__(message or f"Cannot {operation} session {session_id} in state {state}")
        self.session_id = session_id
        self.state = state
        self.operation = operation


class ConcurrencyConflict(TimerEngineError):
    """Lost a race on a session lock or version check. Safe to retry."""

    code = "concurrency_conflict"
    retryable = True
