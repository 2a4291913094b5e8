"""Accrual arithmetic: elapsed/remaining time and cost, derived from timestamps.

Nothing here is stored incrementally. Every value is recomputed from the
session's timestamps and the caller's ``now``, which is why no ticker is needed
to advance a countdown.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .session import SessionState, TimerSession


@dataclass(frozen=True)
class Accrual:
    elapsed_seconds: float
    remaining_seconds: Optional[float]
    accrued_cost: float


def elapsed_seconds(
    started_at: datetime,
    now: datetime,
    paused_seconds: float,
    pause_started_at: Optional[datetime] = None,
) -> float:
    """Billable seconds: wall-clock since start minus every pause, clamped at 0."""
    total = (now - started_at).total_seconds() - paused_seconds
    if pause_started_at is not None:
        total -= max(0.0, (now - pause_started_at).total_seconds())
    return max(0.0, total)


def remaining_seconds(fixed_duration_seconds: float, elapsed: float) -> float:
    return max(0.0, fixed_duration_seconds - elapsed)


def cost(elapsed: float, rate_per_minute: float) -> float:
    """Continuous proration, no rounding of the elapsed seconds."""
    return (elapsed / 60.0) * rate_per_minute


def live_elapsed(session: TimerSession, now: datetime) -> float:
    return elapsed_seconds(
        session.started_at,
        now,
        session.cumulative_paused_seconds,
        session.pause_started_at,
    )


def is_expiry_due(session: TimerSession, now: datetime) -> bool:
    """True when a live fixed-duration session has no time left at ``now``."""
    if not session.is_fixed_duration or not session.is_live:
        return False
    return remaining_seconds(session.fixed_duration_seconds, live_elapsed(session, now)) <= 0.0


def expires_at(session: TimerSession) -> Optional[datetime]:
    """Instant the countdown reaches zero if the session keeps running."""
    if not session.is_fixed_duration or not session.is_live:
        return None
    if session.pause_started_at is not None:
        # Frozen while paused; the time left is whatever remained at pause.
        left = remaining_seconds(
            session.fixed_duration_seconds,
            live_elapsed(session, session.pause_started_at),
        )
        return session.pause_started_at + timedelta(seconds=left)
    return session.started_at + timedelta(
        seconds=session.cumulative_paused_seconds + session.fixed_duration_seconds
    )


def accrue(session: TimerSession, now: datetime) -> Accrual:
    """Read-only view used for live display and status queries."""
    if session.state in (SessionState.COMPLETED, SessionState.EXPIRED):
        elapsed = session.final_elapsed_seconds or 0.0
        accrued = session.final_cost or 0.0
    elif session.state == SessionState.CANCELLED:
        elapsed = elapsed_seconds(
            session.started_at,
            session.ended_at or now,
            session.cumulative_paused_seconds,
        )
        accrued = 0.0
    else:
        elapsed = live_elapsed(session, now)
        accrued = cost(elapsed, session.rate_snapshot)

    remaining = None
    if session.is_fixed_duration:
        remaining = remaining_seconds(session.fixed_duration_seconds, elapsed)
    return Accrual(elapsed_seconds=elapsed, remaining_seconds=remaining, accrued_cost=accrued)
