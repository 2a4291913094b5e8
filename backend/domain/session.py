"""Timed service session covering both metered and fixed-duration billing."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class SessionMode(str, Enum):
    METERED = "METERED"                # stopwatch, charged for elapsed time
    FIXED_DURATION = "FIXED_DURATION"  # prepaid countdown


class SessionState(str, Enum):
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


LIVE_STATES = frozenset({SessionState.RUNNING, SessionState.PAUSED})
TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.CANCELLED, SessionState.EXPIRED})

# Set once at creation.
_IMMUTABLE_FIELDS = frozenset({
    "session_id",
    "company_id",
    "resource_ref",
    "mode",
    "rate_snapshot",
    "started_at",
    "fixed_duration_seconds",
    "prestation_id",
})
# Set once at settlement.
_WRITE_ONCE_FIELDS = frozenset({"final_cost", "final_elapsed_seconds"})


@dataclass
class TimerSession:
    """
    One instance of billable, timed work against a resource.

    The rate is copied at start and never re-read, so editing a prestation or
    vehicle rate cannot change the price of a running or finished session.
    Only the state machine mutates a session, always under the session lock.
    """
    session_id: str
    company_id: str
    resource_ref: str
    mode: SessionMode
    rate_snapshot: float
    started_at: datetime
    fixed_duration_seconds: Optional[float] = None
    prestation_id: Optional[str] = None
    state: SessionState = SessionState.RUNNING
    cumulative_paused_seconds: float = 0.0
    pause_started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    final_elapsed_seconds: Optional[float] = None
    final_cost: Optional[float] = None
    owner_user_id: Optional[str] = None
    partner_tag: Optional[str] = None
    notes: Optional[str] = None
    version: int = 0

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self.__dict__:
            if name in _IMMUTABLE_FIELDS and self.__dict__[name] != value:
                raise AttributeError(f"{name} is immutable after creation")
            if name in _WRITE_ONCE_FIELDS and self.__dict__[name] is not None:
                raise AttributeError(f"{name} is write-once")
        super().__setattr__(name, value)

    # ================== State queries ==================
    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    @property
    def is_fixed_duration(self) -> bool:
        return self.mode == SessionMode.FIXED_DURATION

    @property
    def rate_source(self) -> str:
        """Prestation id for prestation-priced sessions, else the resource itself."""
        return self.prestation_id or self.resource_ref

    # ================== Transitions (called by the state machine) ==================
    def mark_paused(self, now: datetime) -> None:
        self.state = SessionState.PAUSED
        self.pause_started_at = now

    def fold_open_pause(self, now: datetime) -> float:
        """Add the open pause to the accumulator and return its length."""
        if self.pause_started_at is None:
            return 0.0
        pause_length = max(0.0, (now - self.pause_started_at).total_seconds())
        self.cumulative_paused_seconds += pause_length
        self.pause_started_at = None
        return pause_length

    def mark_resumed(self, now: datetime) -> float:
        pause_length = self.fold_open_pause(now)
        self.state = SessionState.RUNNING
        return pause_length

    def mark_settled(self, state: SessionState, ended_at: datetime, elapsed: float, cost: float) -> None:
        self.final_elapsed_seconds = elapsed
        self.final_cost = cost
        self.ended_at = ended_at
        self.state = state

    def mark_cancelled(self, now: datetime) -> None:
        self.fold_open_pause(now)
        self.ended_at = now
        self.state = SessionState.CANCELLED
