"""Per-company authorization policy and running usage counters."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .session import SessionMode


@dataclass
class CompanyPolicy:
    company_id: str
    is_authorized: bool = False
    can_use_timers: bool = True        # metered (stopwatch) sessions
    can_use_countdowns: bool = True    # fixed-duration (vehicle countdown) sessions
    max_concurrent_resources: Optional[int] = 10
    max_session_duration_seconds: Optional[float] = 8 * 3600
    require_approval: bool = False
    approval_threshold: float = 1000.0
    authorized_by: Optional[str] = None
    authorized_at: Optional[datetime] = None
    notes: Optional[str] = None
    # Running counters, only touched by the session registry.
    total_sessions: int = 0
    total_revenue: float = 0.0
    last_used_at: Optional[datetime] = None

    def allows_mode(self, mode: SessionMode) -> bool:
        if mode == SessionMode.FIXED_DURATION:
            return self.can_use_countdowns
        return self.can_use_timers

    def authorize(self, authorized_by: Optional[str], now: datetime) -> None:
        self.is_authorized = True
        self.authorized_by = authorized_by
        self.authorized_at = now

    def revoke(self) -> None:
        self.is_authorized = False
        self.authorized_by = None
        self.authorized_at = None

    def record_usage(self, revenue: float, now: datetime) -> None:
        self.total_sessions += 1
        self.total_revenue += revenue
        self.last_used_at = now


# Fields an administrator may set; counters are excluded.
POLICY_SETTINGS = (
    "is_authorized",
    "can_use_timers",
    "can_use_countdowns",
    "max_concurrent_resources",
    "max_session_duration_seconds",
    "require_approval",
    "approval_threshold",
    "notes",
)
