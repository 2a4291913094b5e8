"""SQLModel ORM tables mirroring the domain entities."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field


class TimerSessionModel(SQLModel, table=True):
    session_id: str = Field(primary_key=True)
    company_id: str = Field(index=True)
    resource_ref: str = Field(index=True)
    mode: str
    state: str = Field(default="RUNNING", index=True)
    rate_snapshot: float
    started_at: datetime
    fixed_duration_seconds: Optional[float] = None
    prestation_id: Optional[str] = None
    cumulative_paused_seconds: float = 0.0
    pause_started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    final_elapsed_seconds: Optional[float] = None
    final_cost: Optional[float] = None
    owner_user_id: Optional[str] = Field(default=None, index=True)
    partner_tag: Optional[str] = None
    notes: Optional[str] = None
    version: int = Field(default=0)  # optimistic concurrency


class CompanyPolicyModel(SQLModel, table=True):
    company_id: str = Field(primary_key=True)
    is_authorized: bool = False
    can_use_timers: bool = True
    can_use_countdowns: bool = True
    max_concurrent_resources: Optional[int] = 10
    max_session_duration_seconds: Optional[float] = 28800.0
    require_approval: bool = False
    approval_threshold: float = 1000.0
    authorized_by: Optional[str] = None
    authorized_at: Optional[datetime] = None
    notes: Optional[str] = None
    total_sessions: int = 0
    total_revenue: float = 0.0
    last_used_at: Optional[datetime] = None


class RateDefinitionModel(SQLModel, table=True):
    rate_id: str = Field(primary_key=True)
    company_id: str = Field(index=True)
    kind: str
    rate_per_minute: float = 0.0
    name: Optional[str] = None
    active: bool = True


class LineItemModel(SQLModel, table=True):
    session_id: str = Field(primary_key=True)  # one line item per session
    company_id: str = Field(index=True)
    resource_ref: str
    mode: str
    state: str
    started_at: datetime
    ended_at: datetime
    final_elapsed_seconds: float
    rate_snapshot: float
    final_cost: float
    prestation_id: Optional[str] = None
    owner_user_id: Optional[str] = None
    partner_tag: Optional[str] = None
    delivered: bool = Field(default=False, index=True)
