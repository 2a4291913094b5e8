"""Billable line item handed to the external sales ledger."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from .session import SessionMode, SessionState, TimerSession


@dataclass(frozen=True)
class BillableLineItem:
    """Immutable record emitted once per Completed or Expired session."""

    session_id: str
    company_id: str
    resource_ref: str
    mode: SessionMode
    state: SessionState
    started_at: datetime
    ended_at: datetime
    final_elapsed_seconds: float
    rate_snapshot: float
    final_cost: float
    prestation_id: Optional[str] = None
    owner_user_id: Optional[str] = None
    partner_tag: Optional[str] = None

    @classmethod
    def from_session(cls, session: TimerSession) -> "BillableLineItem":
        if session.final_cost is None or session.final_elapsed_seconds is None or session.ended_at is None:
            raise ValueError(f"Session {session.session_id} has not been settled")
        return cls(
            session_id=session.session_id,
            company_id=session.company_id,
            resource_ref=session.resource_ref,
            mode=session.mode,
            state=session.state,
            started_at=session.started_at,
            ended_at=session.ended_at,
            final_elapsed_seconds=session.final_elapsed_seconds,
            rate_snapshot=session.rate_snapshot,
            final_cost=session.final_cost,
            prestation_id=session.prestation_id,
            owner_user_id=session.owner_user_id,
            partner_tag=session.partner_tag,
        )

    def to_payload(self) -> Dict[str, Any]:
        """Serialize in the ledger's camelCase wire format."""
        return {
            "sessionId": self.session_id,
            "companyId": self.company_id,
            "resourceRef": self.resource_ref,
            "mode": self.mode.value,
            "state": self.state.value,
            "startedAt": self.started_at.isoformat(),
            "endedAt": self.ended_at.isoformat(),
            "finalElapsedSeconds": self.final_elapsed_seconds,
            "ratePerMinute": self.rate_snapshot,
            "finalCost": self.final_cost,
            "prestationId": self.prestation_id,
            "ownerUserId": self.owner_user_id,
            "partnerTag": self.partner_tag,
        }
