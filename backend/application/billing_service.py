"""Billing service: settlement of finished sessions and hand-off to the sales ledger."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, TYPE_CHECKING

from domain import accrual
from domain.ledger import LedgerDeliveryError
from domain.line_item import BillableLineItem
from domain.session import SessionState

if TYPE_CHECKING:
    from domain.ledger import SalesLedger
    from domain.session import TimerSession
    from infrastructure.repository import TimerRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementResult:
    session_id: str
    state: SessionState
    final_elapsed_seconds: float
    final_cost: float


class BillingService:
    def __init__(self, repository: "TimerRepository", ledger: "SalesLedger"):
        self.repository = repository
        self.ledger = ledger

    # Settlement -----------------------------------------------------------
    def settle(self, session: "TimerSession", now: datetime, *, expired: bool = False) -> SettlementResult:
        """
        Freeze elapsed time and cost on a live session.

        A stop charges the prorated elapsed time, an expiry charges the full
        prepaid duration and ends at the computed expiry instant.
        """
        if expired:
            ended_at = accrual.expires_at(session) or now
            session.fold_open_pause(ended_at)
            elapsed = float(session.fixed_duration_seconds)
            state = SessionState.EXPIRED
        else:
            ended_at = now
            session.fold_open_pause(now)
            elapsed = accrual.elapsed_seconds(session.started_at, now, session.cumulative_paused_seconds)
            if session.is_fixed_duration:
                elapsed = min(elapsed, float(session.fixed_duration_seconds))
            state = SessionState.COMPLETED

        final_cost = accrual.cost(elapsed, session.rate_snapshot)
        session.mark_settled(state, ended_at, elapsed, final_cost)
        return SettlementResult(
            session_id=session.session_id,
            state=state,
            final_elapsed_seconds=elapsed,
            final_cost=final_cost,
        )

    # Ledger hand-off -------------------------------------------------------
    def build_line_item(self, session: "TimerSession") -> BillableLineItem:
        return BillableLineItem.from_session(session)

    def queue(self, session: "TimerSession") -> Optional[BillableLineItem]:
        """Write the session's line item to the outbox.

        Returns None when the session already had one. Delivery is left to
        ``deliver`` so the caller can run it outside the session lock.
        """
        item = self.build_line_item(session)
        if not self.repository.add_line_item(item):
            logger.warning("Line item for session %s already queued, skipping", session.session_id)
            return None
        return item

    def flush_pending(self) -> int:
        """Retry every undelivered line item. Returns how many went through."""
        delivered = 0
        for item in list(self.repository.list_undelivered_line_items()):
            if self.deliver(item):
                delivered += 1
        return delivered

    def pending_count(self) -> int:
        return len(list(self.repository.list_undelivered_line_items()))

    def deliver(self, item: BillableLineItem) -> bool:
        try:
            self.ledger.record(item)
        except LedgerDeliveryError:
            logger.exception("Ledger delivery failed for session %s, will retry", item.session_id)
            return False
        self.repository.mark_line_item_delivered(item.session_id)
        logger.info("Line item for session %s delivered (%.2f)", item.session_id, item.final_cost)
        return True
