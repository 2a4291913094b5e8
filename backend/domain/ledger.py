"""Sales ledger port. The engine only emits line items; pricing of the sale,
commission and tax stay on the ledger side.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .line_item import BillableLineItem


class LedgerDeliveryError(Exception):
    """The ledger could not accept a line item; delivery will be retried."""


class SalesLedger(ABC):
    """Receives one billable line item per Completed or Expired session."""

    @abstractmethod
    def record(self, item: "BillableLineItem") -> None:
        """Accept a line item. Must be idempotent on ``item.session_id``."""
        pass
