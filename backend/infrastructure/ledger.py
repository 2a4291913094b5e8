"""Sales ledger adapters: in-process list and the dashboard's HTTP sales API."""
from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

import httpx

from domain.ledger import LedgerDeliveryError, SalesLedger
from domain.line_item import BillableLineItem

logger = logging.getLogger(__name__)


class InMemorySalesLedger(SalesLedger):
    """Keeps received line items, keyed by session id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._items: Dict[str, BillableLineItem] = {}

    def record(self, item: BillableLineItem) -> None:
        with self._lock:
            self._items.setdefault(item.session_id, item)

    @property
    def items(self) -> List[BillableLineItem]:
        with self._lock:
            return list(self._items.values())

    def get(self, session_id: str) -> Optional[BillableLineItem]:
        with self._lock:
            return self._items.get(session_id)


class HttpSalesLedger(SalesLedger):
    """
    POSTs each line item as JSON to the sales API.

    The session id goes in the ``Idempotency-Key`` header so a retried
    delivery cannot create a second sale.
    """

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def record(self, item: BillableLineItem) -> None:
        try:
            response = self._client.post(
                self.url,
                json=item.to_payload(),
                headers={"Idempotency-Key": item.session_id},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise LedgerDeliveryError(
                f"Ledger rejected session {item.session_id}: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise LedgerDeliveryError(f"Ledger unreachable for session {item.session_id}: {exc}") from exc
        logger.debug("Ledger accepted session %s", item.session_id)

    def close(self) -> None:
        self._client.close()
