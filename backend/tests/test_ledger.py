"""Ledger hand-off: HTTP adapter, outbox and retry of failed deliveries."""
from __future__ import annotations

import json
import threading

import httpx
import pytest

from conftest import COMPANY, PLATE, build_system, seed_company
from domain.ledger import LedgerDeliveryError, SalesLedger
from domain.session import SessionMode, SessionState
from infrastructure.ledger import HttpSalesLedger, InMemorySalesLedger

LEDGER_URL = "http://ledger.test/api/ventes/timer-line-items"


class FlakyLedger(SalesLedger):
    def __init__(self):
        self.down = True
        self.delegate = InMemorySalesLedger()

    def record(self, item):
        if self.down:
            raise LedgerDeliveryError("ledger offline")
        self.delegate.record(item)


def _http_ledger(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpSalesLedger(LEDGER_URL, client=client)


def test_http_ledger_posts_camel_case_with_idempotency_key(clock):
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(201, json={"ok": True})

    system = build_system(ledger=_http_ledger(handler), clock=clock)
    seed_company(system)
    session = system.engine.start(COMPANY, PLATE, SessionMode.METERED, owner_user_id="u1", partner_tag="garage-7")
    clock.advance(minutes=5)
    system.engine.stop(session.session_id)

    assert len(received) == 1
    request = received[0]
    assert request.method == "POST"
    assert str(request.url) == LEDGER_URL
    assert request.headers["Idempotency-Key"] == session.session_id
    body = json.loads(request.content)
    assert body["sessionId"] == session.session_id
    assert body["companyId"] == COMPANY
    assert body["resourceRef"] == PLATE
    assert body["mode"] == "METERED"
    assert body["finalElapsedSeconds"] == 300
    assert body["ratePerMinute"] == 2.5
    assert abs(body["finalCost"] - 12.5) < 0.001
    assert body["partnerTag"] == "garage-7"
    assert system.billing.pending_count() == 0


@pytest.mark.parametrize("status_code", [500, 503, 422])
def test_http_error_becomes_delivery_error(clock, status_code):
    ledger = _http_ledger(lambda request: httpx.Response(status_code))
    system = build_system(clock=clock)
    seed_company(system)
    session = system.engine.start(COMPANY, PLATE, SessionMode.METERED)
    clock.advance(minutes=1)
    system.engine.stop(session.session_id)
    item = next(iter(system.repository.list_line_items()))

    with pytest.raises(LedgerDeliveryError):
        ledger.record(item)


def test_connection_error_becomes_delivery_error(clock):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    system = build_system(ledger=_http_ledger(handler), clock=clock)
    seed_company(system)
    session = system.engine.start(COMPANY, PLATE, SessionMode.METERED)
    clock.advance(minutes=1)

    # The stop itself succeeds, the item waits in the outbox
    result = system.engine.stop(session.session_id)
    assert abs(result.final_cost - 2.5) < 0.001
    assert system.billing.pending_count() == 1


def test_failed_delivery_is_retried_once_back_online(clock):
    ledger = FlakyLedger()
    system = build_system(ledger=ledger, clock=clock)
    seed_company(system)
    session = system.engine.start(COMPANY, PLATE, SessionMode.FIXED_DURATION, fixed_duration_seconds=120)
    clock.advance(minutes=3)
    system.engine.sweep_expired()

    assert system.billing.pending_count() == 1
    assert system.billing.flush_pending() == 0

    ledger.down = False
    assert system.billing.flush_pending() == 1
    assert system.billing.flush_pending() == 0
    items = ledger.delegate.items
    assert [i.session_id for i in items] == [session.session_id]
    assert abs(items[0].final_cost - 5.0) < 0.001


def test_line_item_is_queued_once_per_session(system, clock):
    session = system.engine.start(COMPANY, PLATE, SessionMode.METERED)
    clock.advance(minutes=1)
    system.engine.stop(session.session_id)
    settled = system.repository.get_session(session.session_id)

    assert system.billing.queue(settled) is None
    assert len(system.ledger.items) == 1


def test_cancelled_session_has_no_line_item(system, clock):
    session = system.engine.start(COMPANY, PLATE, SessionMode.METERED)
    clock.advance(minutes=10)
    system.engine.cancel(session.session_id)
    assert list(system.repository.list_line_items()) == []
    with pytest.raises(ValueError):
        system.billing.build_line_item(system.repository.get_session(session.session_id))


class BlockingLedger(SalesLedger):
    """Holds every delivery until released, like a ledger that is slow to answer."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.delegate = InMemorySalesLedger()

    def record(self, item):
        self.entered.set()
        self.release.wait(timeout=10)
        self.delegate.record(item)


def test_slow_ledger_does_not_hold_the_session(clock):
    ledger = BlockingLedger()
    system = build_system(ledger=ledger, clock=clock)
    seed_company(system)
    session = system.engine.start(COMPANY, PLATE, SessionMode.METERED)
    clock.advance(minutes=2)

    stopper = threading.Thread(target=system.engine.stop, args=(session.session_id,))
    stopper.start()
    try:
        assert ledger.entered.wait(timeout=5)
        # The stop is committed while the ledger call is still in flight
        status = system.engine.get_status(session.session_id)
        assert status.state == SessionState.COMPLETED
        assert abs(status.final_cost - 5.0) < 0.001
        assert system.engine.list_active(COMPANY) == []
        assert system.billing.pending_count() == 1
        assert system.gate.get_company_policy(COMPANY).total_sessions == 1
    finally:
        ledger.release.set()
        stopper.join(timeout=10)

    assert system.billing.pending_count() == 0
    assert [i.session_id for i in ledger.delegate.items] == [session.session_id]
