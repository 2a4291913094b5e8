"""Session registry: indexes, statistics and rebuild from storage."""
from __future__ import annotations

import pytest

from application.session_registry import SessionRegistry
from conftest import COMPANY, PLATE
from domain.errors import ConcurrencyConflict
from domain.session import SessionMode


def test_indexes_follow_the_lifecycle(system, clock):
    system.rates.register_resource("V-2", COMPANY, 1.0)
    a = system.engine.start(COMPANY, PLATE, SessionMode.METERED)
    b = system.engine.start(COMPANY, "V-2", SessionMode.METERED)
    assert system.registry.count_active(COMPANY) == 2
    assert [s.session_id for s in system.registry.list_active_for_resource(PLATE)] == [a.session_id]

    clock.advance(minutes=1)
    system.engine.stop(a.session_id)
    assert system.registry.count_active(COMPANY) == 1
    assert system.registry.list_active_for_resource(PLATE) == []
    assert [s.session_id for s in system.registry.list_active(COMPANY)] == [b.session_id]


def test_completion_is_counted_once(system, clock):
    session = system.engine.start(COMPANY, PLATE, SessionMode.METERED)
    clock.advance(minutes=4)
    system.engine.stop(session.session_id)
    settled = system.repository.get_session(session.session_id)

    # The outbox row is what guards the counters
    assert system.billing.queue(settled) is None
    policy = system.gate.get_company_policy(COMPANY)
    assert policy.total_sessions == 1
    assert abs(policy.total_revenue - 10.0) < 0.001
    assert policy.last_used_at == settled.ended_at


def test_company_statistics_breakdown(system, clock):
    system.rates.register_resource("V-2", COMPANY, 1.0)
    first = system.engine.start(COMPANY, PLATE, SessionMode.METERED, owner_user_id="u1")
    second = system.engine.start(COMPANY, "V-2", SessionMode.METERED, owner_user_id="u2")
    clock.advance(minutes=10)
    system.engine.stop(first.session_id)
    system.engine.cancel(second.session_id)

    stats = system.registry.company_statistics(COMPANY)
    assert stats.total_sessions == 1
    assert abs(stats.total_revenue - 25.0) < 0.001
    assert stats.active_sessions == 0
    assert set(stats.by_user) == {"u1"}
    assert stats.by_user["u1"].sessions == 1
    assert stats.by_user["u1"].billed_seconds == 600
    assert abs(stats.by_resource[PLATE].revenue - 25.0) < 0.001
    # Cancelled sessions carry no revenue and are left out
    assert "V-2" not in stats.by_resource


def test_rebuild_restores_live_sessions(system, clock):
    live = system.engine.start(COMPANY, PLATE, SessionMode.METERED)
    system.rates.register_resource("V-2", COMPANY, 1.0)
    done = system.engine.start(COMPANY, "V-2", SessionMode.METERED)
    clock.advance(minutes=1)
    system.engine.stop(done.session_id)

    fresh = SessionRegistry(system.repository)
    assert fresh.count_active(COMPANY) == 0
    assert fresh.rebuild() == 1
    assert fresh.active_ids(COMPANY) == [live.session_id]
    assert fresh.active_ids_for_resource("V-2") == []


def test_company_guard_times_out(system):
    registry = system.registry
    with registry.company_guard(COMPANY, timeout=0.1):
        with pytest.raises(ConcurrencyConflict):
            with registry.company_guard(COMPANY, timeout=0.05):
                pass
    # Other companies are independent
    with registry.company_guard(COMPANY, timeout=0.1):
        with registry.company_guard("other", timeout=0.1):
            pass


def test_finished_sessions_leave_no_index_entries(system, clock):
    session = system.engine.start(COMPANY, PLATE, SessionMode.METERED)
    clock.advance(minutes=1)
    system.engine.stop(session.session_id)

    assert COMPANY not in system.registry._by_company
    assert PLATE not in system.registry._by_resource
