"""Authorization gate: check ordering, limits and policy administration."""
from __future__ import annotations

import pytest

from conftest import COMPANY, PLATE, build_system
from domain.errors import ApprovalRequired, AuthorizationError, LimitExceeded, NotFoundError, ValidationError
from domain.session import SessionMode


def test_unauthorized_start_creates_nothing(clock):
    system = build_system(clock=clock)
    system.gate.set_company_policy(COMPANY)  # exists, not authorized
    system.rates.register_resource(PLATE, COMPANY, 2.5)

    with pytest.raises(AuthorizationError):
        system.engine.start(COMPANY, PLATE, SessionMode.METERED)

    assert system.engine.list_active(COMPANY) == []
    assert list(system.repository.list_sessions()) == []


def test_unauthorized_start_never_reads_the_rate(clock, monkeypatch):
    system = build_system(clock=clock)
    system.gate.set_company_policy(COMPANY, is_authorized=False)

    def fail(*args, **kwargs):
        raise AssertionError("rate snapshot must not be reached")

    monkeypatch.setattr(system.rates, "snapshot_rate", fail)
    with pytest.raises(AuthorizationError):
        system.engine.start(COMPANY, PLATE, SessionMode.METERED)


def test_unknown_company_is_not_found(system):
    with pytest.raises(NotFoundError):
        system.engine.start("ghost", PLATE, SessionMode.METERED)


def test_feature_flags_are_per_mode(system):
    system.gate.set_company_policy(COMPANY, can_use_countdowns=False)
    with pytest.raises(AuthorizationError):
        system.engine.start(COMPANY, PLATE, SessionMode.FIXED_DURATION, fixed_duration_seconds=600)
    # Metered still allowed
    system.engine.start(COMPANY, PLATE, SessionMode.METERED)


def test_concurrency_cap(system):
    system.gate.set_company_policy(COMPANY, max_concurrent_resources=2)
    for plate in ("V-1", "V-2", "V-3"):
        system.rates.register_resource(plate, COMPANY, 1.0)
    system.engine.start(COMPANY, "V-1", SessionMode.METERED)
    system.engine.start(COMPANY, "V-2", SessionMode.METERED)

    with pytest.raises(LimitExceeded):
        system.engine.start(COMPANY, "V-3", SessionMode.METERED)
    assert system.registry.count_active(COMPANY) == 2


def test_cancel_frees_a_concurrency_slot(system):
    system.gate.set_company_policy(COMPANY, max_concurrent_resources=1)
    system.rates.register_resource("V-2", COMPANY, 1.0)
    first = system.engine.start(COMPANY, PLATE, SessionMode.METERED)
    system.engine.cancel(first.session_id)
    system.engine.start(COMPANY, "V-2", SessionMode.METERED)


def test_duplicate_live_session_on_same_resource(system):
    system.engine.start(COMPANY, PLATE, SessionMode.METERED)
    with pytest.raises(LimitExceeded):
        system.engine.start(COMPANY, PLATE, SessionMode.METERED)

    # A different prestation on the same vehicle is a different session
    system.rates.define_prestation(COMPANY, "Vidange", 1.5, prestation_id="oil")
    system.engine.start(COMPANY, PLATE, SessionMode.METERED, prestation_id="oil")


def test_duration_cap(system):
    system.gate.set_company_policy(COMPANY, max_session_duration_seconds=3600)
    with pytest.raises(LimitExceeded):
        system.engine.start(COMPANY, PLATE, SessionMode.FIXED_DURATION, fixed_duration_seconds=3601)
    system.engine.start(COMPANY, PLATE, SessionMode.FIXED_DURATION, fixed_duration_seconds=3600)


def test_approval_threshold_on_projected_cost(system):
    system.gate.set_company_policy(COMPANY, require_approval=True, approval_threshold=100.0)

    # 40 min x 2.50 = 100.00, at the threshold
    with pytest.raises(ApprovalRequired) as excinfo:
        system.engine.start(COMPANY, PLATE, SessionMode.FIXED_DURATION, fixed_duration_seconds=40 * 60)
    assert abs(excinfo.value.projected_cost - 100.0) < 0.001
    assert excinfo.value.threshold == 100.0

    session = system.engine.start(COMPANY, PLATE, SessionMode.FIXED_DURATION, fixed_duration_seconds=39 * 60)
    assert session.fixed_duration_seconds == 39 * 60


def test_metered_sessions_skip_approval(system):
    system.gate.set_company_policy(COMPANY, require_approval=True, approval_threshold=0.0)
    system.engine.start(COMPANY, PLATE, SessionMode.METERED)


def test_check_order_authorization_before_limits(system):
    system.gate.set_company_policy(COMPANY, max_concurrent_resources=0)
    system.gate.revoke(COMPANY)
    with pytest.raises(AuthorizationError):
        system.gate.authorize_start(COMPANY, SessionMode.METERED, active_count=5)


def test_set_policy_keeps_counters(system, clock):
    session = system.engine.start(COMPANY, PLATE, SessionMode.METERED)
    clock.advance(minutes=2)
    system.engine.stop(session.session_id)

    policy = system.gate.set_company_policy(COMPANY, max_concurrent_resources=3, notes="fleet")
    assert policy.total_sessions == 1
    assert abs(policy.total_revenue - 5.0) < 0.001
    assert policy.max_concurrent_resources == 3
    assert policy.is_authorized


def test_set_policy_rejects_bad_values(system):
    with pytest.raises(ValidationError):
        system.gate.set_company_policy(COMPANY, total_revenue=0.0)
    with pytest.raises(ValidationError):
        system.gate.set_company_policy(COMPANY, max_concurrent_resources=-1)
    with pytest.raises(ValidationError):
        system.gate.set_company_policy(COMPANY, approval_threshold=-5)


def test_new_policy_uses_configured_defaults(clock):
    system = build_system(clock=clock)
    policy = system.gate.set_company_policy("newco")
    assert policy.is_authorized is False
    assert policy.max_concurrent_resources == 10
    assert policy.max_session_duration_seconds == 28800


def test_authorize_and_revoke(clock):
    system = build_system(clock=clock)
    policy = system.gate.authorize("newco", authorized_by="boss")
    assert policy.is_authorized
    assert policy.authorized_by == "boss"
    assert policy.authorized_at == clock.now()

    policy = system.gate.revoke("newco")
    assert not policy.is_authorized
    assert policy.authorized_by is None

    with pytest.raises(NotFoundError):
        system.gate.revoke("ghost")
