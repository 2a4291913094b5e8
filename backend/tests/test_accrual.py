"""Tests for the accrual arithmetic and the session type's write guards."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from domain import accrual
from domain.session import SessionMode, SessionState, TimerSession

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def _session(**overrides) -> TimerSession:
    fields = dict(
        session_id="s1",
        company_id="acme",
        resource_ref="AB-123-CD",
        mode=SessionMode.METERED,
        rate_snapshot=2.5,
        started_at=T0,
    )
    fields.update(overrides)
    return TimerSession(**fields)


# ---------------------------------------------------------------------------
# Pure functions
# ---------------------------------------------------------------------------


def test_cost_is_prorated_without_rounding():
    """cost(e, r) = e / 60 * r, even for fractions of a second."""
    assert accrual.cost(300, 2.5) == 12.5
    assert abs(accrual.cost(90.5, 1.2) - 1.81) < 1e-9
    assert accrual.cost(0, 2.5) == 0.0


def test_elapsed_subtracts_closed_and_open_pauses():
    now = T0 + timedelta(minutes=10)
    assert accrual.elapsed_seconds(T0, now, 0.0) == 600
    assert accrual.elapsed_seconds(T0, now, 120.0) == 480
    open_pause = T0 + timedelta(minutes=8)
    assert accrual.elapsed_seconds(T0, now, 120.0, open_pause) == 360


def test_elapsed_is_clamped_at_zero():
    """Clock skew must never produce negative billable time."""
    assert accrual.elapsed_seconds(T0, T0 - timedelta(seconds=5), 0.0) == 0.0
    assert accrual.elapsed_seconds(T0, T0 + timedelta(seconds=5), 60.0) == 0.0


def test_remaining_never_negative():
    assert accrual.remaining_seconds(300, 120) == 180
    assert accrual.remaining_seconds(300, 400) == 0.0


# ---------------------------------------------------------------------------
# Session views
# ---------------------------------------------------------------------------


def test_accrue_running_metered_session():
    view = accrual.accrue(_session(), T0 + timedelta(minutes=5))
    assert view.elapsed_seconds == 300
    assert view.accrued_cost == 12.5
    assert view.remaining_seconds is None


def test_accrue_fixed_duration_reports_remaining():
    session = _session(mode=SessionMode.FIXED_DURATION, fixed_duration_seconds=300)
    view = accrual.accrue(session, T0 + timedelta(minutes=2))
    assert view.remaining_seconds == 180
    assert view.accrued_cost == 5.0


def test_expires_at_moves_with_pauses():
    session = _session(mode=SessionMode.FIXED_DURATION, fixed_duration_seconds=300)
    assert accrual.expires_at(session) == T0 + timedelta(minutes=5)

    session.mark_paused(T0 + timedelta(minutes=1))
    # Frozen at pause: 4 minutes were left
    assert accrual.expires_at(session) == T0 + timedelta(minutes=5)
    assert not accrual.is_expiry_due(session, T0 + timedelta(hours=1))

    session.mark_resumed(T0 + timedelta(minutes=3))
    assert session.cumulative_paused_seconds == 120
    assert accrual.expires_at(session) == T0 + timedelta(minutes=7)
    assert not accrual.is_expiry_due(session, T0 + timedelta(minutes=6, seconds=59))
    assert accrual.is_expiry_due(session, T0 + timedelta(minutes=7))


def test_metered_session_never_expires():
    session = _session()
    assert accrual.expires_at(session) is None
    assert not accrual.is_expiry_due(session, T0 + timedelta(days=3))


def test_cancelled_session_accrues_nothing():
    session = _session()
    session.mark_cancelled(T0 + timedelta(minutes=4))
    view = accrual.accrue(session, T0 + timedelta(hours=2))
    assert view.elapsed_seconds == 240
    assert view.accrued_cost == 0.0


# ---------------------------------------------------------------------------
# Write guards on TimerSession
# ---------------------------------------------------------------------------


def test_rate_snapshot_cannot_be_reassigned():
    session = _session()
    with pytest.raises(AttributeError):
        session.rate_snapshot = 9.99
    with pytest.raises(AttributeError):
        session.started_at = T0 + timedelta(minutes=1)
    assert session.rate_snapshot == 2.5


def test_final_cost_is_write_once():
    session = _session()
    session.mark_settled(SessionState.COMPLETED, T0 + timedelta(minutes=5), 300.0, 12.5)
    with pytest.raises(AttributeError):
        session.final_cost = 0.0
    with pytest.raises(AttributeError):
        session.final_elapsed_seconds = 1.0
    assert session.final_cost == 12.5


def test_pause_accumulator_only_grows():
    session = _session()
    seen = [session.cumulative_paused_seconds]
    now = T0
    for pause_minutes in (1, 0, 3, 2):
        now += timedelta(minutes=1)
        session.mark_paused(now)
        now += timedelta(minutes=pause_minutes)
        session.mark_resumed(now)
        seen.append(session.cumulative_paused_seconds)
    assert seen == sorted(seen)
    assert seen[-1] == 6 * 60
