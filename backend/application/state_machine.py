"""
Session state machine: the only writer of TimerSession records.

[none] -> RUNNING <-> PAUSED -> COMPLETED | CANCELLED | EXPIRED

Every operation loads the session under its lock, applies a due expiry
first, mutates the loaded copy and saves it with a version check. Statistics and
events follow a successful save. The ledger call waits until the session
lock is released.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union, TYPE_CHECKING
from uuid import uuid4

from domain import accrual
from domain.errors import ConcurrencyConflict, InvalidStateTransition, LimitExceeded, NotFoundError, ValidationError
from domain.line_item import BillableLineItem
from domain.session import SessionMode, SessionState, TimerSession
from application.events import EventType, SessionEvent

if TYPE_CHECKING:
    from app.config import AppConfig
    from application.authorization import AuthorizationGate
    from application.billing_service import BillingService, SettlementResult
    from application.clock import Clock
    from application.events import AsyncEventBus
    from application.rate_registry import RateRegistry
    from application.session_registry import SessionRegistry
    from infrastructure.repository import TimerRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TERMINAL_EVENTS = {
    SessionState.COMPLETED: EventType.SESSION_COMPLETED,
    SessionState.EXPIRED: EventType.SESSION_EXPIRED,
    SessionState.CANCELLED: EventType.SESSION_CANCELLED,
}


@dataclass(frozen=True)
class SessionStatus:
    session_id: str
    company_id: str
    resource_ref: str
    mode: SessionMode
    state: SessionState
    rate_snapshot: float
    started_at: datetime
    elapsed_seconds: float
    accrued_cost: float
    remaining_seconds: Optional[float] = None
    fixed_duration_seconds: Optional[float] = None
    expires_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    final_cost: Optional[float] = None
    prestation_id: Optional[str] = None
    owner_user_id: Optional[str] = None
    partner_tag: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def of(cls, session: TimerSession, now: datetime) -> "SessionStatus":
        view = accrual.accrue(session, now)
        return cls(
            session_id=session.session_id,
            company_id=session.company_id,
            resource_ref=session.resource_ref,
            mode=session.mode,
            state=session.state,
            rate_snapshot=session.rate_snapshot,
            started_at=session.started_at,
            elapsed_seconds=view.elapsed_seconds,
            accrued_cost=view.accrued_cost,
            remaining_seconds=view.remaining_seconds,
            fixed_duration_seconds=session.fixed_duration_seconds,
            expires_at=accrual.expires_at(session),
            ended_at=session.ended_at,
            final_cost=session.final_cost,
            prestation_id=session.prestation_id,
            owner_user_id=session.owner_user_id,
            partner_tag=session.partner_tag,
            notes=session.notes,
        )

    def to_payload(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "sessionId": self.session_id,
            "companyId": self.company_id,
            "resourceRef": self.resource_ref,
            "mode": self.mode.value,
            "state": self.state.value,
            "ratePerMinute": self.rate_snapshot,
            "startedAt": iso(self.started_at),
            "elapsedSeconds": round(self.elapsed_seconds, 3),
            "accruedCost": round(self.accrued_cost, 2),
            "remainingSeconds": None if self.remaining_seconds is None else round(self.remaining_seconds, 3),
            "fixedDurationSeconds": self.fixed_duration_seconds,
            "expiresAt": iso(self.expires_at),
            "endedAt": iso(self.ended_at),
            "finalCost": self.final_cost,
            "prestationId": self.prestation_id,
            "ownerUserId": self.owner_user_id,
            "partnerTag": self.partner_tag,
            "notes": self.notes,
        }


class SessionStateMachine:
    def __init__(
        self,
        config: "AppConfig",
        repository: "TimerRepository",
        clock: "Clock",
        rates: "RateRegistry",
        gate: "AuthorizationGate",
        registry: "SessionRegistry",
        billing: "BillingService",
        event_bus: Optional["AsyncEventBus"] = None,
    ):
        self.config = config
        self.repository = repository
        self.clock = clock
        self.rates = rates
        self.gate = gate
        self.registry = registry
        self.billing = billing
        self.event_bus = event_bus
        self._locks_guard = threading.Lock()
        self._session_locks: Dict[str, threading.Lock] = {}
        self._reload_config()

    def _reload_config(self) -> None:
        engine_cfg = self.config.engine or {}
        self.lock_timeout = float(engine_cfg.get("lock_timeout_seconds", 2.0))
        self.conflict_retries = max(0, int(engine_cfg.get("conflict_retries", 3)))

    def update_config(self, config: "AppConfig") -> None:
        self.config = config
        self._reload_config()

    # ================== Start ==================
    def start(
        self,
        company_id: str,
        resource_ref: str,
        mode: Union[SessionMode, str],
        *,
        prestation_id: Optional[str] = None,
        fixed_duration_seconds: Optional[float] = None,
        owner_user_id: Optional[str] = None,
        partner_tag: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> TimerSession:
        mode = self._parse_mode(mode)
        if not resource_ref or not str(resource_ref).strip():
            raise ValidationError("resource_ref is required")
        if mode == SessionMode.FIXED_DURATION:
            if fixed_duration_seconds is None or fixed_duration_seconds <= 0:
                raise ValidationError("Fixed-duration sessions need a positive duration")
            if prestation_id is not None:
                raise ValidationError("Fixed-duration sessions are priced by the resource rate")
            fixed_duration_seconds = float(fixed_duration_seconds)
        elif fixed_duration_seconds is not None:
            raise ValidationError("Metered sessions do not take a duration")

        # Nothing below runs for an unknown or unauthorized company.
        self.gate.check_access(company_id, mode)
        self._expire_due(self.registry.active_ids(company_id))
        rate = self.rates.snapshot_rate(company_id, resource_ref, prestation_id)
        projected_cost = accrual.cost(fixed_duration_seconds, rate) if fixed_duration_seconds else None

        with self.registry.company_guard(company_id, timeout=self.lock_timeout):
            rate_source = prestation_id or resource_ref
            for other in self.registry.list_active_for_resource(resource_ref):
                if other.company_id == company_id and other.rate_source == rate_source:
                    raise LimitExceeded(
                        f"Resource {resource_ref} already has live session {other.session_id} for {rate_source}"
                    )
            self.gate.authorize_start(
                company_id,
                mode,
                active_count=self.registry.count_active(company_id),
                requested_duration_seconds=fixed_duration_seconds,
                projected_cost=projected_cost,
            )
            session = TimerSession(
                session_id=str(uuid4()),
                company_id=company_id,
                resource_ref=resource_ref,
                mode=mode,
                rate_snapshot=rate,
                started_at=self.clock.now(),
                fixed_duration_seconds=fixed_duration_seconds,
                prestation_id=prestation_id,
                owner_user_id=owner_user_id,
                partner_tag=partner_tag,
                notes=notes,
            )
            self.repository.add_session(session)
            self.registry.register(session)

        logger.info(
            "Session %s started: company=%s resource=%s mode=%s rate=%.4f/min",
            session.session_id, company_id, resource_ref, mode.value, rate,
        )
        self._publish(EventType.SESSION_STARTED, session, session.started_at)
        return session

    # ================== Transitions ==================
    def pause(self, session_id: str) -> SessionStatus:
        def apply(session: TimerSession, now: datetime, handoff: List[BillableLineItem]) -> SessionStatus:
            if session.state != SessionState.RUNNING:
                raise InvalidStateTransition(session_id, session.state.value, "pause")
            session.mark_paused(now)
            self.repository.save_session(session)
            logger.info("Session %s paused", session_id)
            self._publish(EventType.SESSION_PAUSED, session, now)
            return SessionStatus.of(session, now)

        return self._with_session(session_id, "pause", apply)

    def resume(self, session_id: str) -> SessionStatus:
        def apply(session: TimerSession, now: datetime, handoff: List[BillableLineItem]) -> SessionStatus:
            if session.state != SessionState.PAUSED:
                raise InvalidStateTransition(session_id, session.state.value, "resume")
            pause_length = session.mark_resumed(now)
            self.repository.save_session(session)
            logger.info("Session %s resumed after %.1fs pause", session_id, pause_length)
            self._publish(EventType.SESSION_RESUMED, session, now)
            return SessionStatus.of(session, now)

        return self._with_session(session_id, "resume", apply)

    def stop(self, session_id: str) -> "SettlementResult":
        def apply(session: TimerSession, now: datetime, handoff: List[BillableLineItem]) -> "SettlementResult":
            if not session.is_live:
                raise InvalidStateTransition(session_id, session.state.value, "stop")
            result = self.billing.settle(session, now)
            self.repository.save_session(session)
            logger.info(
                "Session %s completed: %.1fs billed, cost %.2f",
                session_id, result.final_elapsed_seconds, result.final_cost,
            )
            self._after_settlement(session, now, handoff)
            return result

        return self._with_session(session_id, "stop", apply)

    def cancel(self, session_id: str) -> SessionStatus:
        def apply(session: TimerSession, now: datetime, handoff: List[BillableLineItem]) -> SessionStatus:
            if not session.is_live:
                raise InvalidStateTransition(session_id, session.state.value, "cancel")
            session.mark_cancelled(now)
            self.repository.save_session(session)
            self.registry.mark_inactive(session)
            logger.info("Session %s cancelled, nothing billed", session_id)
            self._publish(EventType.SESSION_CANCELLED, session, now)
            return SessionStatus.of(session, now)

        return self._with_session(session_id, "cancel", apply)

    # ================== Queries ==================
    def get_status(self, session_id: str) -> SessionStatus:
        """Current view of a session. A due countdown is expired before returning."""
        return self._with_session(
            session_id,
            "status",
            lambda session, now, handoff: SessionStatus.of(session, now),
            fail_if_expired=False,
        )

    def describe(self, session: TimerSession) -> SessionStatus:
        return SessionStatus.of(session, self.clock.now())

    def list_active(self, company_id: str) -> List[TimerSession]:
        self._expire_due(self.registry.active_ids(company_id))
        return self.registry.list_active(company_id)

    def list_active_for_resource(self, resource_ref: str) -> List[TimerSession]:
        self._expire_due(self.registry.active_ids_for_resource(resource_ref))
        return self.registry.list_active_for_resource(resource_ref)

    def sweep_expired(self) -> int:
        """Expire every live countdown whose time is up. Returns how many were expired."""
        now = self.clock.now()
        due = [
            s.session_id
            for s in self.repository.list_sessions(states=(SessionState.RUNNING, SessionState.PAUSED))
            if accrual.is_expiry_due(s, now)
        ]
        expired = 0
        for session_id in due:
            try:
                status = self.get_status(session_id)
            except ConcurrencyConflict:
                logger.warning("Sweep skipped session %s, it is busy", session_id)
                continue
            if status.state == SessionState.EXPIRED:
                expired += 1
        if expired:
            logger.info("Sweep expired %d session(s)", expired)
        return expired

    # Helpers --------------------------------------------------------------
    def _with_session(
        self,
        session_id: str,
        operation: str,
        apply: Callable[[TimerSession, datetime, List[BillableLineItem]], T],
        *,
        fail_if_expired: bool = True,
    ) -> T:
        attempts = self.conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self._run_locked(session_id, operation, apply, fail_if_expired)
            except ConcurrencyConflict:
                if attempt >= attempts:
                    raise
                logger.warning("Conflict on %s of session %s, retry %d/%d", operation, session_id, attempt, attempts - 1)
        raise ConcurrencyConflict(f"Could not {operation} session {session_id}")  # pragma: no cover

    def _run_locked(
        self,
        session_id: str,
        operation: str,
        apply: Callable[[TimerSession, datetime, List[BillableLineItem]], T],
        fail_if_expired: bool,
    ) -> T:
        lock = self._lock_for(session_id)
        if not lock.acquire(timeout=self.lock_timeout):
            raise ConcurrencyConflict(f"Timed out waiting for session {session_id}")
        # Line items queued under the lock, delivered once it is released
        handoff: List[BillableLineItem] = []
        settled = False
        try:
            session = self.repository.get_session(session_id)
            if session is None:
                raise NotFoundError(f"Session {session_id} not found")
            settled = not session.is_live
            now = self.clock.now()
            if accrual.is_expiry_due(session, now):
                self._expire(session, now, handoff)
                settled = True
                if fail_if_expired:
                    raise InvalidStateTransition(
                        session_id,
                        SessionState.EXPIRED.value,
                        operation,
                        f"Session {session_id} expired before it could {operation}",
                    )
            result = apply(session, now, handoff)
            settled = not session.is_live
            return result
        finally:
            lock.release()
            if settled:
                self._drop_lock(session_id, lock)
            for item in handoff:
                self.billing.deliver(item)

    def _expire(self, session: TimerSession, now: datetime, handoff: List[BillableLineItem]) -> None:
        result = self.billing.settle(session, now, expired=True)
        self.repository.save_session(session)
        logger.info("Session %s expired, charged %.2f for %.0fs", session.session_id, result.final_cost, result.final_elapsed_seconds)
        self._after_settlement(session, now, handoff)

    def _after_settlement(self, session: TimerSession, now: datetime, handoff: List[BillableLineItem]) -> None:
        self.registry.mark_inactive(session)
        item = self.billing.queue(session)
        if item is not None:
            handoff.append(item)
            self.registry.record_completion(session, session.ended_at or now)
        self._publish(_TERMINAL_EVENTS[session.state], session, now)

    def _expire_due(self, session_ids: List[str]) -> None:
        for session_id in session_ids:
            try:
                self.get_status(session_id)
            except NotFoundError:
                logger.warning("Indexed session %s is missing from storage", session_id)

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._session_locks.setdefault(session_id, threading.Lock())

    def _drop_lock(self, session_id: str, lock: threading.Lock) -> None:
        # Terminal sessions never change again, a later caller may start a fresh lock
        with self._locks_guard:
            if self._session_locks.get(session_id) is lock:
                del self._session_locks[session_id]

    def _publish(self, event_type: EventType, session: TimerSession, now: datetime) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish_sync(
            SessionEvent(
                event_type=event_type,
                session_id=session.session_id,
                company_id=session.company_id,
                payload=SessionStatus.of(session, now).to_payload(),
            )
        )

    @staticmethod
    def _parse_mode(mode: Union[SessionMode, str]) -> SessionMode:
        try:
            return SessionMode(mode)
        except ValueError:
            raise ValidationError(f"Unknown session mode: {mode}") from None
