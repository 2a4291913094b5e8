"""SQLite-backed repository implementation."""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from domain.errors import ConcurrencyConflict, NotFoundError
from domain.line_item import BillableLineItem
from domain.policy import CompanyPolicy
from domain.rate import RateDefinition, RateKind
from domain.session import SessionMode, SessionState, TimerSession
from .repository import TimerRepository
from .database import SessionLocal, create_db_engine, init_db
from .models import CompanyPolicyModel, LineItemModel, RateDefinitionModel, TimerSessionModel


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite keeps no offset, so everything is stored as naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SQLiteTimerRepository(TimerRepository):
    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        if engine is None:
            if database_url is None:
                raise ValueError("SQLiteTimerRepository needs a database_url or an engine")
            engine = create_db_engine(database_url)
        self.engine = engine
        # Serializes read-modify-write on policy rows within the process.
        self._policy_lock = threading.Lock()
        init_db(self.engine)

    # Sessions -------------------------------------------------------------
    def add_session(self, session: TimerSession) -> None:
        try:
            with SessionLocal(self.engine) as db, db.begin():
                db.add(self._session_model(session))
        except IntegrityError as exc:
            raise ConcurrencyConflict(f"Session {session.session_id} already exists") from exc

    def get_session(self, session_id: str) -> Optional[TimerSession]:
        with SessionLocal(self.engine) as db:
            model = db.get(TimerSessionModel, session_id)
            return self._session_from_model(model) if model else None

    def save_session(self, session: TimerSession) -> None:
        values = self._session_values(session)
        values["version"] = session.version + 1
        stmt = (
            update(TimerSessionModel)
            .where(TimerSessionModel.session_id == session.session_id)
            .where(TimerSessionModel.version == session.version)
            .values(**values)
        )
        with SessionLocal(self.engine) as db, db.begin():
            result = db.connection().execute(stmt)
            if result.rowcount != 1:
                exists = db.get(TimerSessionModel, session.session_id) is not None
                if not exists:
                    raise NotFoundError(f"Session {session.session_id} not found")
                raise ConcurrencyConflict(f"Session {session.session_id} changed since v{session.version}")
        session.version += 1

    def list_sessions(
        self,
        company_id: Optional[str] = None,
        resource_ref: Optional[str] = None,
        states: Optional[Sequence[SessionState]] = None,
    ) -> Iterable[TimerSession]:
        stmt = select(TimerSessionModel)
        if company_id is not None:
            stmt = stmt.where(TimerSessionModel.company_id == company_id)
        if resource_ref is not None:
            stmt = stmt.where(TimerSessionModel.resource_ref == resource_ref)
        if states is not None:
            stmt = stmt.where(TimerSessionModel.state.in_([s.value for s in states]))
        stmt = stmt.order_by(TimerSessionModel.started_at)
        with SessionLocal(self.engine) as db:
            return [self._session_from_model(m) for m in db.exec(stmt).all()]

    # Company policies -----------------------------------------------------
    def get_policy(self, company_id: str) -> Optional[CompanyPolicy]:
        with SessionLocal(self.engine) as db:
            model = db.get(CompanyPolicyModel, company_id)
            return self._policy_from_model(model) if model else None

    def update_policy(
        self,
        company_id: str,
        mutate: Callable[[CompanyPolicy], None],
        create: Optional[Callable[[], CompanyPolicy]] = None,
    ) -> CompanyPolicy:
        with self._policy_lock, SessionLocal(self.engine) as db, db.begin():
            model = db.get(CompanyPolicyModel, company_id)
            if model is None:
                if create is None:
                    raise NotFoundError(f"Company {company_id} has no timer policy")
                policy = create()
                model = CompanyPolicyModel(company_id=company_id)
            else:
                policy = self._policy_from_model(model)
            mutate(policy)
            self._populate_policy_model(model, policy)
            db.add(model)
        return policy

    # Rates ----------------------------------------------------------------
    def get_rate_definition(self, rate_id: str) -> Optional[RateDefinition]:
        with SessionLocal(self.engine) as db:
            model = db.get(RateDefinitionModel, rate_id)
            return self._rate_from_model(model) if model else None

    def save_rate_definition(self, definition: RateDefinition) -> None:
        with SessionLocal(self.engine) as db, db.begin():
            db.merge(
                RateDefinitionModel(
                    rate_id=definition.rate_id,
                    company_id=definition.company_id,
                    kind=definition.kind.value,
                    rate_per_minute=definition.rate_per_minute,
                    name=definition.name,
                    active=definition.active,
                )
            )

    def list_rate_definitions(
        self, company_id: Optional[str] = None, kind: Optional[RateKind] = None
    ) -> Iterable[RateDefinition]:
        stmt = select(RateDefinitionModel)
        if company_id is not None:
            stmt = stmt.where(RateDefinitionModel.company_id == company_id)
        if kind is not None:
            stmt = stmt.where(RateDefinitionModel.kind == kind.value)
        with SessionLocal(self.engine) as db:
            return [self._rate_from_model(m) for m in db.exec(stmt).all()]

    # Ledger outbox --------------------------------------------------------
    def add_line_item(self, item: BillableLineItem) -> bool:
        try:
            with SessionLocal(self.engine) as db, db.begin():
                db.add(
                    LineItemModel(
                        session_id=item.session_id,
                        company_id=item.company_id,
                        resource_ref=item.resource_ref,
                        mode=item.mode.value,
                        state=item.state.value,
                        started_at=_to_db(item.started_at),
                        ended_at=_to_db(item.ended_at),
                        final_elapsed_seconds=item.final_elapsed_seconds,
                        rate_snapshot=item.rate_snapshot,
                        final_cost=item.final_cost,
                        prestation_id=item.prestation_id,
                        owner_user_id=item.owner_user_id,
                        partner_tag=item.partner_tag,
                    )
                )
        except IntegrityError:
            return False
        return True

    def list_undelivered_line_items(self) -> Iterable[BillableLineItem]:
        stmt = select(LineItemModel).where(LineItemModel.delivered == False)  # noqa: E712
        with SessionLocal(self.engine) as db:
            return [self._line_item_from_model(m) for m in db.exec(stmt).all()]

    def mark_line_item_delivered(self, session_id: str) -> None:
        with SessionLocal(self.engine) as db, db.begin():
            model = db.get(LineItemModel, session_id)
            if model:
                model.delivered = True
                db.add(model)

    def list_line_items(self, company_id: Optional[str] = None) -> Iterable[BillableLineItem]:
        stmt = select(LineItemModel)
        if company_id is not None:
            stmt = stmt.where(LineItemModel.company_id == company_id)
        with SessionLocal(self.engine) as db:
            return [self._line_item_from_model(m) for m in db.exec(stmt).all()]

    # Helpers --------------------------------------------------------------
    @staticmethod
    def _session_values(session: TimerSession) -> dict:
        return {
            "company_id": session.company_id,
            "resource_ref": session.resource_ref,
            "mode": session.mode.value,
            "state": session.state.value,
            "rate_snapshot": session.rate_snapshot,
            "started_at": _to_db(session.started_at),
            "fixed_duration_seconds": session.fixed_duration_seconds,
            "prestation_id": session.prestation_id,
            "cumulative_paused_seconds": session.cumulative_paused_seconds,
            "pause_started_at": _to_db(session.pause_started_at),
            "ended_at": _to_db(session.ended_at),
            "final_elapsed_seconds": session.final_elapsed_seconds,
            "final_cost": session.final_cost,
            "owner_user_id": session.owner_user_id,
            "partner_tag": session.partner_tag,
            "notes": session.notes,
        }

    def _session_model(self, session: TimerSession) -> TimerSessionModel:
        return TimerSessionModel(
            session_id=session.session_id,
            version=session.version,
            **self._session_values(session),
        )

    @staticmethod
    def _session_from_model(model: TimerSessionModel) -> TimerSession:
        return TimerSession(
            session_id=model.session_id,
            company_id=model.company_id,
            resource_ref=model.resource_ref,
            mode=SessionMode(model.mode),
            rate_snapshot=model.rate_snapshot,
            started_at=_from_db(model.started_at),
            fixed_duration_seconds=model.fixed_duration_seconds,
            prestation_id=model.prestation_id,
            state=SessionState(model.state),
            cumulative_paused_seconds=model.cumulative_paused_seconds,
            pause_started_at=_from_db(model.pause_started_at),
            ended_at=_from_db(model.ended_at),
            final_elapsed_seconds=model.final_elapsed_seconds,
            final_cost=model.final_cost,
            owner_user_id=model.owner_user_id,
            partner_tag=model.partner_tag,
            notes=model.notes,
            version=model.version,
        )

    @staticmethod
    def _policy_from_model(model: CompanyPolicyModel) -> CompanyPolicy:
        return CompanyPolicy(
            company_id=model.company_id,
            is_authorized=model.is_authorized,
            can_use_timers=model.can_use_timers,
            can_use_countdowns=model.can_use_countdowns,
            max_concurrent_resources=model.max_concurrent_resources,
            max_session_duration_seconds=model.max_session_duration_seconds,
            require_approval=model.require_approval,
            approval_threshold=model.approval_threshold,
            authorized_by=model.authorized_by,
            authorized_at=_from_db(model.authorized_at),
            notes=model.notes,
            total_sessions=model.total_sessions,
            total_revenue=model.total_revenue,
            last_used_at=_from_db(model.last_used_at),
        )

    @staticmethod
    def _populate_policy_model(model: CompanyPolicyModel, policy: CompanyPolicy) -> None:
        model.is_authorized = policy.is_authorized
        model.can_use_timers = policy.can_use_timers
        model.can_use_countdowns = policy.can_use_countdowns
        model.max_concurrent_resources = policy.max_concurrent_resources
        model.max_session_duration_seconds = policy.max_session_duration_seconds
        model.require_approval = policy.require_approval
        model.approval_threshold = policy.approval_threshold
        model.authorized_by = policy.authorized_by
        model.authorized_at = _to_db(policy.authorized_at)
        model.notes = policy.notes
        model.total_sessions = policy.total_sessions
        model.total_revenue = policy.total_revenue
        model.last_used_at = _to_db(policy.last_used_at)

    @staticmethod
    def _rate_from_model(model: RateDefinitionModel) -> RateDefinition:
        return RateDefinition(
            rate_id=model.rate_id,
            company_id=model.company_id,
            kind=RateKind(model.kind),
            rate_per_minute=model.rate_per_minute,
            name=model.name,
            active=model.active,
        )

    @staticmethod
    def _line_item_from_model(model: LineItemModel) -> BillableLineItem:
        return BillableLineItem(
            session_id=model.session_id,
            company_id=model.company_id,
            resource_ref=model.resource_ref,
            mode=SessionMode(model.mode),
            state=SessionState(model.state),
            started_at=_from_db(model.started_at),
            ended_at=_from_db(model.ended_at),
            final_elapsed_seconds=model.final_elapsed_seconds,
            rate_snapshot=model.rate_snapshot,
            final_cost=model.final_cost,
            prestation_id=model.prestation_id,
            owner_user_id=model.owner_user_id,
            partner_tag=model.partner_tag,
        )
