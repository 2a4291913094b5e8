"""In-memory data store, fastest option but lost on restart."""
from __future__ import annotations

import copy
import threading
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from domain.errors import ConcurrencyConflict, NotFoundError
from domain.line_item import BillableLineItem
from domain.policy import CompanyPolicy
from domain.rate import RateDefinition, RateKind
from domain.session import SessionState, TimerSession
from .repository import TimerRepository


class InMemoryTimerRepository(TimerRepository):
    def __init__(self):
        self._lock = threading.RLock()
        self._sessions: Dict[str, TimerSession] = {}
        self._policies: Dict[str, CompanyPolicy] = {}
        self._rates: Dict[str, RateDefinition] = {}
        self._line_items: Dict[str, BillableLineItem] = {}
        self._undelivered: List[str] = []

    # Sessions -------------------------------------------------------------
    def add_session(self, session: TimerSession) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise ConcurrencyConflict(f"Session {session.session_id} already exists")
            self._sessions[session.session_id] = copy.copy(session)

    def get_session(self, session_id: str) -> Optional[TimerSession]:
        with self._lock:
            stored = self._sessions.get(session_id)
            return copy.copy(stored) if stored else None

    def save_session(self, session: TimerSession) -> None:
        with self._lock:
            stored = self._sessions.get(session.session_id)
            if stored is None:
                raise NotFoundError(f"Session {session.session_id} not found")
            if stored.version != session.version:
                raise ConcurrencyConflict(
                    f"Session {session.session_id} changed (stored v{stored.version}, got v{session.version})"
                )
            session.version += 1
            self._sessions[session.session_id] = copy.copy(session)

    def list_sessions(
        self,
        company_id: Optional[str] = None,
        resource_ref: Optional[str] = None,
        states: Optional[Sequence[SessionState]] = None,
    ) -> Iterable[TimerSession]:
        with self._lock:
            matches = [
                copy.copy(s)
                for s in self._sessions.values()
                if (company_id is None or s.company_id == company_id)
                and (resource_ref is None or s.resource_ref == resource_ref)
                and (states is None or s.state in states)
            ]
        return sorted(matches, key=lambda s: s.started_at)

    # Company policies -----------------------------------------------------
    def get_policy(self, company_id: str) -> Optional[CompanyPolicy]:
        with self._lock:
            stored = self._policies.get(company_id)
            return copy.copy(stored) if stored else None

    def update_policy(
        self,
        company_id: str,
        mutate: Callable[[CompanyPolicy], None],
        create: Optional[Callable[[], CompanyPolicy]] = None,
    ) -> CompanyPolicy:
        with self._lock:
            stored = self._policies.get(company_id)
            if stored is None:
                if create is None:
                    raise NotFoundError(f"Company {company_id} has no timer policy")
                stored = create()
            policy = copy.copy(stored)
            mutate(policy)
            self._policies[company_id] = policy
            return copy.copy(policy)

    # Rates ----------------------------------------------------------------
    def get_rate_definition(self, rate_id: str) -> Optional[RateDefinition]:
        with self._lock:
            stored = self._rates.get(rate_id)
            return copy.copy(stored) if stored else None

    def save_rate_definition(self, definition: RateDefinition) -> None:
        with self._lock:
            self._rates[definition.rate_id] = copy.copy(definition)

    def list_rate_definitions(
        self, company_id: Optional[str] = None, kind: Optional[RateKind] = None
    ) -> Iterable[RateDefinition]:
        with self._lock:
            return [
                copy.copy(d)
                for d in self._rates.values()
                if (company_id is None or d.company_id == company_id)
                and (kind is None or d.kind == kind)
            ]

    # Ledger outbox --------------------------------------------------------
    def add_line_item(self, item: BillableLineItem) -> bool:
        with self._lock:
            if item.session_id in self._line_items:
                return False
            self._line_items[item.session_id] = item
            self._undelivered.append(item.session_id)
            return True

    def list_undelivered_line_items(self) -> Iterable[BillableLineItem]:
        with self._lock:
            return [self._line_items[sid] for sid in self._undelivered]

    def mark_line_item_delivered(self, session_id: str) -> None:
        with self._lock:
            if session_id in self._undelivered:
                self._undelivered.remove(session_id)

    def list_line_items(self, company_id: Optional[str] = None) -> Iterable[BillableLineItem]:
        with self._lock:
            return [
                item
                for item in self._line_items.values()
                if company_id is None or item.company_id == company_id
            ]
