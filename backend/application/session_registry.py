"""Session registry: active-session indexes, start guards and usage statistics."""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Set, TYPE_CHECKING

from domain.errors import ConcurrencyConflict
from domain.session import LIVE_STATES, SessionState, TimerSession

if TYPE_CHECKING:
    from infrastructure.repository import TimerRepository

logger = logging.getLogger(__name__)


@dataclass
class UsageSummary:
    sessions: int = 0
    billed_seconds: float = 0.0
    revenue: float = 0.0
    last_used_at: Optional[datetime] = None

    def add(self, session: TimerSession) -> None:
        self.sessions += 1
        self.billed_seconds += session.final_elapsed_seconds or 0.0
        self.revenue += session.final_cost or 0.0
        if session.ended_at and (self.last_used_at is None or session.ended_at > self.last_used_at):
            self.last_used_at = session.ended_at


@dataclass
class CompanyStatistics:
    company_id: str
    total_sessions: int
    total_revenue: float
    last_used_at: Optional[datetime]
    active_sessions: int
    by_user: Dict[str, UsageSummary] = field(default_factory=dict)
    by_resource: Dict[str, UsageSummary] = field(default_factory=dict)


class SessionRegistry:
    """
    In-process indexes over live sessions plus the per-company start guard.

    The repository stays the source of truth; ``rebuild`` restores the
    indexes from it after a restart.
    """

    def __init__(self, repository: "TimerRepository"):
        self.repository = repository
        self._lock = threading.RLock()
        self._by_company: Dict[str, Set[str]] = {}
        self._by_resource: Dict[str, Set[str]] = {}
        self._company_guards: Dict[str, threading.Lock] = {}

    # ================== Start guard ==================
    @contextmanager
    def company_guard(self, company_id: str, timeout: float = 2.0) -> Iterator[None]:
        """Serializes the active-count check and insert of ``start`` per company."""
        with self._lock:
            guard = self._company_guards.setdefault(company_id, threading.Lock())
        if not guard.acquire(timeout=timeout):
            raise ConcurrencyConflict(f"Timed out waiting for the start guard of company {company_id}")
        try:
            yield
        finally:
            guard.release()

    # ================== Indexes ==================
    def register(self, session: TimerSession) -> None:
        with self._lock:
            self._by_company.setdefault(session.company_id, set()).add(session.session_id)
            self._by_resource.setdefault(session.resource_ref, set()).add(session.session_id)

    def mark_inactive(self, session: TimerSession) -> None:
        with self._lock:
            _discard(self._by_company, session.company_id, session.session_id)
            _discard(self._by_resource, session.resource_ref, session.session_id)

    def active_ids(self, company_id: str) -> List[str]:
        with self._lock:
            return list(self._by_company.get(company_id, ()))

    def active_ids_for_resource(self, resource_ref: str) -> List[str]:
        with self._lock:
            return list(self._by_resource.get(resource_ref, ()))

    def count_active(self, company_id: str) -> int:
        with self._lock:
            return len(self._by_company.get(company_id, ()))

    def list_active(self, company_id: str) -> List[TimerSession]:
        return self._load_live(self.active_ids(company_id))

    def list_active_for_resource(self, resource_ref: str) -> List[TimerSession]:
        return self._load_live(self.active_ids_for_resource(resource_ref))

    def rebuild(self) -> int:
        """Reload the indexes from storage. Returns the number of live sessions."""
        with self._lock:
            self._by_company.clear()
            self._by_resource.clear()
            live = 0
            for session in self.repository.list_sessions():
                if session.is_live:
                    self.register(session)
                    live += 1
        logger.info("Session registry rebuilt with %d live sessions", live)
        return live

    # ================== Statistics ==================
    def record_completion(self, session: TimerSession, now: datetime) -> None:
        """Add a settled session to the company counters.

        Called once per session, right after its line item entered the outbox.
        """
        revenue = session.final_cost or 0.0
        self.repository.update_policy(session.company_id, lambda p: p.record_usage(revenue, now))

    def company_statistics(self, company_id: str) -> CompanyStatistics:
        policy = self.repository.get_policy(company_id)
        by_user: Dict[str, UsageSummary] = {}
        by_resource: Dict[str, UsageSummary] = {}
        settled = self.repository.list_sessions(
            company_id=company_id,
            states=(SessionState.COMPLETED, SessionState.EXPIRED),
        )
        for session in settled:
            by_resource.setdefault(session.resource_ref, UsageSummary()).add(session)
            if session.owner_user_id:
                by_user.setdefault(session.owner_user_id, UsageSummary()).add(session)
        return CompanyStatistics(
            company_id=company_id,
            total_sessions=policy.total_sessions if policy else 0,
            total_revenue=policy.total_revenue if policy else 0.0,
            last_used_at=policy.last_used_at if policy else None,
            active_sessions=self.count_active(company_id),
            by_user=by_user,
            by_resource=by_resource,
        )

    # Helpers --------------------------------------------------------------
    def _load_live(self, session_ids: List[str]) -> List[TimerSession]:
        sessions = []
        for session_id in session_ids:
            session = self.repository.get_session(session_id)
            if session is not None and session.state in LIVE_STATES:
                sessions.append(session)
        return sorted(sessions, key=lambda s: s.started_at)


def _discard(index: Dict[str, Set[str]], key: str, session_id: str) -> None:
    ids = index.get(key)
    if ids is None:
        return
    ids.discard(session_id)
    if not ids:
        del index[key]
