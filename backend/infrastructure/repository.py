"""Abstract repository interface for persistence."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Iterable, Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from domain.line_item import BillableLineItem
    from domain.policy import CompanyPolicy
    from domain.rate import RateDefinition, RateKind
    from domain.session import SessionState, TimerSession


class TimerRepository(ABC):
    """Unified gateway so memory store / SQLite share the same API.

    Sessions are returned as copies; callers mutate the copy and hand it back
    to ``save_session``, which only succeeds if nobody saved in between.
    """

    # Sessions -------------------------------------------------------------
    @abstractmethod
    def add_session(self, session: "TimerSession") -> None:
        raise NotImplementedError

    @abstractmethod
    def get_session(self, session_id: str) -> Optional["TimerSession"]:
        raise NotImplementedError

    @abstractmethod
    def save_session(self, session: "TimerSession") -> None:
        """Persist if the stored version matches, then bump ``session.version``.

        Raises ConcurrencyConflict on a version mismatch.
        """
        raise NotImplementedError

    @abstractmethod
    def list_sessions(
        self,
        company_id: Optional[str] = None,
        resource_ref: Optional[str] = None,
        states: Optional[Sequence["SessionState"]] = None,
    ) -> Iterable["TimerSession"]:
        raise NotImplementedError

    # Company policies -----------------------------------------------------
    @abstractmethod
    def get_policy(self, company_id: str) -> Optional["CompanyPolicy"]:
        raise NotImplementedError

    @abstractmethod
    def update_policy(
        self,
        company_id: str,
        mutate: Callable[["CompanyPolicy"], None],
        create: Optional[Callable[[], "CompanyPolicy"]] = None,
    ) -> "CompanyPolicy":
        """Atomic read-modify-write of one policy record.

        ``create`` builds the record when missing; without it a missing record
        raises NotFoundError.
        """
        raise NotImplementedError

    # Rates ----------------------------------------------------------------
    @abstractmethod
    def get_rate_definition(self, rate_id: str) -> Optional["RateDefinition"]:
        raise NotImplementedError

    @abstractmethod
    def save_rate_definition(self, definition: "RateDefinition") -> None:
        raise NotImplementedError

    @abstractmethod
    def list_rate_definitions(
        self, company_id: Optional[str] = None, kind: Optional["RateKind"] = None
    ) -> Iterable["RateDefinition"]:
        raise NotImplementedError

    # Ledger outbox --------------------------------------------------------
    @abstractmethod
    def add_line_item(self, item: "BillableLineItem") -> bool:
        """Store a line item once per session; False if one already exists."""
        raise NotImplementedError

    @abstractmethod
    def list_undelivered_line_items(self) -> Iterable["BillableLineItem"]:
        raise NotImplementedError

    @abstractmethod
    def mark_line_item_delivered(self, session_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_line_items(self, company_id: Optional[str] = None) -> Iterable["BillableLineItem"]:
        raise NotImplementedError
