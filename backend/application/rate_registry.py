"""Rate registry: prestation and resource rates, read once at session start."""
from __future__ import annotations

import logging
from typing import List, Optional, TYPE_CHECKING
from uuid import uuid4

from domain.errors import NotFoundError, ValidationError
from domain.rate import RateDefinition, RateKind, ResourceInfo

if TYPE_CHECKING:
    from infrastructure.repository import TimerRepository

logger = logging.getLogger(__name__)


class RateRegistry:
    """
    Owns the current rate-per-minute of every prestation and resource.

    Changing a rate never reaches a running session: the state machine copies
    the value through ``snapshot_rate`` when the session starts.
    """

    def __init__(self, repository: "TimerRepository"):
        self.repository = repository

    # ================== Lookups ==================
    def get_rate(self, rate_id: str) -> float:
        return self._require(rate_id).rate_per_minute

    def get_definition(self, rate_id: str) -> RateDefinition:
        return self._require(rate_id)

    def get_resource(self, resource_ref: str) -> ResourceInfo:
        definition = self.repository.get_rate_definition(resource_ref)
        if definition is None or definition.kind != RateKind.RESOURCE:
            raise NotFoundError(f"Resource {resource_ref} not found")
        return ResourceInfo(
            resource_ref=definition.rate_id,
            company_id=definition.company_id,
            rate=definition.rate_per_minute,
            active=definition.active,
            name=definition.name,
        )

    def list_definitions(self, company_id: str, kind: Optional[RateKind] = None) -> List[RateDefinition]:
        return sorted(
            self.repository.list_rate_definitions(company_id=company_id, kind=kind),
            key=lambda d: (d.kind.value, d.name or "", d.rate_id),
        )

    # ================== Writes ==================
    def set_rate(self, rate_id: str, new_rate: float) -> RateDefinition:
        self._validate_rate(new_rate)
        definition = self._require(rate_id)
        previous = definition.rate_per_minute
        definition.rate_per_minute = float(new_rate)
        self.repository.save_rate_definition(definition)
        logger.info("Rate %s changed %.4f -> %.4f per minute", rate_id, previous, definition.rate_per_minute)
        return definition

    def define_prestation(
        self,
        company_id: str,
        name: str,
        rate: float,
        prestation_id: Optional[str] = None,
        active: bool = True,
    ) -> RateDefinition:
        self._validate_rate(rate)
        if not name or not name.strip():
            raise ValidationError("Prestation name is required")
        definition = RateDefinition(
            rate_id=prestation_id or str(uuid4()),
            company_id=company_id,
            kind=RateKind.PRESTATION,
            rate_per_minute=float(rate),
            name=name.strip(),
            active=active,
        )
        self._check_owner(definition)
        self.repository.save_rate_definition(definition)
        return definition

    def register_resource(
        self,
        resource_ref: str,
        company_id: str,
        rate: float,
        name: Optional[str] = None,
        active: bool = True,
    ) -> RateDefinition:
        self._validate_rate(rate)
        ref = (resource_ref or "").strip()
        if not ref:
            raise ValidationError("Resource reference is required")
        definition = RateDefinition(
            rate_id=ref,
            company_id=company_id,
            kind=RateKind.RESOURCE,
            rate_per_minute=float(rate),
            name=name,
            active=active,
        )
        self._check_owner(definition)
        self.repository.save_rate_definition(definition)
        return definition

    # ================== Session start ==================
    def snapshot_rate(self, company_id: str, resource_ref: str, prestation_id: Optional[str] = None) -> float:
        """
        Rate to freeze into a new session.

        Sessions booked against a prestation take the prestation rate and
        ``resource_ref`` is only a free-form reference (a plate typed at the
        counter). Without a prestation the resource must be catalogued, active
        and owned by the company, and its own rate applies.
        """
        if prestation_id is not None:
            prestation = self.repository.get_rate_definition(prestation_id)
            if prestation is None or prestation.kind != RateKind.PRESTATION or not prestation.active:
                raise NotFoundError(f"Prestation {prestation_id} not found")
            if prestation.company_id != company_id:
                raise ValidationError(f"Prestation {prestation_id} does not belong to company {company_id}")
            rate = prestation.rate_per_minute
        else:
            resource = self.get_resource(resource_ref)
            if not resource.active:
                raise NotFoundError(f"Resource {resource_ref} is not active")
            if resource.company_id != company_id:
                raise ValidationError(f"Resource {resource_ref} does not belong to company {company_id}")
            rate = resource.rate

        if rate <= 0:
            raise ValidationError(f"Rate for {prestation_id or resource_ref} must be positive to start a session")
        return rate

    # Helpers --------------------------------------------------------------
    def _require(self, rate_id: str) -> RateDefinition:
        definition = self.repository.get_rate_definition(rate_id)
        if definition is None:
            raise NotFoundError(f"Rate {rate_id} not found")
        return definition

    def _check_owner(self, definition: RateDefinition) -> None:
        existing = self.repository.get_rate_definition(definition.rate_id)
        if existing is None:
            return
        if existing.company_id != definition.company_id or existing.kind != definition.kind:
            raise ValidationError(f"Rate id {definition.rate_id} is already used")

    @staticmethod
    def _validate_rate(rate: float) -> None:
        if rate is None or rate < 0:
            raise ValidationError("Rate per minute must be non-negative")
