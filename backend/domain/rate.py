"""Rate-per-minute definitions for timer prestations and resources."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RateKind(str, Enum):
    PRESTATION = "PRESTATION"  # named stopwatch service
    RESOURCE = "RESOURCE"      # a vehicle's own intrinsic rate


@dataclass
class RateDefinition:
    rate_id: str
    company_id: str
    kind: RateKind
    rate_per_minute: float
    name: Optional[str] = None
    active: bool = True


@dataclass(frozen=True)
class ResourceInfo:
    """Resource catalog view consumed when starting a session."""

    resource_ref: str
    company_id: str
    rate: float
    active: bool
    name: Optional[str] = None
