"""Shared fixtures: an engine on the in-memory store driven by a manual clock."""
from __future__ import annotations

from types import SimpleNamespace
from typing import Optional

import pytest

from app.config import AppConfig
from application.authorization import AuthorizationGate
from application.billing_service import BillingService
from application.clock import ManualClock
from application.events import AsyncEventBus
from application.rate_registry import RateRegistry
from application.session_registry import SessionRegistry
from application.state_machine import SessionStateMachine
from infrastructure.ledger import InMemorySalesLedger
from infrastructure.memory_store import InMemoryTimerRepository

COMPANY = "acme"
PLATE = "AB-123-CD"
RATE = 2.50

TEST_CONFIG = {
    "version": "test",
    "storage": {"backend": "memory"},
    "engine": {"lock_timeout_seconds": 1.0, "conflict_retries": 3, "sweep_interval_seconds": 0},
    "clock": {"ratio": 1.0},
    "policy_defaults": {
        "is_authorized": False,
        "can_use_timers": True,
        "can_use_countdowns": True,
        "max_concurrent_resources": 10,
        "max_session_duration_seconds": 28800,
        "require_approval": False,
        "approval_threshold": 1000.0,
    },
    "ledger": {"backend": "memory"},
    "cors": {"allowed_origins": []},
    "logging": {"level": "DEBUG"},
}


def build_system(repository=None, ledger=None, clock: Optional[ManualClock] = None, event_bus=None) -> SimpleNamespace:
    config = AppConfig(raw=TEST_CONFIG)
    repository = repository or InMemoryTimerRepository()
    ledger = ledger or InMemorySalesLedger()
    clock = clock or ManualClock()
    rates = RateRegistry(repository)
    gate = AuthorizationGate(config, repository, clock)
    registry = SessionRegistry(repository)
    billing = BillingService(repository, ledger)
    engine = SessionStateMachine(config, repository, clock, rates, gate, registry, billing, event_bus)
    return SimpleNamespace(
        config=config,
        repository=repository,
        ledger=ledger,
        clock=clock,
        rates=rates,
        gate=gate,
        registry=registry,
        billing=billing,
        engine=engine,
    )


def seed_company(system: SimpleNamespace, company_id: str = COMPANY, plate: str = PLATE, rate: float = RATE) -> None:
    """Authorized company owning one vehicle."""
    system.gate.authorize(company_id, authorized_by="admin")
    system.rates.register_resource(plate, company_id, rate, name="Test van")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def system(clock) -> SimpleNamespace:
    built = build_system(clock=clock)
    seed_company(built)
    return built


@pytest.fixture
def engine(system) -> SessionStateMachine:
    return system.engine


@pytest.fixture
def event_bus() -> AsyncEventBus:
    return AsyncEventBus()
