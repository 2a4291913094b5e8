"""Shared singletons for settings, repository, clock and services.

Backends (storage, ledger, clock speed) are picked from app_config.yaml.
"""
from __future__ import annotations

import logging

from app.config import AppConfig, get_settings
from application.authorization import AuthorizationGate
from application.billing_service import BillingService
from application.clock import Clock, ScaledClock, SystemClock
from application.events import AsyncEventBus
from application.rate_registry import RateRegistry
from application.session_registry import SessionRegistry
from application.state_machine import SessionStateMachine
from domain.ledger import SalesLedger

from infrastructure.ledger import HttpSalesLedger, InMemorySalesLedger
from infrastructure.memory_store import InMemoryTimerRepository
from infrastructure.repository import TimerRepository
from infrastructure.sqlite_repo import SQLiteTimerRepository

logger = logging.getLogger(__name__)

settings = get_settings()


def _create_repository() -> TimerRepository:
    backend = settings.storage_backend
    if backend == "memory":
        return InMemoryTimerRepository()
    elif backend == "sqlite":
        return SQLiteTimerRepository(settings.sqlite_url)
    else:
        raise ValueError(f"Unknown storage backend: {backend}. Supported: sqlite, memory")


def _create_ledger() -> SalesLedger:
    backend = settings.ledger_backend
    if backend == "memory":
        return InMemorySalesLedger()
    elif backend == "http":
        ledger_cfg = settings.ledger
        return HttpSalesLedger(ledger_cfg["url"], timeout=float(ledger_cfg.get("timeout_seconds", 10.0)))
    else:
        raise ValueError(f"Unknown ledger backend: {backend}. Supported: http, memory")


def _create_clock() -> Clock:
    ratio = float((settings.clock or {}).get("ratio", 1.0))
    if ratio == 1.0:
        return SystemClock()
    return ScaledClock(ratio)


repository = _create_repository()
ledger = _create_ledger()
clock = _create_clock()
event_bus = AsyncEventBus()

rate_registry = RateRegistry(repository)
authorization_gate = AuthorizationGate(settings, repository, clock)
session_registry = SessionRegistry(repository)
billing_service = BillingService(repository, ledger)
engine = SessionStateMachine(
    settings,
    repository,
    clock,
    rate_registry,
    authorization_gate,
    session_registry,
    billing_service,
    event_bus,
)

# Live sessions survive a restart with the sqlite backend.
session_registry.rebuild()

logger.info("Storage backend: %s, ledger backend: %s", settings.storage_backend, settings.ledger_backend)


def apply_settings(new_settings: AppConfig) -> None:
    """Update global settings reference and refresh dependent singletons."""
    global settings
    settings = new_settings
    authorization_gate.update_config(new_settings)
    engine.update_config(new_settings)


def reload_settings_from_disk() -> AppConfig:
    """Force re-read of app_config.yaml and propagate changes."""
    get_settings.cache_clear()
    fresh = get_settings()
    apply_settings(fresh)
    return fresh
