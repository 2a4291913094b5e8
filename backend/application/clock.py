"""Time sources for the engine.

All accrual is computed lazily from ``clock.now()``; the clock never ticks
sessions forward itself.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current wall-clock instant (timezone-aware, UTC)."""
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return utcnow()


class ScaledClock(Clock):
    """
    Accelerated clock for demos and scenario replays.

    - ratio 1.0 = real time
    - ratio 60.0 = one business minute per real second
    """

    def __init__(self, ratio: float, origin: Optional[datetime] = None):
        if ratio <= 0:
            raise ValueError("clock ratio must be positive")
        self._ratio = ratio
        self._origin = origin or utcnow()

    @property
    def ratio(self) -> float:
        return self._ratio

    def now(self) -> datetime:
        real_elapsed = (utcnow() - self._origin).total_seconds()
        return self._origin + timedelta(seconds=real_elapsed * self._ratio)


class ManualClock(Clock):
    """Clock that only moves when told to. Used by tests and replays."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 0.0, *, minutes: float = 0.0) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=seconds + minutes * 60)
            return self._now

    def set(self, instant: datetime) -> None:
        with self._lock:
            self._now = instant
