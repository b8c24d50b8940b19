"""Consecutive-failure tracking for a remote system."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from partner_sync.utils.timeutils import isoformat, utcnow

from .errors import CircuitOpenError

DEFAULT_FAILURE_THRESHOLD = 5


@dataclass
class HealthMonitor:
    """
    Circuit breaker state owned by a paginated fetcher.

    Every successful call resets ``consecutive_failures``; every failed call
    increments it. Once the count reaches ``threshold`` the monitor reports
    ``unhealthy`` and ``ensure_healthy`` refuses new sync operations until a
    success resets it.
    """

    system: str
    threshold: int = DEFAULT_FAILURE_THRESHOLD
    consecutive_failures: int = 0
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_error: str | None = None
    clock: Callable[[], datetime] = field(default=utcnow, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_success(self) -> None:
        with self._lock:
            self.consecutive_failures = 0
            self.last_success_at = self.clock()

    def record_failure(self, error: BaseException | str | None = None) -> None:
        with self._lock:
            self.consecutive_failures += 1
            self.last_failure_at = self.clock()
            if error is not None:
                self.last_error = str(error)

    @property
    def is_healthy(self) -> bool:
        return self.consecutive_failures < self.threshold

    @property
    def status(self) -> str:
        if self.consecutive_failures == 0:
            return "healthy"
        if self.consecutive_failures < self.threshold:
            return "degraded"
        return "unhealthy"

    def ensure_healthy(self, operation: str) -> None:
        if not self.is_healthy:
            raise CircuitOpenError(
                f"{self.system} API is unhealthy ({self.consecutive_failures} consecutive failures); "
                f"refusing to start {operation}."
            )

    def reset(self) -> None:
        with self._lock:
            self.consecutive_failures = 0
            self.last_error = None

    def to_dict(self) -> dict:
        return {
            "system": self.system,
            "status": self.status,
            "is_healthy": self.is_healthy,
            "consecutive_failures": self.consecutive_failures,
            "threshold": self.threshold,
            "last_success_at": isoformat(self.last_success_at),
            "last_failure_at": isoformat(self.last_failure_at),
            "last_error": self.last_error,
        }
