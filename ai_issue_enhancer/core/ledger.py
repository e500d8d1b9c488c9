"""
In-process usage ledger.

Accumulates token, cost and request counters globally, per month and per
backend. Counters only ever grow; every update happens under one lock so
concurrent callers cannot lose increments.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, Optional

from .backends import Backend
from .token_counter import TokenUsage

SUCCESS_WINDOW = 20


@dataclass
class BackendUsage:
    """Running counters for one backend.

    Tokens, cost and requests are credited only for successful attempts.
    """
    tokens: int = 0
    cost: float = 0.0
    requests: int = 0
    attempts: int = 0
    failures: int = 0
    retries: int = 0
    last_error: Optional[str] = None
    recent: Deque[bool] = field(default_factory=lambda: deque(maxlen=SUCCESS_WINDOW))

    @property
    def success_rate(self) -> float:
        """Share of successes over the most recent attempts (1.0 before any)."""
        if not self.recent:
            return 1.0
        return sum(self.recent) / len(self.recent)


@dataclass
class PeriodUsage:
    """Counters for one calendar month."""
    tokens: int = 0
    cost: float = 0.0
    requests: int = 0


@dataclass(frozen=True)
class BackendUsageSnapshot:
    tokens: int
    cost: float
    requests: int
    attempts: int
    failures: int
    retries: int
    success_rate: float
    last_error: Optional[str] = None


@dataclass(frozen=True)
class UsageSnapshot:
    """Point-in-time copy of the ledger."""
    total_tokens: int
    total_cost: float
    total_requests: int
    month: str
    month_tokens: int
    month_cost: float
    month_requests: int
    backends: Dict[str, BackendUsageSnapshot]

    def to_dict(self) -> dict:
        return {
            "totalTokensUsed": self.total_tokens,
            "totalCostAccrued": self.total_cost,
            "requestCount": self.total_requests,
            "monthlyUsage": {
                "month": self.month,
                "tokens": self.month_tokens,
                "cost": self.month_cost,
                "requests": self.month_requests,
            },
            "backendUsage": {
                name: {
                    "tokens": usage.tokens,
                    "cost": usage.cost,
                    "requests": usage.requests,
                    "attempts": usage.attempts,
                    "failures": usage.failures,
                    "successRate": usage.success_rate,
                }
                for name, usage in self.backends.items()
            },
        }


class UsageLedger:
    """Process-lifetime usage counters.

    Updated exactly once per completed attempt via record_success() or
    record_failure().
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._clock = clock
        self._lock = threading.Lock()
        self._total = PeriodUsage()
        self._months: Dict[str, PeriodUsage] = {}
        self._backends: Dict[Backend, BackendUsage] = {b: BackendUsage() for b in Backend}

    def _month_key(self) -> str:
        return self._clock().strftime("%Y-%m")

    def record_success(self, backend: Backend, usage: TokenUsage, cost: float, retry_count: int = 0) -> None:
        """Credit a successful attempt."""
        if cost < 0:
            raise ValueError("cost must be >= 0")
        tokens = usage.total_tokens
        with self._lock:
            month = self._months.setdefault(self._month_key(), PeriodUsage())
            for period in (self._total, month):
                period.tokens += tokens
                period.cost += cost
                period.requests += 1
            entry = self._backends[backend]
            entry.tokens += tokens
            entry.cost += cost
            entry.requests += 1
            entry.attempts += 1
            entry.retries += retry_count
            entry.recent.append(True)

    def record_failure(self, backend: Backend, error: str, retry_count: int = 0) -> None:
        """Record a terminally failed attempt without crediting usage."""
        with self._lock:
            entry = self._backends[backend]
            entry.attempts += 1
            entry.failures += 1
            entry.retries += retry_count
            entry.last_error = error
            entry.recent.append(False)

    def month_cost(self) -> float:
        """Spend recorded in the current calendar month."""
        with self._lock:
            month = self._months.get(self._month_key())
            return month.cost if month else 0.0

    def snapshot(self) -> UsageSnapshot:
        """Consistent copy of every counter."""
        with self._lock:
            key = self._month_key()
            month = self._months.get(key, PeriodUsage())
            return UsageSnapshot(
                total_tokens=self._total.tokens,
                total_cost=self._total.cost,
                total_requests=self._total.requests,
                month=key,
                month_tokens=month.tokens,
                month_cost=month.cost,
                month_requests=month.requests,
                backends={
                    backend.value: BackendUsageSnapshot(
                        tokens=entry.tokens,
                        cost=entry.cost,
                        requests=entry.requests,
                        attempts=entry.attempts,
                        failures=entry.failures,
                        retries=entry.retries,
                        success_rate=entry.success_rate,
                        last_error=entry.last_error,
                    )
                    for backend, entry in self._backends.items()
                },
            )
