"""
Health evaluation.

Checks every credentialed backend locally, without network access or
spend, and aggregates the results with the remaining cost budget.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from ai_issue_enhancer.config.loader import EnhancerConfig, ProviderProfile, validate_config

from .backends import get_strategy
from .guardrails import BudgetState, CostGovernor
from .ledger import UsageLedger, UsageSnapshot

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class BackendHealth:
    """Result of probing one backend."""
    available: bool
    authenticated: bool
    response_time: Optional[float] = None
    error: Optional[str] = None

    @property
    def passing(self) -> bool:
        return self.available and self.authenticated


@dataclass(frozen=True)
class HealthSnapshot:
    """Aggregate health of the orchestrator."""
    status: HealthStatus
    backends: Dict[str, BackendHealth]
    budget: BudgetState
    usage: UsageSnapshot
    errors: List[str]
    warnings: List[str]

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "backends": {
                name: {
                    "available": h.available,
                    "authenticated": h.authenticated,
                    "responseTime": h.response_time,
                    "error": h.error,
                }
                for name, h in self.backends.items()
            },
            "costBudgetRemaining": {
                "run": self.budget.run_remaining,
                "month": self.budget.month_remaining,
            },
            "usage": self.usage.to_dict(),
            "configErrors": list(self.errors),
            "configWarnings": list(self.warnings),
        }


Probe = Callable[[ProviderProfile], BackendHealth]


def local_probe(profile: ProviderProfile) -> BackendHealth:
    """Networkless check of a profile's credential shape and model."""
    started = time.monotonic()
    if not profile.has_credential:
        return BackendHealth(available=False, authenticated=False, error="API key not configured")
    if not profile.model or not profile.model.strip():
        return BackendHealth(available=False, authenticated=True, error="Model not configured")
    if not get_strategy(profile.backend).credential_looks_valid(profile.credential.strip()):
        return BackendHealth(available=True, authenticated=False,
                             response_time=time.monotonic() - started,
                             error="API key format not recognized")
    return BackendHealth(available=True, authenticated=True, response_time=time.monotonic() - started)


def aggregate_status(enabled: bool, results: Dict[str, BackendHealth]) -> HealthStatus:
    """Map passing-backend count to an aggregate status.

    A disabled feature is never reported unhealthy.
    """
    if not enabled:
        return HealthStatus.DEGRADED
    passing = sum(1 for h in results.values() if h.passing)
    if passing == 0:
        return HealthStatus.UNHEALTHY
    if passing == 1:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def _safe_probe(probe: Probe, profile: ProviderProfile) -> BackendHealth:
    try:
        return probe(profile)
    except Exception as e:
        logger.warning("Health probe for %s failed: %s", profile.backend.value, e)
        return BackendHealth(available=False, authenticated=False, error=str(e))


def evaluate_health(
    config: EnhancerConfig,
    ledger: UsageLedger,
    governor: Optional[CostGovernor] = None,
    probe: Probe = local_probe,
) -> HealthSnapshot:
    """Probe every credentialed backend and build a HealthSnapshot.

    Probes run concurrently and are joined, so one slow or failing probe
    never hides another's result.

    Args:
        config: Orchestrator configuration
        ledger: Usage ledger for the budget and usage sections
        governor: Cost governor (built from config when omitted)
        probe: Per-backend check, local_probe by default

    Returns:
        HealthSnapshot with per-backend results and aggregate status
    """
    governor = governor or CostGovernor(config.cost_controls)
    profiles = [p for p in config.profiles if p.has_credential]

    results: Dict[str, BackendHealth] = {}
    if profiles:
        with ThreadPoolExecutor(max_workers=len(profiles)) as pool:
            futures = {p.backend.value: pool.submit(_safe_probe, probe, p) for p in profiles}
            for name, future in futures.items():
                results[name] = future.result()

    validation = validate_config(config)
    return HealthSnapshot(
        status=aggregate_status(config.enabled, results),
        backends=results,
        budget=governor.remaining_budget(ledger),
        usage=ledger.snapshot(),
        errors=validation.errors,
        warnings=validation.warnings,
    )
