"""
Cost guardrails and limits enforcement.

Estimates the cost of a candidate call and enforces spending ceilings
before any network attempt.

Enforcement Order:
1. Per-run max cost - Prevents catastrophic single-call costs
2. Monthly budget - Month-to-date spend plus the estimate

The per-issue token ceiling is advisory: the prompt builder already bounds
every section, so an oversized estimate only produces a WARN decision.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum, auto
from typing import List, Optional, Union

from ai_issue_enhancer.config.loader import CostControls, ProviderProfile

from .errors import CostLimitExceeded
from .ledger import UsageLedger
from .models import NormalizedRequest
from .pricing import compute_cost
from .token_counter import TokenCounter, TokenEstimate

logger = logging.getLogger(__name__)


class EnforcementAction(Enum):
    """Available enforcement actions in order of severity."""
    ALLOW = auto()    # Allow the request (no action)
    WARN = auto()     # Log warning but allow request
    # Blocking raises CostLimitExceeded instead of returning a decision


@dataclass(frozen=True)
class CostEstimate:
    """Pre-flight estimate of one call against one profile."""
    input_tokens: int
    estimated_output_tokens: int
    estimated_cost: float
    profile: ProviderProfile

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.estimated_output_tokens


@dataclass(frozen=True)
class BudgetState:
    """Remaining budget, never negative."""
    run_remaining: float
    month_remaining: float
    month_used: float


@dataclass(frozen=True)
class CostDecision:
    """Outcome of a cost check."""
    action: EnforcementAction
    estimate: Optional[CostEstimate] = None
    exceeded_limits: tuple = ()


class CostGovernor:
    """Estimates call cost and enforces run and monthly ceilings."""

    def __init__(self, controls: CostControls, counter: Optional[TokenCounter] = None):
        self.controls = controls
        self.counter = counter

    def estimate_tokens(
        self,
        request: Union[NormalizedRequest, dict],
        profile: ProviderProfile,
    ) -> TokenEstimate:
        """Token estimate for a request.

        Requests that are not a clean NormalizedRequest, or calls made
        without a counter, use the profile's fixed fallback estimate.
        Otherwise output is the profile's share of counted input.

        Raises:
            Exception: Whatever the counter raises
        """
        if not isinstance(request, NormalizedRequest) or self.counter is None:
            return TokenEstimate(
                input_tokens=profile.fallback_input_tokens,
                estimated_output_tokens=profile.fallback_output_tokens,
            )
        input_tokens = self.counter.count(request).input_tokens
        return TokenEstimate(
            input_tokens=input_tokens,
            estimated_output_tokens=math.ceil(input_tokens * profile.output_token_ratio),
        )

    def price(self, tokens: TokenEstimate, profile: ProviderProfile) -> CostEstimate:
        """Apply a profile's rates to a token estimate."""
        return CostEstimate(
            input_tokens=tokens.input_tokens,
            estimated_output_tokens=tokens.estimated_output_tokens,
            estimated_cost=compute_cost(
                tokens.input_tokens,
                tokens.estimated_output_tokens,
                profile.input_cost_per_1k,
                profile.output_cost_per_1k,
            ),
            profile=profile,
        )

    def estimate(self, request: Union[NormalizedRequest, dict], profile: ProviderProfile) -> CostEstimate:
        """Estimate tokens and cost of a call against a profile."""
        return self.price(self.estimate_tokens(request, profile), profile)

    def check(
        self,
        request: Union[NormalizedRequest, dict],
        profile: ProviderProfile,
        ledger: UsageLedger,
    ) -> CostDecision:
        """Enforce cost ceilings for one candidate call.

        Returns:
            CostDecision with ALLOW or WARN

        Raises:
            CostLimitExceeded: If a ceiling would be breached and overage
                prevention is on
        """
        if not self.controls.enabled:
            return CostDecision(EnforcementAction.ALLOW)

        try:
            estimate = self.estimate(request, profile)
        except Exception as e:
            logger.warning("Cost estimation failed for %s, proceeding unblocked: %s",
                           profile.backend.value, e)
            return CostDecision(EnforcementAction.ALLOW)

        exceeded = self._exceeded_limits(estimate, ledger.month_cost())
        advisories = self._advisory_limits(estimate)
        if not exceeded and not advisories:
            return CostDecision(EnforcementAction.ALLOW, estimate)

        if exceeded:
            message = (
                f"Cost limits exceeded for {profile.backend.value}/{profile.model}: "
                f"{', '.join(exceeded)} (estimated ${estimate.estimated_cost:.6f})"
            )
            if self.controls.prevent_overage:
                logger.warning(message)
                raise CostLimitExceeded(message, estimate=estimate, exceeded_limits=exceeded)
            logger.warning("%s; overage prevention is off, allowing", message)

        if advisories:
            logger.warning("Estimated %d tokens for %s/%s is over the per-issue ceiling (%s), allowing",
                           estimate.total_tokens, profile.backend.value, profile.model, ", ".join(advisories))
        return CostDecision(EnforcementAction.WARN, estimate, tuple(exceeded + advisories))

    def _exceeded_limits(self, estimate: CostEstimate, month_used: float) -> List[str]:
        controls = self.controls
        exceeded = []
        if estimate.estimated_cost > controls.max_cost_per_run:
            exceeded.append(f"Per-run cost limit: ${controls.max_cost_per_run}")
        if month_used + estimate.estimated_cost > controls.max_cost_per_month:
            exceeded.append(f"Monthly cost limit: ${controls.max_cost_per_month}")
        return exceeded

    def _advisory_limits(self, estimate: CostEstimate) -> List[str]:
        if estimate.total_tokens > self.controls.max_tokens_per_issue:
            return [f"Per-issue token limit: {self.controls.max_tokens_per_issue}"]
        return []

    def remaining_budget(self, ledger: UsageLedger) -> BudgetState:
        """Budget left for the next run and for the current month."""
        month_used = ledger.month_cost()
        return BudgetState(
            run_remaining=max(0.0, self.controls.max_cost_per_run),
            month_remaining=max(0.0, self.controls.max_cost_per_month - month_used),
            month_used=month_used,
        )
