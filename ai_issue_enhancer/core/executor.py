"""
Fallback chain execution.

Runs an ordered list of candidate backends strictly one after another:
cost check, translation, transport call with bounded retries, reply
parsing and one ledger update per completed attempt. Each attempt yields
an explicit AttemptOutcome; the chain either returns the first success or
raises AllProvidersFailed carrying every outcome.
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Tuple, Union

from ai_issue_enhancer.config.loader import EnhancerConfig, ProviderProfile
from ai_issue_enhancer.sdk.transport import Transport

from .backends import Backend, ProviderResponse, classify_error, get_strategy, is_authentication_failure
from .errors import AllProvidersFailed, ErrorKind, ProviderError
from .guardrails import CostGovernor
from .ledger import UsageLedger
from .models import NormalizedRequest, RequestOptions
from .pricing import compute_cost

logger = logging.getLogger(__name__)

DEFAULT_RETRY_BACKOFF = 0.5

RequestInput = Union[NormalizedRequest, dict]


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one candidate attempt: exactly one of response or error is set."""
    backend: Backend
    model: str
    response: Optional[ProviderResponse] = None
    error: Optional[ProviderError] = None
    retry_count: int = 0
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.response is not None

    @classmethod
    def success(cls, backend: Backend, model: str, response: ProviderResponse) -> "AttemptOutcome":
        return cls(backend=backend, model=model, response=response, retry_count=response.retry_count)

    @classmethod
    def failure(cls, backend: Backend, model: str, error: ProviderError,
                retry_count: int = 0, skipped: bool = False) -> "AttemptOutcome":
        return cls(backend=backend, model=model, error=error, retry_count=retry_count, skipped=skipped)


@dataclass(frozen=True)
class ChainResult:
    """Successful chain run with the outcome of every attempt made."""
    response: ProviderResponse
    outcomes: Tuple[AttemptOutcome, ...]

    @property
    def backend(self) -> Backend:
        return self.response.backend


class FallbackChainExecutor:
    """Executes a request across the candidate chain.

    Never starts candidate N+1 before candidate N has completed.
    """

    def __init__(
        self,
        config: EnhancerConfig,
        transport: Transport,
        governor: CostGovernor,
        ledger: UsageLedger,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.transport = transport
        self.governor = governor
        self.ledger = ledger
        self.retry_backoff = retry_backoff
        self._sleep = sleep
        self._clock = clock

    def candidates(self, selected: Backend, options: RequestOptions) -> List[Backend]:
        """Selected backend first, then configured fallbacks without repeats."""
        order = [selected]
        if options.enable_fallback:
            configured = set(self.config.backends)
            for backend in self.config.fallback_backends:
                if backend not in order and backend in configured:
                    order.append(backend)
        return order

    def execute(self, request: RequestInput, options: RequestOptions, selected: Backend) -> ChainResult:
        """Run the chain until one candidate succeeds.

        Raises:
            CostLimitExceeded: If a candidate would breach a ceiling
            ConfigurationError: If the selected backend has no profile
            AllProvidersFailed: If every candidate failed, an authentication
                failure aborted the chain, or the deadline was spent
        """
        deadline = None
        if options.deadline_seconds is not None:
            deadline = self._clock() + options.deadline_seconds

        outcomes: List[AttemptOutcome] = []
        last_error: Optional[ProviderError] = None
        for backend in self.candidates(selected, options):
            profile = self.config.profile(backend)
            if not profile.has_credential:
                logger.warning("Skipping %s: API key not configured", backend.value)
                # A skip is reported as the last error but never aborts the chain
                last_error = ProviderError("API key not configured", backend=backend.value,
                                           kind=ErrorKind.AUTHENTICATION)
                outcomes.append(AttemptOutcome.failure(backend, profile.model, last_error, skipped=True))
                continue

            timeout = options.timeout_seconds or profile.timeout_seconds
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    logger.warning("Deadline spent before trying %s; stopping fallback chain", backend.value)
                    raise AllProvidersFailed("Request deadline exceeded", last_error=last_error,
                                             outcomes=outcomes)
                timeout = min(timeout, remaining)

            model = options.model if options.model and backend == selected else profile.model
            outcome = self._attempt(backend, profile, model, request, options, timeout, deadline)
            outcomes.append(outcome)
            if outcome.ok:
                return ChainResult(outcome.response, tuple(outcomes))

            last_error = outcome.error
            logger.warning("Backend %s failed (%s): %s", backend.value, last_error.kind.value, last_error)
            if is_authentication_failure(last_error) and self.config.abort_chain_on_auth_failure:
                raise AllProvidersFailed(
                    f"Authentication failed for {backend.value}; fallback chain aborted",
                    last_error=last_error, outcomes=outcomes, aborted=True,
                )

        raise AllProvidersFailed(
            f"All {len(outcomes)} candidate backend(s) failed",
            last_error=last_error, outcomes=outcomes,
        )

    def _prepare(self, request: RequestInput, model: str, options: RequestOptions,
                 profile: ProviderProfile) -> RequestInput:
        if not isinstance(request, NormalizedRequest):
            wire = dict(request)
            wire.setdefault("model", model)
            return wire

        def pick(option, own, default):
            if option is not None:
                return option
            return own if own is not None else default

        return replace(
            request,
            model=model,
            temperature=pick(options.temperature, request.temperature, profile.temperature),
            max_tokens=pick(options.max_tokens, request.max_tokens, profile.max_tokens),
        )

    def _attempt(
        self,
        backend: Backend,
        profile: ProviderProfile,
        model: str,
        request: RequestInput,
        options: RequestOptions,
        timeout: float,
        deadline: Optional[float],
    ) -> AttemptOutcome:
        """One completed attempt, including its retries.

        Raises:
            CostLimitExceeded: If the cost check blocks the call
        """
        call_request = self._prepare(request, model, options, profile)
        if not options.skip_cost_check:
            self.governor.check(call_request, profile, self.ledger)

        strategy = get_strategy(backend)
        if isinstance(call_request, NormalizedRequest):
            wire = strategy.translate(call_request)
        else:
            wire = call_request

        retries = 0
        while True:
            try:
                payload = self.transport.invoke(backend, wire, timeout)
                break
            except Exception as e:
                error = classify_error(e, backend)
            if not self._should_retry(error, retries, profile, deadline):
                return self._failed(backend, model, error, retries)
            retries += 1
            delay = self.retry_backoff * (2 ** (retries - 1))
            logger.info("Retrying %s after %s (retry %d/%d)", backend.value, error.kind.value,
                        retries, profile.max_retries)
            if delay > 0:
                self._sleep(delay)
            if deadline is not None:
                timeout = min(timeout, max(deadline - self._clock(), 0.001))

        try:
            response = strategy.parse_reply(payload, model)
        except (AttributeError, TypeError, ValueError) as e:
            error = ProviderError(f"Malformed reply from {backend.value}: {e}", backend=backend.value)
            return self._failed(backend, model, error, retries)

        cost = compute_cost(
            response.usage.prompt_tokens,
            response.usage.completion_tokens,
            profile.input_cost_per_1k,
            profile.output_cost_per_1k,
        )
        response = replace(response, cost=cost, retry_count=retries)
        self.ledger.record_success(backend, response.usage, cost, retries)
        return AttemptOutcome.success(backend, model, response)

    def _failed(self, backend: Backend, model: str, error: ProviderError, retries: int) -> AttemptOutcome:
        self.ledger.record_failure(backend, str(error), retries)
        return AttemptOutcome.failure(backend, model, error, retry_count=retries)

    def _should_retry(self, error: ProviderError, retries: int, profile: ProviderProfile,
                      deadline: Optional[float]) -> bool:
        if not error.retryable or retries >= profile.max_retries:
            return False
        if deadline is not None:
            next_delay = self.retry_backoff * (2 ** retries)
            return self._clock() + next_delay < deadline
        return True
