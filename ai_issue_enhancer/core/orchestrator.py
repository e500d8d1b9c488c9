"""
Issue enhancement orchestrator.

Holds one configuration, usage ledger, cost governor and transport, and
exposes the public operations: enhance, request, get_usage_stats and
health_check. enhance() is the single boundary that turns any failure
into a fallback enhancement.
"""

import logging
import time
from typing import Mapping, Optional

from ai_issue_enhancer.config.loader import (
    EnhancerConfig,
    load_config_from_env,
    load_enhancer_config,
    validate_config,
)
from ai_issue_enhancer.sdk.transport import HttpTransport, Transport

from .backends import ProviderResponse
from .errors import ConfigurationError
from .executor import DEFAULT_RETRY_BACKOFF, FallbackChainExecutor
from .guardrails import CostGovernor
from .health import HealthSnapshot, evaluate_health
from .ledger import UsageLedger, UsageSnapshot
from .models import EnhancementRequest, EnhancementResult, RequestOptions
from .normalizer import RequestInput, RequestNormalizer
from .selector import select_backend
from .synthesis import fallback_enhancement, synthesize
from .token_counter import TiktokenCounter, TokenCounter

logger = logging.getLogger(__name__)


class Orchestrator:
    """Routes enhancement requests across model backends.

    Construct once per process and pass it to call sites; every instance
    owns its own ledger, so parallel instances never share counters.
    """

    def __init__(
        self,
        config: EnhancerConfig,
        transport: Optional[Transport] = None,
        token_counter: Optional[TokenCounter] = None,
        ledger: Optional[UsageLedger] = None,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
    ):
        """Initialize orchestrator.

        Args:
            config: Validated configuration
            transport: Backend transport (HttpTransport by default)
            token_counter: Token counter for cost estimates (tiktoken by default)
            ledger: Usage ledger (a fresh one by default)
            retry_backoff: Base delay in seconds between retries

        Raises:
            ConfigurationError: If enhancement is enabled but no backend has
                a credential
        """
        if config.enabled:
            if not config.available_backends:
                raise ConfigurationError("LLM enhancement is enabled but no backend has an API key")
            # Other backends can still serve when the primary is unusable
            validation = validate_config(config)
            for problem in validation.errors + validation.warnings:
                logger.warning("LLM configuration: %s", problem)

        self.config = config
        self.ledger = ledger or UsageLedger()
        self.governor = CostGovernor(config.cost_controls, token_counter or TiktokenCounter())
        self.normalizer = RequestNormalizer(config.security)
        self.executor = FallbackChainExecutor(
            config,
            transport or HttpTransport(config),
            self.governor,
            self.ledger,
            retry_backoff=retry_backoff,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **kwargs) -> "Orchestrator":
        """Build from environment variables."""
        return cls(load_config_from_env(environ), **kwargs)

    @classmethod
    def from_yaml(cls, path: str, **kwargs) -> "Orchestrator":
        """Build from a YAML configuration file."""
        return cls(load_enhancer_config(path), **kwargs)

    def request(self, payload: RequestInput, options: Optional[RequestOptions] = None) -> ProviderResponse:
        """Send a chat request through selection, cost checks and the fallback chain.

        Args:
            payload: NormalizedRequest or a backend-specific chat payload
            options: Per-call options

        Returns:
            ProviderResponse from the first backend that succeeded

        Raises:
            ConfigurationError: If enhancement is disabled
            NoProviderConfigured: If no backend has a credential
            CostLimitExceeded: If a call would breach a spending ceiling
            AllProvidersFailed: If the fallback chain ends without success
        """
        if not self.config.enabled:
            raise ConfigurationError("LLM enhancement is disabled")
        options = options or RequestOptions()
        normalized = self.normalizer.normalize(payload)
        backend = select_backend(normalized, options, self.config, self.governor)
        logger.debug("Selected backend %s", backend.value)
        return self.executor.execute(normalized, options, backend).response

    def enhance(self, request: EnhancementRequest, options: Optional[RequestOptions] = None) -> EnhancementResult:
        """Enhance a feedback record. Never raises.

        Any failure, including a disabled feature, produces the
        deterministic fallback enhancement.
        """
        started = time.monotonic()
        if not self.config.enabled:
            logger.info("LLM enhancement disabled, using fallback enhancement")
            return fallback_enhancement(request, started)
        try:
            normalized = self.normalizer.build(request)
            response = self.request(normalized, options or request.options)
            return synthesize(response, request, started)
        except Exception as e:
            logger.warning("LLM enhancement failed, using fallback enhancement: %s: %s",
                           type(e).__name__, e)
            return fallback_enhancement(request, started)

    def get_usage_stats(self) -> UsageSnapshot:
        return self.ledger.snapshot()

    def health_check(self) -> HealthSnapshot:
        return evaluate_health(self.config, self.ledger, self.governor)
