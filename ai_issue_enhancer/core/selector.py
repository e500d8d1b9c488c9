"""
Provider selection.

Picks the backend that serves a request from the caller's options, the
configured primary and, optionally, the lowest estimated cost.
"""

import logging
from typing import Optional, Union

from ai_issue_enhancer.config.loader import EnhancerConfig

from .backends import Backend
from .errors import ConfigurationError, NoProviderConfigured
from .guardrails import CostGovernor
from .models import NormalizedRequest, RequestOptions
from .token_counter import TokenEstimate

logger = logging.getLogger(__name__)


def select_backend(
    request: Union[NormalizedRequest, dict],
    options: RequestOptions,
    config: EnhancerConfig,
    governor: Optional[CostGovernor] = None,
) -> Backend:
    """Choose the backend for a request.

    Selection order:
    1. Explicit backend in options, used unconditionally
    2. The only backend with a credential
    3. Cheapest credentialed backend when prefer_cheapest is set
    4. The primary if it has a credential, else the first credentialed
       backend in registry order

    Raises:
        ConfigurationError: If the explicit backend name is unknown
        NoProviderConfigured: If no backend has a credential
    """
    if options.backend:
        try:
            return Backend.parse(options.backend)
        except ValueError as e:
            raise ConfigurationError(str(e))

    available = config.available_backends
    if not available:
        raise NoProviderConfigured("No LLM backend has a configured API key")
    if len(available) == 1:
        return available[0]

    if options.prefer_cheapest:
        return _cheapest(request, config, available, governor or CostGovernor(config.cost_controls))

    if config.primary_backend in available:
        return config.primary_backend
    return available[0]


def _cheapest(request, config: EnhancerConfig, available, governor: CostGovernor) -> Backend:
    # One token estimate priced against every profile
    reference = config.profile(available[0])
    try:
        tokens = governor.estimate_tokens(request, reference)
    except Exception as e:
        logger.warning("Token counting failed during selection, using fixed estimate: %s", e)
        tokens = TokenEstimate(reference.fallback_input_tokens, reference.fallback_output_tokens)

    def rank(backend: Backend):
        cost = governor.price(tokens, config.profile(backend)).estimated_cost
        return (cost, backend != config.primary_backend, available.index(backend))

    choice = min(available, key=rank)
    logger.debug("Cheapest backend for request: %s", choice.value)
    return choice
