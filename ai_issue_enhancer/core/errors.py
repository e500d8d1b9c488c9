"""
Error taxonomy for the enhancement orchestrator.

Only the low-level request path raises these to callers; enhance()
converts every failure into a fallback enhancement.
"""

from enum import Enum
from typing import List, Optional


class ErrorKind(Enum):
    """Provider failure classes."""
    AUTHENTICATION = "authentication_error"
    RATE_LIMIT = "rate_limit_error"
    INVALID_REQUEST = "invalid_request_error"
    API = "api_error"
    TIMEOUT = "timeout_error"


class EnhancerError(Exception):
    """Base class for all orchestrator errors."""


class ConfigurationError(EnhancerError, ValueError):
    """Raised when configuration is invalid or unusable."""


class NoProviderConfigured(EnhancerError):
    """Raised when no backend has a credential."""


class CostLimitExceeded(EnhancerError):
    """Raised when a call would breach a spending ceiling.

    Stops the whole fallback chain: a budget breach does not depend on
    which backend would have served the call.
    """
    def __init__(self, message: str, estimate=None, exceeded_limits: Optional[List[str]] = None):
        super().__init__(message)
        self.estimate = estimate
        self.exceeded_limits = exceeded_limits or []


class TranslationError(EnhancerError):
    """Raised when a payload cannot be converted between wire shapes."""


class ParseError(EnhancerError):
    """Raised when model output does not match the response schema."""


class ProviderError(EnhancerError):
    """A backend call failed."""
    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        status: Optional[int] = None,
        kind: ErrorKind = ErrorKind.API,
    ):
        super().__init__(message)
        self.backend = backend
        self.status = status
        self.kind = kind

    @property
    def retryable(self) -> bool:
        """Whether the same backend may be tried again within one attempt."""
        if self.kind in (ErrorKind.TIMEOUT, ErrorKind.RATE_LIMIT):
            return True
        if self.kind == ErrorKind.API:
            return self.status is None or self.status >= 500
        return False


class ProviderTimeout(ProviderError):
    """A backend call exceeded its timeout."""
    def __init__(self, message: str, backend: Optional[str] = None):
        super().__init__(message, backend=backend, kind=ErrorKind.TIMEOUT)


class AllProvidersFailed(EnhancerError):
    """Raised when the fallback chain ends without a successful reply."""
    def __init__(
        self,
        message: str,
        last_error: Optional[BaseException] = None,
        outcomes: Optional[list] = None,
        aborted: bool = False,
    ):
        super().__init__(message)
        self.last_error = last_error
        self.outcomes = outcomes or []
        self.aborted = aborted
