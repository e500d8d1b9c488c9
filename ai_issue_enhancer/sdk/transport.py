"""
HTTP transport for model backends.

OpenAI-shape backends (OpenAI, DeepSeek, xAI) are called through the
official openai SDK with the base URL switched per backend; Anthropic and
Google are called with plain requests. Every failure leaves this module as
a ProviderError carrying a status and kind.
"""

import logging
from typing import Any, Dict, Optional, Protocol

import openai
import requests
from openai import OpenAI

from ..config.loader import EnhancerConfig
from ..core.backends import Backend, WireShape, classify_error, get_strategy, kind_for_status
from ..core.errors import ErrorKind, ProviderError, ProviderTimeout

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Sends one wire request to one backend."""

    def invoke(self, backend: Backend, wire_request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        ...


class HttpTransport:
    """Transport that talks to the real backend APIs.

    The executor owns retries, so SDK retries are disabled.
    """

    def __init__(self, config: EnhancerConfig, session: Optional[requests.Session] = None):
        """Initialize transport.

        Args:
            config: Configuration holding each backend's credential
            session: requests session for Anthropic and Google calls
        """
        self.config = config
        self.session = session or requests.Session()
        self._clients: Dict[Backend, OpenAI] = {}

    def _credential(self, backend: Backend) -> str:
        profile = self.config.profile(backend)
        if not profile.has_credential:
            raise ProviderError(f"API key not configured for {backend.value}",
                                backend=backend.value, kind=ErrorKind.AUTHENTICATION)
        return profile.credential.strip()

    def _client(self, backend: Backend) -> OpenAI:
        if backend not in self._clients:
            self._clients[backend] = OpenAI(
                api_key=self._credential(backend),
                base_url=get_strategy(backend).endpoint,
                max_retries=0,
            )
        return self._clients[backend]

    def invoke(self, backend: Backend, wire_request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """Send a wire request and return the decoded JSON reply.

        Raises:
            ProviderTimeout: If the call exceeds timeout
            ProviderError: For any other failure
        """
        strategy = get_strategy(backend)
        try:
            if strategy.shape == WireShape.OPENAI_CHAT:
                return self._invoke_openai(backend, wire_request, timeout)
            return self._invoke_http(backend, wire_request, timeout)
        except ProviderError:
            raise
        except openai.APITimeoutError as e:
            raise ProviderTimeout(f"{backend.value} request timed out: {e}", backend=backend.value)
        except openai.APIStatusError as e:
            raise ProviderError(f"{backend.value} API error {e.status_code}: {e.message}",
                                backend=backend.value, status=e.status_code,
                                kind=kind_for_status(e.status_code))
        except openai.APIConnectionError as e:
            raise ProviderError(f"{backend.value} connection error: {e}", backend=backend.value)
        except requests.RequestException as e:
            raise classify_error(e, backend)

    def _invoke_openai(self, backend: Backend, wire_request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        response = self._client(backend).chat.completions.create(**wire_request, timeout=timeout)
        return response.model_dump()

    def _invoke_http(self, backend: Backend, wire_request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        strategy = get_strategy(backend)
        body = dict(wire_request)
        if strategy.shape == WireShape.GEMINI_CONTENTS:
            model = body.pop("model", None) or self.config.profile(backend).model
            url = strategy.endpoint_for(model)
        else:
            url = strategy.endpoint
        response = self.session.post(
            url,
            headers=strategy.auth_headers(self._credential(backend)),
            json=body,
            timeout=timeout,
        )
        if response.status_code >= 400:
            raise ProviderError(
                f"{backend.value} API error {response.status_code}: {_error_message(response)}",
                backend=backend.value,
                status=response.status_code,
                kind=kind_for_status(response.status_code),
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"{backend.value} returned invalid JSON: {e}", backend=backend.value,
                                status=response.status_code)


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error or data)[:200]
