"""
Configuration management and loading.

Builds the provider profile registry, cost controls and feature flags from
a YAML file or from environment variables.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import yaml

from ai_issue_enhancer.core.backends import Backend, get_strategy
from ai_issue_enhancer.core.errors import ConfigurationError
from ai_issue_enhancer.core.pricing import PRICING_TABLE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderProfile:
    """Static configuration for one backend.

    The credential is presence-checked only; it is never validated
    cryptographically and never included in repr().
    """
    backend: Backend
    model: str
    credential: str = field(default="", repr=False)
    input_cost_per_1k: float = 0.0
    output_cost_per_1k: float = 0.0
    output_token_ratio: float = 0.3
    fallback_input_tokens: int = 100
    fallback_output_tokens: int = 30
    timeout_seconds: float = 30.0
    max_retries: int = 3
    max_tokens: int = 4000
    temperature: float = 0.7

    def __post_init__(self):
        """Validate numeric settings."""
        if self.input_cost_per_1k < 0 or self.output_cost_per_1k < 0:
            raise ConfigurationError(f"{self.backend.value}: cost rates must be >= 0")
        if self.timeout_seconds <= 0:
            raise ConfigurationError(f"{self.backend.value}: timeout_seconds must be > 0")
        if self.max_retries < 0:
            raise ConfigurationError(f"{self.backend.value}: max_retries must be >= 0")
        if self.max_tokens <= 0:
            raise ConfigurationError(f"{self.backend.value}: max_tokens must be > 0")

    @property
    def has_credential(self) -> bool:
        return bool(self.credential and self.credential.strip())


@dataclass(frozen=True)
class CostControls:
    """Spending ceilings enforced before every call."""
    enabled: bool = True
    prevent_overage: bool = True
    max_cost_per_run: float = 2.0
    max_cost_per_month: float = 50.0
    max_tokens_per_issue: int = 8000


@dataclass(frozen=True)
class SecuritySettings:
    """How user-supplied text is screened before prompting."""
    exclude_sensitive_info: bool = True
    anonymize_data: bool = False
    block_prompt_injection: bool = True


@dataclass(frozen=True)
class EnhancerConfig:
    """Complete orchestrator configuration."""
    enabled: bool
    primary_backend: Backend
    fallback_backends: Tuple[Backend, ...]
    profiles: Tuple[ProviderProfile, ...]
    cost_controls: CostControls = field(default_factory=CostControls)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    abort_chain_on_auth_failure: bool = True

    def profile(self, backend: Backend) -> ProviderProfile:
        """Profile for a backend.

        Raises:
            ConfigurationError: If the backend has no profile
        """
        for profile in self.profiles:
            if profile.backend == backend:
                return profile
        raise ConfigurationError(f"No profile configured for backend: {backend.value}")

    @property
    def backends(self) -> List[Backend]:
        """Backends in registry order."""
        return [p.backend for p in self.profiles]

    @property
    def available_backends(self) -> List[Backend]:
        """Backends with a non-empty credential, in registry order."""
        return [p.backend for p in self.profiles if p.has_credential]


@dataclass(frozen=True)
class ConfigValidation:
    """Outcome of validate_config()."""
    errors: List[str]
    warnings: List[str]

    @property
    def valid(self) -> bool:
        return not self.errors


def default_profile(backend: Backend, credential: str = "", model: Optional[str] = None, **overrides) -> ProviderProfile:
    """Profile with default model and rates from the pricing table."""
    model = model or get_strategy(backend).default_model
    pricing = PRICING_TABLE.find_pricing(model)
    rates = {}
    if pricing is not None:
        rates = {
            "input_cost_per_1k": float(pricing.prompt_cost_per_1k),
            "output_cost_per_1k": float(pricing.completion_cost_per_1k),
        }
    rates.update(overrides)
    return ProviderProfile(backend=backend, model=model, credential=credential, **rates)


def default_config(enabled: bool = False) -> EnhancerConfig:
    """Configuration with every backend present and no credentials."""
    return EnhancerConfig(
        enabled=enabled,
        primary_backend=Backend.OPENAI,
        fallback_backends=(Backend.ANTHROPIC, Backend.GOOGLE),
        profiles=tuple(default_profile(b) for b in Backend),
    )


def validate_config(config: EnhancerConfig) -> ConfigValidation:
    """Check a configuration for errors and warnings."""
    errors: List[str] = []
    warnings: List[str] = []

    if not config.enabled:
        return ConfigValidation(errors=errors, warnings=["LLM enhancement is disabled"])

    try:
        primary = config.profile(config.primary_backend)
    except ConfigurationError as e:
        errors.append(str(e))
        primary = None

    if primary is not None:
        if not primary.has_credential:
            errors.append(f"API key missing for primary backend: {primary.backend.value}")
        if not primary.model or not primary.model.strip():
            errors.append(f"Model not specified for primary backend: {primary.backend.value}")

    for profile in config.profiles:
        if profile.has_credential and not (profile.input_cost_per_1k or profile.output_cost_per_1k):
            warnings.append(f"Pricing information not available for model: {profile.model}")

    for backend in config.fallback_backends:
        try:
            fallback = config.profile(backend)
        except ConfigurationError as e:
            errors.append(str(e))
            continue
        if not fallback.has_credential:
            warnings.append(f"API key missing for fallback backend: {backend.value}")

    controls = config.cost_controls
    if controls.max_cost_per_run <= 0:
        errors.append("Max cost per run must be greater than 0")
    if controls.max_cost_per_month <= 0:
        errors.append("Max cost per month must be greater than 0")
    if controls.max_tokens_per_issue <= 0:
        errors.append("Max tokens per issue must be greater than 0")

    return ConfigValidation(errors=errors, warnings=warnings)


# ---------------------------------------------------------------------------
# YAML source
# ---------------------------------------------------------------------------

_TOP_KEYS = {"enabled", "primary_backend", "fallback_backends", "backends",
             "cost_controls", "security", "abort_chain_on_auth_failure"}
_BACKEND_KEYS = {"api_key", "api_key_env", "model", "input_cost_per_1k", "output_cost_per_1k",
                 "output_token_ratio", "fallback_input_tokens", "fallback_output_tokens",
                 "timeout_seconds", "max_retries", "max_tokens", "temperature"}
_COST_KEYS = {"enabled", "prevent_overage", "max_cost_per_run", "max_cost_per_month",
              "max_tokens_per_issue"}
_SECURITY_KEYS = {"exclude_sensitive_info", "anonymize_data", "block_prompt_injection"}


def load_enhancer_config(path: str, environ: Optional[Mapping[str, str]] = None) -> EnhancerConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfiguration that could lead
    to unexpected spend.

    Args:
        path: Path to YAML configuration file
        environ: Environment used to resolve api_key_env (defaults to os.environ)

    Returns:
        Validated EnhancerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ConfigurationError: If configuration is invalid
    """
    environ = os.environ if environ is None else environ
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Enhancer config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration must be a dictionary")

    _reject_unknown(raw_config, _TOP_KEYS, "configuration")

    enabled = _bool(raw_config.get("enabled", False), "enabled")

    backends_data = raw_config.get("backends", {}) or {}
    if not isinstance(backends_data, dict):
        raise ConfigurationError("'backends' must be a dictionary")
    parsed: Dict[Backend, ProviderProfile] = {}
    for name, data in backends_data.items():
        backend = _backend(name, "backends")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Backend '{name}' must be a dictionary")
        parsed[backend] = _parse_profile(backend, data, environ)
    profiles = tuple(parsed.get(b) or default_profile(b) for b in Backend)

    primary = _backend(raw_config.get("primary_backend", "openai"), "primary_backend")
    fallback_raw = raw_config.get("fallback_backends", ["anthropic", "google"]) or []
    if not isinstance(fallback_raw, list):
        raise ConfigurationError("'fallback_backends' must be a list")
    fallbacks = tuple(_backend(b, "fallback_backends") for b in fallback_raw)

    cost_controls = _parse_cost_controls(raw_config.get("cost_controls", {}) or {})
    security = _parse_security(raw_config.get("security", {}) or {})

    return EnhancerConfig(
        enabled=enabled,
        primary_backend=primary,
        fallback_backends=fallbacks,
        profiles=profiles,
        cost_controls=cost_controls,
        security=security,
        abort_chain_on_auth_failure=_bool(
            raw_config.get("abort_chain_on_auth_failure", True), "abort_chain_on_auth_failure"
        ),
    )


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ConfigurationError(f"Unknown keys in {path}: {unknown_keys}")


def _backend(value, path: str) -> Backend:
    try:
        return Backend.parse(value)
    except ValueError as e:
        raise ConfigurationError(f"{path}: {e}")


def _bool(value, path: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"'{path}' must be true or false")
    return value


def _number(data: Dict, key: str, path: str, positive: bool = True, integer: bool = False):
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"'{key}' in {path} must be a number")
    if integer and not isinstance(value, int):
        raise ConfigurationError(f"'{key}' in {path} must be an integer")
    if positive and value <= 0:
        raise ConfigurationError(f"'{key}' in {path} must be > 0")
    if not positive and value < 0:
        raise ConfigurationError(f"'{key}' in {path} must be >= 0")
    return value


def _parse_profile(backend: Backend, data: Dict, environ: Mapping[str, str]) -> ProviderProfile:
    """Parse and validate one backend section."""
    path = f"backends.{backend.value}"
    _reject_unknown(data, _BACKEND_KEYS, path)
    if "api_key" in data and "api_key_env" in data:
        raise ConfigurationError(f"Use either 'api_key' or 'api_key_env' in {path}, not both")

    credential = ""
    if "api_key" in data:
        credential = str(data["api_key"] or "")
    elif "api_key_env" in data:
        credential = environ.get(str(data["api_key_env"]), "")

    model = data.get("model")
    if model is not None and (not isinstance(model, str) or not model.strip()):
        raise ConfigurationError(f"'model' in {path} must be a non-empty string")

    overrides = {}
    for key in ("input_cost_per_1k", "output_cost_per_1k", "output_token_ratio", "temperature"):
        if key in data:
            overrides[key] = float(_number(data, key, path, positive=False))
    for key in ("fallback_input_tokens", "fallback_output_tokens", "max_retries"):
        if key in data:
            overrides[key] = _number(data, key, path, positive=False, integer=True)
    if "max_tokens" in data:
        overrides["max_tokens"] = _number(data, "max_tokens", path, integer=True)
    if "timeout_seconds" in data:
        overrides["timeout_seconds"] = float(_number(data, "timeout_seconds", path))

    return default_profile(backend, credential=credential, model=model, **overrides)


def _parse_cost_controls(data: Dict) -> CostControls:
    if not isinstance(data, dict):
        raise ConfigurationError("'cost_controls' must be a dictionary")
    _reject_unknown(data, _COST_KEYS, "cost_controls")
    values = {}
    for key in ("enabled", "prevent_overage"):
        if key in data:
            values[key] = _bool(data[key], f"cost_controls.{key}")
    for key in ("max_cost_per_run", "max_cost_per_month"):
        if key in data:
            values[key] = float(_number(data, key, "cost_controls"))
    if "max_tokens_per_issue" in data:
        values["max_tokens_per_issue"] = _number(data, "max_tokens_per_issue", "cost_controls", integer=True)
    return CostControls(**values)


def _parse_security(data: Dict) -> SecuritySettings:
    if not isinstance(data, dict):
        raise ConfigurationError("'security' must be a dictionary")
    _reject_unknown(data, _SECURITY_KEYS, "security")
    return SecuritySettings(**{k: _bool(v, f"security.{k}") for k, v in data.items()})


# ---------------------------------------------------------------------------
# Environment source
# ---------------------------------------------------------------------------

ACTION_INPUTS = {
    "ENABLE_LLM_ENHANCEMENT": "enable-llm-enhancement",
    "LLM_PROVIDER": "llm-provider",
    "LLM_MODEL": "llm-model",
    "MAX_LLM_COST_PER_RUN": "max-llm-cost-per-run",
}


def _env_getter(environ: Mapping[str, str]):
    in_action = environ.get("GITHUB_ACTIONS") == "true"

    def get(name: str) -> Optional[str]:
        action_input = ACTION_INPUTS.get(name)
        if in_action and action_input:
            value = environ.get(f"INPUT_{action_input.upper().replace('-', '_')}")
            if value:
                return value
        return environ.get(name)

    return get


def _truthy(value: Optional[str]) -> bool:
    return value in ("true", "1")


def _positive(value: Optional[str], cast):
    if not value:
        return None
    try:
        parsed = cast(value)
    except ValueError:
        logger.warning("Ignoring unparseable numeric setting: %r", value)
        return None
    return parsed if parsed > 0 else None


def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> EnhancerConfig:
    """Build configuration from environment variables.

    Unparseable or non-positive numbers are ignored and defaults kept.
    """
    environ = os.environ if environ is None else environ
    get = _env_getter(environ)
    base = default_config()

    if not _truthy(get("ENABLE_LLM_ENHANCEMENT")):
        return base

    primary = base.primary_backend
    provider = get("LLM_PROVIDER")
    if provider:
        try:
            primary = Backend.parse(provider)
        except ValueError:
            logger.warning("Ignoring unknown LLM_PROVIDER: %s", provider)

    fallbacks = base.fallback_backends
    fallback_raw = get("LLM_FALLBACK_PROVIDERS")
    if fallback_raw:
        parsed = []
        for name in fallback_raw.split(","):
            if not name.strip():
                continue
            try:
                parsed.append(Backend.parse(name))
            except ValueError:
                logger.warning("Ignoring unknown fallback backend: %s", name.strip())
        fallbacks = tuple(parsed)

    profiles = []
    for backend in Backend:
        prefix = backend.value.upper()
        model = get(f"{prefix}_MODEL") or None
        if backend == primary and get("LLM_MODEL"):
            model = get("LLM_MODEL")
        profiles.append(default_profile(backend, credential=get(f"{prefix}_API_KEY") or "", model=model))

    controls = base.cost_controls
    run_limit = _positive(get("MAX_LLM_COST_PER_RUN"), float)
    month_limit = _positive(get("MAX_LLM_COST_PER_MONTH"), float)
    token_limit = _positive(get("MAX_TOKENS_PER_ISSUE"), int)
    controls = replace(
        controls,
        max_cost_per_run=run_limit or controls.max_cost_per_run,
        max_cost_per_month=month_limit or controls.max_cost_per_month,
        max_tokens_per_issue=token_limit or controls.max_tokens_per_issue,
    )

    security = base.security
    if get("ANONYMIZE_LLM_DATA") is not None:
        security = replace(security, anonymize_data=_truthy(get("ANONYMIZE_LLM_DATA")))
    if get("EXCLUDE_SENSITIVE_INFO") is not None:
        security = replace(security, exclude_sensitive_info=_truthy(get("EXCLUDE_SENSITIVE_INFO")))

    return EnhancerConfig(
        enabled=True,
        primary_backend=primary,
        fallback_backends=fallbacks,
        profiles=tuple(profiles),
        cost_controls=controls,
        security=security,
    )
