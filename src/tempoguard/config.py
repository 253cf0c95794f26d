"""Configuration loader for TempoGuard.

Loads a YAML file, applies ``TEMPOGUARD_`` environment overrides and
validates the result against Pydantic models.
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from tempoguard.connectivity import DEFAULT_PROBE_URL
from tempoguard.errors import ConfigurationError, FailureDomain
from tempoguard.logging import get_logger
from tempoguard.retry import RetryPolicy, default_policy

logger = get_logger(__name__, component="config")

ENV_PREFIX = "TEMPOGUARD_"
ENV_NESTING = "__"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="console", pattern=r"^(json|console)$")
    file: Optional[Path] = Field(default=None)


class RetryConfig(BaseModel):
    """Retry policy per failure domain."""

    @model_validator(mode="before")
    @classmethod
    def _merge_domain_defaults(cls, data: Any) -> Any:
        """Fill fields missing from a partial policy with the domain defaults."""
        if not isinstance(data, dict):
            return data
        merged = dict(data)
        for domain in FailureDomain:
            value = merged.get(domain.value)
            if isinstance(value, dict):
                merged[domain.value] = {**default_policy(domain).model_dump(), **value}
        return merged

    network: RetryPolicy = Field(default_factory=lambda: default_policy(FailureDomain.NETWORK))
    authentication: RetryPolicy = Field(
        default_factory=lambda: default_policy(FailureDomain.AUTHENTICATION)
    )
    ai_service: RetryPolicy = Field(default_factory=lambda: default_policy(FailureDomain.AI_SERVICE))
    calendar_api: RetryPolicy = Field(
        default_factory=lambda: default_policy(FailureDomain.CALENDAR_API)
    )

    def policy_for(self, domain: FailureDomain) -> RetryPolicy:
        return getattr(self, FailureDomain(domain).value)


class QueueConfig(BaseModel):
    """Offline queue configuration."""

    max_size: int = Field(default=1000, ge=0, description="0 for unlimited")
    default_max_retries: int = Field(default=3, ge=1)
    dropped_history: int = Field(default=100, ge=0)


class StateConfig(BaseModel):
    """State preservation configuration."""

    workflow_ttl_seconds: int = Field(default=3600, ge=1)
    operation_ttl_seconds: int = Field(default=7200, ge=1)
    sweep_interval_seconds: int = Field(default=300, ge=1)


class ConnectivityConfig(BaseModel):
    """Connectivity monitor configuration."""

    enabled: bool = Field(default=True)
    probe_url: str = Field(default=DEFAULT_PROBE_URL)
    probe_method: str = Field(default="HEAD", pattern=r"^(HEAD|GET)$")
    interval_seconds: float = Field(default=30.0, gt=0)
    timeout_seconds: float = Field(default=5.0, gt=0)
    slow_threshold_ms: float = Field(default=1000.0, gt=0)
    drain_debounce_seconds: float = Field(default=1.0, ge=0)


class FallbackConfig(BaseModel):
    """Fallback provider configuration."""

    enabled: bool = Field(default=True)
    messages: Dict[str, str] = Field(default_factory=dict)


class MetricsConfig(BaseModel):
    """Prometheus metrics configuration."""

    enabled: bool = Field(default=True)
    port: int = Field(default=9090, ge=1, le=65535)
    addr: str = Field(default="0.0.0.0")


class ResilienceConfig(BaseModel):
    """Complete TempoGuard configuration."""

    version: str = Field(default="1.0")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    fallbacks: FallbackConfig = Field(default_factory=FallbackConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(
    path: Optional[Union[Path, str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ResilienceConfig:
    """Load configuration from a YAML file and the environment.

    Args:
        path: YAML file. A missing file means defaults.
        environ: Environment mapping (default: ``os.environ``).

    Returns:
        Validated ResilienceConfig object.

    Raises:
        ConfigurationError: If the file cannot be parsed or values are invalid.
    """
    data: Dict[str, Any] = {}

    if path is not None:
        path = Path(path)
        if path.exists():
            data = _read_yaml(path)
            logger.debug("config_file_loaded", path=str(path))
        else:
            logger.info("config_file_not_found", path=str(path))

    _deep_merge(data, _env_overrides(os.environ if environ is None else environ))

    try:
        return ResilienceConfig(**data)
    except ValidationError as e:
        errors = [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ConfigurationError("Invalid configuration", details={"errors": errors}) from e


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path) as f:
            loaded = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Cannot parse {path}", details={"error": str(e)}) from e

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Top level of {path} must be a mapping")
    return loaded


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Nested overrides from ``TEMPOGUARD_SECTION__FIELD=value`` variables.

    Values are parsed as YAML scalars, so ``true``, ``30`` and ``[a, b]`` keep
    their types.
    """
    overrides: Dict[str, Any] = {}
    for key, raw in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        parts = [part.lower() for part in key[len(ENV_PREFIX):].split(ENV_NESTING) if part]
        if not parts:
            continue

        try:
            value = yaml.safe_load(raw)
        except yaml.YAMLError:
            value = raw

        target = overrides
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = value
    return overrides


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """Deep merge override into base dictionary."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
