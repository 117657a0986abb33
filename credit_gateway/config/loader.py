"""
Configuration management and loading.

Handles gateway settings, retry policy, provider endpoints and the
explicit operation-to-integration routing table.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from credit_gateway.core.errors import ProviderUnavailable

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_RESERVATION_TTL_SECONDS = 900


@dataclass(frozen=True)
class GatewaySettings:
    """Timeouts for provider calls and reservations."""
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    reservation_ttl_seconds: int = DEFAULT_RESERVATION_TTL_SECONDS

    def __post_init__(self):
        """Validate timeout values are positive."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.reservation_ttl_seconds <= 0:
            raise ValueError("reservation_ttl_seconds must be > 0")
        if self.reservation_ttl_seconds <= self.timeout_seconds:
            raise ValueError("reservation_ttl_seconds must exceed timeout_seconds")


@dataclass(frozen=True)
class RetryConfig:
    """Bounded retry policy for rate-limited and timed-out lookups."""
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.max_attempts > 5:
            raise ValueError("max_attempts must be <= 5")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


@dataclass(frozen=True)
class ProviderConfig:
    """Endpoint override for a provider family."""
    base_url: str

    def __post_init__(self):
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {self.base_url!r}")


@dataclass(frozen=True)
class GatewayConfig:
    """Complete gateway configuration."""
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    retry: RetryConfig = field(default_factory=RetryConfig)
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    operations: Dict[str, str] = field(default_factory=dict)

    def integration_for(self, operation_tag: str) -> str:
        """Resolve an operation tag to its integration id by exact key.

        Raises:
            ProviderUnavailable: If the operation is not routed
        """
        try:
            return self.operations[operation_tag]
        except KeyError:
            raise ProviderUnavailable(f"Operation '{operation_tag}' is not configured")

    def base_url_for(self, provider_tag: str) -> Optional[str]:
        provider = self.providers.get(provider_tag)
        return provider.base_url if provider else None


def default_config() -> GatewayConfig:
    return GatewayConfig()


def load_gateway_config(path: str) -> GatewayConfig:
    """Load and validate gateway configuration from YAML file.

    Strict validation ensures no silent misconfiguration can route a
    lookup to the wrong provider or bill it incorrectly.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GatewayConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Gateway config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'gateway', 'retry', 'providers', 'operations'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'operations' not in raw_config:
        raise ValueError("Missing required 'operations' section")

    gateway_data = _section(raw_config, 'gateway', {'timeout_seconds', 'reservation_ttl_seconds'})
    gateway = GatewaySettings(
        timeout_seconds=_number(gateway_data, 'timeout_seconds', 'gateway', DEFAULT_TIMEOUT_SECONDS),
        reservation_ttl_seconds=int(_number(
            gateway_data, 'reservation_ttl_seconds', 'gateway', DEFAULT_RESERVATION_TTL_SECONDS
        )),
    )

    retry_data = _section(raw_config, 'retry', {'max_attempts', 'backoff_seconds', 'backoff_multiplier'})
    max_attempts = retry_data.get('max_attempts', 3)
    if not isinstance(max_attempts, int) or isinstance(max_attempts, bool):
        raise ValueError("'max_attempts' in retry must be an integer")
    retry = RetryConfig(
        max_attempts=max_attempts,
        backoff_seconds=_number(retry_data, 'backoff_seconds', 'retry', 1.0),
        backoff_multiplier=_number(retry_data, 'backoff_multiplier', 'retry', 2.0),
    )

    providers_data = raw_config.get('providers') or {}
    if not isinstance(providers_data, dict):
        raise ValueError("'providers' must be a dictionary")
    providers = {}
    for provider_tag, provider_data in providers_data.items():
        if not isinstance(provider_data, dict):
            raise ValueError(f"Provider '{provider_tag}' must be a dictionary")
        unknown = set(provider_data.keys()) - {'base_url'}
        if unknown:
            raise ValueError(f"Unknown keys in providers.{provider_tag}: {unknown}")
        if not isinstance(provider_data.get('base_url'), str):
            raise ValueError(f"Missing required 'base_url' in providers.{provider_tag}")
        providers[provider_tag] = ProviderConfig(base_url=provider_data['base_url'].rstrip('/'))

    operations_data = raw_config['operations']
    if not isinstance(operations_data, dict) or not operations_data:
        raise ValueError("'operations' must be a non-empty dictionary")
    operations = {}
    for operation_tag, integration_id in operations_data.items():
        if not isinstance(integration_id, str) or not integration_id.strip():
            raise ValueError(f"Operation '{operation_tag}' must map to an integration id")
        operations[str(operation_tag)] = integration_id.strip()

    return GatewayConfig(
        gateway=gateway,
        retry=retry,
        providers=providers,
        operations=operations,
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Return an optional sub-section, rejecting unknown keys."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _number(data: Dict, key: str, path: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)
