"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for gateway configs.
"""

import os
import tempfile

import pytest
import yaml

from credit_gateway.config.loader import (
    GatewayConfig,
    GatewaySettings,
    ProviderConfig,
    RetryConfig,
    default_config,
    load_gateway_config,
)
from credit_gateway.core.errors import ProviderUnavailable


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data: dict, filename: str = "gateway.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "gateway": {
                "timeout_seconds": 10,
                "reservation_ttl_seconds": 600
            },
            "retry": {
                "max_attempts": 4,
                "backoff_seconds": 0.5,
                "backoff_multiplier": 3
            },
            "providers": {
                "signzy": {"base_url": "https://sandbox.signzy.app/"}
            },
            "operations": {
                "vehicle_rc_search": "signzy-rc",
                "upi_validation": "planapi-upi"
            }
        }

        config_path = self._write_config(config_data)
        config = load_gateway_config(config_path)

        assert config.gateway.timeout_seconds == 10.0
        assert config.gateway.reservation_ttl_seconds == 600
        assert config.retry.max_attempts == 4
        assert config.retry.backoff_seconds == 0.5
        assert config.retry.backoff_multiplier == 3.0
        assert config.base_url_for("signzy") == "https://sandbox.signzy.app"
        assert config.base_url_for("planapi") is None
        assert config.integration_for("vehicle_rc_search") == "signzy-rc"

    def test_minimal_config_uses_defaults(self):
        """Test that only the operations section is required."""
        config_path = self._write_config({"operations": {"vehicle_rc_search": "signzy-rc"}})
        config = load_gateway_config(config_path)

        assert config.gateway == GatewaySettings()
        assert config.retry == RetryConfig()
        assert config.providers == {}

    def test_unrouted_operation_is_unavailable(self):
        """Test routing is by exact key, never by substring."""
        config_path = self._write_config({"operations": {"vehicle_rc_search": "signzy-rc"}})
        config = load_gateway_config(config_path)

        with pytest.raises(ProviderUnavailable, match="not configured"):
            config.integration_for("vehicle_rc")
        with pytest.raises(ProviderUnavailable):
            config.integration_for("mobile_to_vehicle_rc_search")

    def test_missing_file_raises_error(self):
        """Test that missing config file raises error."""
        with pytest.raises(FileNotFoundError, match="Gateway config file not found"):
            load_gateway_config("nonexistent.yaml")

    def test_empty_config_raises_error(self):
        """Test that empty config file raises error."""
        config_path = self._write_config({})

        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_gateway_config(config_path)

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises error."""
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w') as f:
            f.write("invalid: yaml: content: [")

        with pytest.raises(yaml.YAMLError):
            load_gateway_config(config_path)

    def test_missing_operations_raises_error(self):
        """Test that missing operations section raises error."""
        config_path = self._write_config({"gateway": {"timeout_seconds": 10}})

        with pytest.raises(ValueError, match="Missing required 'operations' section"):
            load_gateway_config(config_path)

    def test_empty_operations_raises_error(self):
        config_path = self._write_config({"operations": {}})

        with pytest.raises(ValueError, match="non-empty dictionary"):
            load_gateway_config(config_path)

    def test_blank_integration_id_raises_error(self):
        config_path = self._write_config({"operations": {"vehicle_rc_search": "  "}})

        with pytest.raises(ValueError, match="must map to an integration id"):
            load_gateway_config(config_path)

    def test_unknown_top_level_keys_raise_error(self):
        """Test that unknown top-level keys raise error."""
        config_data = {
            "operations": {"vehicle_rc_search": "signzy-rc"},
            "unknown_key": "value"
        }

        config_path = self._write_config(config_data)
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_gateway_config(config_path)

    def test_unknown_gateway_keys_raise_error(self):
        config_data = {
            "gateway": {"timeout_seconds": 10, "pool_size": 4},
            "operations": {"vehicle_rc_search": "signzy-rc"}
        }

        config_path = self._write_config(config_data)
        with pytest.raises(ValueError, match="Unknown gateway keys"):
            load_gateway_config(config_path)

    def test_unknown_provider_keys_raise_error(self):
        config_data = {
            "providers": {"signzy": {"base_url": "https://api.signzy.app", "key": "x"}},
            "operations": {"vehicle_rc_search": "signzy-rc"}
        }

        config_path = self._write_config(config_data)
        with pytest.raises(ValueError, match="Unknown keys in providers.signzy"):
            load_gateway_config(config_path)

    def test_missing_base_url_raises_error(self):
        config_data = {
            "providers": {"signzy": {}},
            "operations": {"vehicle_rc_search": "signzy-rc"}
        }

        config_path = self._write_config(config_data)
        with pytest.raises(ValueError, match="Missing required 'base_url' in providers.signzy"):
            load_gateway_config(config_path)

    def test_non_http_base_url_raises_error(self):
        config_data = {
            "providers": {"signzy": {"base_url": "ftp://api.signzy.app"}},
            "operations": {"vehicle_rc_search": "signzy-rc"}
        }

        config_path = self._write_config(config_data)
        with pytest.raises(ValueError, match="http\\(s\\) URL"):
            load_gateway_config(config_path)

    def test_non_numeric_timeout_raises_error(self):
        config_data = {
            "gateway": {"timeout_seconds": "fast"},
            "operations": {"vehicle_rc_search": "signzy-rc"}
        }

        config_path = self._write_config(config_data)
        with pytest.raises(ValueError, match="'timeout_seconds' in gateway must be a number"):
            load_gateway_config(config_path)

    def test_ttl_must_exceed_timeout(self):
        """Test that a reservation cannot expire while its call may still run."""
        config_data = {
            "gateway": {"timeout_seconds": 60, "reservation_ttl_seconds": 30},
            "operations": {"vehicle_rc_search": "signzy-rc"}
        }

        config_path = self._write_config(config_data)
        with pytest.raises(ValueError, match="must exceed timeout_seconds"):
            load_gateway_config(config_path)

    def test_fractional_max_attempts_raises_error(self):
        config_data = {
            "retry": {"max_attempts": 2.5},
            "operations": {"vehicle_rc_search": "signzy-rc"}
        }

        config_path = self._write_config(config_data)
        with pytest.raises(ValueError, match="must be an integer"):
            load_gateway_config(config_path)


class TestConfigObjects:
    """Test dataclass validation."""

    def test_zero_timeout_raises_error(self):
        with pytest.raises(ValueError, match="timeout_seconds must be > 0"):
            GatewaySettings(timeout_seconds=0)

    @pytest.mark.parametrize("attempts", [0, 6])
    def test_max_attempts_bounds(self, attempts):
        with pytest.raises(ValueError, match="max_attempts"):
            RetryConfig(max_attempts=attempts)

    def test_provider_config_requires_url(self):
        with pytest.raises(ValueError):
            ProviderConfig(base_url="api.signzy.app")

    def test_default_config_routes_nothing(self):
        config = default_config()
        assert isinstance(config, GatewayConfig)
        with pytest.raises(ProviderUnavailable):
            config.integration_for("vehicle_rc_search")
