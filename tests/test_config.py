"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from orchestrator.config import (
    DEFAULT_HEALTH_THRESHOLD,
    GLOBAL_MAX_CONCURRENCY,
    Config,
    ConfigurationError,
    parse_weights,
)


class TestConfig:
    """Tests for Config class."""

    def test_defaults(self) -> None:
        """Test default configuration values."""
        config = Config()

        assert config.state_dir == Path(".orchestrator")
        assert config.max_concurrency == GLOBAL_MAX_CONCURRENCY
        assert config.retry_max_attempts == 5
        assert config.retry_base_delay_seconds == 1.0
        assert config.retry_max_delay_seconds == 60.0
        assert config.health_threshold == DEFAULT_HEALTH_THRESHOLD
        assert config.required_categories is None
        assert config.json_logs is True

    @pytest.mark.parametrize("value", [0, GLOBAL_MAX_CONCURRENCY + 1])
    def test_concurrency_bounds(self, value: int) -> None:
        """Test concurrency outside 1..8 is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(max_concurrency=value)
        assert "MAX_CONCURRENCY" in str(exc_info.value)

    def test_retry_attempts_bounds(self) -> None:
        """Test a zero retry budget is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(retry_max_attempts=0)
        assert "RETRY_MAX_ATTEMPTS" in str(exc_info.value)

    def test_backoff_cap_below_base(self) -> None:
        """Test the backoff cap must not be below the base delay."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(retry_base_delay_seconds=10.0, retry_max_delay_seconds=5.0)
        assert "RETRY_MAX_DELAY" in str(exc_info.value)

    @pytest.mark.parametrize("threshold", [-1.0, 100.5])
    def test_threshold_bounds(self, threshold: float) -> None:
        """Test the health threshold must lie in [0, 100]."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(health_threshold=threshold)
        assert "HEALTH_THRESHOLD" in str(exc_info.value)

    def test_negative_weight(self) -> None:
        """Test negative category weights are rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(health_weights={"network": -1.0})
        assert "network" in str(exc_info.value)

    def test_invalid_log_level(self) -> None:
        """Test unknown log levels are rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(log_level="VERBOSE")
        assert "LOG_LEVEL" in str(exc_info.value)

    def test_errors_are_collected(self) -> None:
        """Test every problem is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(max_concurrency=0, health_threshold=200.0, log_level="LOUD")
        message = str(exc_info.value)
        assert "MAX_CONCURRENCY" in message
        assert "HEALTH_THRESHOLD" in message
        assert "LOG_LEVEL" in message


class TestConfigFromEnv:
    """Tests for loading configuration from the environment."""

    def test_empty_environment(self) -> None:
        """Test defaults apply when nothing is set."""
        with patch.dict(os.environ, {}, clear=True):
            config = Config.from_env()
        assert config == Config()

    def test_from_env(self, tmp_path: Path) -> None:
        """Test every variable is read."""
        env = {
            "ORCHESTRATOR_STATE_DIR": str(tmp_path),
            "ORCHESTRATOR_MAX_CONCURRENCY": "4",
            "ORCHESTRATOR_RETRY_MAX_ATTEMPTS": "3",
            "ORCHESTRATOR_RETRY_BASE_DELAY": "0.5",
            "ORCHESTRATOR_RETRY_MAX_DELAY": "30",
            "ORCHESTRATOR_HEALTH_POLL_INTERVAL": "2",
            "ORCHESTRATOR_HEALTH_TIMEOUT": "120",
            "ORCHESTRATOR_HEALTH_THRESHOLD": "90",
            "ORCHESTRATOR_HEALTH_WEIGHTS": "network=2, security=0.5",
            "ORCHESTRATOR_REQUIRED_CATEGORIES": "network,security",
            "ORCHESTRATOR_LOG_LEVEL": "DEBUG",
            "ORCHESTRATOR_JSON_LOGS": "false",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.state_dir == tmp_path
        assert config.max_concurrency == 4
        assert config.retry_max_attempts == 3
        assert config.retry_base_delay_seconds == 0.5
        assert config.retry_max_delay_seconds == 30.0
        assert config.health_poll_interval_seconds == 2.0
        assert config.health_timeout_seconds == 120.0
        assert config.health_threshold == 90.0
        assert config.health_weights == {"network": 2.0, "security": 0.5}
        assert config.required_categories == frozenset({"network", "security"})
        assert config.log_level == "DEBUG"
        assert config.json_logs is False

    def test_invalid_integer(self) -> None:
        """Test a non-numeric integer variable is rejected."""
        with patch.dict(os.environ, {"ORCHESTRATOR_MAX_CONCURRENCY": "many"}, clear=True):
            with pytest.raises(ConfigurationError, match="must be an integer"):
                Config.from_env()

    def test_invalid_float(self) -> None:
        """Test a non-numeric float variable is rejected."""
        with patch.dict(os.environ, {"ORCHESTRATOR_HEALTH_THRESHOLD": "high"}, clear=True):
            with pytest.raises(ConfigurationError, match="must be a number"):
                Config.from_env()

    def test_out_of_range_from_env(self) -> None:
        """Test range validation applies to environment values."""
        with patch.dict(os.environ, {"ORCHESTRATOR_MAX_CONCURRENCY": "64"}, clear=True):
            with pytest.raises(ConfigurationError, match="MAX_CONCURRENCY"):
                Config.from_env()


class TestParseWeights:
    """Tests for category weight parsing."""

    def test_pairs(self) -> None:
        """Test comma-separated pairs are parsed."""
        assert parse_weights("network=2,security=1.5") == {"network": 2.0, "security": 1.5}

    def test_empty(self) -> None:
        """Test empty input yields no weights."""
        assert parse_weights("") == {}
        assert parse_weights(" , ") == {}

    def test_missing_separator(self) -> None:
        """Test a pair without '=' is rejected."""
        with pytest.raises(ConfigurationError, match="category=weight"):
            parse_weights("network")

    def test_non_numeric(self) -> None:
        """Test a non-numeric weight is rejected."""
        with pytest.raises(ConfigurationError, match="must be a number"):
            parse_weights("network=heavy")
