"""Unit tests for routing configuration."""

import pytest
from pydantic import ValidationError

from inbox_routing import RoutingConfig, RoutingStrategy


class TestRoutingConfig:
    """Tests for RoutingConfig."""

    def test_defaults(self):
        """Test default configuration."""
        config = RoutingConfig()

        assert config.default_strategy == RoutingStrategy.ROUND_ROBIN
        assert config.default_max_concurrent_conversations == 5
        assert config.race_retries == 1
        assert config.database_url is None
        assert config.api_prefix == "/api/v1"

    def test_from_env(self, monkeypatch):
        """Test environment overrides."""
        monkeypatch.setenv("ROUTING_DATABASE_URL", "sqlite+aiosqlite:///routing.db")
        monkeypatch.setenv("ROUTING_DEFAULT_STRATEGY", "least_loaded")
        monkeypatch.setenv("ROUTING_DEFAULT_MAX_CONCURRENT", "8")
        monkeypatch.setenv("ROUTING_SWEEPER_ENABLED", "false")
        monkeypatch.setenv("ROUTING_RACE_RETRIES", "3")

        config = RoutingConfig.from_env()

        assert config.database_url == "sqlite+aiosqlite:///routing.db"
        assert config.default_strategy == RoutingStrategy.LEAST_LOADED
        assert config.default_max_concurrent_conversations == 8
        assert config.sweeper_enabled is False
        assert config.race_retries == 3

    def test_empty_database_url_means_memory(self, monkeypatch):
        """Test an empty URL keeps routing in memory."""
        monkeypatch.setenv("ROUTING_DATABASE_URL", "")

        assert RoutingConfig.from_env().database_url is None

    def test_invalid_values(self):
        """Test field constraints."""
        with pytest.raises(ValidationError):
            RoutingConfig(default_max_concurrent_conversations=0)
        with pytest.raises(ValidationError):
            RoutingConfig(rebalance_threshold=1.5)
