"""Tests for configuration loading and validation."""

import pytest
from pydantic import ValidationError

from library_api.config import ServerConfig, get_config, reset_config


class TestServerConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("LIBRARY_API_BCRYPT_ROUNDS")
        monkeypatch.delenv("LIBRARY_API_CONFLICT_BACKOFF_SECONDS")
        monkeypatch.delenv("LIBRARY_API_JWT_SECRET")

        config = ServerConfig()

        assert config.app_name == "library-api"
        assert config.jwt_algorithm == "HS256"
        assert config.access_token_ttl_hours == 24
        assert config.refresh_token_ttl_days == 7
        assert config.loan_period_days == 14
        assert config.max_conflict_retries == 5
        assert config.bcrypt_rounds == 12
        assert config.cors_origins == ["http://localhost:3001"]
        assert config.overdue_sweep_interval_seconds == 0

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LIBRARY_API_LOAN_PERIOD_DAYS", "21")
        monkeypatch.setenv("LIBRARY_API_LOG_LEVEL", "debug")
        monkeypatch.setenv("LIBRARY_API_CORS_ORIGINS", '["https://library.example"]')

        config = ServerConfig()

        assert config.loan_period_days == 21
        assert config.log_level == "DEBUG"
        assert config.is_development
        assert config.cors_origins == ["https://library.example"]

    def test_sqlite_directory_is_created(self, tmp_path):
        db_path = tmp_path / "nested" / "library.db"

        config = ServerConfig(database_url=f"sqlite:///{db_path}")

        assert config.is_sqlite
        assert db_path.parent.is_dir()

    def test_jwt_secret_hidden_from_repr(self):
        config = ServerConfig(jwt_secret="super-secret-value")
        assert "super-secret-value" not in repr(config)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"log_level": "VERBOSE"},
            {"jwt_algorithm": "RS256"},
            {"loan_period_days": 0},
            {"max_conflict_retries": 0},
            {"bcrypt_rounds": 3},
            {"jwt_secret": "short"},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ValidationError):
            ServerConfig(**overrides)


def test_get_config_is_cached_until_reset(monkeypatch):
    first = get_config()
    assert get_config() is first

    monkeypatch.setenv("LIBRARY_API_LOAN_PERIOD_DAYS", "10")
    reset_config()

    assert get_config() is not first
    assert get_config().loan_period_days == 10
