"""
Tests for configuration loading and validation.
"""

import logging

import pytest
from pydantic import ValidationError

from compliance_integrations.config import IntegrationSettings, load_config
from compliance_integrations.utils import setup_logging


class TestLoadConfig:
    def test_defaults(self):
        settings = load_config({})
        assert settings.environment == "development"
        assert settings.encryption_key is None
        assert settings.circuit_breaker_threshold == 5
        assert settings.circuit_breaker_reset_seconds == 600
        assert settings.oauth_state_ttl_seconds == 600
        assert settings.overdue_grace_factor == 1.5
        assert settings.oauth_clients == {}

    def test_reads_environment_mapping(self):
        settings = load_config({
            "ENVIRONMENT": "Production",
            "LOG_LEVEL": "debug",
            "ENCRYPTION_KEY": "current",
            "PREVIOUS_ENCRYPTION_KEYS": "old-1, old-2,,",
            "MAX_PARALLEL_SYNCS": "8",
            "REDIS_URL": "redis://cache:6379/0",
        })
        assert settings.is_production
        assert settings.log_level == "DEBUG"
        assert settings.previous_encryption_keys == ["old-1", "old-2"]
        assert settings.max_parallel_syncs == 8
        assert settings.redis_url == "redis://cache:6379/0"

    def test_oauth_client_needs_both_halves(self):
        settings = load_config({
            "GITHUB_OAUTH_CLIENT_ID": "gh-id",
            "GITHUB_OAUTH_CLIENT_SECRET": "gh-secret",
            "OKTA_OAUTH_CLIENT_ID": "okta-id",
        })
        assert settings.oauth_client("github").client_id == "gh-id"
        assert settings.oauth_client("okta") is None

    def test_client_secret_not_in_repr(self):
        settings = load_config({
            "GITLAB_OAUTH_CLIENT_ID": "gl-id",
            "GITLAB_OAUTH_CLIENT_SECRET": "gl-secret",
        })
        assert "gl-secret" not in repr(settings.oauth_client("gitlab"))

    def test_redirect_uri(self):
        settings = load_config({"OAUTH_REDIRECT_BASE_URL": "https://app.example.com/"})
        assert settings.oauth_redirect_uri == (
            "https://app.example.com/api/v1/integrations/oauth/callback"
        )


class TestValidation:
    @pytest.mark.parametrize("env", [
        {"ENVIRONMENT": "qa"},
        {"LOG_LEVEL": "LOUD"},
        {"OAUTH_STATE_TTL_SECONDS": "30"},
        {"MAX_PARALLEL_SYNCS": "0"},
        {"OVERDUE_GRACE_FACTOR": "0.5"},
    ])
    def test_invalid_values_rejected(self, env):
        with pytest.raises(ValidationError):
            load_config(env)

    def test_assignment_validated(self):
        settings = IntegrationSettings()
        with pytest.raises(ValidationError):
            settings.circuit_breaker_threshold = 0


class TestSetupLogging:
    def test_sets_root_level(self, monkeypatch):
        root = logging.getLogger()
        monkeypatch.setattr(root, "handlers", [])
        monkeypatch.setattr(root, "level", root.level)

        setup_logging("warning")

        assert root.level == logging.WARNING
