"""
Configuration management for the integration framework.

Loads settings from environment variables, validates them, and provides
typed access. Per-integration overrides (retry policy, breaker threshold,
cadence) live on the Integration record; values here are process-wide
defaults.
"""

import os
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Environment variable prefixes for OAuth client credentials, keyed by the
# credential set they configure. Google, Azure and Atlassian credentials are
# shared by more than one provider (see oauth.providers).
OAUTH_CLIENT_ENV = {
    "github": "GITHUB_OAUTH",
    "gitlab": "GITLAB_OAUTH",
    "google": "GOOGLE_OAUTH",
    "azure": "AZURE_OAUTH",
    "okta": "OKTA_OAUTH",
    "atlassian": "ATLASSIAN_OAUTH",
}


class OAuthClientCredentials(BaseModel):
    """Client id/secret for one OAuth credential set."""

    client_id: str
    client_secret: str

    model_config = ConfigDict(frozen=True)

    def __repr__(self) -> str:
        return f"OAuthClientCredentials(client_id={self.client_id!r}, client_secret=[REDACTED])"


class IntegrationSettings(BaseModel):
    """Process-wide integration framework settings."""

    # ========================================================================
    # Environment
    # ========================================================================

    environment: str = Field(
        default="development",
        description="development, staging or production"
    )
    log_level: str = Field(default="INFO")

    # ========================================================================
    # Credential encryption
    # ========================================================================

    encryption_key: Optional[str] = Field(
        default=None,
        description="Master key for credential encryption (required in production)"
    )
    previous_encryption_keys: List[str] = Field(
        default_factory=list,
        description="Retired master keys still accepted for decryption"
    )

    # ========================================================================
    # OAuth
    # ========================================================================

    oauth_redirect_base_url: str = Field(default="http://localhost:8000")
    oauth_clients: Dict[str, OAuthClientCredentials] = Field(default_factory=dict)
    azure_tenant_id: str = Field(default="common")
    oauth_state_ttl_seconds: int = Field(default=600, ge=60, le=3600)
    token_refresh_buffer_seconds: int = Field(default=300, ge=0)
    http_timeout_seconds: float = Field(default=30.0, gt=0)

    # ========================================================================
    # Sync pipeline
    # ========================================================================

    provider_call_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Upper bound on one provider call"
    )
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_reset_seconds: int = Field(default=600, ge=1)
    max_parallel_syncs: int = Field(default=5, ge=1, le=100)
    overdue_grace_factor: float = Field(
        default=1.5,
        ge=1.0,
        description="Multiple of an integration's cadence after which it is overdue"
    )

    # ========================================================================
    # Backing services
    # ========================================================================

    redis_url: Optional[str] = Field(default=None)
    database_url: Optional[str] = Field(default=None)

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        v = v.lower()
        if v not in ('development', 'staging', 'production', 'test'):
            raise ValueError(f"Invalid environment: {v}")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        v = v.upper()
        if v not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"Invalid log level: {v}")
        return v

    @field_validator('oauth_redirect_base_url')
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip('/')

    @property
    def is_production(self) -> bool:
        return self.environment == 'production'

    @property
    def oauth_redirect_uri(self) -> str:
        return f"{self.oauth_redirect_base_url}/api/v1/integrations/oauth/callback"

    def oauth_client(self, credential_set: str) -> Optional[OAuthClientCredentials]:
        return self.oauth_clients.get(credential_set)

    model_config = ConfigDict(
        validate_assignment=True,
    )


def _read_oauth_clients(env) -> Dict[str, OAuthClientCredentials]:
    clients = {}
    for credential_set, prefix in OAUTH_CLIENT_ENV.items():
        client_id = env.get(f"{prefix}_CLIENT_ID")
        client_secret = env.get(f"{prefix}_CLIENT_SECRET")
        # Both halves are required; a lone id or secret means "not configured"
        if client_id and client_secret:
            clients[credential_set] = OAuthClientCredentials(
                client_id=client_id,
                client_secret=client_secret,
            )
    return clients


def _split_keys(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [k.strip() for k in raw.split(',') if k.strip()]


def load_config(env: Optional[Dict[str, str]] = None) -> IntegrationSettings:
    """
    Load configuration from environment variables.

    Args:
        env: Mapping to read instead of os.environ (tests)

    Returns:
        IntegrationSettings: Validated configuration

    Raises:
        ValueError: If a setting is invalid
    """
    env = os.environ if env is None else env

    config_dict = {
        # Environment
        'environment': env.get('ENVIRONMENT', 'development'),
        'log_level': env.get('LOG_LEVEL', 'INFO'),

        # Encryption
        'encryption_key': env.get('ENCRYPTION_KEY') or None,
        'previous_encryption_keys': _split_keys(env.get('PREVIOUS_ENCRYPTION_KEYS')),

        # OAuth
        'oauth_redirect_base_url': env.get('OAUTH_REDIRECT_BASE_URL', 'http://localhost:8000'),
        'oauth_clients': _read_oauth_clients(env),
        'azure_tenant_id': env.get('AZURE_OAUTH_TENANT_ID', 'common'),
        'oauth_state_ttl_seconds': int(env.get('OAUTH_STATE_TTL_SECONDS', '600')),
        'token_refresh_buffer_seconds': int(env.get('TOKEN_REFRESH_BUFFER_SECONDS', '300')),
        'http_timeout_seconds': float(env.get('HTTP_TIMEOUT_SECONDS', '30')),

        # Sync pipeline
        'provider_call_timeout_seconds': float(env.get('PROVIDER_CALL_TIMEOUT_SECONDS', '300')),
        'circuit_breaker_threshold': int(env.get('CIRCUIT_BREAKER_THRESHOLD', '5')),
        'circuit_breaker_reset_seconds': int(env.get('CIRCUIT_BREAKER_RESET_SECONDS', '600')),
        'max_parallel_syncs': int(env.get('MAX_PARALLEL_SYNCS', '5')),
        'overdue_grace_factor': float(env.get('OVERDUE_GRACE_FACTOR', '1.5')),

        # Backing services
        'redis_url': env.get('REDIS_URL') or None,
        'database_url': env.get('DATABASE_URL') or None,
    }

    return IntegrationSettings(**config_dict)
