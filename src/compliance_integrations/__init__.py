"""
Compliance integration resilience framework.

Connects an organization's compliance platform to external systems of
record (cloud, identity, source control, ticketing) and keeps those
connections trustworthy:

- OAuth2 authorization and token refresh per provider
- Credentials encrypted at rest (Fernet, HKDF-derived key, key rotation)
- Sync pipeline with error classification, exponential-backoff retry and
  a per-integration circuit breaker
- Health aggregation over rolling 24h/7d windows

Security Features:
- Single-use OAuth state tokens with 10-minute TTL
- PKCE (S256) wherever the provider supports it
- SecureCredentials wrapper prevents log exposure
- Organization ownership verified on every service read
"""

from .circuit_breaker import CircuitBreaker
from .config import IntegrationSettings, load_config
from .credential_vault import CredentialVault
from .error_classifier import ErrorKind, classify
from .exceptions import (
    CircuitOpen,
    ConfigurationError,
    CorruptCredential,
    CredentialVaultError,
    IntegrationError,
    IntegrationNotFound,
    InvalidOrExpiredState,
    OAuthError,
    OAuthExchangeFailed,
    ProviderError,
    ProviderNotConfigured,
    ProviderNotRegistered,
    SyncAlreadyInProgress,
    SyncAttemptFailed,
    SyncCancelled,
    SyncRejected,
    TokenRefreshRejected,
    VaultKeyMissing,
)
from .health import HealthAggregator
from .integration_service import IntegrationService
from .locks import InProcessSyncLock, RedisSyncLock, SyncLock
from .models import (
    AuthMethod,
    HealthStatus,
    HealthTrend,
    Integration,
    IntegrationStatus,
    ProviderSyncResult,
    ProviderType,
    RetryPolicy,
    SyncLog,
    SyncOutcome,
    SyncOutcomeStatus,
    SyncType,
)
from .oauth import OAuthConnector
from .oauth_state import OAuthStateManager
from .providers import ProviderRegistry, SyncCapability
from .retry import RetryExecutor
from .secure_credentials import OAuthTokens, SecureCredentials
from .storage import InMemoryIntegrationStore, IntegrationStore, SqlIntegrationStore
from .sync_engine import SyncEngine

__version__ = "1.0.0"

__all__ = [
    # Configuration
    "IntegrationSettings",
    "load_config",
    # Security components
    "CredentialVault",
    "SecureCredentials",
    "OAuthTokens",
    "OAuthStateManager",
    "OAuthConnector",
    # Sync pipeline
    "SyncEngine",
    "SyncLock",
    "InProcessSyncLock",
    "RedisSyncLock",
    "RetryExecutor",
    "CircuitBreaker",
    "ErrorKind",
    "classify",
    "ProviderRegistry",
    "SyncCapability",
    # Health
    "HealthAggregator",
    # Service and storage
    "IntegrationService",
    "IntegrationStore",
    "InMemoryIntegrationStore",
    "SqlIntegrationStore",
    # Models
    "AuthMethod",
    "HealthStatus",
    "HealthTrend",
    "Integration",
    "IntegrationStatus",
    "ProviderSyncResult",
    "ProviderType",
    "RetryPolicy",
    "SyncLog",
    "SyncOutcome",
    "SyncOutcomeStatus",
    "SyncType",
    # Errors
    "IntegrationError",
    "CredentialVaultError",
    "VaultKeyMissing",
    "CorruptCredential",
    "OAuthError",
    "ProviderNotConfigured",
    "InvalidOrExpiredState",
    "OAuthExchangeFailed",
    "TokenRefreshRejected",
    "IntegrationNotFound",
    "ConfigurationError",
    "ProviderNotRegistered",
    "ProviderError",
    "SyncRejected",
    "CircuitOpen",
    "SyncAlreadyInProgress",
    "SyncCancelled",
    "SyncAttemptFailed",
]
