"""
Exception hierarchy for the integration framework.

Everything raised by this package derives from IntegrationError so callers
can catch framework failures in one place. Library exceptions (httpx,
cryptography) are translated into these types at the seam where they occur.
"""

from datetime import datetime
from typing import Optional


class IntegrationError(Exception):
    """Base exception for integration framework errors."""
    pass


# ---------------------------------------------------------------------------
# Credential vault
# ---------------------------------------------------------------------------

class CredentialVaultError(IntegrationError):
    """Base exception for credential vault errors."""
    pass


class VaultKeyMissing(CredentialVaultError):
    """No encryption key configured where encryption is mandatory."""
    pass


class CorruptCredential(CredentialVaultError):
    """
    Stored ciphertext cannot be decrypted.

    Either the data is malformed or the key changed since it was written.
    The integration must be re-authorized; retrying cannot help.
    """

    user_message = (
        "Stored credentials could not be decrypted. "
        "Re-authorize the integration to continue syncing."
    )


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------

class OAuthError(IntegrationError):
    """Base exception for OAuth errors."""
    pass


class ProviderNotConfigured(OAuthError):
    """OAuth client id/secret for the provider are not configured."""

    def __init__(self, provider: str):
        super().__init__(f"OAuth is not configured for provider '{provider}'")
        self.provider = provider


class InvalidOrExpiredState(OAuthError):
    """OAuth state token is unknown, expired, or already used."""
    pass


class OAuthExchangeFailed(OAuthError):
    """Token endpoint call failed (network or provider-side)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TokenRefreshRejected(OAuthError):
    """The provider rejected the refresh token; re-authorization required."""
    pass


# ---------------------------------------------------------------------------
# Sync pipeline
# ---------------------------------------------------------------------------

class IntegrationNotFound(IntegrationError):
    """Integration does not exist or belongs to another organization."""

    def __init__(self, integration_id: str):
        super().__init__(f"Integration {integration_id} not found")
        self.integration_id = integration_id


class ConfigurationError(IntegrationError):
    """Integration configuration is malformed or missing a required field."""
    pass


class ProviderNotRegistered(ConfigurationError):
    """No sync capability registered for the provider type."""

    def __init__(self, provider: str):
        super().__init__(f"No sync capability registered for provider '{provider}'")
        self.provider = provider


class ProviderError(IntegrationError):
    """
    Failure reported by a provider call.

    Carries whatever the provider told us: an HTTP status, a provider error
    code, and a human-readable message. The error classifier uses these.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.retry_after = retry_after


class SyncRejected(IntegrationError):
    """
    A sync was not attempted.

    Rejections are expected control flow: no provider call was made, so they
    never count as provider failures.
    """
    pass


class CircuitOpen(SyncRejected):
    """Circuit breaker is open for this integration."""

    def __init__(self, integration_id: str, retry_after: Optional[datetime] = None):
        msg = f"Circuit open for integration {integration_id}"
        if retry_after:
            msg += f"; next trial after {retry_after.isoformat()}"
        super().__init__(msg)
        self.integration_id = integration_id
        self.retry_after = retry_after


class SyncAlreadyInProgress(SyncRejected):
    """Another sync already holds this integration's lock."""

    def __init__(self, integration_id: str):
        super().__init__(f"A sync is already running for integration {integration_id}")
        self.integration_id = integration_id


class SyncCancelled(IntegrationError):
    """Sync was cancelled at a retry boundary or before persistence."""
    pass


class SyncAttemptFailed(IntegrationError):
    """
    Terminal failure of one logical sync after the retry loop.

    Attributes:
        kind: ErrorKind of the last failure
        attempts: Total number of attempts made
        cause: The last underlying exception
    """

    def __init__(self, kind, attempts: int, cause: BaseException):
        super().__init__(f"{cause} (after {attempts} attempt{'s' if attempts != 1 else ''})")
        self.kind = kind
        self.attempts = attempts
        self.cause = cause
