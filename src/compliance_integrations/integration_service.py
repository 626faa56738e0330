"""
Integration management service.

Organization-scoped CRUD over integrations. Configuration is encrypted
through the CredentialVault before it reaches the store and is never
returned in plaintext; callers that need secrets get SecureCredentials.

Deleting an integration cancels its in-flight sync, makes a best-effort
token revocation for OAuth integrations, then removes the record with its
sync logs, breaker state and health history.
"""

import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from .credential_vault import CredentialVault
from .exceptions import ConfigurationError, IntegrationNotFound
from .models import (
    AuthMethod,
    CircuitBreakerState,
    Integration,
    IntegrationStatus,
    ProviderType,
    RetryPolicy,
    SyncLog,
    SyncOutcome,
    SyncType,
)
from .oauth.connector import OAuthConnector
from .secure_credentials import SecureCredentials
from .storage import IntegrationStore
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


MAX_LIST_LIMIT = 500
MAX_SYNC_LOG_LIMIT = 100
MAX_NAME_LENGTH = 255

# Statuses an operator may set directly; error and syncing are owned by syncs
SETTABLE_STATUSES = (IntegrationStatus.ACTIVE, IntegrationStatus.INACTIVE)


def _validate_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ConfigurationError("Integration name is required")
    if len(name) > MAX_NAME_LENGTH:
        raise ConfigurationError(f"Integration name exceeds {MAX_NAME_LENGTH} characters")
    return name


def _validate_interval(minutes: Optional[int]) -> Optional[int]:
    if minutes is not None and minutes < 1:
        raise ConfigurationError("sync_interval_minutes must be at least 1")
    return minutes


class IntegrationService:
    """
    Manages integrations for organizations.

    Every read and write verifies the integration belongs to the calling
    organization; a mismatch is reported as IntegrationNotFound.
    """

    def __init__(
        self,
        store: IntegrationStore,
        vault: CredentialVault,
        engine: SyncEngine,
        oauth: Optional[OAuthConnector] = None,
    ):
        self.store = store
        self.vault = vault
        self.engine = engine
        self.oauth = oauth

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_integration(self, organization_id: str, integration_id: str) -> Integration:
        """
        Raises:
            IntegrationNotFound: Missing or owned by another organization
        """
        integration = await self.store.get_integration(integration_id)
        if integration is None or integration.organization_id != organization_id:
            raise IntegrationNotFound(integration_id)
        return integration

    async def list_integrations(
        self,
        organization_id: str,
        provider: Optional[ProviderType] = None,
        status: Optional[IntegrationStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Integration]:
        """
        List an organization's integrations, oldest first.

        Args:
            organization_id: Owning organization
            provider: Only this provider type
            status: Only this status
            limit: Page size (capped at 500)
            offset: Rows to skip

        Returns:
            List of Integration
        """
        limit = max(0, min(limit, MAX_LIST_LIMIT))
        offset = max(0, offset)

        integrations = await self.store.list_integrations(organization_id)
        if provider is not None:
            integrations = [i for i in integrations if i.provider == ProviderType(provider)]
        if status is not None:
            integrations = [i for i in integrations if i.status == IntegrationStatus(status)]
        return integrations[offset:offset + limit]

    async def get_config(self, organization_id: str, integration_id: str) -> SecureCredentials:
        """Decrypted configuration, wrapped so it never prints."""
        integration = await self.get_integration(organization_id, integration_id)
        if not integration.config_encrypted:
            return SecureCredentials()
        return self.vault.decrypt_config(integration.config_encrypted)

    async def get_sync_logs(self, organization_id: str, integration_id: str,
                            limit: int = 20) -> List[SyncLog]:
        """Most recent sync logs first (at most 100)."""
        await self.get_integration(organization_id, integration_id)
        limit = max(0, min(limit, MAX_SYNC_LOG_LIMIT))
        return await self.store.list_sync_logs(integration_id, limit=limit)

    async def get_stats(self, organization_id: str) -> Dict[str, Any]:
        """Integration counts by status and provider."""
        integrations = await self.store.list_integrations(organization_id)
        by_status = Counter(i.status for i in integrations)
        by_provider = Counter(i.provider.value for i in integrations)
        return {
            "total": len(integrations),
            "active": by_status[IntegrationStatus.ACTIVE],
            "inactive": by_status[IntegrationStatus.INACTIVE],
            "error": by_status[IntegrationStatus.ERROR],
            "syncing": by_status[IntegrationStatus.SYNCING],
            "requires_reauth": sum(1 for i in integrations if i.requires_reauth),
            "by_provider": dict(by_provider),
        }

    # =========================================================================
    # Writes
    # =========================================================================

    async def create_integration(
        self,
        organization_id: str,
        provider: ProviderType,
        name: str,
        config: Dict[str, Any],
        auth_method: AuthMethod = AuthMethod.API_KEY,
        sync_interval_minutes: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker_threshold: Optional[int] = None,
        circuit_breaker_reset_seconds: Optional[int] = None,
    ) -> Integration:
        """
        Create a manually configured integration (API key or service account).

        OAuth integrations are created by OAuthConnector.complete().

        Raises:
            ConfigurationError: Invalid name, cadence or auth method
        """
        auth_method = AuthMethod(auth_method)
        if auth_method == AuthMethod.OAUTH2:
            raise ConfigurationError("OAuth integrations are created through the OAuth flow")

        integration = Integration(
            organization_id=organization_id,
            provider=ProviderType(provider),
            name=_validate_name(name),
            config_encrypted=self.vault.encrypt_config(config or {}),
            auth_method=auth_method,
            sync_interval_minutes=_validate_interval(sync_interval_minutes),
            retry_policy=retry_policy or RetryPolicy(),
            circuit_breaker_threshold=circuit_breaker_threshold,
            circuit_breaker_reset_seconds=circuit_breaker_reset_seconds,
        )
        integration = await self.store.create_integration(integration)

        logger.info(
            f"Integration created: org={organization_id} integration={integration.id} "
            f"provider={integration.provider.value} auth={auth_method.value}"
        )
        return integration

    async def update_integration(
        self,
        organization_id: str,
        integration_id: str,
        name: Optional[str] = None,
        status: Optional[IntegrationStatus] = None,
        sync_interval_minutes: Optional[int] = None,
        clear_sync_interval: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker_threshold: Optional[int] = None,
        circuit_breaker_reset_seconds: Optional[int] = None,
    ) -> Integration:
        """
        Update settings; arguments left as None keep their current value.

        Raises:
            IntegrationNotFound: Missing or owned by another organization
            ConfigurationError: Invalid value or status
        """
        integration = await self.get_integration(organization_id, integration_id)

        if name is not None:
            integration.name = _validate_name(name)
        if status is not None:
            status = IntegrationStatus(status)
            if status not in SETTABLE_STATUSES:
                raise ConfigurationError(f"Status '{status.value}' cannot be set directly")
            integration.status = status
        if clear_sync_interval:
            integration.sync_interval_minutes = None
        elif sync_interval_minutes is not None:
            integration.sync_interval_minutes = _validate_interval(sync_interval_minutes)
        if retry_policy is not None:
            integration.retry_policy = retry_policy
        if circuit_breaker_threshold is not None:
            integration.circuit_breaker_threshold = circuit_breaker_threshold
        if circuit_breaker_reset_seconds is not None:
            integration.circuit_breaker_reset_seconds = circuit_breaker_reset_seconds

        integration = await self.store.update_integration(integration)
        logger.info(f"Integration updated: org={organization_id} integration={integration_id}")
        return integration

    async def update_config(self, organization_id: str, integration_id: str,
                            config: Dict[str, Any]) -> Integration:
        """
        Replace the encrypted configuration.

        New credentials clear requires_reauth and a previous error status;
        the next sync decides whether they work.
        """
        integration = await self.get_integration(organization_id, integration_id)
        integration.config_encrypted = self.vault.encrypt_config(config or {})
        integration.requires_reauth = False
        if integration.status == IntegrationStatus.ERROR:
            integration.status = IntegrationStatus.ACTIVE
            integration.last_error = None
        integration = await self.store.update_integration(integration)

        logger.info(
            f"Integration config updated: org={organization_id} integration={integration_id} "
            f"keys={sorted(config or {})}"
        )
        return integration

    async def delete_integration(self, organization_id: str, integration_id: str) -> bool:
        """
        Delete an integration and everything recorded for it.

        Returns:
            True if deleted

        Raises:
            IntegrationNotFound: Missing or owned by another organization
        """
        integration = await self.get_integration(organization_id, integration_id)

        cancelled = self.engine.cancel(integration_id)

        revoked = False
        if integration.is_oauth and self.oauth is not None:
            revoked = await self.oauth.revoke(integration)

        deleted = await self.store.delete_integration(integration_id)
        logger.info(
            f"Integration deleted: org={organization_id} integration={integration_id} "
            f"cancelled_sync={cancelled} tokens_revoked={revoked}"
        )
        return deleted

    # =========================================================================
    # Sync controls
    # =========================================================================

    async def trigger_sync(self, organization_id: str, integration_id: str,
                           sync_type: SyncType = SyncType.MANUAL) -> SyncOutcome:
        await self.get_integration(organization_id, integration_id)
        return await self.engine.run_sync(integration_id, sync_type)

    async def cancel_sync(self, organization_id: str, integration_id: str) -> bool:
        await self.get_integration(organization_id, integration_id)
        return self.engine.cancel(integration_id)

    async def reset_circuit(self, organization_id: str, integration_id: str) -> CircuitBreakerState:
        """Force the breaker closed, e.g. after the provider outage is resolved."""
        await self.get_integration(organization_id, integration_id)
        return await self.engine.breaker.reset(integration_id)
