"""
OAuth 2.0 authorization-code connector.

SECURITY REQUIREMENT: All OAuth flows MUST use:
- Single-use, time-limited state tokens via OAuthStateManager
- PKCE with S256 challenge wherever the provider supports it
- Bounded httpx timeouts on every token endpoint call
- CredentialVault for every token written to storage
- Token refresh before expiry (5 minute buffer)

One connector serves every provider in the OAuth provider table; provider
quirks (URL templates, PKCE, JSON Accept header) live in the table.

Usage:
    connector = OAuthConnector(settings, vault, state_manager, store)

    request = await connector.begin("org-1", ProviderType.GITLAB, integration_name="GitLab")
    # redirect the user to request.authorization_url

    integration = await connector.complete(state, code)
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from ..config import IntegrationSettings
from ..credential_vault import CredentialVault
from ..exceptions import (
    CredentialVaultError,
    IntegrationError,
    IntegrationNotFound,
    OAuthExchangeFailed,
    ProviderNotConfigured,
    TokenRefreshRejected,
)
from ..models import (
    AuthMethod,
    AuthorizationRequest,
    Integration,
    IntegrationStatus,
    ProviderType,
    utc_now,
)
from ..oauth_state import OAuthStateManager
from ..secure_credentials import OAuthTokens
from ..storage import IntegrationStore
from .providers import OAuthProviderConfig, get_provider_config

logger = logging.getLogger(__name__)


# Configuration
PKCE_CODE_VERIFIER_LENGTH = 64  # 64 bytes = 512 bits
REJECTED_GRANT_ERRORS = frozenset({"invalid_grant", "bad_refresh_token", "unauthorized_client"})


@dataclass
class PKCEChallenge:
    """PKCE code verifier and challenge pair."""
    code_verifier: str
    code_challenge: str
    code_challenge_method: str = "S256"


def generate_pkce_challenge() -> PKCEChallenge:
    """
    Generate PKCE code verifier and challenge.

    Uses S256 method (SHA256 hash of verifier).
    """
    code_verifier = secrets.token_urlsafe(PKCE_CODE_VERIFIER_LENGTH)

    # S256 challenge: BASE64URL(SHA256(code_verifier)) without padding
    sha256_digest = hashlib.sha256(code_verifier.encode('ascii')).digest()
    code_challenge = base64.urlsafe_b64encode(sha256_digest).rstrip(b'=').decode('ascii')

    return PKCEChallenge(code_verifier=code_verifier, code_challenge=code_challenge)


@dataclass
class TokenResponse:
    """OAuth token response."""
    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any], now: datetime) -> "TokenResponse":
        expires_in = data.get("expires_in")
        expires_in = int(expires_in) if expires_in is not None else None
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            expires_in=expires_in,
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
            expires_at=now + timedelta(seconds=expires_in) if expires_in else None,
        )

    @property
    def scopes(self) -> List[str]:
        if not self.scope:
            return []
        return [s for s in self.scope.replace(",", " ").split() if s]

    def to_config(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "scope": self.scope,
        }


class OAuthConnector:
    """
    Drives authorization, code exchange, refresh and revocation for all
    OAuth providers.
    """

    def __init__(
        self,
        settings: IntegrationSettings,
        vault: CredentialVault,
        state_manager: OAuthStateManager,
        store: IntegrationStore,
        clock: Callable[[], datetime] = utc_now,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the OAuth connector.

        Args:
            settings: Process configuration (client credentials, redirect base)
            vault: For encrypting/decrypting tokens
            state_manager: For OAuth session management
            store: Integration storage
            clock: Current time source
            transport: httpx transport override (tests)
        """
        self.settings = settings
        self.vault = vault
        self.state_manager = state_manager
        self.store = store
        self._clock = clock
        self._transport = transport

    # =========================================================================
    # Helpers
    # =========================================================================

    def _provider(self, provider: ProviderType):
        """Provider table entry plus its client credentials."""
        config = get_provider_config(provider)
        client = self.settings.oauth_client(config.credential_set)
        if client is None:
            raise ProviderNotConfigured(config.provider.value)
        return config, client

    def _url(self, config: OAuthProviderConfig, url: str, metadata: Optional[Dict[str, Any]]) -> str:
        return config.resolve(url, metadata, tenant=self.settings.azure_tenant_id)

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds,
            transport=self._transport,
        )

    async def _post_token(
        self,
        config: OAuthProviderConfig,
        token_url: str,
        form: Dict[str, str]
    ) -> httpx.Response:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if config.json_accept_header:
            headers["Accept"] = "application/json"

        async with self._http_client() as client:
            try:
                return await client.post(token_url, data=form, headers=headers)
            except httpx.RequestError as e:
                logger.warning(
                    f"Token endpoint unreachable: provider={config.provider.value} "
                    f"error={type(e).__name__}"
                )
                raise OAuthExchangeFailed(f"Network error calling token endpoint: {type(e).__name__}") from e

    @staticmethod
    def _error_payload(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _parse_tokens(self, config: OAuthProviderConfig, response: httpx.Response,
                      action: str) -> TokenResponse:
        data = self._error_payload(response)
        error_code = data.get("error")

        # GitHub reports errors with 200 and an "error" field
        if response.status_code != 200 or (error_code and "access_token" not in data):
            error_msg = data.get("error_description") or error_code or f"HTTP {response.status_code}"
            status = response.status_code if response.status_code != 200 else 400
            raise OAuthExchangeFailed(f"Token {action} failed: {error_msg}", status_code=status)

        if not data.get("access_token"):
            raise OAuthExchangeFailed(f"Token {action} failed: no access_token in response")

        return TokenResponse.from_payload(data, self._clock())

    # =========================================================================
    # Authorization
    # =========================================================================

    async def begin(
        self,
        organization_id: str,
        provider: ProviderType,
        scopes: Optional[List[str]] = None,
        integration_name: Optional[str] = None,
        integration_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuthorizationRequest:
        """
        Start an authorization flow.

        Args:
            organization_id: Organization the integration will belong to
            provider: OAuth provider
            scopes: Scopes to request (provider defaults if omitted)
            integration_name: Name for the new integration
            integration_id: Existing integration to re-authorize
            metadata: Provider metadata (Okta: {"domain": ...})

        Returns:
            AuthorizationRequest with the provider authorize URL and state

        Raises:
            ProviderNotConfigured: No client id/secret for the provider
            ConfigurationError: Required metadata missing
        """
        provider = ProviderType(provider)
        config, client = self._provider(provider)
        requested = list(scopes) if scopes else list(config.default_scopes)
        auth_url = self._url(config, config.authorization_url, metadata)

        pkce = generate_pkce_challenge() if config.pkce_required else None

        session = await self.state_manager.create(
            organization_id=organization_id,
            provider=provider,
            scopes=requested,
            integration_name=integration_name,
            code_verifier=pkce.code_verifier if pkce else None,
            integration_id=integration_id,
            metadata=metadata,
        )

        params = {
            "client_id": client.client_id,
            "redirect_uri": self.settings.oauth_redirect_uri,
            "response_type": "code",
            "scope": " ".join(requested),
            "state": session.state,
        }
        if pkce:
            params["code_challenge"] = pkce.code_challenge
            params["code_challenge_method"] = pkce.code_challenge_method
        params.update(config.extra_params)

        logger.info(
            f"Generated auth URL: provider={provider.value} org={organization_id} "
            f"pkce={pkce is not None} reauthorize={integration_id is not None}"
        )

        return AuthorizationRequest(
            authorization_url=f"{auth_url}?{urlencode(params)}",
            state=session.state,
            expires_at=session.expires_at,
        )

    async def complete(
        self,
        state: str,
        code: str,
        expected_organization_id: Optional[str] = None
    ) -> Integration:
        """
        Finish an authorization flow: consume the state and exchange the code.

        Returns:
            The created (or re-authorized) Integration

        Raises:
            InvalidOrExpiredState: State unknown, used, expired or foreign
            OAuthExchangeFailed: Token endpoint failed; nothing is stored
            IntegrationNotFound: Re-authorized integration no longer exists
        """
        session = await self.state_manager.consume(state, expected_organization_id)
        config, client = self._provider(session.provider)
        token_url = self._url(config, config.token_url, session.metadata)

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.oauth_redirect_uri,
            "client_id": client.client_id,
            "client_secret": client.client_secret,
        }
        if config.pkce_required and session.code_verifier:
            form["code_verifier"] = session.code_verifier

        response = await self._post_token(config, token_url, form)
        try:
            tokens = self._parse_tokens(config, response, "exchange")
        except OAuthExchangeFailed:
            logger.warning(
                f"OAuth code exchange failed: provider={session.provider.value} "
                f"org={session.organization_id} status={response.status_code}"
            )
            raise

        granted = tokens.scopes or session.scopes
        now = self._clock()

        if session.integration_id:
            integration = await self.store.get_integration(session.integration_id)
            if integration is None or integration.organization_id != session.organization_id:
                raise IntegrationNotFound(session.integration_id)

            existing = self._current_config(integration)
            integration.config_encrypted = self.vault.encrypt_config({**existing, **tokens.to_config()})
            integration.auth_method = AuthMethod.OAUTH2
            integration.token_expires_at = tokens.expires_at
            integration.oauth_scopes = granted
            integration.oauth_metadata = {**integration.oauth_metadata, **session.metadata}
            integration.requires_reauth = False
            integration.status = IntegrationStatus.ACTIVE
            integration.last_error = None
            integration = await self.store.update_integration(integration)
            action = "reauthorized"
        else:
            integration = Integration(
                organization_id=session.organization_id,
                provider=session.provider,
                name=session.integration_name or f"{session.provider.value} integration",
                config_encrypted=self.vault.encrypt_config(tokens.to_config()),
                auth_method=AuthMethod.OAUTH2,
                token_expires_at=tokens.expires_at,
                oauth_scopes=granted,
                oauth_metadata=dict(session.metadata),
                created_at=now,
                updated_at=now,
            )
            integration = await self.store.create_integration(integration)
            action = "created"

        logger.info(
            f"OAuth integration {action}: provider={integration.provider.value} "
            f"integration={integration.id} org={integration.organization_id} "
            f"scopes={len(granted)}"
        )
        return integration

    def _current_config(self, integration: Integration) -> Dict[str, Any]:
        """Existing non-token configuration to carry over on re-authorization."""
        if not integration.config_encrypted:
            return {}
        try:
            return self.vault.decrypt_config(integration.config_encrypted).to_dict()
        except CredentialVaultError:
            # Unreadable old config is replaced wholesale by the new tokens
            logger.warning(f"Discarding undecryptable config on reauthorize: integration={integration.id}")
            return {}

    # =========================================================================
    # Refresh
    # =========================================================================

    async def _reject(self, integration: Integration, reason: str) -> None:
        integration.status = IntegrationStatus.ERROR
        integration.requires_reauth = True
        integration.last_error = f"OAuth refresh rejected: {reason}. Re-authorize the integration."
        await self.store.update_integration(integration)
        logger.warning(
            f"Token refresh rejected, re-authorization required: "
            f"provider={integration.provider.value} integration={integration.id} reason={reason}"
        )

    async def refresh(self, integration: Integration) -> Integration:
        """
        Refresh an integration's access token.

        Returns:
            The updated Integration (new tokens stored encrypted)

        Raises:
            TokenRefreshRejected: Refresh token rejected; integration marked
                requires_reauth with status error
            OAuthExchangeFailed: Network or provider-side failure; status untouched
            CorruptCredential: Stored tokens cannot be decrypted
        """
        config, client = self._provider(integration.provider)
        stored = self.vault.decrypt_config(integration.config_encrypted)
        current = OAuthTokens(**stored.to_dict())

        if not current.refresh_token:
            await self._reject(integration, "no refresh token stored")
            raise TokenRefreshRejected(f"Integration {integration.id} has no refresh token")

        token_url = self._url(config, config.token_url, integration.oauth_metadata)
        form = {
            "grant_type": "refresh_token",
            "refresh_token": current.refresh_token,
            "client_id": client.client_id,
            "client_secret": client.client_secret,
        }

        response = await self._post_token(config, token_url, form)
        error_code = self._error_payload(response).get("error")

        if response.status_code == 401 or error_code in REJECTED_GRANT_ERRORS:
            await self._reject(integration, error_code or f"HTTP {response.status_code}")
            raise TokenRefreshRejected(
                "Refresh token is invalid or expired. Re-authentication required."
            )

        tokens = self._parse_tokens(config, response, "refresh")

        # Some providers rotate the refresh token, others keep the old one
        if not tokens.refresh_token:
            tokens.refresh_token = current.refresh_token

        integration.config_encrypted = self.vault.encrypt_config(
            stored.with_updated(**tokens.to_config())
        )
        integration.token_expires_at = tokens.expires_at
        if tokens.scopes:
            integration.oauth_scopes = tokens.scopes
        integration.requires_reauth = False
        integration = await self.store.update_integration(integration)

        logger.info(
            f"Token refresh successful: provider={integration.provider.value} "
            f"integration={integration.id}"
        )
        return integration

    async def ensure_fresh(self, integration: Integration) -> Integration:
        """Refresh if the access token expires within the refresh buffer."""
        buffer = self.settings.token_refresh_buffer_seconds
        if not integration.needs_token_refresh(self._clock(), buffer):
            return integration

        logger.debug(
            f"Token expiring soon, refreshing: provider={integration.provider.value} "
            f"integration={integration.id}"
        )
        return await self.refresh(integration)

    # =========================================================================
    # Revocation
    # =========================================================================

    async def revoke(self, integration: Integration) -> bool:
        """
        Best-effort token revocation (used when an integration is deleted).

        Returns:
            True if the provider confirmed revocation, False otherwise
            (including providers without a revoke endpoint)
        """
        if not integration.is_oauth or not integration.config_encrypted:
            return False

        try:
            config, client = self._provider(integration.provider)
            if not config.revoke_url:
                return False
            revoke_url = self._url(config, config.revoke_url, integration.oauth_metadata)
            tokens = OAuthTokens(**self.vault.decrypt_config(integration.config_encrypted).to_dict())
        except IntegrationError as e:
            logger.warning(
                f"Token revocation skipped: integration={integration.id} "
                f"reason={type(e).__name__}"
            )
            return False

        token = tokens.refresh_token or tokens.access_token
        if not token:
            return False

        form = {
            "token": token,
            "client_id": client.client_id,
            "client_secret": client.client_secret,
        }

        async with self._http_client() as http:
            try:
                response = await http.post(revoke_url, data=form)
            except httpx.RequestError as e:
                logger.warning(
                    f"Token revocation failed: integration={integration.id} "
                    f"error={type(e).__name__}"
                )
                return False

        if response.status_code >= 400:
            logger.warning(
                f"Token revocation rejected: integration={integration.id} "
                f"status={response.status_code}"
            )
            return False

        logger.info(
            f"Token revoked: provider={integration.provider.value} integration={integration.id}"
        )
        return True
