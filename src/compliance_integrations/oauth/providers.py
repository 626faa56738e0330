"""
OAuth provider table.

Endpoints, default scopes and quirks for every provider that supports the
authorization-code flow. Client credentials are not stored here; they come
from IntegrationSettings via each entry's credential set (Google, Azure and
Atlassian credentials serve more than one provider).

URL templates:
    {tenant}  Azure tenant id (AZURE_OAUTH_TENANT_ID, default "common")
    {domain}  Okta org domain, taken from the session/integration metadata
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from ..exceptions import ConfigurationError, ProviderNotConfigured
from ..models import ProviderType


@dataclass(frozen=True)
class OAuthProviderConfig:
    """Static OAuth description of one provider."""
    provider: ProviderType
    credential_set: str
    authorization_url: str
    token_url: str
    revoke_url: Optional[str] = None
    default_scopes: Tuple[str, ...] = ()
    pkce_required: bool = True
    extra_params: Dict[str, str] = field(default_factory=dict)
    # Token endpoint answers form-encoded unless asked for JSON
    json_accept_header: bool = False

    @property
    def requires_domain(self) -> bool:
        return "{domain}" in self.authorization_url

    def resolve(self, url: str, metadata: Optional[Mapping[str, Any]] = None,
                tenant: str = "common") -> str:
        """
        Fill URL templates.

        Raises:
            ConfigurationError: Template needs an Okta domain that metadata lacks
        """
        if "{domain}" in url:
            domain = (metadata or {}).get("domain")
            if not domain:
                raise ConfigurationError(
                    f"{self.provider.value} requires 'domain' in OAuth metadata"
                )
            url = url.replace("{domain}", str(domain).strip().rstrip("/"))
        return url.replace("{tenant}", tenant)


GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
AZURE_AUTH_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize"
AZURE_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"

GOOGLE_OFFLINE_PARAMS = {"access_type": "offline", "prompt": "consent"}


OAUTH_PROVIDERS: Dict[ProviderType, OAuthProviderConfig] = {
    ProviderType.GITHUB: OAuthProviderConfig(
        provider=ProviderType.GITHUB,
        credential_set="github",
        authorization_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        default_scopes=("read:user", "read:org", "repo", "security_events"),
        pkce_required=False,
        json_accept_header=True,
    ),
    ProviderType.GITLAB: OAuthProviderConfig(
        provider=ProviderType.GITLAB,
        credential_set="gitlab",
        authorization_url="https://gitlab.com/oauth/authorize",
        token_url="https://gitlab.com/oauth/token",
        revoke_url="https://gitlab.com/oauth/revoke",
        default_scopes=("read_user", "read_api", "read_repository"),
    ),
    ProviderType.GCP: OAuthProviderConfig(
        provider=ProviderType.GCP,
        credential_set="google",
        authorization_url=GOOGLE_AUTH_URL,
        token_url=GOOGLE_TOKEN_URL,
        revoke_url=GOOGLE_REVOKE_URL,
        default_scopes=(
            "https://www.googleapis.com/auth/cloud-platform.read-only",
            "https://www.googleapis.com/auth/cloudplatformprojects.readonly",
        ),
        extra_params=GOOGLE_OFFLINE_PARAMS,
    ),
    ProviderType.GOOGLE_WORKSPACE: OAuthProviderConfig(
        provider=ProviderType.GOOGLE_WORKSPACE,
        credential_set="google",
        authorization_url=GOOGLE_AUTH_URL,
        token_url=GOOGLE_TOKEN_URL,
        revoke_url=GOOGLE_REVOKE_URL,
        default_scopes=(
            "https://www.googleapis.com/auth/admin.directory.user.readonly",
            "https://www.googleapis.com/auth/admin.directory.group.readonly",
            "https://www.googleapis.com/auth/admin.reports.audit.readonly",
        ),
        extra_params=GOOGLE_OFFLINE_PARAMS,
    ),
    ProviderType.AZURE_AD: OAuthProviderConfig(
        provider=ProviderType.AZURE_AD,
        credential_set="azure",
        authorization_url=AZURE_AUTH_URL,
        token_url=AZURE_TOKEN_URL,
        default_scopes=("https://graph.microsoft.com/.default", "offline_access"),
    ),
    ProviderType.AZURE: OAuthProviderConfig(
        provider=ProviderType.AZURE,
        credential_set="azure",
        authorization_url=AZURE_AUTH_URL,
        token_url=AZURE_TOKEN_URL,
        default_scopes=("https://management.azure.com/.default", "offline_access"),
    ),
    ProviderType.OKTA: OAuthProviderConfig(
        provider=ProviderType.OKTA,
        credential_set="okta",
        authorization_url="https://{domain}/oauth2/v1/authorize",
        token_url="https://{domain}/oauth2/v1/token",
        revoke_url="https://{domain}/oauth2/v1/revoke",
        default_scopes=(
            "openid", "profile", "okta.users.read", "okta.groups.read",
            "okta.apps.read", "okta.logs.read",
        ),
    ),
    ProviderType.JIRA: OAuthProviderConfig(
        provider=ProviderType.JIRA,
        credential_set="atlassian",
        authorization_url="https://auth.atlassian.com/authorize",
        token_url="https://auth.atlassian.com/oauth/token",
        default_scopes=("read:jira-work", "read:jira-user", "offline_access"),
        extra_params={"audience": "api.atlassian.com", "prompt": "consent"},
    ),
}


def get_provider_config(provider: ProviderType) -> OAuthProviderConfig:
    """
    Raises:
        ProviderNotConfigured: Provider has no OAuth flow
    """
    try:
        return OAUTH_PROVIDERS[ProviderType(provider)]
    except (KeyError, ValueError):
        raise ProviderNotConfigured(str(getattr(provider, "value", provider)))
