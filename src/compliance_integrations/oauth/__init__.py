"""
OAuth Integration Module.

One authorization-code connector for every OAuth provider:
- GitHub, GitLab
- Google Cloud, Google Workspace
- Azure, Azure AD (Microsoft Entra ID)
- Okta
- Jira (Atlassian)

Security:
- PKCE (S256) wherever the provider supports it
- Single-use state tokens with a 10-minute TTL
- Automatic token refresh before expiry
- Tokens encrypted through the CredentialVault
"""

from .connector import OAuthConnector, PKCEChallenge, TokenResponse, generate_pkce_challenge
from .providers import OAUTH_PROVIDERS, OAuthProviderConfig, get_provider_config

__all__ = [
    "OAuthConnector",
    "PKCEChallenge",
    "TokenResponse",
    "generate_pkce_challenge",
    "OAUTH_PROVIDERS",
    "OAuthProviderConfig",
    "get_provider_config",
]
