"""
Secure OAuth session (state token) management.

SECURITY REQUIREMENT: OAuth state tokens MUST be:
- Cryptographically random (secrets.token_urlsafe)
- Single-use (Redis GETDEL for atomic consume)
- Time-limited (10 minute TTL by default)
- Organization-bound (session carries organization_id, optionally checked
  on callback)

The session stored under the state also carries the PKCE verifier, so the
verifier never leaves the server.

Usage:
    state_mgr = OAuthStateManager(redis_client, ttl_seconds=600)

    session = await state_mgr.create(
        organization_id="org-123",
        provider=ProviderType.GITHUB,
        scopes=["repo"],
    )

    # On callback (single-use)
    session = await state_mgr.consume(state)
"""

import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .exceptions import InvalidOrExpiredState
from .models import OAuthSession, ProviderType, utc_now
from .utils import short_hash

logger = logging.getLogger(__name__)


# Configuration
STATE_TTL_SECONDS = 600  # 10 minutes
STATE_TOKEN_BYTES = 32   # 256 bits of entropy
KEY_PREFIX = "oauth_state:"


class OAuthStateManager:
    """
    Redis-backed OAuth session store.

    Ensures state tokens are single-use and time-limited.
    """

    def __init__(
        self,
        redis_client,
        ttl_seconds: int = STATE_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the state manager.

        Args:
            redis_client: Async Redis client instance (redis.asyncio.Redis)
            ttl_seconds: Session lifetime
            clock: Current time source
        """
        self.redis = redis_client
        self.ttl = ttl_seconds
        self._clock = clock

    def _make_key(self, state: str) -> str:
        return f"{KEY_PREFIX}{state}"

    async def create(
        self,
        organization_id: str,
        provider: ProviderType,
        scopes: List[str],
        integration_name: Optional[str] = None,
        code_verifier: Optional[str] = None,
        integration_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> OAuthSession:
        """
        Create and store a new OAuth session.

        Returns:
            OAuthSession whose `state` is the cryptographically random token
        """
        now = self._clock()
        session = OAuthSession(
            state=secrets.token_urlsafe(STATE_TOKEN_BYTES),
            organization_id=organization_id,
            provider=provider,
            scopes=list(scopes),
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl),
            integration_name=integration_name,
            code_verifier=code_verifier,
            integration_id=integration_id,
            metadata=dict(metadata or {}),
        )

        await self.redis.setex(self._make_key(session.state), self.ttl, json.dumps(session.to_dict()))

        logger.info(
            f"OAuth state generated: org={organization_id} provider={provider.value} "
            f"hash={short_hash(session.state)} ttl={self.ttl}s"
        )
        return session

    async def consume(
        self,
        state: str,
        expected_organization_id: Optional[str] = None
    ) -> OAuthSession:
        """
        Validate and consume an OAuth session (single-use).

        Args:
            state: State token from the OAuth callback
            expected_organization_id: If given, the session must belong to it

        Returns:
            The stored OAuthSession

        Raises:
            InvalidOrExpiredState: Unknown, already used, expired, corrupted,
                or bound to another organization
        """
        state_hash = short_hash(state or "")
        if not state:
            raise InvalidOrExpiredState("State token is missing")

        # Atomic get-and-delete (single-use)
        data_json = await self.redis.getdel(self._make_key(state))

        if not data_json:
            logger.warning(
                f"OAuth state validation failed: hash={state_hash} "
                f"reason=not_found_or_already_used"
            )
            raise InvalidOrExpiredState("State token is invalid or has already been used")

        try:
            session = OAuthSession.from_dict(json.loads(data_json))
        except (json.JSONDecodeError, KeyError, ValueError, TypeError):
            logger.error(f"OAuth state corrupted: hash={state_hash}")
            raise InvalidOrExpiredState("State token data is corrupted")

        # Redis TTL normally removes it first; the stored expiry is authoritative
        if session.is_expired(self._clock()):
            logger.warning(f"OAuth state validation failed: hash={state_hash} reason=expired")
            raise InvalidOrExpiredState("State token has expired")

        if expected_organization_id is not None and session.organization_id != expected_organization_id:
            logger.warning(
                f"OAuth state organization mismatch: hash={state_hash} "
                f"expected={expected_organization_id} actual={session.organization_id}"
            )
            raise InvalidOrExpiredState("State token was created for a different organization")

        logger.info(
            f"OAuth state validated: org={session.organization_id} "
            f"provider={session.provider.value} hash={state_hash}"
        )
        return session

    async def exists(self, state: str) -> bool:
        """Check whether a state token is pending without consuming it."""
        return await self.redis.exists(self._make_key(state)) > 0

    async def revoke(self, state: str) -> bool:
        """
        Manually revoke a state token.

        Returns:
            True if token was revoked, False if not found
        """
        result = await self.redis.delete(self._make_key(state))
        if result > 0:
            logger.info(f"OAuth state revoked: hash={short_hash(state)}")
            return True
        return False
