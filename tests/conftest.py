"""
Shared fixtures for integration framework tests.

Provides a controllable clock, a recording sleep that advances the clock,
an in-memory Redis double, and scripted provider capabilities.
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from redis.exceptions import LockError

from compliance_integrations.config import IntegrationSettings, OAuthClientCredentials
from compliance_integrations.credential_vault import CredentialVault
from compliance_integrations.models import (
    AuthMethod,
    Integration,
    ProviderSyncResult,
    ProviderType,
)
from compliance_integrations.providers import ProviderRegistry
from compliance_integrations.storage import InMemoryIntegrationStore


START = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
TEST_MASTER_KEY = "test-master-key-do-not-use-in-production"


# =============================================================================
# TIME
# =============================================================================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


class FakeSleep:
    """Records requested delays and advances the clock instead of sleeping."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.delays: List[float] = []
        self.on_sleep = None

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        self.clock.advance(seconds)
        if self.on_sleep is not None:
            self.on_sleep()
        await asyncio.sleep(0)

    @property
    def delays_ms(self) -> List[int]:
        return [int(round(d * 1000)) for d in self.delays]


# =============================================================================
# REDIS
# =============================================================================

class FakeRedisLock:
    """redis.asyncio.lock.Lock stand-in whose TTL runs on the fake clock."""

    def __init__(self, redis: "FakeRedis", name: str, timeout: Optional[float]):
        self.redis = redis
        self.name = name
        self.timeout = timeout

    def _expiry(self) -> Optional[datetime]:
        if self.timeout is None or self.redis.clock is None:
            return None
        return self.redis.clock() + timedelta(seconds=self.timeout)

    def _owned(self) -> bool:
        return self.redis.lock_holder(self.name) is self

    async def acquire(self) -> bool:
        if self.redis.lock_holder(self.name) is not None:
            return False
        self.redis.locks[self.name] = (self, self._expiry())
        return True

    async def reacquire(self) -> bool:
        if not self._owned():
            raise LockError("Cannot reacquire a lock that's no longer owned")
        self.redis.locks[self.name] = (self, self._expiry())
        return True

    async def release(self) -> None:
        if not self._owned():
            raise LockError("Cannot release an unlocked lock")
        del self.redis.locks[self.name]


class FakeRedis:
    """The subset of redis.asyncio.Redis used by the framework."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.data: Dict[str, Any] = {}
        self.ttls: Dict[str, int] = {}
        self.locks: Dict[str, Tuple[FakeRedisLock, Optional[datetime]]] = {}

    def lock_holder(self, name: str) -> Optional[FakeRedisLock]:
        """Current owner of `name`, dropping the entry once its TTL has passed."""
        entry = self.locks.get(name)
        if entry is None:
            return None
        holder, expires_at = entry
        if expires_at is not None and self.clock() >= expires_at:
            del self.locks[name]
            return None
        return holder

    async def setex(self, key: str, ttl: int, value: Any) -> bool:
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    async def get(self, key: str) -> Any:
        return self.data.get(key)

    async def getdel(self, key: str) -> Any:
        self.ttls.pop(key, None)
        return self.data.pop(key, None)

    async def exists(self, key: str) -> int:
        return 1 if key in self.data else 0

    async def delete(self, key: str) -> int:
        self.ttls.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    def lock(self, name: str, timeout: Optional[float] = None, blocking: bool = True):
        return FakeRedisLock(self, name, timeout)


# =============================================================================
# PROVIDERS
# =============================================================================

class ScriptedCapability:
    """
    Provider capability that plays back a script.

    Each script entry is either an exception to raise or a
    ProviderSyncResult to return. Once the script runs out, every call
    succeeds with `default`.
    """

    def __init__(self, *script, default: Optional[ProviderSyncResult] = None):
        self.script = list(script)
        self.default = default or ProviderSyncResult(records_processed=1)
        self.calls: List[Dict[str, Any]] = []

    async def execute_sync(self, config, sync_type):
        self.calls.append({"config": config.to_dict(), "sync_type": sync_type})
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, BaseException):
            raise item
        return item


class BlockingCapability:
    """Succeeds only after `release` is set; `started` fires on first call."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def execute_sync(self, config, sync_type):
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return ProviderSyncResult(records_processed=5)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return FakeSleep(clock)


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def store():
    return InMemoryIntegrationStore()


@pytest.fixture
def vault():
    return CredentialVault(TEST_MASTER_KEY)


@pytest.fixture
def settings():
    return IntegrationSettings(
        environment="test",
        encryption_key=TEST_MASTER_KEY,
        oauth_redirect_base_url="https://app.example.com",
        oauth_clients={
            "github": OAuthClientCredentials(client_id="gh-client", client_secret="gh-secret"),
            "gitlab": OAuthClientCredentials(client_id="gl-client", client_secret="gl-secret"),
            "okta": OAuthClientCredentials(client_id="okta-client", client_secret="okta-secret"),
            "azure": OAuthClientCredentials(client_id="az-client", client_secret="az-secret"),
        },
        azure_tenant_id="tenant-123",
    )


@pytest.fixture
def registry():
    return ProviderRegistry()


@pytest.fixture
def make_integration(store, vault, clock):
    """Factory coroutine storing an integration with encrypted config."""

    async def factory(
        organization_id: str = "org-1",
        provider: ProviderType = ProviderType.AWS,
        name: str = "Production AWS",
        config: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> Integration:
        if config is None:
            config = {"api_key": "key-123"}
        kwargs.setdefault("created_at", clock())
        kwargs.setdefault("updated_at", clock())
        integration = Integration(
            organization_id=organization_id,
            provider=provider,
            name=name,
            config_encrypted=vault.encrypt_config(config),
            **kwargs
        )
        return await store.create_integration(integration)

    return factory


@pytest.fixture
def oauth_config():
    """Token configuration for an OAuth integration that expires in an hour."""
    return {
        "access_token": "access-old",
        "refresh_token": "refresh-old",
        "token_type": "Bearer",
        "expires_at": (START + timedelta(hours=1)).isoformat(),
    }


@pytest.fixture
def oauth_kwargs():
    return {
        "auth_method": AuthMethod.OAUTH2,
        "token_expires_at": START + timedelta(hours=1),
    }
