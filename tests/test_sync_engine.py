"""
Tests for the sync engine.

Tests cover:
- Retry with backoff inside one logical sync
- Per-integration locking (second caller fails fast, lease renewed per attempt)
- Circuit breaker integration
- Blocking, cancellation, deletion mid-sync and credential failures
- OAuth refresh-and-retry on auth failure
- Organization and scheduled batches
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from compliance_integrations.config import IntegrationSettings
from compliance_integrations.error_classifier import ErrorKind
from compliance_integrations.exceptions import (
    CircuitOpen,
    ConfigurationError,
    CorruptCredential,
    IntegrationNotFound,
    OAuthExchangeFailed,
    ProviderError,
    ProviderNotConfigured,
    SyncAlreadyInProgress,
    TokenRefreshRejected,
)
from compliance_integrations.models import (
    CircuitState,
    HealthStatus,
    IntegrationStatus,
    ProviderSyncResult,
    ProviderType,
    RetryPolicy,
    SyncOutcomeStatus,
    SyncStatus,
    SyncType,
)
from compliance_integrations.locks import RedisSyncLock
from compliance_integrations.sync_engine import SyncEngine

from conftest import START, BlockingCapability, ScriptedCapability


def unavailable():
    return ProviderError("Service unavailable", status_code=503)


@pytest.fixture
def engine_factory(store, vault, registry, clock, sleeper):
    def factory(oauth=None, lock=None, **settings_overrides):
        settings = IntegrationSettings(environment="test", **settings_overrides)
        return SyncEngine(
            store, vault, registry,
            settings=settings,
            oauth=oauth,
            lock=lock,
            clock=clock,
            sleep=sleeper,
        )
    return factory


class TestRetryWithinSync:
    """One logical sync across retries."""

    @pytest.mark.asyncio
    async def test_transient_transient_success(self, engine_factory, registry, store, sleeper, make_integration):
        capability = ScriptedCapability(
            unavailable(), unavailable(), ProviderSyncResult(records_processed=42),
        )
        registry.register(ProviderType.AWS, capability)
        integration = await make_integration()
        engine = engine_factory()

        outcome = await engine.run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.COMPLETED
        assert outcome.records_processed == 42
        assert outcome.attempts == 3
        assert sleeper.delays_ms == [1000, 2000]

        logs = await store.list_sync_logs(integration.id)
        assert len(logs) == 1
        assert logs[0].status == SyncStatus.COMPLETED
        assert logs[0].attempts == 3

        breaker = await store.get_circuit_state(integration.id)
        assert breaker.consecutive_failures == 0

        stored = await store.get_integration(integration.id)
        assert stored.status == IntegrationStatus.ACTIVE
        assert stored.last_sync_at is not None
        assert stored.last_error is None

    @pytest.mark.asyncio
    async def test_decrypted_config_reaches_provider(self, engine_factory, registry, make_integration):
        capability = ScriptedCapability()
        registry.register(ProviderType.AWS, capability)
        integration = await make_integration(config={"role_arn": "arn:aws:iam::1:role/x"})

        await engine_factory().run_sync(integration.id, SyncType.FULL)

        assert capability.calls[0]["config"] == {"role_arn": "arn:aws:iam::1:role/x"}
        assert capability.calls[0]["sync_type"] == SyncType.FULL

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_once(self, engine_factory, registry, store, make_integration):
        registry.register(ProviderType.AWS, ScriptedCapability(unavailable(), unavailable(), unavailable()))
        integration = await make_integration()

        outcome = await engine_factory().run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.FAILED
        assert outcome.error_kind == ErrorKind.TRANSIENT.value
        assert outcome.attempts == 3

        logs = await store.list_sync_logs(integration.id)
        assert len(logs) == 1
        assert logs[0].error == {
            "kind": "transient",
            "message": "Service unavailable",
            "code": "503",
            "attempts": 3,
        }
        stored = await store.get_integration(integration.id)
        assert stored.status == IntegrationStatus.ERROR
        assert stored.last_error == "Service unavailable"
        assert (await store.get_circuit_state(integration.id)).consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_integration_retry_policy_applies(self, engine_factory, registry, sleeper, make_integration):
        registry.register(ProviderType.AWS, ScriptedCapability(unavailable(), unavailable()))
        integration = await make_integration(retry_policy=RetryPolicy(retry_enabled=False))

        outcome = await engine_factory().run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.FAILED
        assert outcome.attempts == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_result_error_is_classified(self, engine_factory, registry, sleeper, make_integration):
        registry.register(ProviderType.AWS, ScriptedCapability(
            ProviderSyncResult(error={"code": "not_found", "message": "Account missing"}),
        ))
        integration = await make_integration()

        outcome = await engine_factory().run_sync(integration.id)

        assert outcome.error_kind == ErrorKind.PERMANENT.value
        assert outcome.attempts == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_health_recomputed(self, engine_factory, registry, store, make_integration):
        registry.register(ProviderType.AWS, ScriptedCapability())
        integration = await make_integration()

        await engine_factory().run_sync(integration.id)

        health = await store.get_health(integration.id)
        assert health.status == HealthStatus.HEALTHY
        assert health.success_count_24h == 1


class TestLocking:
    """At most one sync per integration."""

    @pytest.mark.asyncio
    async def test_concurrent_run_sync_only_one_proceeds(self, engine_factory, registry, store, make_integration):
        capability = BlockingCapability()
        registry.register(ProviderType.AWS, capability)
        integration = await make_integration()
        engine = engine_factory()

        first = asyncio.create_task(engine.run_sync(integration.id))
        await capability.started.wait()

        second = await engine.run_sync(integration.id)
        assert second.status == SyncOutcomeStatus.ALREADY_RUNNING
        assert isinstance(second.error, SyncAlreadyInProgress)
        assert second.rejected

        capability.release.set()
        first_outcome = await first

        assert first_outcome.status == SyncOutcomeStatus.COMPLETED
        assert capability.calls == 1
        assert len(await store.list_sync_logs(integration.id)) == 1

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, engine_factory, registry, make_integration):
        registry.register(ProviderType.AWS, ScriptedCapability(ProviderError("gone", status_code=404)))
        integration = await make_integration()
        engine = engine_factory()

        await engine.run_sync(integration.id)
        assert not engine.lock.is_held(integration.id)
        assert (await engine.run_sync(integration.id)).status == SyncOutcomeStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_different_integrations_run_concurrently(self, engine_factory, registry, make_integration):
        capability = BlockingCapability()
        registry.register(ProviderType.AWS, capability)
        a = await make_integration(name="a")
        b = await make_integration(name="b")
        engine = engine_factory()

        tasks = [asyncio.create_task(engine.run_sync(i.id)) for i in (a, b)]
        while capability.calls < 2:
            await asyncio.sleep(0)
        capability.release.set()

        outcomes = await asyncio.gather(*tasks)
        assert all(o.status == SyncOutcomeStatus.COMPLETED for o in outcomes)

    @pytest.mark.asyncio
    async def test_redis_lock_renewed_across_backoff(
        self, engine_factory, registry, sleeper, fake_redis, make_integration
    ):
        registry.register(ProviderType.AWS, ScriptedCapability(unavailable(), unavailable(), unavailable()))
        policy = RetryPolicy(max_attempts=4, backoff_base_ms=4000, backoff_max_ms=4000)
        integration = await make_integration(retry_policy=policy)
        engine = engine_factory(lock=RedisSyncLock(fake_redis, ttl_seconds=5))
        key = f"integration_sync_lock:{integration.id}"
        holders = []
        sleeper.on_sleep = lambda: holders.append(fake_redis.lock_holder(key))

        outcome = await engine.run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.COMPLETED
        assert outcome.attempts == 4
        # 12s of backoff against a 5s TTL
        assert sum(sleeper.delays) == 12
        assert len(holders) == 3
        assert all(holder is not None for holder in holders)
        assert fake_redis.locks == {}

    @pytest.mark.asyncio
    async def test_lost_redis_lock_cancels_sync(
        self, engine_factory, registry, store, sleeper, fake_redis, make_integration
    ):
        capability = ScriptedCapability(unavailable(), ProviderSyncResult(records_processed=1))
        registry.register(ProviderType.AWS, capability)
        policy = RetryPolicy(backoff_base_ms=10000, backoff_max_ms=10000)
        integration = await make_integration(retry_policy=policy)
        engine = engine_factory(lock=RedisSyncLock(fake_redis, ttl_seconds=5))
        key = f"integration_sync_lock:{integration.id}"
        other_worker = fake_redis.lock(key, timeout=60)

        def take_over():
            # TTL lapsed during backoff and another worker grabbed the lock
            fake_redis.locks[key] = (other_worker, None)

        sleeper.on_sleep = take_over

        outcome = await engine.run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.CANCELLED
        assert len(capability.calls) == 1
        assert await store.list_sync_logs(integration.id) == []
        assert (await store.get_integration(integration.id)).status == IntegrationStatus.ACTIVE
        assert fake_redis.lock_holder(key) is other_worker

    @pytest.mark.asyncio
    async def test_missing_integration(self, engine_factory):
        with pytest.raises(IntegrationNotFound):
            await engine_factory().run_sync("missing")


class TestCircuitBreaker:
    """Breaker wraps the whole retry loop."""

    @pytest.mark.asyncio
    async def test_opens_on_fifth_failed_sync(self, engine_factory, registry, store, clock, make_integration):
        capability = ScriptedCapability(*[ProviderError("gone", status_code=404) for _ in range(5)])
        registry.register(ProviderType.AWS, capability)
        integration = await make_integration()
        engine = engine_factory()

        for _ in range(5):
            outcome = await engine.run_sync(integration.id)
            assert outcome.status == SyncOutcomeStatus.FAILED

        assert (await store.get_circuit_state(integration.id)).state == CircuitState.OPEN

        rejected = await engine.run_sync(integration.id)
        assert rejected.status == SyncOutcomeStatus.CIRCUIT_OPEN
        assert isinstance(rejected.error, CircuitOpen)
        assert len(capability.calls) == 5
        assert len(await store.list_sync_logs(integration.id)) == 5

        # Rejections are not failures
        assert (await store.get_circuit_state(integration.id)).consecutive_failures == 5

        clock.advance(600)
        trial = await engine.run_sync(integration.id)
        assert trial.status == SyncOutcomeStatus.COMPLETED
        state = await store.get_circuit_state(integration.id)
        assert state.state == CircuitState.CLOSED
        assert state.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_per_integration_threshold(self, engine_factory, registry, store, make_integration):
        registry.register(ProviderType.AWS, ScriptedCapability(ProviderError("gone", status_code=404)))
        integration = await make_integration(circuit_breaker_threshold=1)

        await engine_factory().run_sync(integration.id)
        assert (await store.get_circuit_state(integration.id)).state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_config_errors_do_not_trip_breaker(self, engine_factory, registry, store, make_integration):
        integration = await make_integration()  # no capability registered

        outcome = await engine_factory().run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.FAILED
        assert outcome.error_kind == ErrorKind.CONFIG_ERROR.value
        assert outcome.attempts == 0
        assert (await store.get_circuit_state(integration.id)).consecutive_failures == 0


class TestBlockedAndCorrupt:
    """Syncs that never reach the provider."""

    @pytest.mark.asyncio
    async def test_requires_reauth_blocks(self, engine_factory, registry, store, make_integration):
        capability = ScriptedCapability()
        registry.register(ProviderType.AWS, capability)
        integration = await make_integration(requires_reauth=True)

        outcome = await engine_factory().run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.BLOCKED
        assert capability.calls == []
        assert await store.list_sync_logs(integration.id) == []

    @pytest.mark.asyncio
    async def test_inactive_blocks(self, engine_factory, registry, make_integration):
        capability = ScriptedCapability()
        registry.register(ProviderType.AWS, capability)
        integration = await make_integration(status=IntegrationStatus.INACTIVE)

        outcome = await engine_factory().run_sync(integration.id)
        assert outcome.status == SyncOutcomeStatus.BLOCKED
        assert capability.calls == []

    @pytest.mark.asyncio
    async def test_corrupt_credentials_require_reauth(self, engine_factory, registry, store, make_integration):
        capability = ScriptedCapability()
        registry.register(ProviderType.AWS, capability)
        integration = await make_integration()
        integration.config_encrypted = b"not-a-fernet-token"
        await store.update_integration(integration)

        outcome = await engine_factory().run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.FAILED
        assert outcome.error_kind == ErrorKind.CONFIG_ERROR.value
        assert isinstance(outcome.error.cause, CorruptCredential)
        assert capability.calls == []

        stored = await store.get_integration(integration.id)
        assert stored.requires_reauth
        assert stored.status == IntegrationStatus.ERROR
        assert stored.last_error == CorruptCredential.user_message

        # Next sync is blocked until re-authorization
        assert (await engine_factory().run_sync(integration.id)).status == SyncOutcomeStatus.BLOCKED


class TestCancellation:
    """Cancellation at retry boundaries and before persistence."""

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, engine_factory, registry, store, sleeper, make_integration):
        capability = ScriptedCapability(unavailable(), ProviderSyncResult(records_processed=1))
        registry.register(ProviderType.AWS, capability)
        integration = await make_integration()
        engine = engine_factory()
        sleeper.on_sleep = lambda: engine.cancel(integration.id)

        outcome = await engine.run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.CANCELLED
        assert len(capability.calls) == 1
        assert await store.list_sync_logs(integration.id) == []
        assert (await store.get_integration(integration.id)).status == IntegrationStatus.ACTIVE
        assert not engine.is_running(integration.id)

    @pytest.mark.asyncio
    async def test_cancel_before_persistence(self, engine_factory, registry, store, make_integration):
        capability = BlockingCapability()
        registry.register(ProviderType.AWS, capability)
        integration = await make_integration()
        engine = engine_factory()

        task = asyncio.create_task(engine.run_sync(integration.id))
        await capability.started.wait()
        assert engine.is_running(integration.id)
        assert (await store.get_integration(integration.id)).status == IntegrationStatus.SYNCING

        assert engine.cancel(integration.id)
        capability.release.set()
        outcome = await task

        assert outcome.status == SyncOutcomeStatus.CANCELLED
        assert await store.list_sync_logs(integration.id) == []
        assert (await store.get_integration(integration.id)).status == IntegrationStatus.ACTIVE

    def test_cancel_when_not_running(self, engine_factory):
        assert not engine_factory().cancel("int-1")

    @pytest.mark.asyncio
    async def test_deleted_during_sync_discards_result(self, engine_factory, registry, store, make_integration):
        integration = await make_integration()

        class DeletingCapability:
            async def execute_sync(self, config, sync_type):
                await store.delete_integration(integration.id)
                return ProviderSyncResult(records_processed=5)

        registry.register(ProviderType.AWS, DeletingCapability())

        outcome = await engine_factory().run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.CANCELLED
        assert await store.get_integration(integration.id) is None
        assert await store.list_sync_logs(integration.id) == []
        assert await store.get_health(integration.id) is None


class TestOAuthRefresh:
    """Proactive and reactive token refresh."""

    @pytest.fixture
    def oauth(self):
        connector = MagicMock()
        connector.ensure_fresh = AsyncMock(side_effect=lambda integration: integration)
        connector.refresh = AsyncMock(side_effect=lambda integration: integration)
        return connector

    @pytest.mark.asyncio
    async def test_auth_failure_refreshes_and_retries_once(
        self, engine_factory, registry, make_integration, oauth, oauth_config, oauth_kwargs
    ):
        capability = ScriptedCapability(
            ProviderError("Bad credentials", status_code=401),
            ProviderSyncResult(records_processed=3),
        )
        registry.register(ProviderType.GITHUB, capability)
        integration = await make_integration(provider=ProviderType.GITHUB, config=oauth_config, **oauth_kwargs)

        outcome = await engine_factory(oauth=oauth).run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.COMPLETED
        assert outcome.attempts == 2
        oauth.ensure_fresh.assert_awaited_once()
        oauth.refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_auth_failure_is_terminal(
        self, engine_factory, registry, make_integration, oauth, oauth_config, oauth_kwargs
    ):
        capability = ScriptedCapability(
            ProviderError("Bad credentials", status_code=401),
            ProviderError("Bad credentials", status_code=401),
            ProviderSyncResult(records_processed=3),
        )
        registry.register(ProviderType.GITHUB, capability)
        integration = await make_integration(provider=ProviderType.GITHUB, config=oauth_config, **oauth_kwargs)

        outcome = await engine_factory(oauth=oauth).run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.FAILED
        assert outcome.error_kind == ErrorKind.AUTH_FAILURE.value
        assert outcome.attempts == 2
        assert oauth.refresh.await_count == 1
        assert len(capability.calls) == 2

    @pytest.mark.asyncio
    async def test_refresh_rejected(
        self, engine_factory, registry, store, make_integration, oauth, oauth_config, oauth_kwargs
    ):
        registry.register(ProviderType.GITHUB, ScriptedCapability(ProviderError("expired", status_code=401)))
        integration = await make_integration(provider=ProviderType.GITHUB, config=oauth_config, **oauth_kwargs)
        oauth.refresh.side_effect = TokenRefreshRejected("invalid_grant")

        outcome = await engine_factory(oauth=oauth).run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.FAILED
        assert outcome.error_kind == ErrorKind.AUTH_FAILURE.value
        assert (await store.get_integration(integration.id)).status == IntegrationStatus.ERROR

    @pytest.mark.asyncio
    async def test_proactive_refresh_network_failure_continues(
        self, engine_factory, registry, make_integration, oauth, oauth_config, oauth_kwargs
    ):
        capability = ScriptedCapability()
        registry.register(ProviderType.GITHUB, capability)
        integration = await make_integration(provider=ProviderType.GITHUB, config=oauth_config, **oauth_kwargs)
        oauth.ensure_fresh.side_effect = OAuthExchangeFailed("network")

        outcome = await engine_factory(oauth=oauth).run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.COMPLETED
        assert len(capability.calls) == 1

    @pytest.mark.asyncio
    async def test_api_key_auth_failure_not_refreshed(self, engine_factory, registry, make_integration, oauth):
        registry.register(ProviderType.AWS, ScriptedCapability(ProviderError("denied", status_code=403)))
        integration = await make_integration()

        outcome = await engine_factory(oauth=oauth).run_sync(integration.id)

        assert outcome.error_kind == ErrorKind.AUTH_FAILURE.value
        oauth.refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_proactive_refresh_without_oauth_client_is_config_error(
        self, engine_factory, registry, store, make_integration, oauth, oauth_config, oauth_kwargs
    ):
        capability = ScriptedCapability()
        registry.register(ProviderType.GITHUB, capability)
        integration = await make_integration(provider=ProviderType.GITHUB, config=oauth_config, **oauth_kwargs)
        oauth.ensure_fresh.side_effect = ProviderNotConfigured("github")

        outcome = await engine_factory(oauth=oauth).run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.FAILED
        assert outcome.error_kind == ErrorKind.CONFIG_ERROR.value
        assert outcome.attempts == 0
        assert capability.calls == []

        logs = await store.list_sync_logs(integration.id)
        assert len(logs) == 1
        assert logs[0].error["kind"] == ErrorKind.CONFIG_ERROR.value

        stored = await store.get_integration(integration.id)
        assert stored.status == IntegrationStatus.ERROR
        assert stored.last_error == "OAuth is not configured for provider 'github'"
        assert (await store.get_circuit_state(integration.id)).consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_reactive_refresh_configuration_error_is_logged(
        self, engine_factory, registry, store, make_integration, oauth, oauth_config, oauth_kwargs
    ):
        registry.register(ProviderType.GITHUB, ScriptedCapability(ProviderError("Bad credentials", status_code=401)))
        integration = await make_integration(provider=ProviderType.GITHUB, config=oauth_config, **oauth_kwargs)
        oauth.refresh.side_effect = ConfigurationError("token_url is not set for github")

        outcome = await engine_factory(oauth=oauth).run_sync(integration.id)

        assert outcome.status == SyncOutcomeStatus.FAILED
        assert outcome.error_kind == ErrorKind.CONFIG_ERROR.value
        assert outcome.attempts == 1

        logs = await store.list_sync_logs(integration.id)
        assert len(logs) == 1
        assert logs[0].attempts == 1
        assert (await store.get_integration(integration.id)).status == IntegrationStatus.ERROR
        assert (await store.get_circuit_state(integration.id)).consecutive_failures == 0


class TestBatches:
    """Organization and scheduled syncs."""

    @pytest.mark.asyncio
    async def test_sync_organization(self, engine_factory, registry, make_integration):
        capability = ScriptedCapability()
        registry.register(ProviderType.AWS, capability)
        a = await make_integration(name="a")
        b = await make_integration(name="b")
        await make_integration(name="off", status=IntegrationStatus.INACTIVE)
        await make_integration(name="other", organization_id="org-2")

        outcomes = await engine_factory().sync_organization("org-1")

        assert {o.integration_id for o in outcomes} == {a.id, b.id}
        assert all(o.succeeded for o in outcomes)

    @pytest.mark.asyncio
    async def test_sync_organization_respects_parallelism(self, engine_factory, registry, make_integration):
        running = []
        peak = []

        class Tracking:
            async def execute_sync(self, config, sync_type):
                running.append(1)
                peak.append(len(running))
                await asyncio.sleep(0)
                running.pop()
                return ProviderSyncResult(records_processed=1)

        registry.register(ProviderType.AWS, Tracking())
        for i in range(6):
            await make_integration(name=f"int-{i}")

        outcomes = await engine_factory().sync_organization("org-1", max_parallel=2)

        assert len(outcomes) == 6
        assert max(peak) <= 2

    @pytest.mark.asyncio
    async def test_due_integrations(self, engine_factory, registry, store, clock, make_integration):
        registry.register(ProviderType.AWS, ScriptedCapability())
        never_synced = await make_integration(name="never", sync_interval_minutes=60)
        recent = await make_integration(
            name="recent", sync_interval_minutes=60, last_sync_at=START - timedelta(minutes=30),
        )
        stale = await make_integration(
            name="stale", sync_interval_minutes=60, last_sync_at=START - timedelta(minutes=90),
        )
        await make_integration(name="unscheduled")
        engine = engine_factory()

        due = await engine.get_due_integrations()
        assert [i.id for i in due] == [never_synced.id, stale.id]

        outcomes = await engine.run_scheduled_syncs()
        assert {o.integration_id for o in outcomes} == {never_synced.id, stale.id}
        assert all(o.sync_type == SyncType.SCHEDULED for o in outcomes)
        assert recent.id not in {o.integration_id for o in outcomes}
