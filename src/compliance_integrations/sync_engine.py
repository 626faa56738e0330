"""
Integration Sync Engine.

Runs one logical sync per call with:
- Per-integration try-lock (second caller fails fast)
- Circuit breaker check before any provider work
- Proactive OAuth refresh and one reactive refresh-and-retry on auth failure
- Bounded exponential-backoff retries with a per-call timeout
- Sync Log, Integration status, breaker and health updated on every finish

Security:
- Credentials decrypted per sync and handed to the provider wrapped in
  SecureCredentials
- Corrupt credentials block the integration until re-authorization

Usage:
    engine = SyncEngine(store, vault, registry, oauth=connector)

    # Sync single integration
    outcome = await engine.run_sync(integration_id)

    # Sync all integrations for an organization
    outcomes = await engine.sync_organization(organization_id)
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Set

from .circuit_breaker import CircuitBreaker
from .config import IntegrationSettings
from .credential_vault import CredentialVault
from .error_classifier import ErrorKind, classify
from .exceptions import (
    CircuitOpen,
    ConfigurationError,
    CorruptCredential,
    IntegrationError,
    IntegrationNotFound,
    OAuthExchangeFailed,
    ProviderError,
    SyncAlreadyInProgress,
    SyncAttemptFailed,
    SyncCancelled,
)
from .health import HealthAggregator
from .locks import InProcessSyncLock, SyncLock
from .models import (
    Integration,
    IntegrationStatus,
    ProviderSyncResult,
    SyncLog,
    SyncOutcome,
    SyncOutcomeStatus,
    SyncStatus,
    SyncType,
    utc_now,
)
from .oauth.connector import OAuthConnector
from .providers import ProviderRegistry, SyncCapability
from .retry import RetryExecutor, SleepFn
from .secure_credentials import SecureCredentials
from .storage import IntegrationStore

logger = logging.getLogger(__name__)


# Configuration
MAX_DUE_PER_RUN = 100


class SyncEngine:
    """
    Orchestrates sync operations for integrations.

    Composes lock, circuit breaker, retry executor, OAuth connector and
    health aggregator around one provider capability call.
    """

    def __init__(
        self,
        store: IntegrationStore,
        vault: CredentialVault,
        registry: ProviderRegistry,
        settings: Optional[IntegrationSettings] = None,
        oauth: Optional[OAuthConnector] = None,
        breaker: Optional[CircuitBreaker] = None,
        health: Optional[HealthAggregator] = None,
        lock: Optional[SyncLock] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: SleepFn = asyncio.sleep,
    ):
        """
        Initialize the sync engine.

        Args:
            store: Integration storage
            vault: For decrypting integration configuration
            registry: Provider sync capabilities
            settings: Process configuration (defaults if omitted)
            oauth: OAuth connector for token refresh (OAuth integrations)
            breaker: Circuit breaker (store-backed default)
            health: Health aggregator (store-backed default)
            lock: Per-integration lock (in-process default)
            clock: Current time source
            sleep: Backoff sleep
        """
        self.settings = settings or IntegrationSettings()
        self.store = store
        self.vault = vault
        self.registry = registry
        self.oauth = oauth
        self.breaker = breaker or CircuitBreaker(
            store,
            failure_threshold=self.settings.circuit_breaker_threshold,
            reset_seconds=self.settings.circuit_breaker_reset_seconds,
            clock=clock,
        )
        self.health = health or HealthAggregator(
            store,
            overdue_grace_factor=self.settings.overdue_grace_factor,
            clock=clock,
        )
        self.lock = lock or InProcessSyncLock()
        self._clock = clock
        self._sleep = sleep
        self._running: Set[str] = set()
        self._cancelled: Set[str] = set()

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self, integration_id: str) -> bool:
        """
        Request cancellation of the integration's in-flight sync.

        Checked at retry boundaries and before persistence; an in-flight
        provider call is allowed to finish.

        Returns:
            True if a sync was running in this process
        """
        if integration_id not in self._running:
            return False
        self._cancelled.add(integration_id)
        logger.info(f"Sync cancellation requested: integration={integration_id}")
        return True

    def is_running(self, integration_id: str) -> bool:
        return integration_id in self._running

    def _is_cancelled(self, integration_id: str) -> bool:
        return integration_id in self._cancelled

    # =========================================================================
    # Single sync
    # =========================================================================

    async def run_sync(
        self,
        integration_id: str,
        sync_type: SyncType = SyncType.MANUAL
    ) -> SyncOutcome:
        """
        Sync a single integration.

        Rejections (already running, circuit open, blocked) and cancellation
        are returned as outcomes, never raised.

        Returns:
            SyncOutcome

        Raises:
            IntegrationNotFound: No such integration
        """
        try:
            async with self.lock.hold(integration_id):
                self._running.add(integration_id)
                try:
                    return await self._run_locked(integration_id, sync_type)
                finally:
                    self._running.discard(integration_id)
                    self._cancelled.discard(integration_id)
        except SyncAlreadyInProgress as e:
            logger.info(f"Sync rejected, already running: integration={integration_id}")
            return SyncOutcome(
                integration_id=integration_id,
                status=SyncOutcomeStatus.ALREADY_RUNNING,
                sync_type=sync_type,
                error_message=str(e),
                error=e,
            )

    async def _run_locked(self, integration_id: str, sync_type: SyncType) -> SyncOutcome:
        integration = await self.store.get_integration(integration_id)
        if integration is None:
            raise IntegrationNotFound(integration_id)

        if integration.requires_reauth or integration.status == IntegrationStatus.INACTIVE:
            reason = "re-authorization required" if integration.requires_reauth else "integration inactive"
            logger.info(f"Sync blocked: integration={integration_id} reason={reason}")
            return SyncOutcome(
                integration_id=integration_id,
                status=SyncOutcomeStatus.BLOCKED,
                sync_type=sync_type,
                error_message=reason,
            )

        try:
            await self.breaker.before_call(
                integration_id,
                reset_seconds=integration.circuit_breaker_reset_seconds,
            )
        except CircuitOpen as e:
            logger.info(f"Sync rejected, circuit open: integration={integration_id}")
            return SyncOutcome(
                integration_id=integration_id,
                status=SyncOutcomeStatus.CIRCUIT_OPEN,
                sync_type=sync_type,
                error_message=str(e),
                error=e,
            )

        previous_status = integration.status
        integration.status = IntegrationStatus.SYNCING
        integration = await self.store.update_integration(integration)

        started_at = self._clock()
        logger.info(
            f"Sync started: integration={integration_id} provider={integration.provider.value} "
            f"type={sync_type.value}"
        )

        try:
            result, attempts, failure, integration = await self._execute(integration, sync_type)
        except SyncCancelled:
            return await self._cancelled_outcome(integration_id, previous_status, sync_type)
        except BaseException:
            await self._restore_status(integration_id, previous_status)
            raise

        if self._is_cancelled(integration_id):
            return await self._cancelled_outcome(integration_id, previous_status, sync_type)

        return await self._finish(integration, sync_type, started_at, result, attempts, failure)

    async def _execute(self, integration: Integration, sync_type: SyncType):
        """
        Resolve capability and credentials, then call the provider under retry.

        Returns:
            (ProviderSyncResult or None, attempts, SyncAttemptFailed or None, Integration)
        """
        integration_id = integration.id

        try:
            capability = self.registry.get(integration.provider)
            config = self._decrypt(integration)
        except (ConfigurationError, CorruptCredential) as e:
            return None, 0, SyncAttemptFailed(classify(e), 0, e), integration

        if integration.is_oauth and self.oauth is not None:
            try:
                refreshed = await self.oauth.ensure_fresh(integration)
                if refreshed is not integration:
                    integration = refreshed
                    config = self._decrypt(integration)
            except OAuthExchangeFailed as e:
                # Existing token may still be valid; let the provider decide
                logger.warning(
                    f"Proactive token refresh failed, continuing: integration={integration_id} "
                    f"error={e}"
                )
            except IntegrationError as e:
                # Rejected refresh token, missing OAuth client or provider settings
                return None, 0, SyncAttemptFailed(classify(e), 0, e), integration

        try:
            result, attempts = await self._call_with_retry(integration, capability, config, sync_type)
            return result, attempts, None, integration
        except SyncAttemptFailed as failure:
            if not (failure.kind == ErrorKind.AUTH_FAILURE and integration.is_oauth and self.oauth):
                return None, failure.attempts, failure, integration
            first_attempts = failure.attempts

        # One reactive refresh, then one more run of the retry executor
        logger.info(f"Auth failure, refreshing token and retrying: integration={integration_id}")
        try:
            integration = await self.oauth.refresh(integration)
            config = self._decrypt(integration)
        except IntegrationError as e:
            failure = SyncAttemptFailed(classify(e), first_attempts, e)
            return None, first_attempts, failure, integration

        try:
            result, attempts = await self._call_with_retry(integration, capability, config, sync_type)
            return result, first_attempts + attempts, None, integration
        except SyncAttemptFailed as failure:
            total = first_attempts + failure.attempts
            return None, total, SyncAttemptFailed(failure.kind, total, failure.cause), integration

    def _decrypt(self, integration: Integration) -> SecureCredentials:
        if not integration.config_encrypted:
            return SecureCredentials()
        return self.vault.decrypt_config(integration.config_encrypted)

    async def _call_with_retry(
        self,
        integration: Integration,
        capability: SyncCapability,
        config: SecureCredentials,
        sync_type: SyncType
    ):
        """
        Returns:
            (ProviderSyncResult, attempts)
        """
        executor = RetryExecutor(
            integration.retry_policy,
            call_timeout_seconds=self.settings.provider_call_timeout_seconds,
            sleep=self._sleep,
            is_cancelled=lambda: self._is_cancelled(integration.id),
            label=f"integration={integration.id}",
            before_attempt=lambda: self.lock.extend(integration.id),
        )

        async def call() -> ProviderSyncResult:
            result = await capability.execute_sync(config, sync_type)
            if result.error:
                raise ProviderError(
                    result.error.get("message") or "Provider reported an error",
                    status_code=result.error.get("status_code"),
                    code=result.error.get("code"),
                )
            return result

        result = await executor.run(call)
        return result, executor.attempts

    # =========================================================================
    # Persistence
    # =========================================================================

    async def _restore_status(self, integration_id: str, previous: IntegrationStatus) -> None:
        integration = await self.store.get_integration(integration_id)
        if integration is not None and integration.status == IntegrationStatus.SYNCING:
            integration.status = previous
            await self.store.update_integration(integration)

    async def _cancelled_outcome(self, integration_id: str, previous: IntegrationStatus,
                                 sync_type: SyncType) -> SyncOutcome:
        await self._restore_status(integration_id, previous)
        logger.info(f"Sync cancelled: integration={integration_id}")
        return SyncOutcome(
            integration_id=integration_id,
            status=SyncOutcomeStatus.CANCELLED,
            sync_type=sync_type,
        )

    async def _finish(
        self,
        integration: Integration,
        sync_type: SyncType,
        started_at: datetime,
        result: Optional[ProviderSyncResult],
        attempts: int,
        failure: Optional[SyncAttemptFailed],
    ) -> SyncOutcome:
        completed_at = self._clock()
        integration_id = integration.id

        # Re-read so refresh/reauth changes made during the sync are kept
        current = await self.store.get_integration(integration_id)
        if current is None:
            logger.info(f"Integration deleted during sync, discarding result: integration={integration_id}")
            return SyncOutcome(
                integration_id=integration_id,
                status=SyncOutcomeStatus.CANCELLED,
                sync_type=sync_type,
            )

        if failure is None:
            log = SyncLog(
                integration_id=integration_id,
                sync_type=sync_type,
                started_at=started_at,
                completed_at=completed_at,
                status=SyncStatus.COMPLETED,
                records_processed=result.records_processed,
                attempts=attempts,
            )
            current.status = IntegrationStatus.ACTIVE
            current.last_error = None
        else:
            cause = failure.cause
            if isinstance(cause, CorruptCredential):
                message = cause.user_message
                current.requires_reauth = True
            else:
                message = str(cause) or type(cause).__name__
            code = getattr(cause, "code", None) or getattr(cause, "status_code", None)
            log = SyncLog(
                integration_id=integration_id,
                sync_type=sync_type,
                started_at=started_at,
                completed_at=completed_at,
                status=SyncStatus.FAILED,
                attempts=failure.attempts,
                error={
                    "kind": failure.kind.value,
                    "message": message,
                    "code": str(code) if code is not None else None,
                    "attempts": failure.attempts,
                },
            )
            current.status = IntegrationStatus.ERROR
            current.last_error = message

        current.last_sync_at = completed_at
        await self.store.append_sync_log(log)
        await self.store.update_integration(current)

        if failure is None:
            await self.breaker.record_success(integration_id)
        elif failure.kind != ErrorKind.CONFIG_ERROR and failure.attempts > 0:
            await self.breaker.record_failure(
                integration_id,
                threshold=integration.circuit_breaker_threshold,
            )

        await self.health.recompute(integration_id)

        duration = (completed_at - started_at).total_seconds()
        if failure is None:
            logger.info(
                f"Sync completed: integration={integration_id} records={log.records_processed} "
                f"duration={duration:.1f}s"
            )
            return SyncOutcome(
                integration_id=integration_id,
                status=SyncOutcomeStatus.COMPLETED,
                sync_type=sync_type,
                records_processed=log.records_processed,
                attempts=log.attempts,
                sync_log=log,
                duration_seconds=duration,
            )

        logger.warning(
            f"Sync failed: integration={integration_id} kind={failure.kind.value} "
            f"attempts={failure.attempts} duration={duration:.1f}s"
        )
        return SyncOutcome(
            integration_id=integration_id,
            status=SyncOutcomeStatus.FAILED,
            sync_type=sync_type,
            attempts=failure.attempts,
            error_kind=failure.kind.value,
            error_message=log.error_message,
            error=failure,
            sync_log=log,
            duration_seconds=duration,
        )

    # =========================================================================
    # Batches
    # =========================================================================

    async def _run_many(
        self,
        integration_ids: List[str],
        sync_type: SyncType,
        max_parallel: int
    ) -> List[SyncOutcome]:
        semaphore = asyncio.Semaphore(max_parallel)

        async def sync_with_semaphore(integration_id: str) -> SyncOutcome:
            async with semaphore:
                return await self.run_sync(integration_id, sync_type)

        tasks = [sync_with_semaphore(iid) for iid in integration_ids]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        # Convert exceptions to failed outcomes
        outcomes = []
        for integration_id, result in zip(integration_ids, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Sync raised: integration={integration_id} error={type(result).__name__}: {result}"
                )
                outcomes.append(SyncOutcome(
                    integration_id=integration_id,
                    status=SyncOutcomeStatus.FAILED,
                    sync_type=sync_type,
                    error_kind=classify(result).value,
                    error_message=str(result),
                    error=result,
                ))
            elif isinstance(result, BaseException):
                raise result
            else:
                outcomes.append(result)
        return outcomes

    @staticmethod
    def _syncable(integration: Integration) -> bool:
        return integration.status != IntegrationStatus.INACTIVE and not integration.requires_reauth

    async def sync_organization(
        self,
        organization_id: str,
        sync_type: SyncType = SyncType.MANUAL,
        max_parallel: Optional[int] = None
    ) -> List[SyncOutcome]:
        """
        Sync all active integrations for an organization concurrently.

        Args:
            organization_id: Organization to sync
            sync_type: Sync type recorded on each log
            max_parallel: Maximum concurrent syncs (MAX_PARALLEL_SYNCS default)

        Returns:
            List of SyncOutcome, one per integration
        """
        integrations = await self.store.list_integrations(organization_id)
        integration_ids = [i.id for i in integrations if self._syncable(i)]
        if not integration_ids:
            return []

        return await self._run_many(
            integration_ids,
            sync_type,
            max_parallel or self.settings.max_parallel_syncs,
        )

    async def get_due_integrations(self, now: Optional[datetime] = None) -> List[Integration]:
        """Integrations whose sync_interval_minutes has elapsed, least recently synced first."""
        now = now or self._clock()
        due = [
            i for i in await self.store.list_integrations()
            if self._syncable(i) and i.is_due(now)
        ]
        epoch = datetime.min.replace(tzinfo=now.tzinfo)
        due.sort(key=lambda i: i.last_sync_at or epoch)
        return due[:MAX_DUE_PER_RUN]

    async def run_scheduled_syncs(self) -> List[SyncOutcome]:
        """
        Run every due integration with sync_type=scheduled.

        Should be called periodically (e.g., every minute) by a scheduler.
        """
        due = await self.get_due_integrations()
        if not due:
            return []

        logger.info(f"Running {len(due)} scheduled syncs")
        return await self._run_many(
            [i.id for i in due],
            SyncType.SCHEDULED,
            self.settings.max_parallel_syncs,
        )
