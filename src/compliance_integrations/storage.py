"""
Persistence for integrations, sync logs, circuit breaker and health state.

IntegrationStore is the interface the sync engine, health aggregator and
integration service depend on. Two backends:

- InMemoryIntegrationStore: single process (tests, development)
- SqlIntegrationStore: SQLAlchemy AsyncSession with raw SQL (PostgreSQL)

Circuit breaker state is only ever changed through update_circuit_state(),
which applies a pure mutation under a lock (asyncio lock in memory, a
SELECT ... FOR UPDATE row lock in SQL) so concurrent outcomes never lose
updates.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from .models import (
    AuthMethod,
    CircuitBreakerState,
    CircuitState,
    HealthRecord,
    HealthSnapshot,
    HealthStatus,
    HealthTrend,
    Integration,
    IntegrationStatus,
    ProviderType,
    RetryPolicy,
    SyncLog,
    SyncStatus,
    SyncType,
    utc_now,
)

logger = logging.getLogger(__name__)


CircuitMutation = Callable[[CircuitBreakerState], CircuitBreakerState]


class IntegrationStore(ABC):
    """Storage interface for the integration framework."""

    # Integrations

    @abstractmethod
    async def create_integration(self, integration: Integration) -> Integration:
        ...

    @abstractmethod
    async def get_integration(self, integration_id: str) -> Optional[Integration]:
        ...

    @abstractmethod
    async def update_integration(self, integration: Integration) -> Integration:
        ...

    @abstractmethod
    async def delete_integration(self, integration_id: str) -> bool:
        """Delete an integration with its logs, breaker and health state."""
        ...

    @abstractmethod
    async def list_integrations(self, organization_id: Optional[str] = None) -> List[Integration]:
        """All integrations, or one organization's, oldest first."""
        ...

    # Sync logs

    @abstractmethod
    async def append_sync_log(self, log: SyncLog) -> SyncLog:
        ...

    @abstractmethod
    async def list_sync_logs(
        self,
        integration_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[SyncLog]:
        """Sync logs newest first, optionally bounded by start time and count."""
        ...

    # Circuit breaker

    @abstractmethod
    async def get_circuit_state(self, integration_id: str) -> CircuitBreakerState:
        """Current breaker state; a closed breaker if none is stored yet."""
        ...

    @abstractmethod
    async def update_circuit_state(
        self,
        integration_id: str,
        mutate: CircuitMutation
    ) -> CircuitBreakerState:
        """Atomically apply `mutate` to the stored state and return the result."""
        ...

    # Health

    @abstractmethod
    async def upsert_health(self, record: HealthRecord) -> HealthRecord:
        ...

    @abstractmethod
    async def get_health(self, integration_id: str) -> Optional[HealthRecord]:
        ...

    @abstractmethod
    async def append_health_snapshot(self, snapshot: HealthSnapshot) -> None:
        ...

    @abstractmethod
    async def list_health_snapshots(
        self,
        organization_id: str,
        since: Optional[datetime] = None
    ) -> List[HealthSnapshot]:
        """Snapshots oldest first."""
        ...


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryIntegrationStore(IntegrationStore):
    """
    Dictionary-backed store.

    Returns copies so callers never mutate stored records in place.
    """

    def __init__(self):
        self._integrations: Dict[str, Integration] = {}
        self._sync_logs: Dict[str, List[SyncLog]] = {}
        self._circuits: Dict[str, CircuitBreakerState] = {}
        self._health: Dict[str, HealthRecord] = {}
        self._snapshots: List[HealthSnapshot] = []
        self._circuit_lock = asyncio.Lock()

    async def create_integration(self, integration: Integration) -> Integration:
        if integration.id in self._integrations:
            raise ValueError(f"Integration {integration.id} already exists")
        self._integrations[integration.id] = copy.deepcopy(integration)
        return copy.deepcopy(integration)

    async def get_integration(self, integration_id: str) -> Optional[Integration]:
        integration = self._integrations.get(integration_id)
        return copy.deepcopy(integration) if integration else None

    async def update_integration(self, integration: Integration) -> Integration:
        if integration.id not in self._integrations:
            raise KeyError(integration.id)
        integration.updated_at = utc_now()
        self._integrations[integration.id] = copy.deepcopy(integration)
        return copy.deepcopy(integration)

    async def delete_integration(self, integration_id: str) -> bool:
        existed = self._integrations.pop(integration_id, None) is not None
        self._sync_logs.pop(integration_id, None)
        self._circuits.pop(integration_id, None)
        self._health.pop(integration_id, None)
        self._snapshots = [s for s in self._snapshots if s.integration_id != integration_id]
        return existed

    async def list_integrations(self, organization_id: Optional[str] = None) -> List[Integration]:
        integrations = [
            i for i in self._integrations.values()
            if organization_id is None or i.organization_id == organization_id
        ]
        integrations.sort(key=lambda i: i.created_at)
        return [copy.deepcopy(i) for i in integrations]

    async def append_sync_log(self, log: SyncLog) -> SyncLog:
        self._sync_logs.setdefault(log.integration_id, []).append(log)
        return log

    async def list_sync_logs(
        self,
        integration_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[SyncLog]:
        logs = [
            log for log in self._sync_logs.get(integration_id, [])
            if since is None or log.started_at >= since
        ]
        logs.sort(key=lambda log: log.started_at, reverse=True)
        return logs[:limit] if limit is not None else logs

    async def get_circuit_state(self, integration_id: str) -> CircuitBreakerState:
        state = self._circuits.get(integration_id)
        if state is None:
            return CircuitBreakerState(integration_id=integration_id)
        return copy.copy(state)

    async def update_circuit_state(
        self,
        integration_id: str,
        mutate: CircuitMutation
    ) -> CircuitBreakerState:
        async with self._circuit_lock:
            current = self._circuits.get(integration_id) or CircuitBreakerState(
                integration_id=integration_id
            )
            updated = mutate(copy.copy(current))
            self._circuits[integration_id] = updated
            return copy.copy(updated)

    async def upsert_health(self, record: HealthRecord) -> HealthRecord:
        self._health[record.integration_id] = copy.copy(record)
        return record

    async def get_health(self, integration_id: str) -> Optional[HealthRecord]:
        record = self._health.get(integration_id)
        return copy.copy(record) if record else None

    async def append_health_snapshot(self, snapshot: HealthSnapshot) -> None:
        self._snapshots.append(snapshot)

    async def list_health_snapshots(
        self,
        organization_id: str,
        since: Optional[datetime] = None
    ) -> List[HealthSnapshot]:
        snapshots = [
            s for s in self._snapshots
            if s.organization_id == organization_id
            and (since is None or s.snapshot_at >= since)
        ]
        return sorted(snapshots, key=lambda s: s.snapshot_at)


# =============================================================================
# SQL
# =============================================================================

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS integrations (
        id VARCHAR(64) PRIMARY KEY,
        organization_id VARCHAR(64) NOT NULL,
        provider VARCHAR(50) NOT NULL,
        name VARCHAR(255) NOT NULL,
        config_encrypted BYTEA,
        status VARCHAR(20) NOT NULL DEFAULT 'active',
        auth_method VARCHAR(20) NOT NULL DEFAULT 'api_key',
        last_sync_at TIMESTAMPTZ,
        last_error TEXT,
        requires_reauth BOOLEAN NOT NULL DEFAULT FALSE,
        token_expires_at TIMESTAMPTZ,
        oauth_scopes TEXT NOT NULL DEFAULT '[]',
        oauth_metadata TEXT NOT NULL DEFAULT '{}',
        retry_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        backoff_base_ms INTEGER NOT NULL DEFAULT 1000,
        backoff_max_ms INTEGER NOT NULL DEFAULT 300000,
        circuit_breaker_threshold INTEGER,
        circuit_breaker_reset_seconds INTEGER,
        sync_interval_minutes INTEGER,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_integrations_org ON integrations (organization_id)",
    """
    CREATE TABLE IF NOT EXISTS integration_sync_logs (
        id VARCHAR(64) PRIMARY KEY,
        integration_id VARCHAR(64) NOT NULL REFERENCES integrations(id) ON DELETE CASCADE,
        sync_type VARCHAR(20) NOT NULL,
        started_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ NOT NULL,
        status VARCHAR(20) NOT NULL,
        records_processed INTEGER NOT NULL DEFAULT 0,
        attempts INTEGER NOT NULL DEFAULT 1,
        error_kind VARCHAR(20),
        error_detail TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_sync_logs_integration_started
        ON integration_sync_logs (integration_id, started_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS integration_circuit_breakers (
        integration_id VARCHAR(64) PRIMARY KEY REFERENCES integrations(id) ON DELETE CASCADE,
        state VARCHAR(20) NOT NULL DEFAULT 'closed',
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        opened_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS integration_health (
        integration_id VARCHAR(64) PRIMARY KEY REFERENCES integrations(id) ON DELETE CASCADE,
        status VARCHAR(20) NOT NULL,
        last_successful_sync_at TIMESTAMPTZ,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        success_count_24h INTEGER NOT NULL DEFAULT 0,
        failure_count_24h INTEGER NOT NULL DEFAULT 0,
        success_count_7d INTEGER NOT NULL DEFAULT 0,
        failure_count_7d INTEGER NOT NULL DEFAULT 0,
        average_sync_duration_ms INTEGER,
        last_error_message TEXT,
        last_error_at TIMESTAMPTZ,
        trend VARCHAR(20) NOT NULL DEFAULT 'stable',
        computed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS integration_health_snapshots (
        id SERIAL PRIMARY KEY,
        integration_id VARCHAR(64) NOT NULL REFERENCES integrations(id) ON DELETE CASCADE,
        organization_id VARCHAR(64) NOT NULL,
        status VARCHAR(20) NOT NULL,
        success_rate_24h DOUBLE PRECISION NOT NULL,
        average_sync_duration_ms INTEGER,
        error_count_24h INTEGER NOT NULL DEFAULT 0,
        snapshot_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_health_snapshots_org_time
        ON integration_health_snapshots (organization_id, snapshot_at)
    """,
]

INTEGRATION_COLUMNS = """
    id, organization_id, provider, name, config_encrypted, status, auth_method,
    last_sync_at, last_error, requires_reauth, token_expires_at, oauth_scopes,
    oauth_metadata, retry_enabled, max_attempts, backoff_base_ms, backoff_max_ms,
    circuit_breaker_threshold, circuit_breaker_reset_seconds, sync_interval_minutes,
    created_at, updated_at
"""

SYNC_LOG_COLUMNS = """
    id, integration_id, sync_type, started_at, completed_at, status,
    records_processed, attempts, error_kind, error_detail
"""

HEALTH_COLUMNS = """
    integration_id, status, last_successful_sync_at, consecutive_failures,
    success_count_24h, failure_count_24h, success_count_7d, failure_count_7d,
    average_sync_duration_ms, last_error_message, last_error_at, trend, computed_at
"""


def _integration_params(integration: Integration) -> dict:
    policy = integration.retry_policy
    return {
        "id": integration.id,
        "organization_id": integration.organization_id,
        "provider": integration.provider.value,
        "name": integration.name,
        "config_encrypted": integration.config_encrypted,
        "status": integration.status.value,
        "auth_method": integration.auth_method.value,
        "last_sync_at": integration.last_sync_at,
        "last_error": integration.last_error,
        "requires_reauth": integration.requires_reauth,
        "token_expires_at": integration.token_expires_at,
        "oauth_scopes": json.dumps(integration.oauth_scopes),
        "oauth_metadata": json.dumps(integration.oauth_metadata),
        "retry_enabled": policy.retry_enabled,
        "max_attempts": policy.max_attempts,
        "backoff_base_ms": policy.backoff_base_ms,
        "backoff_max_ms": policy.backoff_max_ms,
        "circuit_breaker_threshold": integration.circuit_breaker_threshold,
        "circuit_breaker_reset_seconds": integration.circuit_breaker_reset_seconds,
        "sync_interval_minutes": integration.sync_interval_minutes,
        "created_at": integration.created_at,
        "updated_at": integration.updated_at,
    }


def _row_to_integration(row) -> Integration:
    config = row.config_encrypted
    return Integration(
        id=str(row.id),
        organization_id=str(row.organization_id),
        provider=ProviderType(row.provider),
        name=row.name,
        config_encrypted=bytes(config) if config is not None else None,
        status=IntegrationStatus(row.status),
        auth_method=AuthMethod(row.auth_method),
        last_sync_at=row.last_sync_at,
        last_error=row.last_error,
        requires_reauth=bool(row.requires_reauth),
        token_expires_at=row.token_expires_at,
        oauth_scopes=json.loads(row.oauth_scopes or "[]"),
        oauth_metadata=json.loads(row.oauth_metadata or "{}"),
        retry_policy=RetryPolicy(
            retry_enabled=bool(row.retry_enabled),
            max_attempts=row.max_attempts,
            backoff_base_ms=row.backoff_base_ms,
            backoff_max_ms=row.backoff_max_ms,
        ),
        circuit_breaker_threshold=row.circuit_breaker_threshold,
        circuit_breaker_reset_seconds=row.circuit_breaker_reset_seconds,
        sync_interval_minutes=row.sync_interval_minutes,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_sync_log(row) -> SyncLog:
    return SyncLog(
        id=str(row.id),
        integration_id=str(row.integration_id),
        sync_type=SyncType(row.sync_type),
        started_at=row.started_at,
        completed_at=row.completed_at,
        status=SyncStatus(row.status),
        records_processed=row.records_processed,
        attempts=row.attempts,
        error=json.loads(row.error_detail) if row.error_detail else None,
    )


def _row_to_circuit(integration_id: str, row) -> CircuitBreakerState:
    if row is None:
        return CircuitBreakerState(integration_id=integration_id)
    return CircuitBreakerState(
        integration_id=integration_id,
        state=CircuitState(row.state),
        consecutive_failures=row.consecutive_failures,
        opened_at=row.opened_at,
        updated_at=row.updated_at,
    )


def _row_to_health(row) -> HealthRecord:
    return HealthRecord(
        integration_id=str(row.integration_id),
        status=HealthStatus(row.status),
        last_successful_sync_at=row.last_successful_sync_at,
        consecutive_failures=row.consecutive_failures,
        success_count_24h=row.success_count_24h,
        failure_count_24h=row.failure_count_24h,
        success_count_7d=row.success_count_7d,
        failure_count_7d=row.failure_count_7d,
        average_sync_duration_ms=row.average_sync_duration_ms,
        last_error_message=row.last_error_message,
        last_error_at=row.last_error_at,
        trend=HealthTrend(row.trend),
        computed_at=row.computed_at,
    )


class SqlIntegrationStore(IntegrationStore):
    """
    PostgreSQL-backed store using SQLAlchemy AsyncSession and raw SQL.

    Each operation runs in its own session and transaction.
    """

    def __init__(self, session_factory):
        """
        Args:
            session_factory: Callable returning an AsyncSession
                (e.g. async_sessionmaker)
        """
        self.session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "SqlIntegrationStore":
        engine = create_async_engine(database_url, pool_size=10, max_overflow=20, echo=echo)
        return cls(async_sessionmaker(engine, expire_on_commit=False))

    async def create_schema(self) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                for statement in SCHEMA_STATEMENTS:
                    await session.execute(text(statement))
        logger.info("Integration schema ensured")

    # =========================================================================
    # Integrations
    # =========================================================================

    async def create_integration(self, integration: Integration) -> Integration:
        params = _integration_params(integration)
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    text(f"""
                        INSERT INTO integrations ({INTEGRATION_COLUMNS})
                        VALUES (
                            :id, :organization_id, :provider, :name, :config_encrypted,
                            :status, :auth_method, :last_sync_at, :last_error,
                            :requires_reauth, :token_expires_at, :oauth_scopes,
                            :oauth_metadata, :retry_enabled, :max_attempts,
                            :backoff_base_ms, :backoff_max_ms, :circuit_breaker_threshold,
                            :circuit_breaker_reset_seconds, :sync_interval_minutes,
                            :created_at, :updated_at
                        )
                    """),
                    params
                )
        return integration

    async def get_integration(self, integration_id: str) -> Optional[Integration]:
        async with self.session_factory() as session:
            result = await session.execute(
                text(f"SELECT {INTEGRATION_COLUMNS} FROM integrations WHERE id = :id"),
                {"id": integration_id}
            )
            row = result.fetchone()
        return _row_to_integration(row) if row else None

    async def update_integration(self, integration: Integration) -> Integration:
        integration.updated_at = utc_now()
        params = _integration_params(integration)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    text("""
                        UPDATE integrations
                        SET name = :name,
                            config_encrypted = :config_encrypted,
                            status = :status,
                            auth_method = :auth_method,
                            last_sync_at = :last_sync_at,
                            last_error = :last_error,
                            requires_reauth = :requires_reauth,
                            token_expires_at = :token_expires_at,
                            oauth_scopes = :oauth_scopes,
                            oauth_metadata = :oauth_metadata,
                            retry_enabled = :retry_enabled,
                            max_attempts = :max_attempts,
                            backoff_base_ms = :backoff_base_ms,
                            backoff_max_ms = :backoff_max_ms,
                            circuit_breaker_threshold = :circuit_breaker_threshold,
                            circuit_breaker_reset_seconds = :circuit_breaker_reset_seconds,
                            sync_interval_minutes = :sync_interval_minutes,
                            updated_at = :updated_at
                        WHERE id = :id
                    """),
                    params
                )
                if result.rowcount == 0:
                    raise KeyError(integration.id)
        return integration

    async def delete_integration(self, integration_id: str) -> bool:
        # Logs, breaker, health and snapshots go with it (ON DELETE CASCADE)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    text("DELETE FROM integrations WHERE id = :id"),
                    {"id": integration_id}
                )
        return result.rowcount > 0

    async def list_integrations(self, organization_id: Optional[str] = None) -> List[Integration]:
        query = f"SELECT {INTEGRATION_COLUMNS} FROM integrations"
        params = {}
        if organization_id is not None:
            query += " WHERE organization_id = :organization_id"
            params["organization_id"] = organization_id
        query += " ORDER BY created_at"

        async with self.session_factory() as session:
            result = await session.execute(text(query), params)
            rows = result.fetchall()
        return [_row_to_integration(row) for row in rows]

    # =========================================================================
    # Sync logs
    # =========================================================================

    async def append_sync_log(self, log: SyncLog) -> SyncLog:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    text(f"""
                        INSERT INTO integration_sync_logs ({SYNC_LOG_COLUMNS})
                        VALUES (
                            :id, :integration_id, :sync_type, :started_at, :completed_at,
                            :status, :records_processed, :attempts, :error_kind, :error_detail
                        )
                    """),
                    {
                        "id": log.id,
                        "integration_id": log.integration_id,
                        "sync_type": log.sync_type.value,
                        "started_at": log.started_at,
                        "completed_at": log.completed_at,
                        "status": log.status.value,
                        "records_processed": log.records_processed,
                        "attempts": log.attempts,
                        "error_kind": log.error_kind,
                        "error_detail": json.dumps(log.error) if log.error else None,
                    }
                )
        return log

    async def list_sync_logs(
        self,
        integration_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[SyncLog]:
        query = f"SELECT {SYNC_LOG_COLUMNS} FROM integration_sync_logs WHERE integration_id = :id"
        params = {"id": integration_id}
        if since is not None:
            query += " AND started_at >= :since"
            params["since"] = since
        query += " ORDER BY started_at DESC"
        if limit is not None:
            query += " LIMIT :limit"
            params["limit"] = limit

        async with self.session_factory() as session:
            result = await session.execute(text(query), params)
            rows = result.fetchall()
        return [_row_to_sync_log(row) for row in rows]

    # =========================================================================
    # Circuit breaker
    # =========================================================================

    async def get_circuit_state(self, integration_id: str) -> CircuitBreakerState:
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT state, consecutive_failures, opened_at, updated_at
                    FROM integration_circuit_breakers
                    WHERE integration_id = :id
                """),
                {"id": integration_id}
            )
            row = result.fetchone()
        return _row_to_circuit(integration_id, row)

    async def update_circuit_state(
        self,
        integration_id: str,
        mutate: CircuitMutation
    ) -> CircuitBreakerState:
        async with self.session_factory() as session:
            async with session.begin():
                # Ensure the row exists so FOR UPDATE has something to lock
                await session.execute(
                    text("""
                        INSERT INTO integration_circuit_breakers (integration_id, state, consecutive_failures)
                        VALUES (:id, 'closed', 0)
                        ON CONFLICT (integration_id) DO NOTHING
                    """),
                    {"id": integration_id}
                )
                result = await session.execute(
                    text("""
                        SELECT state, consecutive_failures, opened_at, updated_at
                        FROM integration_circuit_breakers
                        WHERE integration_id = :id
                        FOR UPDATE
                    """),
                    {"id": integration_id}
                )
                current = _row_to_circuit(integration_id, result.fetchone())
                updated = mutate(current)
                await session.execute(
                    text("""
                        UPDATE integration_circuit_breakers
                        SET state = :state,
                            consecutive_failures = :consecutive_failures,
                            opened_at = :opened_at,
                            updated_at = :updated_at
                        WHERE integration_id = :id
                    """),
                    {
                        "id": integration_id,
                        "state": updated.state.value,
                        "consecutive_failures": updated.consecutive_failures,
                        "opened_at": updated.opened_at,
                        "updated_at": updated.updated_at,
                    }
                )
        return updated

    # =========================================================================
    # Health
    # =========================================================================

    async def upsert_health(self, record: HealthRecord) -> HealthRecord:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    text(f"""
                        INSERT INTO integration_health ({HEALTH_COLUMNS})
                        VALUES (
                            :integration_id, :status, :last_successful_sync_at,
                            :consecutive_failures, :success_count_24h, :failure_count_24h,
                            :success_count_7d, :failure_count_7d, :average_sync_duration_ms,
                            :last_error_message, :last_error_at, :trend, :computed_at
                        )
                        ON CONFLICT (integration_id) DO UPDATE SET
                            status = EXCLUDED.status,
                            last_successful_sync_at = EXCLUDED.last_successful_sync_at,
                            consecutive_failures = EXCLUDED.consecutive_failures,
                            success_count_24h = EXCLUDED.success_count_24h,
                            failure_count_24h = EXCLUDED.failure_count_24h,
                            success_count_7d = EXCLUDED.success_count_7d,
                            failure_count_7d = EXCLUDED.failure_count_7d,
                            average_sync_duration_ms = EXCLUDED.average_sync_duration_ms,
                            last_error_message = EXCLUDED.last_error_message,
                            last_error_at = EXCLUDED.last_error_at,
                            trend = EXCLUDED.trend,
                            computed_at = EXCLUDED.computed_at
                    """),
                    {
                        "integration_id": record.integration_id,
                        "status": record.status.value,
                        "last_successful_sync_at": record.last_successful_sync_at,
                        "consecutive_failures": record.consecutive_failures,
                        "success_count_24h": record.success_count_24h,
                        "failure_count_24h": record.failure_count_24h,
                        "success_count_7d": record.success_count_7d,
                        "failure_count_7d": record.failure_count_7d,
                        "average_sync_duration_ms": record.average_sync_duration_ms,
                        "last_error_message": record.last_error_message,
                        "last_error_at": record.last_error_at,
                        "trend": record.trend.value,
                        "computed_at": record.computed_at,
                    }
                )
        return record

    async def get_health(self, integration_id: str) -> Optional[HealthRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                text(f"SELECT {HEALTH_COLUMNS} FROM integration_health WHERE integration_id = :id"),
                {"id": integration_id}
            )
            row = result.fetchone()
        return _row_to_health(row) if row else None

    async def append_health_snapshot(self, snapshot: HealthSnapshot) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    text("""
                        INSERT INTO integration_health_snapshots (
                            integration_id, organization_id, status, success_rate_24h,
                            average_sync_duration_ms, error_count_24h, snapshot_at
                        ) VALUES (
                            :integration_id, :organization_id, :status, :success_rate_24h,
                            :average_sync_duration_ms, :error_count_24h, :snapshot_at
                        )
                    """),
                    {
                        "integration_id": snapshot.integration_id,
                        "organization_id": snapshot.organization_id,
                        "status": snapshot.status.value,
                        "success_rate_24h": snapshot.success_rate_24h,
                        "average_sync_duration_ms": snapshot.average_sync_duration_ms,
                        "error_count_24h": snapshot.error_count_24h,
                        "snapshot_at": snapshot.snapshot_at,
                    }
                )

    async def list_health_snapshots(
        self,
        organization_id: str,
        since: Optional[datetime] = None
    ) -> List[HealthSnapshot]:
        query = """
            SELECT integration_id, organization_id, status, success_rate_24h,
                   average_sync_duration_ms, error_count_24h, snapshot_at
            FROM integration_health_snapshots
            WHERE organization_id = :organization_id
        """
        params = {"organization_id": organization_id}
        if since is not None:
            query += " AND snapshot_at >= :since"
            params["since"] = since
        query += " ORDER BY snapshot_at"

        async with self.session_factory() as session:
            result = await session.execute(text(query), params)
            rows = result.fetchall()

        return [
            HealthSnapshot(
                integration_id=str(row.integration_id),
                organization_id=str(row.organization_id),
                status=HealthStatus(row.status),
                success_rate_24h=float(row.success_rate_24h),
                average_sync_duration_ms=row.average_sync_duration_ms,
                error_count_24h=row.error_count_24h,
                snapshot_at=row.snapshot_at,
            )
            for row in rows
        ]
