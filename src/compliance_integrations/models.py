"""
Domain models for integrations, sync logs, circuit breaker and health state.

Plain dataclasses and str-valued enums; storage backends map them to rows.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class ProviderType(str, Enum):
    """Supported external providers."""
    # Cloud providers
    AWS = "aws"
    GCP = "gcp"
    AZURE = "azure"
    # Identity providers
    OKTA = "okta"
    GOOGLE_WORKSPACE = "google_workspace"
    AZURE_AD = "azure_ad"
    # Source control / ticketing
    GITHUB = "github"
    GITLAB = "gitlab"
    JIRA = "jira"
    # Infrastructure
    CLOUDFLARE = "cloudflare"
    DATADOG = "datadog"
    PAGERDUTY = "pagerduty"
    WEBHOOK = "webhook"


class AuthMethod(str, Enum):
    API_KEY = "api_key"
    OAUTH2 = "oauth2"
    SERVICE_ACCOUNT = "service_account"


class IntegrationStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    SYNCING = "syncing"


class SyncType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(str, Enum):
    """Terminal status of a persisted sync log."""
    COMPLETED = "completed"
    FAILED = "failed"


class SyncOutcomeStatus(str, Enum):
    """What run_sync did."""
    COMPLETED = "completed"
    FAILED = "failed"
    CIRCUIT_OPEN = "circuit_open"
    ALREADY_RUNNING = "already_running"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class HealthTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


# =============================================================================
# INTEGRATION
# =============================================================================

@dataclass
class RetryPolicy:
    """Per-integration retry configuration."""
    retry_enabled: bool = True
    max_attempts: int = 3
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 300000

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_base_ms < 0 or self.backoff_max_ms < 0:
            raise ValueError("backoff values must be non-negative")


@dataclass
class Integration:
    """One configured connection to an external provider account."""
    organization_id: str
    provider: ProviderType
    name: str
    config_encrypted: Optional[bytes] = None
    id: str = field(default_factory=new_id)
    status: IntegrationStatus = IntegrationStatus.ACTIVE
    auth_method: AuthMethod = AuthMethod.API_KEY
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    requires_reauth: bool = False
    token_expires_at: Optional[datetime] = None
    oauth_scopes: List[str] = field(default_factory=list)
    oauth_metadata: Dict[str, Any] = field(default_factory=dict)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    circuit_breaker_threshold: Optional[int] = None
    circuit_breaker_reset_seconds: Optional[int] = None
    sync_interval_minutes: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __repr__(self) -> str:
        # config_encrypted is never shown
        return (
            f"Integration(id={self.id!r}, provider={self.provider.value!r}, "
            f"name={self.name!r}, status={self.status.value!r})"
        )

    @property
    def is_oauth(self) -> bool:
        return self.auth_method == AuthMethod.OAUTH2

    def needs_token_refresh(self, now: datetime, buffer_seconds: int = 300) -> bool:
        """True if OAuth tokens expire within buffer_seconds."""
        if not self.is_oauth or self.token_expires_at is None:
            return False
        return now + timedelta(seconds=buffer_seconds) >= self.token_expires_at

    def is_due(self, now: datetime) -> bool:
        """True if a scheduled sync is due under this integration's cadence."""
        if self.sync_interval_minutes is None:
            return False
        if self.last_sync_at is None:
            return True
        return now - self.last_sync_at >= timedelta(minutes=self.sync_interval_minutes)


# =============================================================================
# OAUTH
# =============================================================================

@dataclass
class OAuthSession:
    """Ephemeral state for an in-flight authorization."""
    state: str
    organization_id: str
    provider: ProviderType
    scopes: List[str]
    created_at: datetime
    expires_at: datetime
    integration_name: Optional[str] = None
    code_verifier: Optional[str] = None
    integration_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "organization_id": self.organization_id,
            "provider": self.provider.value,
            "scopes": self.scopes,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "integration_name": self.integration_name,
            "code_verifier": self.code_verifier,
            "integration_id": self.integration_id,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OAuthSession":
        return cls(
            state=data["state"],
            organization_id=data["organization_id"],
            provider=ProviderType(data["provider"]),
            scopes=list(data.get("scopes") or []),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            integration_name=data.get("integration_name"),
            code_verifier=data.get("code_verifier"),
            integration_id=data.get("integration_id"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class AuthorizationRequest:
    """Returned by OAuthConnector.begin()."""
    authorization_url: str
    state: str
    expires_at: datetime


# =============================================================================
# SYNC
# =============================================================================

@dataclass(frozen=True)
class SyncLog:
    """Immutable record of one sync (after all internal retries)."""
    integration_id: str
    sync_type: SyncType
    started_at: datetime
    completed_at: datetime
    status: SyncStatus
    records_processed: int = 0
    attempts: int = 1
    error: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=new_id)

    @property
    def succeeded(self) -> bool:
        return self.status == SyncStatus.COMPLETED

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.get("kind") if self.error else None

    @property
    def error_message(self) -> Optional[str]:
        return self.error.get("message") if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "integration_id": self.integration_id,
            "sync_type": self.sync_type.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "status": self.status.value,
            "records_processed": self.records_processed,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass
class ProviderSyncResult:
    """What a provider capability returns for one sync."""
    records_processed: int = 0
    error: Optional[Dict[str, Any]] = None  # {"code": ..., "message": ...}


@dataclass
class SyncOutcome:
    """Result of SyncEngine.run_sync()."""
    integration_id: str
    status: SyncOutcomeStatus
    sync_type: SyncType
    records_processed: int = 0
    attempts: int = 0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    error: Optional[BaseException] = None
    sync_log: Optional[SyncLog] = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == SyncOutcomeStatus.COMPLETED

    @property
    def rejected(self) -> bool:
        """True if no provider call was attempted."""
        return self.status in (
            SyncOutcomeStatus.CIRCUIT_OPEN,
            SyncOutcomeStatus.ALREADY_RUNNING,
            SyncOutcomeStatus.BLOCKED,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "integration_id": self.integration_id,
            "status": self.status.value,
            "sync_type": self.sync_type.value,
            "records_processed": self.records_processed,
            "attempts": self.attempts,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "sync_log_id": self.sync_log.id if self.sync_log else None,
            "duration_seconds": self.duration_seconds,
        }


# =============================================================================
# CIRCUIT BREAKER & HEALTH
# =============================================================================

@dataclass
class CircuitBreakerState:
    """Persisted per-integration breaker state."""
    integration_id: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "integration_id": self.integration_id,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
        }


@dataclass
class HealthRecord:
    """Derived per-integration health metrics."""
    integration_id: str
    status: HealthStatus = HealthStatus.UNKNOWN
    last_successful_sync_at: Optional[datetime] = None
    consecutive_failures: int = 0
    success_count_24h: int = 0
    failure_count_24h: int = 0
    success_count_7d: int = 0
    failure_count_7d: int = 0
    average_sync_duration_ms: Optional[int] = None
    last_error_message: Optional[str] = None
    last_error_at: Optional[datetime] = None
    trend: HealthTrend = HealthTrend.STABLE
    computed_at: Optional[datetime] = None

    @staticmethod
    def _rate(success: int, failure: int) -> float:
        total = success + failure
        if total == 0:
            return 100.0
        return success / total * 100.0

    @property
    def success_rate_24h(self) -> float:
        return self._rate(self.success_count_24h, self.failure_count_24h)

    @property
    def success_rate_7d(self) -> float:
        return self._rate(self.success_count_7d, self.failure_count_7d)

    @property
    def error_rate_24h(self) -> float:
        if self.success_count_24h + self.failure_count_24h == 0:
            return 0.0
        return 100.0 - self.success_rate_24h

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["trend"] = self.trend.value
        for key in ("last_successful_sync_at", "last_error_at", "computed_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        data["success_rate_24h"] = round(self.success_rate_24h, 2)
        data["success_rate_7d"] = round(self.success_rate_7d, 2)
        return data


@dataclass
class HealthSnapshot:
    """Point-in-time copy of an integration's health for trend charts."""
    integration_id: str
    organization_id: str
    status: HealthStatus
    success_rate_24h: float
    average_sync_duration_ms: Optional[int]
    error_count_24h: int
    snapshot_at: datetime


@dataclass
class IntegrationHealthView:
    """Health record joined with integration details for dashboards."""
    integration_id: str
    integration_name: str
    provider: ProviderType
    health: HealthRecord

    def to_dict(self) -> Dict[str, Any]:
        return {
            "integration_id": self.integration_id,
            "integration_name": self.integration_name,
            "provider": self.provider.value,
            "health": self.health.to_dict(),
        }


@dataclass
class HealthStats:
    """Aggregated health statistics for an organization."""
    total_integrations: int = 0
    healthy_count: int = 0
    degraded_count: int = 0
    unhealthy_count: int = 0
    unknown_count: int = 0
    overall_success_rate_24h: float = 100.0
    overall_success_rate_7d: float = 100.0
    average_sync_duration_ms: Optional[int] = None
    total_syncs_24h: int = 0
    total_failures_24h: int = 0


@dataclass
class RecentFailure:
    integration_id: str
    integration_name: str
    provider: ProviderType
    error_message: Optional[str]
    failed_at: datetime
    consecutive_failures: int


@dataclass
class HealthTrendPoint:
    timestamp: datetime
    healthy_count: int
    degraded_count: int
    unhealthy_count: int
    success_rate: float
