"""
Integration health aggregation.

Health is recomputed from Sync Log timestamps after every sync, never from
incremental counters, so windows stay correct no matter how many processes
write logs. Status is derived from the stored record (first match wins):

    unknown    no sync has ever completed successfully
    unhealthy  >= 3 consecutive failures, or 24h error rate > 20%
    degraded   24h error rate in (5%, 20%], or overdue for its cadence
    healthy    otherwise

An integration is overdue when its last successful sync (or its creation,
if it never succeeded) is older than sync_interval_minutes times the grace
factor. Overdue is re-evaluated on every read, since an integration that
stopped syncing never triggers a recompute.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .exceptions import IntegrationNotFound
from .models import (
    HealthRecord,
    HealthSnapshot,
    HealthStats,
    HealthStatus,
    HealthTrend,
    HealthTrendPoint,
    Integration,
    IntegrationHealthView,
    RecentFailure,
    SyncLog,
    utc_now,
)
from .storage import IntegrationStore

logger = logging.getLogger(__name__)


# Thresholds
UNHEALTHY_CONSECUTIVE_FAILURES = 3
UNHEALTHY_ERROR_RATE = 20.0
DEGRADED_ERROR_RATE = 5.0
TREND_THRESHOLD_POINTS = 5.0
DURATION_FALLBACK_SYNCS = 10
HISTORY_SCAN_LIMIT = 1000
MAX_RECENT_FAILURES = 50
DEFAULT_OVERDUE_GRACE_FACTOR = 1.5

STATUS_SEVERITY = {
    HealthStatus.UNHEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNKNOWN: 2,
    HealthStatus.HEALTHY: 3,
}


# =============================================================================
# PURE DERIVATION
# =============================================================================

def is_overdue(integration: Integration, last_success: Optional[datetime],
               now: datetime, grace_factor: float = DEFAULT_OVERDUE_GRACE_FACTOR) -> bool:
    """True if the integration has a cadence and missed it by more than the grace."""
    if integration.sync_interval_minutes is None:
        return False
    reference = last_success or integration.created_at
    allowed = timedelta(minutes=integration.sync_interval_minutes * grace_factor)
    return now - reference > allowed


def derive_health_status(record: HealthRecord, integration: Integration, now: datetime,
                         grace_factor: float = DEFAULT_OVERDUE_GRACE_FACTOR) -> HealthStatus:
    if record.last_successful_sync_at is None:
        return HealthStatus.UNKNOWN

    error_rate = record.error_rate_24h
    if (record.consecutive_failures >= UNHEALTHY_CONSECUTIVE_FAILURES
            or error_rate > UNHEALTHY_ERROR_RATE):
        return HealthStatus.UNHEALTHY

    if (DEGRADED_ERROR_RATE < error_rate <= UNHEALTHY_ERROR_RATE
            or is_overdue(integration, record.last_successful_sync_at, now, grace_factor)):
        return HealthStatus.DEGRADED

    return HealthStatus.HEALTHY


def derive_trend(record: HealthRecord) -> HealthTrend:
    """Compare the 24h success rate against the 7d baseline."""
    if record.success_count_24h + record.failure_count_24h == 0:
        return HealthTrend.STABLE
    delta = record.success_rate_24h - record.success_rate_7d
    if delta > TREND_THRESHOLD_POINTS:
        return HealthTrend.IMPROVING
    if delta < -TREND_THRESHOLD_POINTS:
        return HealthTrend.DECLINING
    return HealthTrend.STABLE


def summarize_logs(integration_id: str, logs: List[SyncLog], now: datetime,
                   previous: Optional[HealthRecord] = None) -> HealthRecord:
    """
    Build a health record (without status) from sync logs, newest first.

    `previous` supplies the last success/error when they fall outside the
    scanned history.
    """
    day_ago = now - timedelta(hours=24)
    week_ago = now - timedelta(days=7)

    record = HealthRecord(integration_id=integration_id, computed_at=now)

    for log in logs:
        if not log.succeeded:
            record.consecutive_failures += 1
        else:
            break

    durations_24h = []
    for log in logs:
        if log.started_at >= week_ago:
            if log.succeeded:
                record.success_count_7d += 1
            else:
                record.failure_count_7d += 1
        if log.started_at >= day_ago:
            if log.succeeded:
                record.success_count_24h += 1
                durations_24h.append(log.duration_ms)
            else:
                record.failure_count_24h += 1

        if log.succeeded and record.last_successful_sync_at is None:
            record.last_successful_sync_at = log.completed_at
        if not log.succeeded and record.last_error_at is None:
            record.last_error_at = log.completed_at
            record.last_error_message = log.error_message

    if not durations_24h:
        successes = [log for log in logs if log.succeeded][:DURATION_FALLBACK_SYNCS]
        durations_24h = [log.duration_ms for log in successes]
    if durations_24h:
        record.average_sync_duration_ms = int(sum(durations_24h) / len(durations_24h))

    if previous is not None:
        if record.last_successful_sync_at is None:
            record.last_successful_sync_at = previous.last_successful_sync_at
        if record.last_error_at is None:
            record.last_error_at = previous.last_error_at
            record.last_error_message = previous.last_error_message

    record.trend = derive_trend(record)
    return record


# =============================================================================
# AGGREGATOR
# =============================================================================

class HealthAggregator:
    """
    Maintains per-integration health records and organization views.
    """

    def __init__(
        self,
        store: IntegrationStore,
        overdue_grace_factor: float = DEFAULT_OVERDUE_GRACE_FACTOR,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.overdue_grace_factor = overdue_grace_factor
        self._clock = clock

    async def recompute(self, integration_id: str) -> Optional[HealthRecord]:
        """
        Recompute and store health from the integration's sync logs.

        Returns:
            The new HealthRecord, or None if the integration is gone
        """
        integration = await self.store.get_integration(integration_id)
        if integration is None:
            return None

        now = self._clock()
        logs = await self.store.list_sync_logs(integration_id, limit=HISTORY_SCAN_LIMIT)
        previous = await self.store.get_health(integration_id)

        record = summarize_logs(integration_id, logs, now, previous)
        record.status = derive_health_status(record, integration, now, self.overdue_grace_factor)

        await self.store.upsert_health(record)

        if previous is not None and previous.status != record.status:
            logger.info(
                f"Integration health changed: integration={integration_id} "
                f"from={previous.status.value} to={record.status.value} "
                f"consecutive_failures={record.consecutive_failures} "
                f"success_rate_24h={record.success_rate_24h:.1f}"
            )
        return record

    async def _current(self, integration: Integration, now: datetime) -> HealthRecord:
        """Stored record with status re-derived for the current time."""
        record = await self.store.get_health(integration.id)
        if record is None:
            record = HealthRecord(integration_id=integration.id)
        record.status = derive_health_status(record, integration, now, self.overdue_grace_factor)
        return record

    async def _organization_views(self, organization_id: str) -> List[IntegrationHealthView]:
        now = self._clock()
        views = []
        for integration in await self.store.list_integrations(organization_id):
            views.append(IntegrationHealthView(
                integration_id=integration.id,
                integration_name=integration.name,
                provider=integration.provider,
                health=await self._current(integration, now),
            ))
        return views

    async def get_all_health(self, organization_id: str) -> List[IntegrationHealthView]:
        """Health for every integration, unhealthy first, then degraded, unknown, healthy."""
        views = await self._organization_views(organization_id)
        views.sort(key=lambda v: (STATUS_SEVERITY[v.health.status], v.integration_name.lower()))
        return views

    async def get_integration_health(self, organization_id: str,
                                     integration_id: str) -> IntegrationHealthView:
        """
        Raises:
            IntegrationNotFound: Missing or owned by another organization
        """
        integration = await self.store.get_integration(integration_id)
        if integration is None or integration.organization_id != organization_id:
            raise IntegrationNotFound(integration_id)
        return IntegrationHealthView(
            integration_id=integration.id,
            integration_name=integration.name,
            provider=integration.provider,
            health=await self._current(integration, self._clock()),
        )

    async def get_health_stats(self, organization_id: str) -> HealthStats:
        views = await self._organization_views(organization_id)
        stats = HealthStats(total_integrations=len(views))

        success_24h = failure_24h = success_7d = failure_7d = 0
        durations = []
        for view in views:
            health = view.health
            if health.status == HealthStatus.HEALTHY:
                stats.healthy_count += 1
            elif health.status == HealthStatus.DEGRADED:
                stats.degraded_count += 1
            elif health.status == HealthStatus.UNHEALTHY:
                stats.unhealthy_count += 1
            else:
                stats.unknown_count += 1

            success_24h += health.success_count_24h
            failure_24h += health.failure_count_24h
            success_7d += health.success_count_7d
            failure_7d += health.failure_count_7d
            if health.average_sync_duration_ms is not None:
                durations.append(health.average_sync_duration_ms)

        stats.overall_success_rate_24h = HealthRecord._rate(success_24h, failure_24h)
        stats.overall_success_rate_7d = HealthRecord._rate(success_7d, failure_7d)
        stats.total_syncs_24h = success_24h + failure_24h
        stats.total_failures_24h = failure_24h
        if durations:
            stats.average_sync_duration_ms = int(sum(durations) / len(durations))
        return stats

    async def get_recent_failures(self, organization_id: str, limit: int = 10) -> List[RecentFailure]:
        """Integrations currently failing, most recent error first (at most 50)."""
        limit = max(0, min(limit, MAX_RECENT_FAILURES))
        failures = []
        for view in await self._organization_views(organization_id):
            health = view.health
            if health.consecutive_failures > 0 and health.last_error_at is not None:
                failures.append(RecentFailure(
                    integration_id=view.integration_id,
                    integration_name=view.integration_name,
                    provider=view.provider,
                    error_message=health.last_error_message,
                    failed_at=health.last_error_at,
                    consecutive_failures=health.consecutive_failures,
                ))
        failures.sort(key=lambda f: f.failed_at, reverse=True)
        return failures[:limit]

    async def create_health_snapshot(self, organization_id: str) -> int:
        """
        Append a point-in-time snapshot of each integration's health.

        Returns:
            Number of snapshots written
        """
        now = self._clock()
        count = 0
        for view in await self._organization_views(organization_id):
            health = view.health
            await self.store.append_health_snapshot(HealthSnapshot(
                integration_id=view.integration_id,
                organization_id=organization_id,
                status=health.status,
                success_rate_24h=round(health.success_rate_24h, 2),
                average_sync_duration_ms=health.average_sync_duration_ms,
                error_count_24h=health.failure_count_24h,
                snapshot_at=now,
            ))
            count += 1

        logger.info(f"Created health snapshots: org={organization_id} count={count}")
        return count

    async def get_health_trend(self, organization_id: str, hours: int = 24) -> List[HealthTrendPoint]:
        """Snapshots from the last `hours`, bucketed by hour, oldest first."""
        since = self._clock() - timedelta(hours=hours)
        snapshots = await self.store.list_health_snapshots(organization_id, since=since)

        buckets: Dict[datetime, List[HealthSnapshot]] = defaultdict(list)
        for snapshot in snapshots:
            bucket = snapshot.snapshot_at.replace(minute=0, second=0, microsecond=0)
            buckets[bucket].append(snapshot)

        points = []
        for bucket in sorted(buckets):
            items = buckets[bucket]
            points.append(HealthTrendPoint(
                timestamp=bucket,
                healthy_count=sum(1 for s in items if s.status == HealthStatus.HEALTHY),
                degraded_count=sum(1 for s in items if s.status == HealthStatus.DEGRADED),
                unhealthy_count=sum(1 for s in items if s.status == HealthStatus.UNHEALTHY),
                success_rate=sum(s.success_rate_24h for s in items) / len(items),
            ))
        return points
