"""
Per-integration sync locks.

At most one sync runs for an integration at any time. Acquisition never
waits: a second caller fails fast with SyncAlreadyInProgress.

    lock = InProcessSyncLock()
    async with lock.hold(integration_id):
        ...
        await lock.extend(integration_id)   # at each retry boundary

InProcessSyncLock covers a single process; RedisSyncLock coordinates
several workers through a Redis lock with a TTL, so a crashed holder cannot
block an integration forever. The sync engine extends the lock before every
provider attempt, so the TTL only has to cover one attempt plus one backoff.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Set

from redis.exceptions import LockError

from .exceptions import SyncAlreadyInProgress, SyncCancelled

logger = logging.getLogger(__name__)


# Exceeds one 300s provider call plus the 300s maximum backoff
DEFAULT_LOCK_TTL_SECONDS = 900


class SyncLock(ABC):
    """Try-acquire lock keyed by integration id."""

    @abstractmethod
    async def _try_acquire(self, integration_id: str) -> Any:
        """Return a truthy token on success, None if already held."""
        ...

    @abstractmethod
    async def _release(self, integration_id: str, token: Any) -> None:
        ...

    async def extend(self, integration_id: str) -> None:
        """
        Renew the holder's lease; no-op for locks without expiry.

        Raises:
            SyncCancelled: The lock was lost and another sync may be running
        """

    @asynccontextmanager
    async def hold(self, integration_id: str) -> AsyncIterator[None]:
        """
        Hold the integration's lock for the duration of the block.

        Raises:
            SyncAlreadyInProgress: Lock is held by another sync
        """
        token = await self._try_acquire(integration_id)
        if not token:
            raise SyncAlreadyInProgress(integration_id)
        try:
            yield
        finally:
            await self._release(integration_id, token)


class InProcessSyncLock(SyncLock):
    """
    Lock table for a single event loop.

    Check-and-set happens without an await in between, so it is atomic
    with respect to other coroutines.
    """

    def __init__(self):
        self._held: Set[str] = set()

    def is_held(self, integration_id: str) -> bool:
        return integration_id in self._held

    async def _try_acquire(self, integration_id: str) -> Any:
        if integration_id in self._held:
            return None
        self._held.add(integration_id)
        return True

    async def _release(self, integration_id: str, token: Any) -> None:
        self._held.discard(integration_id)


class RedisSyncLock(SyncLock):
    """
    Distributed lock built on redis-py's Lock.

    Each extend() resets the TTL to its full value (Lock.reacquire). A lock
    that expired and was taken by another worker cannot be renewed; the
    sync is abandoned as cancelled.
    """

    def __init__(self, redis_client, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
                 prefix: str = "integration_sync_lock:"):
        self.redis = redis_client
        self.ttl = ttl_seconds
        self.prefix = prefix
        self._locks: Dict[str, Any] = {}

    def _make_key(self, integration_id: str) -> str:
        return f"{self.prefix}{integration_id}"

    async def _try_acquire(self, integration_id: str) -> Any:
        lock = self.redis.lock(self._make_key(integration_id), timeout=self.ttl, blocking=False)
        acquired = await lock.acquire()
        if not acquired:
            return None
        self._locks[integration_id] = lock
        return lock

    async def extend(self, integration_id: str) -> None:
        lock = self._locks.get(integration_id)
        if lock is None:
            return
        try:
            await lock.reacquire()
        except LockError as e:
            logger.error(
                f"Sync lock lost before renewal: integration={integration_id} ttl={self.ttl}s"
            )
            raise SyncCancelled(f"Sync lock for {integration_id} expired") from e

    async def _release(self, integration_id: str, token: Any) -> None:
        self._locks.pop(integration_id, None)
        try:
            await token.release()
        except LockError:
            # TTL elapsed; another worker may already hold it
            logger.warning(
                f"Sync lock expired before release: integration={integration_id} ttl={self.ttl}s"
            )
