"""
Tests for per-integration sync locks.
"""

import logging

import pytest

from compliance_integrations.exceptions import SyncAlreadyInProgress, SyncCancelled
from compliance_integrations.locks import InProcessSyncLock, RedisSyncLock


class TestInProcessSyncLock:
    @pytest.mark.asyncio
    async def test_second_holder_rejected(self):
        lock = InProcessSyncLock()
        async with lock.hold("int-1"):
            assert lock.is_held("int-1")
            with pytest.raises(SyncAlreadyInProgress):
                async with lock.hold("int-1"):
                    pass
        assert not lock.is_held("int-1")

    @pytest.mark.asyncio
    async def test_other_integrations_unaffected(self):
        lock = InProcessSyncLock()
        async with lock.hold("int-1"):
            async with lock.hold("int-2"):
                assert lock.is_held("int-2")

    @pytest.mark.asyncio
    async def test_released_when_block_raises(self):
        lock = InProcessSyncLock()
        with pytest.raises(RuntimeError):
            async with lock.hold("int-1"):
                raise RuntimeError("provider exploded")
        assert not lock.is_held("int-1")

    @pytest.mark.asyncio
    async def test_extend_is_noop(self):
        lock = InProcessSyncLock()
        async with lock.hold("int-1"):
            await lock.extend("int-1")
            assert lock.is_held("int-1")


class TestRedisSyncLock:
    @pytest.mark.asyncio
    async def test_acquire_and_release(self, fake_redis):
        lock = RedisSyncLock(fake_redis, ttl_seconds=60)
        async with lock.hold("int-1"):
            assert "integration_sync_lock:int-1" in fake_redis.locks
        assert fake_redis.locks == {}

    @pytest.mark.asyncio
    async def test_held_elsewhere_rejected(self, fake_redis):
        await fake_redis.lock("integration_sync_lock:int-1", timeout=60).acquire()
        lock = RedisSyncLock(fake_redis)
        with pytest.raises(SyncAlreadyInProgress):
            async with lock.hold("int-1"):
                pass

    @pytest.mark.asyncio
    async def test_expired_lock_logged_not_raised(self, fake_redis, clock, caplog):
        lock = RedisSyncLock(fake_redis, ttl_seconds=5)
        with caplog.at_level(logging.WARNING, logger="compliance_integrations.locks"):
            async with lock.hold("int-1"):
                clock.advance(6)
        assert "expired before release" in caplog.text

    @pytest.mark.asyncio
    async def test_extend_keeps_lock_past_ttl(self, fake_redis, clock):
        lock = RedisSyncLock(fake_redis, ttl_seconds=5)
        other = RedisSyncLock(fake_redis, ttl_seconds=5)
        async with lock.hold("int-1"):
            for _ in range(4):
                clock.advance(4)
                await lock.extend("int-1")
            # 16s in, well past the original TTL
            with pytest.raises(SyncAlreadyInProgress):
                async with other.hold("int-1"):
                    pass
        assert fake_redis.locks == {}

    @pytest.mark.asyncio
    async def test_extend_after_takeover_cancels(self, fake_redis, clock, caplog):
        lock = RedisSyncLock(fake_redis, ttl_seconds=5)
        other = RedisSyncLock(fake_redis, ttl_seconds=5)
        with caplog.at_level(logging.WARNING, logger="compliance_integrations.locks"):
            async with lock.hold("int-1"):
                clock.advance(6)
                async with other.hold("int-1"):
                    with pytest.raises(SyncCancelled):
                        await lock.extend("int-1")
                    assert "integration_sync_lock:int-1" in fake_redis.locks
        assert "lost before renewal" in caplog.text

    @pytest.mark.asyncio
    async def test_extend_without_hold_is_noop(self, fake_redis):
        lock = RedisSyncLock(fake_redis, ttl_seconds=5)
        await lock.extend("int-1")
        assert fake_redis.locks == {}
