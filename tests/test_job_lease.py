"""
Tests for job leases (local and Redis-backed).
"""

import pytest

from docproc_exceptions import JobLeaseError
from fakes import FakeRedis
from ingest.stats import ThreadSafeStats
from job_lease import LocalLeaseManager, RedisLeaseManager


class TestLocalLeaseManager:
    """In-process leases."""

    def setup_method(self):
        self.manager = LocalLeaseManager(default_ttl_ms=60_000)

    def test_second_acquire_is_rejected(self):
        lease = self.manager.acquire("job-1")

        with pytest.raises(JobLeaseError):
            self.manager.acquire("job-1")

        assert lease.release()
        assert self.manager.acquire("job-1").token != lease.token

    def test_stale_holder_cannot_renew_or_release(self):
        stale = self.manager.acquire("job-1")
        self.manager.expire("job-1")
        fresh = self.manager.acquire("job-1")

        assert not stale.renew()
        assert not stale.release()
        assert fresh.renew()
        assert fresh.release()

    def test_hold_releases_on_exit(self):
        with self.manager.hold("job-2", auto_renew=False) as lease:
            assert not lease.is_lost

        self.manager.acquire("job-2")

    def test_hold_releases_when_block_raises(self):
        with pytest.raises(RuntimeError):
            with self.manager.hold("job-3", auto_renew=False):
                raise RuntimeError("attempt failed")

        self.manager.acquire("job-3")


class TestRedisLeaseManager:
    """SET NX PX leases with token-guarded release."""

    def setup_method(self):
        self.redis = FakeRedis()
        self.stats = ThreadSafeStats()
        self.manager = RedisLeaseManager(
            self.redis, key_prefix="test:lease:", acquire_timeout_s=0, metrics=self.stats)

    def test_acquire_sets_token_key(self):
        lease = self.manager.acquire("job-9", ttl_ms=5000)

        assert lease.key == "test:lease:job-9"
        assert self.redis.store[lease.key] == lease.token
        assert lease.ttl_ms == 5000
        assert self.stats.get_stats()["job_lease_acquire_total"] == 1

    def test_conflict_raises(self):
        self.manager.acquire("job-9")

        with pytest.raises(JobLeaseError):
            self.manager.acquire("job-9")

    def test_release_deletes_only_own_key(self):
        lease = self.manager.acquire("job-9")
        self.redis.store[lease.key] = "someone-else"

        assert not lease.release()
        assert self.redis.store[lease.key] == "someone-else"

        self.redis.store[lease.key] = lease.token
        assert lease.release()
        assert lease.key not in self.redis.store

    def test_renew_requires_ownership(self):
        lease = self.manager.acquire("job-9")

        assert lease.renew()
        del self.redis.store[lease.key]
        assert not lease.renew()

    def test_client_error_becomes_lease_error(self):
        class BrokenRedis(FakeRedis):
            def set(self, name, value, nx=False, px=None):
                raise ConnectionError("redis down")

        manager = RedisLeaseManager(BrokenRedis(), acquire_timeout_s=0)

        with pytest.raises(JobLeaseError):
            manager.acquire("job-9")
