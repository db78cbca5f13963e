"""
Job leases: one worker at a time may run an attempt of a given job.

A lease is a Redis key holding a random token (SET NX PX). Renew and
release are token-guarded Lua scripts so a worker whose lease expired
cannot extend or delete the lease now held by the worker that re-picked
the job. While the attempt runs, a background thread renews the lease;
when renewal fails the lease's ``lost`` event is set and the job state
manager refuses further writes from this attempt.
"""

import logging
import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from threading import Event, Thread
from typing import Any, Optional, Protocol

from redis import Redis

from config import (
    JOB_LEASE_ACQUIRE_SECONDS,
    JOB_LEASE_JITTER_S,
    JOB_LEASE_KEY_PREFIX,
    JOB_LEASE_RETRY_INTERVAL_S,
    JOB_LEASE_TTL_MS,
)
from docproc_exceptions import JobLeaseError


class MetricsRecorder(Protocol):
    def increment(self, key: str, amount: int = 1) -> None: ...
    def observe_timing(self, key: str, value: float) -> None: ...


_RELEASE_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
else
  return 0
end
"""

_RENEW_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("PEXPIRE", KEYS[1], ARGV[2])
else
  return 0
end
"""


@dataclass
class JobLease:
    """
    A held job lease. Only the holder with the correct token can release/renew.
    """
    job_id: str
    key: str
    token: str
    ttl_ms: int
    lost: Event = field(default_factory=Event)
    _renew: Any = None
    _release: Any = None

    def renew(self, ttl_ms: Optional[int] = None) -> bool:
        return bool(self._renew(self, int(ttl_ms or self.ttl_ms)))

    def release(self) -> bool:
        return bool(self._release(self))

    @property
    def is_lost(self) -> bool:
        return self.lost.is_set()


class _LeaseManagerBase:
    def __init__(
        self,
        *,
        default_ttl_ms: int,
        logger: Optional[logging.Logger],
    ) -> None:
        self._default_ttl_ms = int(default_ttl_ms)
        self._logger = logger or logging.getLogger(__name__)

    def acquire(self, job_id: str, *, ttl_ms: Optional[int] = None) -> JobLease:
        raise NotImplementedError

    def _start_auto_renewer(self, lease: JobLease, *, interval_s: float) -> Event:
        stop_event = Event()

        def _loop() -> None:
            while not stop_event.wait(interval_s):
                ok = lease.renew()
                if not ok:
                    self._logger.critical(
                        "LEASE LOST: %s - another worker may own this job now", lease.key)
                    lease.lost.set()
                    stop_event.set()
                    break

        t = Thread(target=_loop, name=f"job-lease-renewer-{lease.job_id}", daemon=True)
        t.start()
        return stop_event

    def hold(
        self,
        job_id: str,
        *,
        ttl_ms: Optional[int] = None,
        auto_renew: bool = True,
        renew_interval_s: Optional[float] = None,
    ):
        """
        Context manager holding the lease for ``job_id`` for the duration
        of the block, renewing it in the background when ``auto_renew``.
        """
        manager = self

        class _Ctx:
            def __init__(self):
                self._lease: Optional[JobLease] = None
                self._stop: Optional[Event] = None

            def __enter__(self) -> JobLease:
                self._lease = manager.acquire(job_id, ttl_ms=ttl_ms)
                if auto_renew:
                    interval = float(renew_interval_s or max(
                        1.0, (self._lease.ttl_ms / 1000.0) / 3.0))
                    self._stop = manager._start_auto_renewer(
                        self._lease, interval_s=interval)
                return self._lease

            def __exit__(self, exc_type, exc, tb) -> None:
                if self._stop is not None:
                    self._stop.set()
                if self._lease is not None and not self._lease.is_lost:
                    self._lease.release()

        return _Ctx()


class RedisLeaseManager(_LeaseManagerBase):
    """
    Redis job leases:
      - Acquire via SET key token NX PX ttl
      - Release/renew guarded by token via Lua
    """

    def __init__(
        self,
        client: Redis,
        *,
        key_prefix: str = JOB_LEASE_KEY_PREFIX,
        default_ttl_ms: int = JOB_LEASE_TTL_MS,
        acquire_timeout_s: float = JOB_LEASE_ACQUIRE_SECONDS,
        retry_interval_s: float = JOB_LEASE_RETRY_INTERVAL_S,
        jitter_s: float = JOB_LEASE_JITTER_S,
        logger: Optional[logging.Logger] = None,
        metrics: Optional[MetricsRecorder] = None,
    ) -> None:
        super().__init__(default_ttl_ms=default_ttl_ms, logger=logger)
        if client is None:
            raise RuntimeError("redis client not provided")
        self._client = client
        self._key_prefix = key_prefix.rstrip(":")
        self._acquire_timeout_s = float(acquire_timeout_s)
        self._retry_interval_s = float(retry_interval_s)
        self._jitter_s = float(jitter_s)
        self._metrics = metrics
        self._release_script = self._client.register_script(_RELEASE_LUA)
        self._renew_script = self._client.register_script(_RENEW_LUA)

    def _key(self, job_id: str) -> str:
        return f"{self._key_prefix}:{job_id}"

    def _renew(self, lease: JobLease, ttl_ms: int) -> bool:
        try:
            ok = bool(self._renew_script(keys=[lease.key], args=[lease.token, str(ttl_ms)]))
        except Exception:  # pylint: disable=broad-except
            self._logger.exception("Job lease renew error: %s", lease.key)
            return False
        if not ok:
            self._logger.warning("Job lease renew failed (not owner?): %s", lease.key)
        return ok

    def _release(self, lease: JobLease) -> bool:
        try:
            ok = bool(self._release_script(keys=[lease.key], args=[lease.token]))
        except Exception:  # pylint: disable=broad-except
            self._logger.exception("Job lease release error: %s", lease.key)
            return False
        if not ok:
            self._logger.warning("Job lease release failed (not owner?): %s", lease.key)
        return ok

    def acquire(self, job_id: str, *, ttl_ms: Optional[int] = None) -> JobLease:
        """
        Blocking acquire with timeout. Raises JobLeaseError if another
        worker still holds the job when the timeout expires.
        """
        key = self._key(job_id)
        token = uuid.uuid4().hex
        ttl = int(ttl_ms or self._default_ttl_ms)

        attempts = 0
        start = time.monotonic()
        deadline = start + self._acquire_timeout_s
        while True:
            try:
                ok = self._client.set(name=key, value=token, nx=True, px=ttl)
            except Exception as e:
                raise JobLeaseError(
                    f"Job lease acquire failed for {job_id}: {e}") from e

            if ok:
                if self._metrics is not None:
                    self._metrics.increment("job_lease_acquire_total")
                    if attempts > 0:
                        self._metrics.increment("job_lease_contended_total")
                    self._metrics.observe_timing(
                        "job_lease_acquire_wait_seconds", time.monotonic() - start)
                return JobLease(
                    job_id=job_id,
                    key=key,
                    token=token,
                    ttl_ms=ttl,
                    _renew=self._renew,
                    _release=self._release,
                )

            if time.monotonic() >= deadline:
                raise JobLeaseError(
                    f"Job {job_id} is leased by another worker (key={key})",
                    details={"job_id": job_id},
                )

            attempts += 1
            time.sleep(self._retry_interval_s + random.random() * self._jitter_s)


class LocalLeaseManager(_LeaseManagerBase):
    """In-process lease manager for single-process runs and tests."""

    def __init__(
        self,
        *,
        default_ttl_ms: int = JOB_LEASE_TTL_MS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(default_ttl_ms=default_ttl_ms, logger=logger)
        self._lock = threading.Lock()
        self._held: dict[str, tuple[str, float]] = {}

    def _renew(self, lease: JobLease, ttl_ms: int) -> bool:
        with self._lock:
            current = self._held.get(lease.job_id)
            if current is None or current[0] != lease.token:
                return False
            self._held[lease.job_id] = (lease.token, time.monotonic() + ttl_ms / 1000.0)
            return True

    def _release(self, lease: JobLease) -> bool:
        with self._lock:
            current = self._held.get(lease.job_id)
            if current is None or current[0] != lease.token:
                return False
            del self._held[lease.job_id]
            return True

    def expire(self, job_id: str) -> None:
        """Drop a lease as if its TTL had lapsed."""
        with self._lock:
            self._held.pop(job_id, None)

    def acquire(self, job_id: str, *, ttl_ms: Optional[int] = None) -> JobLease:
        ttl = int(ttl_ms or self._default_ttl_ms)
        token = uuid.uuid4().hex
        now = time.monotonic()
        with self._lock:
            current = self._held.get(job_id)
            if current is not None and current[1] > now:
                raise JobLeaseError(
                    f"Job {job_id} is leased by another worker",
                    details={"job_id": job_id},
                )
            self._held[job_id] = (token, now + ttl / 1000.0)
        return JobLease(
            job_id=job_id,
            key=f"local:{job_id}",
            token=token,
            ttl_ms=ttl,
            _renew=self._renew,
            _release=self._release,
        )


LeaseManager = RedisLeaseManager | LocalLeaseManager


__all__ = [
    "JobLease",
    "RedisLeaseManager",
    "LocalLeaseManager",
    "LeaseManager",
]
