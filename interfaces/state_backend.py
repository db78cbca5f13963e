# StateBackend port
from __future__ import annotations

import json
import threading
import time
from typing import Any, Optional, Protocol, cast

from redis import Redis
from redis.exceptions import RedisError

from config.constant import JOB_STATE_KEY_PREFIX, JOB_STATE_TTL_SECONDS
from docproc_exceptions import StateStoreError


class StateBackend(Protocol):
    def load(self, job_id: str) -> Optional[dict[str, Any]]: ...
    def store(self, job_id: str, payload: dict[str, Any]) -> None: ...
    def delete(self, job_id: str) -> None: ...


def _decode(raw: Any) -> Optional[dict[str, Any]]:
    if isinstance(raw, (bytes, bytearray)):
        raw_text = raw.decode("utf-8")
    elif isinstance(raw, str):
        raw_text = raw
    else:
        return None
    try:
        payload = json.loads(raw_text)
    except (TypeError, json.JSONDecodeError):
        return None
    return cast(dict[str, Any], payload) if isinstance(payload, dict) else None


class RedisStateBackend:
    """Redis-backed job state using JSON-encoded records with a retention TTL."""

    def __init__(
        self,
        client: Redis,
        *,
        prefix: str = JOB_STATE_KEY_PREFIX,
        ttl_seconds: int = JOB_STATE_TTL_SECONDS,
    ):
        self._client = client
        self._prefix = prefix
        self._ttl_seconds = int(ttl_seconds)

    def _key(self, job_id: str) -> str:
        return f"{self._prefix}{job_id}"

    def load(self, job_id: str) -> Optional[dict[str, Any]]:
        try:
            raw = self._client.get(self._key(job_id))
        except RedisError as error:
            raise StateStoreError(
                f"Could not read job state for {job_id}: {error}") from error
        if not raw:
            return None
        return _decode(raw)

    def store(self, job_id: str, payload: dict[str, Any]) -> None:
        try:
            self._client.set(
                self._key(job_id),
                json.dumps(payload, ensure_ascii=False),
                ex=self._ttl_seconds,
            )
        except RedisError as error:
            raise StateStoreError(
                f"Could not write job state for {job_id}: {error}") from error

    def delete(self, job_id: str) -> None:
        try:
            self._client.delete(self._key(job_id))
        except RedisError as error:
            raise StateStoreError(
                f"Could not delete job state for {job_id}: {error}") from error


class InMemoryStateBackend:
    """Process-local state backend honouring the same TTL semantics."""

    def __init__(self, *, ttl_seconds: int = JOB_STATE_TTL_SECONDS):
        self._lock = threading.Lock()
        self._records: dict[str, tuple[float, str]] = {}
        self._ttl_seconds = int(ttl_seconds)
        self.writes = 0

    def load(self, job_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            entry = self._records.get(job_id)
            if entry is None:
                return None
            expires_at, raw = entry
            if time.monotonic() >= expires_at:
                del self._records[job_id]
                return None
        return _decode(raw)

    def store(self, job_id: str, payload: dict[str, Any]) -> None:
        raw = json.dumps(payload, ensure_ascii=False)
        with self._lock:
            self._records[job_id] = (time.monotonic() + self._ttl_seconds, raw)
            self.writes += 1

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._records.pop(job_id, None)


__all__ = [
    "StateBackend",
    "RedisStateBackend",
    "InMemoryStateBackend",
]
