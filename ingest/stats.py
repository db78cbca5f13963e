"""
Thread-safe processing statistics shared by every job in the process.
"""
import threading
import uuid
from typing import Any


class ThreadSafeStats:
    def __init__(self):
        self._lock = threading.Lock()
        self._stats: dict[str, Any] = {
            "run_id": uuid.uuid4().hex,
            "jobs_completed": 0,
            "jobs_failed": 0,
            "jobs_retried": 0,
            "chunks_generated": 0,
            "chunks_embedded": 0,
            "chunks_upserted": 0,
            "chunks_skipped": 0,
            "failed_jobs": [],
        }

    def increment(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._stats[key] = self._stats.get(key, 0) + amount

    def append_failed(self, job_id: str) -> None:
        with self._lock:
            self._stats["failed_jobs"].append(job_id)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            snapshot = self._stats.copy()
            snapshot["failed_jobs"] = list(self._stats["failed_jobs"])
            return snapshot

    def observe_timing(self, key: str, value: float) -> None:
        with self._lock:
            count_key = f"{key}_count"
            sum_key = f"{key}_sum"
            max_key = f"{key}_max"
            self._stats[count_key] = self._stats.get(count_key, 0) + 1
            self._stats[sum_key] = self._stats.get(sum_key, 0.0) + float(value)
            current_max = self._stats.get(max_key, 0.0)
            if float(value) > float(current_max):
                self._stats[max_key] = float(value)
