# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Repository: Sync progress records.
Bounded store of background-job progress, oldest finished jobs evicted first.
"""

import threading
from typing import Any, Optional

from bmm_registration.core.config import settings

FINISHED_STATUSES = ("COMPLETED", "FAILED", "CANCELLED")


class JobRepository:
    """In-memory job progress storage."""

    def __init__(self) -> None:
        self._store: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    # ── Read ──

    def get(self, sync_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            record = self._store.get(sync_id)
            return dict(record) if record is not None else None

    def get_all(self, sync_type: Optional[str] = None) -> list[dict[str, Any]]:
        with self._lock:
            records = [dict(r) for r in self._store.values()]
        if sync_type:
            records = [r for r in records if r["sync_type"] == sync_type]
        return records

    def count_active(self) -> int:
        with self._lock:
            return sum(1 for r in self._store.values() if r["status"] not in FINISHED_STATUSES)

    # ── Write ──

    def save(self, record: dict[str, Any]) -> None:
        with self._lock:
            self._store[record["sync_id"]] = dict(record)
            self._evict()

    def update(self, sync_id: str, **changes: Any) -> Optional[dict[str, Any]]:
        with self._lock:
            record = self._store.get(sync_id)
            if record is None:
                return None
            record.update(changes)
            return dict(record)

    # ── Bulk / internal ──

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def _evict(self) -> None:
        overflow = len(self._store) - settings.MAX_JOB_HISTORY
        if overflow <= 0:
            return
        finished = [k for k, r in self._store.items() if r["status"] in FINISHED_STATUSES]
        for key in finished[:overflow]:
            del self._store[key]
