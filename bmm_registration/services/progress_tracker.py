# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Service: Sync progress tracker.
Runs long bulk operations on a worker pool and exposes pollable progress
(processed / total / percentage / errors) plus cooperative cancellation.
"""

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from bmm_registration.core.config import settings
from bmm_registration.core.errors import InvalidTransition, NotFound
from bmm_registration.core.logging import get_logger
from bmm_registration.metrics.prometheus import JOBS_ACTIVE, JOBS_FINISHED
from bmm_registration.repositories.job_repository import FINISHED_STATUSES, JobRepository

logger = get_logger(__name__)


class JobHandle:
    """What a running job sees: progress reporting and the cancel flag."""

    def __init__(self, tracker: "SyncProgressTracker", sync_id: str) -> None:
        self._tracker = tracker
        self.sync_id = sync_id

    @property
    def cancelled(self) -> bool:
        return self._tracker._cancel_flag(self.sync_id).is_set()

    def set_total(self, total: int) -> None:
        self._tracker._jobs.update(self.sync_id, total=total)

    def advance(self, ok: bool = True, count: int = 1) -> None:
        self._tracker._advance(self.sync_id, ok, count)

    def message(self, text: str) -> None:
        self._tracker._jobs.update(self.sync_id, message=text)


class SyncProgressTracker:
    def __init__(self, job_repo: JobRepository, max_workers: Optional[int] = None) -> None:
        self._jobs = job_repo
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.JOB_WORKERS,
            thread_name_prefix="bmm-job",
        )
        self._futures: dict[str, Future] = {}
        self._cancel_flags: dict[str, threading.Event] = {}
        self._lock = threading.RLock()

    # ── Lifecycle ──

    def start(
        self,
        sync_type: str,
        fn: Callable[[JobHandle], Any],
        total: int = 0,
        created_by: str = "admin",
    ) -> dict[str, Any]:
        """Queue ``fn`` and return its progress record immediately."""
        sync_id = str(uuid.uuid4())
        record = {
            "sync_id": sync_id,
            "sync_type": sync_type,
            "status": "PENDING",
            "processed": 0,
            "total": total,
            "error_count": 0,
            "message": None,
            "result": None,
            "created_by": created_by,
            "created_at": _now(),
            "started_at": None,
            "finished_at": None,
        }
        self._jobs.save(record)
        with self._lock:
            self._cancel_flags[sync_id] = threading.Event()
            JOBS_ACTIVE.inc()
            self._futures[sync_id] = self._executor.submit(self._run, sync_id, fn)
        logger.info("Job queued: %s (%s)", sync_type, sync_id, extra={"sync_id": sync_id})
        return self.get(sync_id)

    def get(self, sync_id: str) -> dict[str, Any]:
        record = self._jobs.get(sync_id)
        if record is None:
            raise NotFound(f"Sync job '{sync_id}' not found", sync_id=sync_id)
        return _with_percentage(record)

    def list_jobs(self, sync_type: Optional[str] = None) -> list[dict[str, Any]]:
        records = sorted(self._jobs.get_all(sync_type=sync_type), key=lambda r: r["created_at"])
        return [_with_percentage(r) for r in records]

    def cancel(self, sync_id: str) -> dict[str, Any]:
        """Stop a job at its next checkpoint. In-flight member operations complete."""
        with self._lock:
            record = self.get(sync_id)
            if record["status"] in FINISHED_STATUSES:
                raise InvalidTransition(
                    f"Job '{sync_id}' already finished with status {record['status']}",
                    sync_id=sync_id,
                )
            self._cancel_flag(sync_id).set()
            self._jobs.update(sync_id, status="CANCELLED", message="Cancellation requested")
        logger.warning("Job cancellation requested: %s", sync_id, extra={"sync_id": sync_id})
        return self.get(sync_id)

    def wait(self, sync_id: str, timeout: Optional[float] = None) -> dict[str, Any]:
        """Block until the job's worker returns. Used by tests and the CLI."""
        with self._lock:
            future = self._futures.get(sync_id)
        if future is None:
            return self.get(sync_id)
        future.result(timeout=timeout)
        return self.get(sync_id)

    def shutdown(self, wait: bool = True) -> None:
        for flag in list(self._cancel_flags.values()):
            flag.set()
        self._executor.shutdown(wait=wait)

    # ── Internal ──

    def _run(self, sync_id: str, fn: Callable[[JobHandle], Any]) -> None:
        handle = JobHandle(self, sync_id)
        record = self._jobs.get(sync_id)
        if record and record["status"] == "PENDING":
            self._jobs.update(sync_id, status="IN_PROGRESS", started_at=_now())
        status = "FAILED"
        try:
            result = fn(handle)
        except Exception as exc:
            logger.exception("Job %s failed", sync_id, extra={"sync_id": sync_id})
            self._jobs.update(sync_id, status="FAILED", message=str(exc), finished_at=_now())
        else:
            with self._lock:
                status = "CANCELLED" if handle.cancelled else "COMPLETED"
                self._jobs.update(sync_id, status=status, result=result, finished_at=_now())
            logger.info("Job %s finished: %s", sync_id, status, extra={"sync_id": sync_id})
        finally:
            record = self._jobs.get(sync_id) or {}
            JOBS_ACTIVE.dec()
            JOBS_FINISHED.labels(
                sync_type=record.get("sync_type", "unknown"),
                status=record.get("status", status),
            ).inc()

    def _advance(self, sync_id: str, ok: bool, count: int) -> None:
        with self._lock:
            record = self._jobs.get(sync_id)
            if record is None:
                return
            changes = {"processed": record["processed"] + count}
            if not ok:
                changes["error_count"] = record["error_count"] + count
            self._jobs.update(sync_id, **changes)

    def _cancel_flag(self, sync_id: str) -> threading.Event:
        with self._lock:
            flag = self._cancel_flags.get(sync_id)
            if flag is None:
                flag = self._cancel_flags[sync_id] = threading.Event()
            return flag


def _with_percentage(record: dict[str, Any]) -> dict[str, Any]:
    total = record.get("total") or 0
    processed = record.get("processed") or 0
    if total:
        percentage = round(min(processed / total, 1.0) * 100, 1)
    else:
        percentage = 100.0 if record["status"] == "COMPLETED" else 0.0
    return {**record, "percentage": percentage}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
