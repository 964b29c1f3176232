# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Repository: Admin audit log.
Bounded append-only log for stage overrides and batch operations,
kept apart from the per-member stage history.
"""

import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from bmm_registration.core.config import settings


class AuditRepository:
    """In-memory audit log (bounded ring buffer)."""

    def __init__(self) -> None:
        self._events: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    # ── Read ──

    def get_all(
        self,
        member_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        effective_limit = limit or settings.DEFAULT_HISTORY_LIMIT
        with self._lock:
            result = list(self._events)
        if member_id:
            result = [e for e in result if e["member_id"] == member_id]
        if event_type:
            result = [e for e in result if e["event_type"] == event_type]
        return result[-effective_limit:]

    def count(self) -> int:
        return len(self._events)

    # ── Write ──

    def record_event(
        self, event_type: str, member_id: Optional[str], details: dict[str, Any]
    ) -> dict[str, Any]:
        """Append an event, trimming the oldest entries past the size cap."""
        event: dict[str, Any] = {
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "member_id": member_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details,
        }
        with self._lock:
            self._events.append(event)
            if len(self._events) > settings.MAX_HISTORY_SIZE:
                del self._events[: len(self._events) - settings.MAX_HISTORY_SIZE]
        return event

    # ── Bulk / internal ──

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
