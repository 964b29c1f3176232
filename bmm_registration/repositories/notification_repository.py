# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Data-access layer for notification records.
One row per (member_id, template_kind), the idempotency key for replays.
"""
import threading
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine

from bmm_registration.core.logging import get_logger

logger = get_logger(__name__)

RECORD_COLS = (
    "member_id, template_kind, channel, recipient, provider, status, "
    "attempt_count, last_attempt_at, last_error, created_at, updated_at"
)

CREATE_TABLE = """
    CREATE TABLE IF NOT EXISTS notification_records (
        member_id       VARCHAR(64)  NOT NULL,
        template_kind   VARCHAR(32)  NOT NULL,
        channel         VARCHAR(16)  NOT NULL,
        recipient       VARCHAR(255),
        provider        VARCHAR(32),
        status          VARCHAR(16)  NOT NULL,
        attempt_count   INTEGER      NOT NULL DEFAULT 0,
        last_attempt_at VARCHAR(40),
        last_error      TEXT,
        created_at      VARCHAR(40)  NOT NULL,
        updated_at      VARCHAR(40),
        PRIMARY KEY (member_id, template_kind)
    )
"""


def _row_to_dict(row) -> Dict[str, Any]:
    return {
        "member_id": row["member_id"],
        "template_kind": row["template_kind"],
        "channel": row["channel"],
        "recipient": row["recipient"],
        "provider": row["provider"],
        "status": row["status"],
        "attempt_count": row["attempt_count"] or 0,
        "last_attempt_at": row["last_attempt_at"],
        "last_error": row["last_error"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


class NotificationRepository:
    def __init__(self, engine: Engine):
        self._engine = engine
        self._lock = threading.RLock()
        self._schema_ready = False

    def init_schema(self) -> None:
        with self._lock, self._engine.begin() as conn:
            conn.execute(text(CREATE_TABLE))
            self._schema_ready = True

    def _ensure_schema(self) -> None:
        if not self._schema_ready:
            self.init_schema()

    # ── Read ───────────────────────────────────────────────────────────

    def get(self, member_id: str, template_kind: str) -> Optional[Dict[str, Any]]:
        self._ensure_schema()
        with self._lock, self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT {RECORD_COLS} FROM notification_records "
                     "WHERE member_id = :mid AND template_kind = :kind"),
                {"mid": member_id, "kind": template_kind},
            ).mappings().first()
        return _row_to_dict(row) if row else None

    def list_records(self, member_id: Optional[str] = None, status: Optional[str] = None,
                     template_kind: Optional[str] = None, channel: Optional[str] = None,
                     page: int = 1, per_page: int = 50) -> Tuple[int, List[Dict[str, Any]]]:
        conditions: list[str] = []
        params: Dict[str, Any] = {}
        if member_id:
            conditions.append("member_id = :member_id")
            params["member_id"] = member_id
        if status:
            conditions.append("status = :status")
            params["status"] = status.upper()
        if template_kind:
            conditions.append("template_kind = :template_kind")
            params["template_kind"] = template_kind.upper()
        if channel:
            conditions.append("channel = :channel")
            params["channel"] = channel.upper()
        where = ("WHERE " + " AND ".join(conditions)) if conditions else ""

        self._ensure_schema()
        with self._lock, self._engine.connect() as conn:
            total = conn.execute(
                text(f"SELECT COUNT(*) FROM notification_records {where}"), params
            ).scalar() or 0
            params["limit"] = per_page
            params["offset"] = (page - 1) * per_page
            rows = conn.execute(
                text(f"""
                    SELECT {RECORD_COLS} FROM notification_records {where}
                    ORDER BY created_at, member_id, template_kind
                    LIMIT :limit OFFSET :offset
                """),
                params,
            ).mappings().all()
        return total, [_row_to_dict(r) for r in rows]

    def get_stats(self) -> Dict[str, Any]:
        self._ensure_schema()
        with self._lock, self._engine.connect() as conn:
            status_rows = conn.execute(text(
                "SELECT status, COUNT(*) AS cnt FROM notification_records GROUP BY status"
            )).mappings().all()
            channel_rows = conn.execute(text(
                "SELECT channel, COUNT(*) AS cnt FROM notification_records GROUP BY channel"
            )).mappings().all()
            kind_rows = conn.execute(text(
                "SELECT template_kind, COUNT(*) AS cnt FROM notification_records GROUP BY template_kind"
            )).mappings().all()
        by_status = {r["status"]: r["cnt"] for r in status_rows}
        return {
            "total": sum(by_status.values()),
            "sent": by_status.get("SENT", 0),
            "failed": by_status.get("FAILED", 0),
            "pending": by_status.get("PENDING", 0),
            "by_channel": {r["channel"]: r["cnt"] for r in channel_rows},
            "by_template": {r["template_kind"]: r["cnt"] for r in kind_rows},
        }

    def count_all(self) -> int:
        self._ensure_schema()
        with self._lock, self._engine.connect() as conn:
            return conn.execute(text("SELECT COUNT(*) FROM notification_records")).scalar() or 0

    def verify_connection(self) -> int:
        return self.count_all()

    # ── Write ──────────────────────────────────────────────────────────

    def upsert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or update the row for (member_id, template_kind)."""
        params = {
            "mid": record["member_id"],
            "kind": record["template_kind"],
            "channel": record["channel"],
            "recipient": record.get("recipient"),
            "provider": record.get("provider"),
            "status": record["status"],
            "attempts": record.get("attempt_count", 0),
            "last_attempt_at": record.get("last_attempt_at"),
            "last_error": record.get("last_error"),
            "created_at": record["created_at"],
            "updated_at": record.get("updated_at"),
        }
        self._ensure_schema()
        with self._lock, self._engine.begin() as conn:
            exists = conn.execute(
                text("SELECT 1 FROM notification_records WHERE member_id = :mid AND template_kind = :kind"),
                {"mid": params["mid"], "kind": params["kind"]},
            ).fetchone()
            if exists:
                conn.execute(
                    text("""
                        UPDATE notification_records
                        SET channel = :channel, recipient = :recipient, provider = :provider,
                            status = :status, attempt_count = :attempts,
                            last_attempt_at = :last_attempt_at, last_error = :last_error,
                            updated_at = :updated_at
                        WHERE member_id = :mid AND template_kind = :kind
                    """),
                    params,
                )
            else:
                conn.execute(
                    text("""
                        INSERT INTO notification_records
                            (member_id, template_kind, channel, recipient, provider, status,
                             attempt_count, last_attempt_at, last_error, created_at, updated_at)
                        VALUES
                            (:mid, :kind, :channel, :recipient, :provider, :status,
                             :attempts, :last_attempt_at, :last_error, :created_at, :updated_at)
                    """),
                    params,
                )
        return record

    # ── Bulk / internal ────────────────────────────────────────────────

    def clear(self) -> None:
        self._ensure_schema()
        with self._lock, self._engine.begin() as conn:
            conn.execute(text("DELETE FROM notification_records"))

    def dispose(self):
        self._engine.dispose()
