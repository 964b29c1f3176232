# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""Channel delivery handlers: email providers and the SMS export queue."""
import csv
import io
import threading
from typing import Any, Dict, List, NamedTuple, Optional

import httpx

from bmm_registration.core.config import settings
from bmm_registration.core.logging import get_logger
from bmm_registration.services.templates import RenderedMessage

logger = get_logger(__name__)


class SendResult(NamedTuple):
    ok: bool
    provider: str
    error: Optional[str] = None
    retryable: bool = True


def deliver_log_email(recipient: str, message: RenderedMessage, **kwargs) -> SendResult:
    logger.info("[MOCK EMAIL] To: %s | Subject: %s | Body: %s", recipient, message.subject, message.body)
    return SendResult(ok=True, provider="log")


def deliver_mailjet(recipient: str, message: RenderedMessage, name: str = None, **kwargs) -> SendResult:
    if not settings.MAILJET_API_KEY or not settings.MAILJET_API_SECRET:
        return SendResult(ok=False, provider="mailjet", error="Mailjet credentials not configured",
                          retryable=False)
    payload = {"Messages": [{
        "From": {"Email": settings.EMAIL_SENDER, "Name": "ETU BMM"},
        "To": [{"Email": recipient, "Name": name or recipient}],
        "Subject": message.subject,
        "TextPart": message.body,
    }]}
    try:
        with httpx.Client(timeout=settings.NOTIFICATION_TIMEOUT,
                          auth=(settings.MAILJET_API_KEY, settings.MAILJET_API_SECRET)) as client:
            resp = client.post(settings.MAILJET_API_URL, json=payload)
    except httpx.TimeoutException as exc:
        logger.warning("Mailjet timed out sending to %s: %s", recipient, exc)
        return SendResult(ok=False, provider="mailjet", error=f"timeout: {exc}")
    except httpx.HTTPError as exc:
        logger.error("Mailjet delivery failed: %s", exc)
        return SendResult(ok=False, provider="mailjet", error=str(exc))

    if resp.status_code < 300:
        logger.info("Mailjet accepted message to %s (status=%s)", recipient, resp.status_code)
        return SendResult(ok=True, provider="mailjet")
    # Client errors other than throttling will fail the same way on every retry.
    retryable = resp.status_code == 429 or resp.status_code >= 500
    logger.warning("Mailjet returned %s for %s", resp.status_code, recipient)
    return SendResult(ok=False, provider="mailjet",
                      error=f"HTTP {resp.status_code}: {resp.text[:200]}", retryable=retryable)


EMAIL_PROVIDERS = {
    "log": deliver_log_email,
    "mailjet": deliver_mailjet,
}


class SmsExportQueue:
    """SMS is not sent directly: rows queue up for export to the SMS gateway as CSV."""

    COLUMNS = ("member_id", "membership_number", "name", "mobile", "template_kind", "message", "queued_at")

    def __init__(self) -> None:
        self._rows: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def deliver(self, recipient: str, message: RenderedMessage, **kwargs) -> SendResult:
        row = {
            "member_id": kwargs.get("member_id"),
            "membership_number": kwargs.get("membership_number"),
            "name": kwargs.get("name"),
            "mobile": recipient,
            "template_kind": kwargs.get("template_kind"),
            "message": message.body,
            "queued_at": kwargs.get("queued_at"),
        }
        with self._lock:
            self._rows.append(row)
        logger.info("[SMS EXPORT] Queued %s for %s", row["template_kind"], recipient)
        return SendResult(ok=True, provider="sms_export")

    def pending(self) -> int:
        with self._lock:
            return len(self._rows)

    def export_csv(self, drain: bool = False) -> str:
        with self._lock:
            rows = list(self._rows)
            if drain:
                self._rows.clear()
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=self.COLUMNS)
        writer.writeheader()
        writer.writerows(rows)
        return buf.getvalue()

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()
