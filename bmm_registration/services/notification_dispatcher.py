# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Service: Notification dispatch.
Routes each (member, template) to a channel, delivers with bounded retries
and records the outcome. A SENT record is never sent again unless forced,
so replays and re-clicked bulk runs cannot double-send.
"""

import threading
import time
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from bmm_registration.core.config import settings
from bmm_registration.core.errors import BmmError, TicketNotGenerated
from bmm_registration.core.logging import get_logger
from bmm_registration.metrics.prometheus import NOTIFICATION_DISPATCH, NOTIFICATIONS_SENT
from bmm_registration.models.domain import (
    Member,
    NotificationChannel,
    NotificationStatus,
    TemplateKind,
    has_mobile,
    is_usable_email,
)
from bmm_registration.repositories.notification_repository import NotificationRepository
from bmm_registration.services.channel_handlers import EMAIL_PROVIDERS, SendResult, SmsExportQueue
from bmm_registration.services.stage_ledger import StageLedger
from bmm_registration.services.templates import render

logger = get_logger(__name__)

SENT = "SENT"
ALREADY_SENT = "ALREADY_SENT"
FAILED = "FAILED"
ATTEMPTS_EXHAUSTED = "ATTEMPTS_EXHAUSTED"
UNREACHABLE = "UNREACHABLE"
ERROR = "ERROR"

# Fixed pool of per-(member, template) locks; unrelated keys may share a stripe.
KEY_LOCK_STRIPES = 256


def resolve_channel(member: Member) -> NotificationChannel:
    """Usable email first, then the SMS export queue, otherwise unreachable."""
    if is_usable_email(member.primary_email):
        return NotificationChannel.EMAIL
    if has_mobile(member.mobile):
        return NotificationChannel.SMS_EXPORT
    return NotificationChannel.NONE


class NotificationDispatcher:
    def __init__(
        self,
        ledger: StageLedger,
        repo: NotificationRepository,
        sms_queue: SmsExportQueue,
        email_providers: Optional[Dict[str, Callable[..., SendResult]]] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[float] = None,
        concurrency: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._ledger = ledger
        self._repo = repo
        self._sms = sms_queue
        self._providers = dict(email_providers or EMAIL_PROVIDERS)
        self._max_attempts = max_attempts or settings.NOTIFICATION_MAX_ATTEMPTS
        self._backoff = settings.NOTIFICATION_RETRY_BACKOFF if backoff is None else backoff
        self._concurrency = concurrency or settings.DISPATCH_CONCURRENCY
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=self._concurrency,
                                            thread_name_prefix="bmm-dispatch")
        self._key_locks = [threading.Lock() for _ in range(KEY_LOCK_STRIPES)]
        self._guard = threading.Lock()
        self._pending: set = set()

    # ── Single ──

    def dispatch(self, member_id: str, template_kind: "TemplateKind | str",
                 provider: Optional[str] = None, force: bool = False) -> Dict[str, Any]:
        """Deliver one template to one member.

        Returns an outcome dict; provider failures are recorded, not raised.
        Raises TicketNotGenerated for a TICKET send before the token exists.
        """
        if isinstance(template_kind, TemplateKind):
            kind = template_kind
        else:
            kind = TemplateKind(str(template_kind).strip().upper())
        provider_name = self._provider_name(provider)
        member = self._ledger.get_member(member_id)
        channel = resolve_channel(member)
        base = {"member_id": member_id, "template_kind": kind.value, "channel": channel.value}

        if channel == NotificationChannel.NONE:
            NOTIFICATIONS_SENT.labels(channel=channel.value, template_kind=kind.value,
                                      status="unreachable").inc()
            logger.warning("Member %s has no usable email or mobile; %s not sent",
                           member_id, kind.value, extra={"member_id": member_id})
            return {**base, "outcome": UNREACHABLE, "status": None, "attempt_count": 0}
        if kind == TemplateKind.TICKET and not member.ticket_token:
            raise TicketNotGenerated(
                f"Member '{member_id}' has no ticket yet", member_id=member_id
            )

        with self._key_lock(member_id, kind), NOTIFICATION_DISPATCH.time():
            record = self._repo.get(member_id, kind.value)
            if record and record["status"] == NotificationStatus.SENT.value and not force:
                return {**base, "outcome": ALREADY_SENT, "status": record["status"],
                        "attempt_count": record["attempt_count"]}
            if (record and record["status"] == NotificationStatus.FAILED.value
                    and record["attempt_count"] >= self._max_attempts and not force):
                return {**base, "outcome": ATTEMPTS_EXHAUSTED, "status": record["status"],
                        "attempt_count": record["attempt_count"], "error": record["last_error"]}

            now = _now()
            if channel == NotificationChannel.EMAIL:
                recipient = member.primary_email.strip()
                handler = self._providers[provider_name]
            else:
                recipient = member.mobile.strip()
                handler = self._sms.deliver
                provider_name = "sms_export"
            record = {
                **(record or {"created_at": now, "attempt_count": 0}),
                "member_id": member_id,
                "template_kind": kind.value,
                "channel": channel.value,
                "recipient": recipient,
                "provider": provider_name,
                "status": NotificationStatus.PENDING.value,
                "updated_at": now,
            }
            budget = self._max_attempts if force else self._max_attempts - record["attempt_count"]
            message = render(kind, self._context(member))
            result = SendResult(ok=False, provider=provider_name, error="not attempted")
            for attempt in range(1, max(budget, 1) + 1):
                result = self._attempt(handler, recipient, message, member, kind)
                record["attempt_count"] += 1
                record["last_attempt_at"] = _now()
                record["updated_at"] = record["last_attempt_at"]
                record["status"] = (NotificationStatus.SENT if result.ok else NotificationStatus.FAILED).value
                record["last_error"] = None if result.ok else result.error
                self._repo.upsert(record)
                NOTIFICATIONS_SENT.labels(channel=channel.value, template_kind=kind.value,
                                          status="sent" if result.ok else "failed").inc()
                if result.ok or not result.retryable or attempt >= budget:
                    break
                self._sleep(self._backoff * attempt)

        if result.ok:
            logger.info("Notification sent member=%s kind=%s channel=%s provider=%s",
                        member_id, kind.value, channel.value, provider_name,
                        extra={"member_id": member_id})
        else:
            logger.warning("Notification failed member=%s kind=%s after %d attempts: %s",
                           member_id, kind.value, record["attempt_count"], result.error,
                           extra={"member_id": member_id})
        return {**base, "outcome": SENT if result.ok else FAILED, "status": record["status"],
                "attempt_count": record["attempt_count"], "provider": provider_name,
                "error": record.get("last_error")}

    def submit(self, member_id: str, template_kind: "TemplateKind | str",
               provider: Optional[str] = None) -> Future:
        """Fire-and-forget dispatch; the caller never waits on the provider."""
        future = self._executor.submit(self._dispatch_logged, member_id, template_kind, provider)
        with self._guard:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    # ── Many ──

    def dispatch_many(self, member_ids: List[str], template_kind: "TemplateKind | str",
                      provider: Optional[str] = None, force: bool = False,
                      on_result: Optional[Callable[[Dict[str, Any]], None]] = None,
                      should_stop: Optional[Callable[[], bool]] = None) -> Dict[str, Any]:
        """Dispatch to many members on the bounded pool and aggregate outcomes."""
        self.validate_provider(provider)

        def one(member_id: str) -> Optional[Dict[str, Any]]:
            if should_stop is not None and should_stop():
                return None
            try:
                return self.dispatch(member_id, template_kind, provider=provider, force=force)
            except BmmError as exc:
                return {"member_id": member_id, "outcome": ERROR, **exc.to_dict()}
            except Exception as exc:
                logger.exception("Dispatch failed for member %s", member_id,
                                 extra={"member_id": member_id})
                return {"member_id": member_id, "outcome": ERROR,
                        "error": "internal_error", "detail": str(exc)}

        results: List[Dict[str, Any]] = []
        futures = [self._executor.submit(one, mid) for mid in dict.fromkeys(member_ids)]
        for future in as_completed(futures):
            result = future.result()
            if result is None:
                continue
            results.append(result)
            if on_result is not None:
                on_result(result)
        results.sort(key=lambda r: r["member_id"])
        outcomes = Counter(r["outcome"] for r in results)
        return {"total": len(results), "outcomes": dict(outcomes), "items": results}

    def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for fire-and-forget dispatches queued so far."""
        with self._guard:
            pending = list(self._pending)
        for future in pending:
            future.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ── Read ──

    def list_records(self, **filters) -> tuple:
        return self._repo.list_records(**filters)

    def get_stats(self) -> Dict[str, Any]:
        stats = self._repo.get_stats()
        stats["sms_export_pending"] = self._sms.pending()
        return stats

    def export_sms(self, drain: bool = False) -> str:
        return self._sms.export_csv(drain=drain)

    def validate_provider(self, provider: Optional[str]) -> str:
        """Raise ValueError for an unknown email provider name."""
        return self._provider_name(provider)

    # ── Internal ──

    def _provider_name(self, provider: Optional[str]) -> str:
        name = (provider or settings.DEFAULT_EMAIL_PROVIDER).lower()
        if name not in self._providers:
            raise ValueError(f"Unknown email provider '{provider}'. Allowed: {sorted(self._providers)}")
        return name

    def _attempt(self, handler, recipient: str, message, member: Member, kind: TemplateKind) -> SendResult:
        try:
            return handler(recipient, message, member_id=member.member_id,
                           membership_number=member.membership_number, name=member.name,
                           template_kind=kind.value, queued_at=_now())
        except Exception as exc:
            logger.error("Channel handler raised for member %s: %s", member.member_id, exc,
                         extra={"member_id": member.member_id})
            return SendResult(ok=False, provider=getattr(handler, "__name__", "handler"),
                              error=str(exc))

    def _dispatch_logged(self, member_id, template_kind, provider) -> Optional[Dict[str, Any]]:
        try:
            return self.dispatch(member_id, template_kind, provider=provider)
        except Exception:
            logger.exception("Background dispatch failed for member %s", member_id,
                             extra={"member_id": member_id})
            return None

    def _forget(self, future: Future) -> None:
        with self._guard:
            self._pending.discard(future)

    def _key_lock(self, member_id: str, kind: TemplateKind) -> threading.Lock:
        """Stripe shared by every dispatch of one (member, template)."""
        return self._key_locks[hash((member_id, kind.value)) % len(self._key_locks)]

    @staticmethod
    def _context(member: Member) -> Dict[str, Any]:
        assignment = member.assignment
        date_time = None
        year = datetime.now(timezone.utc).year
        if assignment is not None:
            date_time = assignment.slot_datetime.replace("T", " ")
            year = assignment.slot_datetime[:4]
        return {
            "name": member.name,
            "membershipNumber": member.membership_number,
            "region": member.region,
            "venue": assignment.venue if assignment else None,
            "dateTime": date_time,
            "ticketToken": member.ticket_token,
            "ticketLink": f"{settings.TICKET_BASE_URL}/{member.ticket_token}" if member.ticket_token else None,
            "registrationLink": f"{settings.REGISTRATION_BASE_URL}/{member.member_id}",
            "year": year,
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
