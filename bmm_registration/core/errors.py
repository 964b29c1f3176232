# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Domain error taxonomy.
Every failure is scoped to one member or one batch item; none is fatal.
Each error knows the HTTP status the controllers surface it with.
"""

from typing import Any, Optional


class BmmError(Exception):
    """Base class for all registration-domain errors."""

    status_code: int = 400
    error_code: str = "bmm_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.error_code, "detail": self.message}
        payload.update({k: v for k, v in self.context.items() if v is not None})
        return payload


class NotFound(BmmError):
    """Unknown member, venue, slot, or job."""

    status_code = 404
    error_code = "not_found"


class InvalidTransition(BmmError):
    """Stage rule violated. Surfaced to the admin, never retried."""

    status_code = 409
    error_code = "invalid_transition"


class CapacityExceeded(BmmError):
    """Slot full. Carries a suggested alternate slot when one exists."""

    status_code = 409
    error_code = "capacity_exceeded"

    def __init__(
        self,
        message: str,
        slot_key: Optional[str] = None,
        suggested_slot: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, slot_key=slot_key, suggested_slot=suggested_slot)
        self.slot_key = slot_key
        self.suggested_slot = suggested_slot


class RegionMismatch(BmmError):
    """Venue is not in the member's region. Rejected, never silently reassigned."""

    status_code = 422
    error_code = "region_mismatch"


class TicketNotGenerated(BmmError):
    """A ticket send was requested before the ticket token exists."""

    status_code = 409
    error_code = "ticket_not_generated"


class NotificationSendFailed(BmmError):
    """Transient provider failure. Recorded on the NotificationRecord and retried."""

    status_code = 502
    error_code = "notification_send_failed"

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)
        self.retryable = retryable


class PartialBatchFailure(BmmError):
    """A bulk operation finished with a mix of outcomes."""

    status_code = 207
    error_code = "partial_batch_failure"

    def __init__(self, message: str, items: list[dict[str, Any]]) -> None:
        super().__init__(message)
        self.items = items

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["items"] = self.items
        return payload
