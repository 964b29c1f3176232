# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Domain models: plain data structures, NO FastAPI dependency.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from bmm_registration.core.config import settings


class Stage(str, Enum):
    """Registration stages, in pipeline order."""

    INVITED = "INVITED"
    PREFERENCE_SUBMITTED = "PREFERENCE_SUBMITTED"
    VENUE_ASSIGNED = "VENUE_ASSIGNED"
    ATTENDANCE_CONFIRMED = "ATTENDANCE_CONFIRMED"
    TICKET_ISSUED = "TICKET_ISSUED"
    CHECKED_IN = "CHECKED_IN"

    @property
    def rank(self) -> int:
        return STAGE_ORDER.index(self)

    @classmethod
    def parse(cls, value: "str | Stage") -> "Stage":
        """Strict lookup; anything outside the enumeration is rejected."""
        if isinstance(value, Stage):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(
                f"Unknown stage '{value}'. Allowed: {[s.value for s in cls]}"
            ) from None


STAGE_ORDER: list[Stage] = list(Stage)

# Each stage has exactly one permitted successor. Anything else needs an override.
ALLOWED_TRANSITIONS: dict[Stage, set[Stage]] = {
    Stage.INVITED: {Stage.PREFERENCE_SUBMITTED},
    Stage.PREFERENCE_SUBMITTED: {Stage.VENUE_ASSIGNED},
    Stage.VENUE_ASSIGNED: {Stage.ATTENDANCE_CONFIRMED},
    Stage.ATTENDANCE_CONFIRMED: {Stage.TICKET_ISSUED},
    Stage.TICKET_ISSUED: {Stage.CHECKED_IN},
    Stage.CHECKED_IN: set(),
}


class ContactChannel(str, Enum):
    EMAIL = "EMAIL"
    SMS_ONLY = "SMS_ONLY"
    NONE = "NONE"


class NotificationChannel(str, Enum):
    EMAIL = "EMAIL"
    SMS_EXPORT = "SMS_EXPORT"
    NONE = "NONE"


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class TemplateKind(str, Enum):
    INVITATION = "INVITATION"
    ATTENDANCE_REQUEST = "ATTENDANCE_REQUEST"
    TICKET = "TICKET"
    SPECIAL_VOTE = "SPECIAL_VOTE"


class AssignmentSource(str, Enum):
    MANUAL = "MANUAL"
    AUTO = "AUTO"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_slot_datetime(value: str) -> str:
    """Canonical slot datetime: ``YYYY-MM-DDTHH:MM`` (seconds and tz dropped)."""
    try:
        parsed = datetime.fromisoformat(str(value).strip())
    except ValueError:
        raise ValueError(f"Invalid slot datetime '{value}'") from None
    return parsed.strftime("%Y-%m-%dT%H:%M")


def slot_key(venue: str, slot_datetime: str) -> str:
    return f"{venue}|{normalize_slot_datetime(slot_datetime)}"


def is_usable_email(email: Optional[str]) -> bool:
    """Non-empty and not a placeholder minted by the membership sync."""
    if not email or not email.strip():
        return False
    return re.search(settings.TEMP_EMAIL_PATTERN, email.strip(), re.IGNORECASE) is None


def has_mobile(mobile: Optional[str]) -> bool:
    return bool(mobile and mobile.strip())


class Preference(BaseModel):
    """One ranked choice. Date/time narrow the choice to specific slots."""

    venue: str = Field(..., min_length=1, max_length=255)
    date: Optional[str] = Field(default=None, description="YYYY-MM-DD")
    time: Optional[str] = Field(default=None, description="HH:MM")

    def matches(self, slot_datetime: str) -> bool:
        date, _, time = slot_datetime.partition("T")
        if self.date and date != self.date:
            return False
        if self.time and time != self.time:
            return False
        return True


class Slot(BaseModel):
    date: str = Field(..., description="YYYY-MM-DD")
    time: str = Field(..., description="HH:MM")
    capacity: int = Field(..., ge=0)

    @property
    def slot_datetime(self) -> str:
        return normalize_slot_datetime(f"{self.date}T{self.time}")


class Venue(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    region: str = Field(..., min_length=1, max_length=100)
    address: Optional[str] = None
    slots: list[Slot] = Field(default_factory=list)


class Assignment(BaseModel):
    member_id: str
    venue: str
    slot_datetime: str
    source: AssignmentSource
    applied_at: str = Field(default_factory=utcnow_iso)

    @property
    def slot_key(self) -> str:
        return slot_key(self.venue, self.slot_datetime)


class HistoryEntry(BaseModel):
    """Immutable audit record of one stage change or flagged event."""

    event_id: str
    event_type: str
    from_stage: Optional[Stage] = None
    to_stage: Optional[Stage] = None
    actor: str = "system"
    evidence: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=utcnow_iso)

    model_config = {"frozen": True}


class Member(BaseModel):
    member_id: str
    membership_number: str
    name: str
    region: str
    primary_email: Optional[str] = None
    mobile: Optional[str] = None
    stage: Stage = Stage.INVITED
    preferred_attending: Optional[bool] = None
    preferences: list[Preference] = Field(default_factory=list)
    assignment: Optional[Assignment] = None
    special_vote_eligible: bool = False
    special_vote_requested: bool = False
    ticket_token: Optional[str] = None
    qr_payload: Optional[str] = None
    ticket_generated_at: Optional[str] = None
    checked_in_at: Optional[str] = None
    created_at: str = Field(default_factory=utcnow_iso)
    updated_at: Optional[str] = None
    history: list[HistoryEntry] = Field(default_factory=list)

    @property
    def contact_channel(self) -> ContactChannel:
        if is_usable_email(self.primary_email):
            return ContactChannel.EMAIL
        if has_mobile(self.mobile):
            return ContactChannel.SMS_ONLY
        return ContactChannel.NONE

    @property
    def is_attending_eligible(self) -> bool:
        """``None`` means the member never answered, which still counts as eligible."""
        return self.preferred_attending is not False
