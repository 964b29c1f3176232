# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Request / Response schemas: the API contract.
These are Pydantic models used ONLY at the controller (HTTP) boundary.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from bmm_registration.models.domain import (
    Assignment,
    HistoryEntry,
    Member,
    Preference,
    Slot,
    Stage,
    TemplateKind,
    normalize_slot_datetime,
)

VALID_PROVIDERS = ("log", "mailjet")


def _normalise_provider(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.lower().strip()
    if v not in VALID_PROVIDERS:
        raise ValueError(f"provider must be one of {VALID_PROVIDERS}")
    return v


# ── Member Schemas ──

class MemberImportRecord(BaseModel):
    member_id: str = Field(..., min_length=1, max_length=64)
    membership_number: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    region: str = Field(..., min_length=1, max_length=100)
    primary_email: Optional[str] = Field(default=None, max_length=255)
    mobile: Optional[str] = Field(default=None, max_length=32)

    @field_validator("member_id", "membership_number", "region")
    @classmethod
    def strip(cls, v: str) -> str:
        return v.strip()


class MemberImportRequest(BaseModel):
    members: list[MemberImportRecord] = Field(..., min_length=1)


class MemberResponse(BaseModel):
    member_id: str
    membership_number: str
    name: str
    region: str
    primary_email: Optional[str] = None
    mobile: Optional[str] = None
    contact_channel: str
    stage: Stage
    preferred_attending: Optional[bool] = None
    preferences: list[Preference]
    assignment: Optional[Assignment] = None
    special_vote_eligible: bool
    special_vote_requested: bool
    ticket_token: Optional[str] = None
    qr_payload: Optional[str] = None
    ticket_generated_at: Optional[str] = None
    checked_in_at: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None

    @classmethod
    def from_member(cls, member: Member) -> "MemberResponse":
        data = member.model_dump(exclude={"history"})
        data["contact_channel"] = member.contact_channel.value
        return cls(**data)


class PreferenceSubmitRequest(BaseModel):
    preferences: list[Preference] = Field(default_factory=list, max_length=10)
    preferred_attending: Optional[bool] = None
    special_vote_requested: bool = False

    @field_validator("preferences")
    @classmethod
    def strip_venues(cls, v: list[Preference]) -> list[Preference]:
        for pref in v:
            pref.venue = pref.venue.strip()
        return v


class StageAdvanceRequest(BaseModel):
    target_stage: str = Field(..., min_length=1)
    override: bool = False
    actor: str = Field(default="admin", min_length=1, max_length=255)
    reason: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("target_stage")
    @classmethod
    def normalise_stage(cls, v: str) -> str:
        return Stage.parse(v).value


class AttendanceRequest(BaseModel):
    send_ticket: bool = True


class AttendanceDeclineRequest(BaseModel):
    special_vote_requested: bool = False
    reason: Optional[str] = Field(default=None, max_length=1000)
    actor: str = Field(default="member", min_length=1, max_length=255)


# ── Venue Schemas ──

class VenueCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    region: str = Field(..., min_length=1, max_length=100)
    address: Optional[str] = Field(default=None, max_length=500)
    slots: list[Slot] = Field(..., min_length=1)

    @field_validator("slots")
    @classmethod
    def validate_slots(cls, v: list[Slot]) -> list[Slot]:
        seen = set()
        for slot in v:
            key = slot.slot_datetime
            if key in seen:
                raise ValueError(f"duplicate slot {key}")
            seen.add(key)
        return v


class ManualAssignRequest(BaseModel):
    member_id: str = Field(..., min_length=1)
    venue: str = Field(..., min_length=1)
    datetime: str = Field(..., description="Slot start, ISO-8601 (YYYY-MM-DDTHH:MM)")

    @field_validator("datetime")
    @classmethod
    def normalise_datetime(cls, v: str) -> str:
        return normalize_slot_datetime(v)


class BulkAssignRequest(BaseModel):
    assignments: list[ManualAssignRequest] = Field(..., min_length=1, max_length=5000)


class AutoAssignRequest(BaseModel):
    region: Optional[str] = None
    replace_existing: bool = False


# ── Ticket / Notification Schemas ──

class BulkTicketRequest(BaseModel):
    member_ids: Optional[list[str]] = None
    region: Optional[str] = None
    provider: Optional[str] = None
    force: bool = False

    @field_validator("provider")
    @classmethod
    def normalise_provider(cls, v: Optional[str]) -> Optional[str]:
        return _normalise_provider(v)


class DispatchRequest(BaseModel):
    member_ids: list[str] = Field(..., min_length=1)
    template_kind: TemplateKind
    provider: Optional[str] = None
    force: bool = False

    @field_validator("provider")
    @classmethod
    def normalise_provider(cls, v: Optional[str]) -> Optional[str]:
        return _normalise_provider(v)

    @field_validator("template_kind", mode="before")
    @classmethod
    def normalise_kind(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v


class CheckInRequest(BaseModel):
    ticket_token: str = Field(..., min_length=1)


# ── Job Schemas ──

class SyncProgressResponse(BaseModel):
    sync_id: str
    sync_type: str
    status: str
    processed: int
    total: int
    percentage: float
    error_count: int
    message: Optional[str] = None
    result: Optional[Any] = None
    created_by: Optional[str] = None
    created_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class HistoryResponse(BaseModel):
    member_id: str
    stage: Stage
    history: list[HistoryEntry]


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
    request_id: Optional[str] = None
