# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Controller: Member, preference and stage endpoints.
Thin HTTP layer; all logic lives in StageLedger / PreferenceStore / TicketService.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from bmm_registration.core.dependencies import (
    get_audit_repo,
    get_preference_store,
    get_stage_ledger,
    get_ticket_service,
)
from bmm_registration.models.domain import Stage
from bmm_registration.repositories.audit_repository import AuditRepository
from bmm_registration.schemas import (
    AttendanceDeclineRequest,
    AttendanceRequest,
    HistoryResponse,
    MemberImportRequest,
    MemberResponse,
    PreferenceSubmitRequest,
    StageAdvanceRequest,
)
from bmm_registration.services.preference_store import PreferenceStore
from bmm_registration.services.stage_ledger import StageLedger
from bmm_registration.services.ticket_service import TicketService

router = APIRouter(prefix="/api/v1/bmm", tags=["Members"])


# ── Members ──

@router.post("/members/import")
def import_members(
    payload: MemberImportRequest,
    ledger: StageLedger = Depends(get_stage_ledger),
):
    """Upsert members from the membership sync. New members start at INVITED."""
    return ledger.import_members([m.model_dump() for m in payload.members])


@router.get("/members", response_model=list[MemberResponse])
def list_members(
    region: Optional[str] = None,
    stage: Optional[str] = None,
    ledger: StageLedger = Depends(get_stage_ledger),
):
    """List members, optionally filtered by region and stage."""
    try:
        stage_filter = Stage.parse(stage) if stage else None
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return [MemberResponse.from_member(m) for m in ledger.list_members(region, stage_filter)]


@router.get("/members/{member_id}", response_model=MemberResponse)
def get_member(
    member_id: str,
    ledger: StageLedger = Depends(get_stage_ledger),
):
    return MemberResponse.from_member(ledger.get_member(member_id))


@router.get("/members/{member_id}/history", response_model=HistoryResponse)
def get_member_history(
    member_id: str,
    ledger: StageLedger = Depends(get_stage_ledger),
):
    """Full stage history for one member, oldest first."""
    member = ledger.get_member(member_id)
    return {"member_id": member.member_id, "stage": member.stage, "history": member.history}


# ── Preferences / Stage ──

@router.post("/members/{member_id}/preferences", response_model=MemberResponse)
def submit_preferences(
    member_id: str,
    payload: PreferenceSubmitRequest,
    store: PreferenceStore = Depends(get_preference_store),
):
    """Submit or replace a member's ranked venue preferences."""
    member = store.submit(
        member_id,
        payload.preferences,
        preferred_attending=payload.preferred_attending,
        special_vote_requested=payload.special_vote_requested,
    )
    return MemberResponse.from_member(member)


@router.post("/members/{member_id}/stage", response_model=MemberResponse)
def advance_stage(
    member_id: str,
    payload: StageAdvanceRequest,
    ledger: StageLedger = Depends(get_stage_ledger),
):
    """Advance one stage, or jump/regress with ``override`` (audited)."""
    evidence = {"reason": payload.reason} if payload.reason else {}
    member = ledger.advance(
        member_id, payload.target_stage, evidence, override=payload.override, actor=payload.actor,
    )
    return MemberResponse.from_member(member)


@router.post("/members/{member_id}/attendance", response_model=MemberResponse)
def confirm_attendance(
    member_id: str,
    payload: Optional[AttendanceRequest] = None,
    tickets: TicketService = Depends(get_ticket_service),
):
    """Confirm attendance; the ticket is issued and sent in the background."""
    payload = payload or AttendanceRequest()
    member = tickets.confirm_attendance(member_id, send_ticket=payload.send_ticket)
    return MemberResponse.from_member(member)


@router.post("/members/{member_id}/attendance/decline", response_model=MemberResponse)
def decline_attendance(
    member_id: str,
    payload: Optional[AttendanceDeclineRequest] = None,
    tickets: TicketService = Depends(get_ticket_service),
):
    """Decline an assigned seat; it is released at once."""
    payload = payload or AttendanceDeclineRequest()
    member = tickets.decline_attendance(
        member_id,
        special_vote_requested=payload.special_vote_requested,
        reason=payload.reason,
        actor=payload.actor,
    )
    return MemberResponse.from_member(member)


# ── Audit ──

@router.get("/audit")
def list_audit_events(
    member_id: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: int = Query(default=None, ge=1, description="Max results"),
    audit_repo: AuditRepository = Depends(get_audit_repo),
):
    """Admin audit log: stage overrides and other privileged actions."""
    return audit_repo.get_all(member_id=member_id, event_type=event_type, limit=limit)
