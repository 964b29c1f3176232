# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Controller: Tickets, check-in, notifications and statistics.
Thin HTTP layer; all logic lives in TicketService / NotificationDispatcher.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from starlette.responses import Response

from bmm_registration.core.dependencies import (
    get_dispatcher,
    get_statistics_service,
    get_ticket_service,
)
from bmm_registration.schemas import (
    BulkTicketRequest,
    CheckInRequest,
    DispatchRequest,
    MemberResponse,
    SyncProgressResponse,
)
from bmm_registration.services.notification_dispatcher import NotificationDispatcher
from bmm_registration.services.statistics_service import StatisticsService
from bmm_registration.services.ticket_service import TicketService

router = APIRouter(prefix="/api/v1/bmm", tags=["Tickets"])


# ── Tickets ──

@router.post("/members/{member_id}/generate-and-send")
def generate_and_send(
    member_id: str,
    provider: Optional[str] = Query(default=None, pattern="^(log|mailjet)$"),
    force: bool = False,
    tickets: TicketService = Depends(get_ticket_service),
):
    """Issue the member's ticket and email it now. A failed send keeps the ticket."""
    result = tickets.generate_and_send(member_id, provider=provider, force=force)
    return {
        "member": MemberResponse.from_member(result["member"]),
        "notification": result["notification"],
    }


@router.post("/tickets/bulk-generate", status_code=202, response_model=SyncProgressResponse)
def bulk_generate_tickets(
    payload: BulkTicketRequest,
    tickets: TicketService = Depends(get_ticket_service),
):
    """Start a background ticket run over explicit members or a whole region."""
    try:
        return tickets.bulk_generate(
            member_ids=payload.member_ids, region=payload.region,
            provider=payload.provider, force=payload.force,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/checkin", response_model=MemberResponse)
def check_in(
    payload: CheckInRequest,
    tickets: TicketService = Depends(get_ticket_service),
):
    """Scan a ticket at the door."""
    return MemberResponse.from_member(tickets.check_in(payload.ticket_token))


# ── Notifications ──

@router.get("/notifications")
def list_notifications(
    member_id: Optional[str] = None,
    status: Optional[str] = None,
    template_kind: Optional[str] = None,
    channel: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=50, ge=1, le=200),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Notification records with optional filtering and pagination."""
    total, records = dispatcher.list_records(
        member_id=member_id, status=status, template_kind=template_kind,
        channel=channel, page=page, per_page=per_page,
    )
    return {"total": total, "page": page, "per_page": per_page, "notifications": records}


@router.post("/notifications/dispatch")
def dispatch_notifications(
    payload: DispatchRequest,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Send one template to many members. Already-sent members are skipped unless forced."""
    try:
        return dispatcher.dispatch_many(
            payload.member_ids, payload.template_kind,
            provider=payload.provider, force=payload.force,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/sms/export")
def export_sms(
    drain: bool = False,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Queued SMS messages as CSV for the SMS gateway upload."""
    return Response(
        content=dispatcher.export_sms(drain=drain),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=bmm-sms-export.csv"},
    )


# ── Statistics ──

@router.get("/statistics")
def get_statistics(
    region: Optional[str] = None,
    service: StatisticsService = Depends(get_statistics_service),
):
    """Dashboard counts by stage, region, venue utilisation and notifications."""
    return service.get_statistics(region=region)
