# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Service: Attendance confirmation, tickets and check-in.
A ticket is valid as soon as its token exists; delivering it is a separate,
retryable concern owned by the NotificationDispatcher.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from bmm_registration.core.config import settings
from bmm_registration.core.errors import InvalidTransition, NotFound
from bmm_registration.core.logging import get_logger
from bmm_registration.metrics.prometheus import TICKETS_GENERATED
from bmm_registration.models.domain import Member, Stage, TemplateKind
from bmm_registration.services.notification_dispatcher import NotificationDispatcher
from bmm_registration.services.progress_tracker import JobHandle, SyncProgressTracker
from bmm_registration.services.stage_ledger import StageLedger

logger = get_logger(__name__)

TICKET_STAGES = (Stage.TICKET_ISSUED, Stage.CHECKED_IN)
DECLINABLE_STAGES = (Stage.VENUE_ASSIGNED, Stage.ATTENDANCE_CONFIRMED, Stage.TICKET_ISSUED)
DECLINED_EVENT = "attendance_declined"


class TicketIssuer:
    """Mints ticket tokens and the payload encoded in the ticket's QR code."""

    def generate(self, member: Member) -> dict[str, str]:
        token = str(uuid.uuid4())
        payload = json.dumps({
            "type": "bmm_ticket",
            "member_id": member.member_id,
            "membership_number": member.membership_number,
            "token": token,
            "url": f"{settings.TICKET_BASE_URL}/{token}",
        }, separators=(",", ":"), sort_keys=True)
        return {"ticket_token": token, "qr_payload": payload}


class TicketService:
    def __init__(
        self,
        ledger: StageLedger,
        dispatcher: NotificationDispatcher,
        tracker: SyncProgressTracker,
        issuer: Optional[TicketIssuer] = None,
    ) -> None:
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._tracker = tracker
        self._issuer = issuer or TicketIssuer()

    # ── Attendance ──

    def confirm_attendance(
        self,
        member_id: str,
        send_ticket: bool = True,
        actor: str = "member",
    ) -> Member:
        """VENUE_ASSIGNED -> ATTENDANCE_CONFIRMED, optionally issuing the ticket.

        The ticket email goes out in the background; this call never waits on it.
        """
        member = self._ledger.advance(
            member_id, Stage.ATTENDANCE_CONFIRMED, {"confirmed_by": actor}, actor=actor
        )
        if send_ticket:
            member = self.issue_ticket(member_id, actor=actor)
            self._dispatcher.submit(member_id, TemplateKind.TICKET)
        return member

    def decline_attendance(
        self,
        member_id: str,
        special_vote_requested: bool = False,
        reason: Optional[str] = None,
        actor: str = "member",
    ) -> Member:
        """Record that an assigned member will not attend.

        The seat is released and the assignment and any ticket are cleared in
        the same commit. The member drops back to PREFERENCE_SUBMITTED, where a
        declared non-attendee stays frozen.
        """

        def mutate(member: Member) -> Member:
            if member.stage not in DECLINABLE_STAGES:
                raise InvalidTransition(
                    f"Attendance can only be declined after a venue is assigned, "
                    f"member is {member.stage.value}",
                    member_id=member.member_id,
                    current_stage=member.stage.value,
                )
            evidence = {
                "venue": member.assignment.venue,
                "datetime": member.assignment.slot_datetime,
                "special_vote_requested": special_vote_requested,
                "reason": reason,
            }
            self._ledger.apply_transition(
                member, Stage.PREFERENCE_SUBMITTED, evidence,
                override=True, actor=actor, event_type=DECLINED_EVENT,
            )
            member.preferred_attending = False
            member.ticket_token = None
            member.qr_payload = None
            member.ticket_generated_at = None
            if special_vote_requested:
                member.special_vote_requested = True
            return member

        member = self._ledger.commit(member_id, mutate)
        logger.info(
            "Attendance declined: member=%s special_vote=%s",
            member_id, special_vote_requested,
            extra={"member_id": member_id, "region": member.region},
        )
        return member

    # ── Tickets ──

    def issue_ticket(self, member_id: str, actor: str = "system") -> Member:
        """Generate the ticket once; repeated calls return the same token."""

        def mutate(member: Member) -> Member:
            if member.stage not in TICKET_STAGES and member.stage != Stage.ATTENDANCE_CONFIRMED:
                raise InvalidTransition(
                    f"Tickets require ATTENDANCE_CONFIRMED, member is {member.stage.value}",
                    member_id=member.member_id,
                    current_stage=member.stage.value,
                )
            if not member.ticket_token:
                member.ticket_token, member.qr_payload = self._mint(member)
                member.ticket_generated_at = _now()
            if member.stage == Stage.ATTENDANCE_CONFIRMED:
                self._ledger.apply_transition(
                    member, Stage.TICKET_ISSUED, {"ticket_token": member.ticket_token}, actor=actor
                )
            return member

        return self._ledger.commit(member_id, mutate)

    def generate_and_send(
        self,
        member_id: str,
        provider: Optional[str] = None,
        force: bool = False,
        actor: str = "admin",
    ) -> dict[str, Any]:
        """Issue the ticket and deliver it now. A failed send keeps the ticket."""
        member = self.issue_ticket(member_id, actor=actor)
        notification = self._dispatcher.dispatch(
            member_id, TemplateKind.TICKET, provider=provider, force=force
        )
        return {"member": member, "notification": notification}

    def target_population(
        self,
        member_ids: Optional[list[str]] = None,
        region: Optional[str] = None,
    ) -> list[Member]:
        """Members a bulk ticket run applies to. Declared non-attendees are never included."""
        if member_ids:
            members = [self._ledger.get_member(mid) for mid in dict.fromkeys(member_ids)]
            if region:
                members = [m for m in members if m.region == region]
        else:
            members = [
                m for m in self._ledger.list_members(region=region)
                if m.stage == Stage.ATTENDANCE_CONFIRMED or m.stage in TICKET_STAGES
            ]
        return [m for m in members if m.is_attending_eligible]

    def bulk_generate(
        self,
        member_ids: Optional[list[str]] = None,
        region: Optional[str] = None,
        provider: Optional[str] = None,
        force: bool = False,
        actor: str = "admin",
    ) -> dict[str, Any]:
        """Start a background job issuing and sending tickets. Returns the job record."""
        population = [m.member_id for m in self.target_population(member_ids, region)]
        self._dispatcher.validate_provider(provider)

        def run(job: JobHandle) -> dict[str, Any]:
            issued, errors = [], []
            for member_id in population:
                if job.cancelled:
                    break
                try:
                    self.issue_ticket(member_id, actor=actor)
                    issued.append(member_id)
                except (InvalidTransition, NotFound) as exc:
                    errors.append({"member_id": member_id, **exc.to_dict()})
                    job.advance(ok=False)
            job.message(f"{len(issued)} tickets issued, sending")
            sent = self._dispatcher.dispatch_many(
                issued, TemplateKind.TICKET, provider=provider, force=force,
                on_result=lambda r: job.advance(ok=r["outcome"] in ("SENT", "ALREADY_SENT")),
                should_stop=lambda: job.cancelled,
            )
            logger.info("Bulk tickets: issued=%d errors=%d sent=%s",
                        len(issued), len(errors), sent["outcomes"], extra={"sync_id": job.sync_id})
            return {"issued": len(issued), "errors": errors, "delivery": sent["outcomes"]}

        return self._tracker.start("BULK_TICKETS", run, total=len(population), created_by=actor)

    # ── Check-in ──

    def check_in(self, ticket_token: str, actor: str = "door") -> Member:
        found = self._ledger.find_by_ticket_token(ticket_token)
        if found is None:
            raise NotFound("Ticket not recognised", ticket_token=ticket_token)

        def mutate(member: Member) -> Member:
            self._ledger.apply_transition(
                member, Stage.CHECKED_IN, {"ticket_token": ticket_token}, actor=actor
            )
            member.checked_in_at = _now()
            return member

        member = self._ledger.commit(found.member_id, mutate)
        logger.info("Checked in member %s", member.member_id, extra={"member_id": member.member_id})
        return member

    # ── Internal ──

    def _mint(self, member: Member) -> tuple:
        ticket = self._issuer.generate(member)
        TICKETS_GENERATED.inc()
        logger.info("Ticket generated for member %s", member.member_id,
                    extra={"member_id": member.member_id})
        return ticket["ticket_token"], ticket["qr_payload"]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
