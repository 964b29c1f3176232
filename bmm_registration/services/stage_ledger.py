# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Service: Stage ledger, the authoritative per-member stage and history.
Every member mutation goes through ``commit`` so that a reservation and the
stage change it justifies land in one step under the member's lock.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

from bmm_registration.core.errors import InvalidTransition, NotFound
from bmm_registration.core.logging import get_logger
from bmm_registration.metrics.prometheus import STAGE_TRANSITIONS
from bmm_registration.models.domain import (
    ALLOWED_TRANSITIONS,
    HistoryEntry,
    Member,
    Stage,
)
from bmm_registration.repositories.audit_repository import AuditRepository
from bmm_registration.repositories.member_repository import MemberRepository

logger = get_logger(__name__)

T = TypeVar("T")

OVERRIDE_EVENT = "stage_override"
TRANSITION_EVENT = "stage_transition"

# Contact fields the membership sync may refresh on an existing member.
SYNC_FIELDS = ("membership_number", "name", "primary_email", "mobile")


class StageLedger:
    """Business logic for stage progression and member bookkeeping."""

    def __init__(
        self,
        member_repo: MemberRepository,
        audit_repo: AuditRepository,
        release_hold: Optional[Callable[[str, str], bool]] = None,
    ) -> None:
        self._members = member_repo
        self._audit = audit_repo
        # (slot_key, member_id) -> released; wired to the capacity ledger
        self._release_hold = release_hold

    # ── Queries ──

    def get_member(self, member_id: str) -> Member:
        member = self._members.get(member_id)
        if member is None:
            raise NotFound(f"Member '{member_id}' not found", member_id=member_id)
        return member

    def list_members(
        self,
        region: Optional[str] = None,
        stage: Optional[Stage] = None,
    ) -> list[Member]:
        return sorted(
            self._members.get_all(region=region, stage=stage),
            key=lambda m: (m.region, membership_sort_key(m.membership_number)),
        )

    def get_history(self, member_id: str) -> list[HistoryEntry]:
        return self.get_member(member_id).history

    def find_by_ticket_token(self, ticket_token: str) -> Optional[Member]:
        return self._members.find_by_ticket_token(ticket_token)

    def count(self) -> int:
        return self._members.count()

    # ── Sync boundary ──

    def import_members(self, records: list[dict[str, Any]], actor: str = "sync") -> dict[str, Any]:
        """Create new members at INVITED; refresh contact fields on known ones."""
        created, updated = [], []
        for record in records:
            member_id = record["member_id"]
            with self._members.lock(member_id):
                existing = self._members.get(member_id)
                if existing is None:
                    member = Member(**record)
                    member.stage = Stage.INVITED
                    self.record_event(member, "member_imported", {"source": actor}, actor)
                    self._members.save(member)
                    created.append(member_id)
                    continue
                for field in SYNC_FIELDS:
                    if field in record and record[field] is not None:
                        setattr(existing, field, record[field])
                # Region drives venue eligibility, so it is frozen once a slot is held.
                if record.get("region") and existing.assignment is None:
                    existing.region = record["region"]
                if "special_vote_eligible" in record:
                    existing.special_vote_eligible = bool(record["special_vote_eligible"])
                existing.updated_at = _now()
                self._members.save(existing)
                updated.append(member_id)
        logger.info("Members imported: created=%d, updated=%d", len(created), len(updated))
        return {"created": len(created), "updated": len(updated), "created_ids": created}

    # ── Transitions ──

    def advance(
        self,
        member_id: str,
        target_stage: "Stage | str",
        evidence: Optional[dict[str, Any]] = None,
        override: bool = False,
        actor: str = "system",
    ) -> Member:
        """Move a member to ``target_stage``.

        Without ``override`` only the immediate successor is accepted. Overrides
        may jump or regress and are written to the admin audit log as well.
        Never blocks on notification delivery.
        """
        try:
            target = Stage.parse(target_stage)
        except ValueError as exc:
            raise InvalidTransition(str(exc), member_id=member_id) from None

        def mutate(member: Member) -> Member:
            self.apply_transition(member, target, evidence, override=override, actor=actor)
            return member

        return self.commit(member_id, mutate)

    def commit(self, member_id: str, mutate: Callable[[Member], T]) -> T:
        """Apply ``mutate`` to a private copy and store it atomically.

        If ``mutate`` raises, nothing is written.
        """
        with self._members.lock(member_id):
            member = self.get_member(member_id)
            history_before = len(member.history)
            result = mutate(member)
            member.updated_at = _now()
            self._members.save(member)
        self._after_commit(member, member.history[history_before:])
        return result

    def check_transition(
        self,
        member: Member,
        target: Stage,
        override: bool = False,
    ) -> None:
        """Raise InvalidTransition unless ``member`` may move to ``target``."""
        if override:
            return
        current = member.stage
        if target not in ALLOWED_TRANSITIONS[current]:
            allowed = sorted(s.value for s in ALLOWED_TRANSITIONS[current])
            raise InvalidTransition(
                f"Cannot transition from '{current.value}' to '{target.value}'. "
                f"Allowed: {allowed if allowed else 'none (terminal stage)'}",
                member_id=member.member_id,
                current_stage=current.value,
            )
        if current == Stage.PREFERENCE_SUBMITTED and not member.is_attending_eligible:
            raise InvalidTransition(
                "Member declared they are not attending; stage is frozen at PREFERENCE_SUBMITTED",
                member_id=member.member_id,
                current_stage=current.value,
            )

    def apply_transition(
        self,
        member: Member,
        target: Stage,
        evidence: Optional[dict[str, Any]] = None,
        override: bool = False,
        actor: str = "system",
        event_type: Optional[str] = None,
    ) -> HistoryEntry:
        """Validate and apply a transition to a member held inside ``commit``.

        ``event_type`` names a member-initiated jump (such as a declined
        attendance) that skips the stage table without being an admin override.
        """
        self.check_transition(member, target, override=override)
        if target.rank >= Stage.VENUE_ASSIGNED.rank and member.assignment is None:
            raise InvalidTransition(
                f"Member has no venue assignment; assign a slot before moving to {target.value}",
                member_id=member.member_id,
                current_stage=member.stage.value,
            )
        evidence = dict(evidence or {})
        if target.rank < Stage.VENUE_ASSIGNED.rank and member.assignment is not None:
            if self._release_hold is not None:
                self._release_hold(member.assignment.slot_key, member.member_id)
            evidence["released_slot"] = member.assignment.slot_key
            member.assignment = None
        entry = HistoryEntry(
            event_id=str(uuid.uuid4()),
            event_type=event_type or (OVERRIDE_EVENT if override else TRANSITION_EVENT),
            from_stage=member.stage,
            to_stage=target,
            actor=actor,
            evidence=evidence,
        )
        member.stage = target
        member.history.append(entry)
        return entry

    def record_event(
        self,
        member: Member,
        event_type: str,
        evidence: Optional[dict[str, Any]] = None,
        actor: str = "system",
    ) -> HistoryEntry:
        """Append a non-stage history entry (reassignment, flags, imports)."""
        entry = HistoryEntry(
            event_id=str(uuid.uuid4()),
            event_type=event_type,
            actor=actor,
            evidence=dict(evidence or {}),
        )
        member.history.append(entry)
        return entry

    # ── Internal ──

    def _after_commit(self, member: Member, entries: list[HistoryEntry]) -> None:
        for entry in entries:
            if entry.to_stage is None:
                continue
            is_override = entry.event_type == OVERRIDE_EVENT
            STAGE_TRANSITIONS.labels(
                from_stage=entry.from_stage.value,
                to_stage=entry.to_stage.value,
                override=str(is_override).lower(),
            ).inc()
            if is_override:
                self._audit.record_event(
                    OVERRIDE_EVENT,
                    member.member_id,
                    {
                        "from_stage": entry.from_stage.value,
                        "to_stage": entry.to_stage.value,
                        "actor": entry.actor,
                        "evidence": entry.evidence,
                    },
                )
                logger.warning(
                    "Stage override: member=%s %s -> %s by %s",
                    member.member_id, entry.from_stage.value,
                    entry.to_stage.value, entry.actor,
                    extra={"member_id": member.member_id},
                )
            else:
                logger.info(
                    "Stage advanced: member=%s %s -> %s",
                    member.member_id, entry.from_stage.value, entry.to_stage.value,
                    extra={"member_id": member.member_id},
                )


def membership_sort_key(membership_number: str) -> tuple:
    """Numeric membership numbers sort numerically, ahead of free-form ones."""
    value = (membership_number or "").strip()
    if value.isdigit():
        return (0, int(value), value)
    return (1, 0, value)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
