# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Service: Venue assignment.
Manual single assignment, bulk assignment and the preference-driven
auto-assign pass. Every placement reserves capacity and records the stage
change inside one member commit, so a member never ends up holding a seat
without the matching stage, or the other way round.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

from bmm_registration.core.config import settings
from bmm_registration.core.errors import (
    BmmError,
    InvalidTransition,
    PartialBatchFailure,
    RegionMismatch,
)
from bmm_registration.core.logging import get_logger
from bmm_registration.metrics.prometheus import ASSIGNMENTS_TOTAL
from bmm_registration.models.domain import Assignment, AssignmentSource, Member, Stage
from bmm_registration.repositories.venue_repository import SlotRecord
from bmm_registration.services.capacity_ledger import CapacityLedger
from bmm_registration.services.progress_tracker import JobHandle
from bmm_registration.services.stage_ledger import StageLedger, membership_sort_key

logger = get_logger(__name__)

ASSIGNED = "ASSIGNED"
SKIPPED_ALREADY_ASSIGNED = "SKIPPED_ALREADY_ASSIGNED"
CAPACITY_EXHAUSTED = "CAPACITY_EXHAUSTED"
ERROR = "ERROR"

# Members with no open preference sort after every member who has one.
NO_OPEN_PREFERENCE = 1_000_000


class AutoAssignReport:
    """Per-member outcomes of one auto-assign run."""

    def __init__(self) -> None:
        self.outcomes: list[dict[str, Any]] = []
        self.cancelled = False

    def add(self, outcome: dict[str, Any]) -> None:
        self.outcomes.append(outcome)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o["status"] == status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": len(self.outcomes),
            "assigned": self.count(ASSIGNED),
            "skipped": self.count(SKIPPED_ALREADY_ASSIGNED),
            "capacity_exhausted": self.count(CAPACITY_EXHAUSTED),
            "errors": self.count(ERROR),
            "cancelled": self.cancelled,
            "outcomes": self.outcomes,
        }


class AssignmentEngine:
    def __init__(self, ledger: StageLedger, capacity: CapacityLedger) -> None:
        self._ledger = ledger
        self._capacity = capacity

    # ── Manual ──

    def assign(
        self,
        member_id: str,
        venue: str,
        slot_datetime: str,
        source: AssignmentSource = AssignmentSource.MANUAL,
        actor: str = "admin",
    ) -> Member:
        """Place one member in one slot, moving an existing hold if there is one.

        A rejected reassignment leaves the previous assignment in place.
        """
        venue_region = self._capacity.venue_region(venue)
        slot = self._capacity.find_slot(venue, slot_datetime)

        def mutate(member: Member) -> Member:
            if member.stage not in (Stage.PREFERENCE_SUBMITTED, Stage.VENUE_ASSIGNED):
                raise InvalidTransition(
                    f"Cannot assign a venue at stage {member.stage.value}",
                    member_id=member.member_id,
                    current_stage=member.stage.value,
                )
            if not member.is_attending_eligible:
                raise InvalidTransition(
                    "Member declared they are not attending",
                    member_id=member.member_id,
                    current_stage=member.stage.value,
                )
            if venue_region != member.region:
                raise RegionMismatch(
                    f"Venue '{venue}' is in region '{venue_region}', "
                    f"member is in '{member.region}'",
                    member_id=member.member_id,
                    venue=venue,
                )
            self._place(member, slot, source, actor, preference_rank=None)
            return member

        member = self._ledger.commit(member_id, mutate)
        logger.info(
            "Venue assigned: member=%s slot=%s source=%s",
            member_id, slot.key, source.value,
            extra={"member_id": member_id, "region": member.region},
        )
        return member

    def bulk_assign(self, items: list[dict[str, str]], actor: str = "admin") -> dict[str, Any]:
        """Apply many manual assignments; each item succeeds or fails on its own."""
        results = []
        for item in items:
            member_id = item["member_id"]
            try:
                member = self.assign(member_id, item["venue"], item["datetime"], actor=actor)
            except BmmError as exc:
                results.append({"member_id": member_id, "status": "FAILED", **exc.to_dict()})
                continue
            results.append({
                "member_id": member_id,
                "status": ASSIGNED,
                "venue": member.assignment.venue,
                "datetime": member.assignment.slot_datetime,
            })
        failed = sum(1 for r in results if r["status"] == "FAILED")
        summary = {"total": len(results), "succeeded": len(results) - failed, "failed": failed}
        if failed:
            raise PartialBatchFailure(
                f"{failed} of {len(results)} assignments failed", items=results
            )
        return {**summary, "items": results}

    # ── Auto ──

    def auto_assign(
        self,
        region: Optional[str] = None,
        replace_existing: bool = False,
        job: Optional[JobHandle] = None,
        actor: str = "auto-assign",
    ) -> dict[str, Any]:
        """Greedy preference-driven assignment.

        Regions run in parallel; members inside a region run one at a time in
        a deterministic order. Re-running with nothing changed is a no-op.
        """
        population = [
            m for m in self._ledger.list_members(region=region)
            if m.is_attending_eligible and m.stage.rank >= Stage.PREFERENCE_SUBMITTED.rank
        ]
        by_region: dict[str, list[Member]] = {}
        for member in population:
            by_region.setdefault(member.region, []).append(member)
        if job is not None:
            job.set_total(len(population))

        report = AutoAssignReport()
        if not by_region:
            return report.to_dict()

        workers = max(1, min(settings.ASSIGN_REGION_WORKERS, len(by_region)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="bmm-assign") as pool:
            futures = {
                name: pool.submit(self._assign_region, name, members, replace_existing, job, actor)
                for name, members in sorted(by_region.items())
            }
            for name in sorted(futures):
                outcomes, cancelled = futures[name].result()
                for outcome in outcomes:
                    report.add(outcome)
                report.cancelled = report.cancelled or cancelled

        logger.info(
            "Auto-assign finished: assigned=%d skipped=%d exhausted=%d errors=%d",
            report.count(ASSIGNED), report.count(SKIPPED_ALREADY_ASSIGNED),
            report.count(CAPACITY_EXHAUSTED), report.count(ERROR),
            extra={"region": region, "sync_id": job.sync_id if job else None},
        )
        return report.to_dict()

    def _assign_region(
        self,
        region: str,
        members: list[Member],
        replace_existing: bool,
        job: Optional[JobHandle],
        actor: str,
    ) -> tuple[list[dict[str, Any]], bool]:
        outcomes: list[dict[str, Any]] = []
        for member in sorted(members, key=self._priority):
            if job is not None and job.cancelled:
                return outcomes, True
            try:
                outcome = self._auto_place(member.member_id, replace_existing, actor)
            except BmmError as exc:
                outcome = {"member_id": member.member_id, "region": region, "status": ERROR,
                           "detail": exc.message}
            except Exception as exc:
                logger.exception("Auto-assign failed for member %s", member.member_id,
                                 extra={"member_id": member.member_id, "region": region})
                outcome = {"member_id": member.member_id, "region": region, "status": ERROR,
                           "detail": str(exc)}
            outcomes.append(outcome)
            if job is not None:
                job.advance(ok=outcome["status"] in (ASSIGNED, SKIPPED_ALREADY_ASSIGNED))
        return outcomes, False

    def _priority(self, member: Member) -> tuple:
        """Members whose best still-open choice ranks higher go first."""
        rank = NO_OPEN_PREFERENCE
        for index, pref in enumerate(member.preferences):
            if self._capacity.has_open_slot(pref, member.region):
                rank = index
                break
        return (rank, membership_sort_key(member.membership_number), member.member_id)

    def _auto_place(self, member_id: str, replace_existing: bool, actor: str) -> dict[str, Any]:
        def mutate(member: Member) -> dict[str, Any]:
            base = {"member_id": member.member_id, "region": member.region}
            if not member.is_attending_eligible or member.stage.rank < Stage.PREFERENCE_SUBMITTED.rank:
                raise InvalidTransition(
                    f"Member is not eligible for assignment at {member.stage.value}",
                    member_id=member.member_id,
                )
            replaceable = replace_existing and member.stage == Stage.VENUE_ASSIGNED
            if member.stage.rank >= Stage.VENUE_ASSIGNED.rank and not replaceable:
                current = member.assignment
                return {**base, "status": SKIPPED_ALREADY_ASSIGNED,
                        "venue": current.venue if current else None,
                        "datetime": current.slot_datetime if current else None}

            for rank, pref in enumerate(member.preferences):
                for slot in self._capacity.slots_for_preference(pref, member.region):
                    if self._try_place(member, slot, actor, rank):
                        return {**base, "status": ASSIGNED, "venue": slot.venue,
                                "datetime": slot.slot_datetime, "preference_rank": rank + 1}

            tried: list[str] = []
            while True:
                slot = self._capacity.least_loaded_open_slot(member.region, exclude=tried)
                if slot is None:
                    break
                if self._try_place(member, slot, actor, None):
                    return {**base, "status": ASSIGNED, "venue": slot.venue,
                            "datetime": slot.slot_datetime, "preference_rank": None}
                tried.append(slot.key)

            if member.assignment is not None:
                # Replacement found nothing better; the existing hold stands.
                return {**base, "status": ASSIGNED, "venue": member.assignment.venue,
                        "datetime": member.assignment.slot_datetime, "preference_rank": None,
                        "unchanged": True}
            member.special_vote_eligible = True
            self._ledger.record_event(
                member, "capacity_exhausted", {"region": member.region}, actor
            )
            return {**base, "status": CAPACITY_EXHAUSTED, "special_vote_eligible": True}

        return self._ledger.commit(member_id, mutate)

    # ── Internal ──

    def _try_place(
        self, member: Member, slot: SlotRecord, actor: str, preference_rank: Optional[int]
    ) -> bool:
        """Place without raising; a full slot just means try the next one."""
        return self._place(member, slot, AssignmentSource.AUTO, actor, preference_rank, strict=False)

    def _place(
        self,
        member: Member,
        slot: SlotRecord,
        source: AssignmentSource,
        actor: str,
        preference_rank: Optional[int],
        strict: bool = True,
    ) -> bool:
        """Reserve ``slot`` and record it on ``member``. Runs inside a member commit.

        With ``strict`` a full slot raises CapacityExceeded, otherwise it returns False.
        """
        previous = member.assignment
        if previous is not None and previous.slot_key == slot.key:
            return True
        if member.stage == Stage.PREFERENCE_SUBMITTED:
            self._ledger.check_transition(member, Stage.VENUE_ASSIGNED)

        previous_key = previous.slot_key if previous is not None else None
        if strict and previous_key is not None:
            self._capacity.move(previous_key, slot.key, member.member_id)
        elif strict:
            self._capacity.reserve(slot.key, member.member_id)
        elif not self._capacity.claim(slot.key, member.member_id, previous_key=previous_key):
            return False

        member.assignment = Assignment(
            member_id=member.member_id,
            venue=slot.venue,
            slot_datetime=slot.slot_datetime,
            source=source,
        )
        evidence = {
            "venue": slot.venue,
            "datetime": slot.slot_datetime,
            "source": source.value,
            "preference_rank": preference_rank + 1 if preference_rank is not None else None,
        }
        if member.stage == Stage.PREFERENCE_SUBMITTED:
            self._ledger.apply_transition(member, Stage.VENUE_ASSIGNED, evidence, actor=actor)
        else:
            evidence["previous"] = previous.slot_key if previous else None
            self._ledger.record_event(member, "venue_reassigned", evidence, actor)
        ASSIGNMENTS_TOTAL.labels(source=source.value, region=member.region).inc()
        return True
