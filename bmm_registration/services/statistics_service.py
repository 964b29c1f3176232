# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""Service: Registration dashboard statistics."""

from typing import Any, Optional

from bmm_registration.models.domain import STAGE_ORDER, Stage
from bmm_registration.services.capacity_ledger import CapacityLedger
from bmm_registration.services.notification_dispatcher import NotificationDispatcher
from bmm_registration.services.stage_ledger import StageLedger


class StatisticsService:
    def __init__(
        self,
        ledger: StageLedger,
        capacity: CapacityLedger,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self._ledger = ledger
        self._capacity = capacity
        self._dispatcher = dispatcher

    def get_statistics(self, region: Optional[str] = None) -> dict[str, Any]:
        members = self._ledger.list_members(region=region)
        by_stage = {stage.value: 0 for stage in STAGE_ORDER}
        by_channel: dict[str, int] = {}
        regions: dict[str, dict[str, Any]] = {}
        not_attending = special_vote_eligible = special_vote_requested = 0

        for member in members:
            by_stage[member.stage.value] += 1
            channel = member.contact_channel.value
            by_channel[channel] = by_channel.get(channel, 0) + 1
            block = regions.setdefault(member.region, {
                "total_members": 0,
                "by_stage": {stage.value: 0 for stage in STAGE_ORDER},
            })
            block["total_members"] += 1
            block["by_stage"][member.stage.value] += 1
            if not member.is_attending_eligible:
                not_attending += 1
            if member.special_vote_eligible:
                special_vote_eligible += 1
            if member.special_vote_requested:
                special_vote_requested += 1

        venues = self._capacity.capacity_view(region=region)
        return {
            "total_members": len(members),
            "by_stage": by_stage,
            "pending": {
                "preferences": by_stage[Stage.INVITED.value],
                "assignment": sum(
                    1 for m in members
                    if m.stage == Stage.PREFERENCE_SUBMITTED and m.is_attending_eligible
                ),
                "attendance_confirmation": by_stage[Stage.VENUE_ASSIGNED.value],
                "ticket": by_stage[Stage.ATTENDANCE_CONFIRMED.value],
            },
            "not_attending": not_attending,
            "special_vote_eligible": special_vote_eligible,
            "special_vote_requested": special_vote_requested,
            "contact_channels": by_channel,
            "regions": dict(sorted(regions.items())),
            "venues": [
                {k: v for k, v in venue.items() if k != "slots"} for venue in venues
            ],
            "total_capacity": sum(v["total_capacity"] for v in venues),
            "total_assigned": sum(v["total_assigned"] for v in venues),
            "notifications": self._dispatcher.get_stats(),
        }
