# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Service: Member venue preferences.
"""

from collections import Counter
from typing import Any, Optional

from bmm_registration.core.errors import InvalidTransition, NotFound, RegionMismatch
from bmm_registration.core.logging import get_logger
from bmm_registration.models.domain import Member, Preference, Stage
from bmm_registration.repositories.venue_repository import VenueRepository
from bmm_registration.services.stage_ledger import StageLedger

logger = get_logger(__name__)


class PreferenceStore:
    def __init__(self, ledger: StageLedger, venue_repo: VenueRepository) -> None:
        self._ledger = ledger
        self._venues = venue_repo

    def submit(
        self,
        member_id: str,
        preferences: list[Preference],
        preferred_attending: Optional[bool] = None,
        special_vote_requested: bool = False,
        actor: str = "member",
    ) -> Member:
        """Record a member's ranked venue choices.

        The first submission moves the member from INVITED to
        PREFERENCE_SUBMITTED. A resubmission at PREFERENCE_SUBMITTED replaces
        the list. Once a venue is assigned the preferences are closed.
        """
        ranked = _dedupe(preferences)

        def mutate(member: Member) -> Member:
            self._validate_venues(member, ranked)
            evidence = {
                "preferences": [p.venue for p in ranked],
                "preferred_attending": preferred_attending,
            }
            if member.stage == Stage.INVITED:
                self._ledger.apply_transition(
                    member, Stage.PREFERENCE_SUBMITTED, evidence, actor=actor
                )
            elif member.stage == Stage.PREFERENCE_SUBMITTED:
                self._ledger.record_event(member, "preferences_updated", evidence, actor)
            else:
                raise InvalidTransition(
                    f"Preferences are closed once a member reaches {member.stage.value}",
                    member_id=member.member_id,
                    current_stage=member.stage.value,
                )
            member.preferences = ranked
            member.preferred_attending = preferred_attending
            if special_vote_requested:
                member.special_vote_requested = True
            return member

        member = self._ledger.commit(member_id, mutate)
        logger.info(
            "Preferences submitted: member=%s choices=%d attending=%s",
            member_id, len(ranked), preferred_attending,
            extra={"member_id": member_id, "region": member.region},
        )
        return member

    def get(self, member_id: str) -> list[Preference]:
        return self._ledger.get_member(member_id).preferences

    def summary(self, region: Optional[str] = None) -> dict[str, Any]:
        """First-choice counts per venue plus attendance intent, per region."""
        regions: dict[str, dict[str, Any]] = {}
        for member in self._ledger.list_members(region=region):
            if member.stage == Stage.INVITED:
                continue
            block = regions.setdefault(member.region, {
                "submitted": 0,
                "not_attending": 0,
                "special_vote_requested": 0,
                "first_choice": Counter(),
            })
            block["submitted"] += 1
            if not member.is_attending_eligible:
                block["not_attending"] += 1
            if member.special_vote_requested:
                block["special_vote_requested"] += 1
            if member.preferences and member.is_attending_eligible:
                block["first_choice"][member.preferences[0].venue] += 1
        for block in regions.values():
            block["first_choice"] = dict(sorted(block["first_choice"].items()))
        return {"regions": dict(sorted(regions.items()))}

    # ── Internal ──

    def _validate_venues(self, member: Member, preferences: list[Preference]) -> None:
        for pref in preferences:
            venue = self._venues.get_venue(pref.venue)
            if venue is None:
                raise NotFound(f"Venue '{pref.venue}' not found", venue=pref.venue)
            if venue.region != member.region:
                raise RegionMismatch(
                    f"Venue '{pref.venue}' is in region '{venue.region}', "
                    f"member is in '{member.region}'",
                    member_id=member.member_id,
                    venue=pref.venue,
                )


def _dedupe(preferences: list[Preference]) -> list[Preference]:
    seen, ranked = set(), []
    for pref in preferences:
        key = (pref.venue, pref.date, pref.time)
        if key not in seen:
            seen.add(key)
            ranked.append(pref)
    return ranked
