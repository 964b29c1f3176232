# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Service: Capacity ledger.
Per-slot reservations with check-and-increment under the slot's own lock,
so occupancy can never exceed capacity however many admins or auto-assign
workers race for the last seat.
"""

import threading
from contextlib import ExitStack
from typing import Any, Iterable, Optional

from bmm_registration.core.errors import CapacityExceeded, NotFound, RegionMismatch
from bmm_registration.core.logging import get_logger
from bmm_registration.metrics.prometheus import CAPACITY_REJECTIONS, SLOT_OCCUPANCY
from bmm_registration.models.domain import Preference, Slot, Venue, slot_key
from bmm_registration.repositories.venue_repository import SlotRecord, VenueRepository

logger = get_logger(__name__)


class CapacityLedger:
    def __init__(self, venue_repo: VenueRepository) -> None:
        self._venues = venue_repo
        self._config_lock = threading.Lock()

    # ── Configuration ──

    def register_venue(self, venue: Venue) -> Venue:
        """Add or reconfigure a venue and its slots.

        A slot may not shrink below its current occupancy and an occupied slot
        may not be dropped; the whole update is rejected in that case. Every
        existing slot of the venue stays locked from validation to apply.
        """
        wanted: dict[str, Slot] = {}
        for slot in venue.slots:
            wanted[slot_key(venue.name, slot.slot_datetime)] = slot

        with self._config_lock:
            current = {s.key: s for s in self._venues.slots_for_venue(venue.name)}
            with ExitStack() as held:
                for key in sorted(current):
                    held.enter_context(current[key].lock)
                self._check_reconfiguration(venue, current, wanted)
                for key, slot in wanted.items():
                    record = current.get(key)
                    if record is None:
                        self._venues.add_slot(
                            SlotRecord(key, venue.name, venue.region, slot.slot_datetime, slot.capacity)
                        )
                        continue
                    record.capacity = slot.capacity
                    record.region = venue.region
                self._venues.remove_slots([k for k in current if k not in wanted])
                self._venues.save_venue(venue)

        for key in wanted:
            self._publish(self._venues.get_slot(key))
        logger.info(
            "Venue registered: %s (%s) with %d slots",
            venue.name, venue.region, len(wanted), extra={"region": venue.region},
        )
        return venue

    def _check_reconfiguration(
        self, venue: Venue, current: dict[str, SlotRecord], wanted: dict[str, Slot]
    ) -> None:
        """Reject an update that would orphan or overbook a hold. Caller holds the slot locks."""
        existing = self._venues.get_venue(venue.name)
        if existing is not None and existing.region != venue.region:
            if any(record.occupancy for record in current.values()):
                raise RegionMismatch(
                    f"Venue '{venue.name}' has assigned members; region cannot change "
                    f"from '{existing.region}' to '{venue.region}'",
                    venue=venue.name,
                )
        for key, record in current.items():
            if key not in wanted and record.occupancy:
                raise CapacityExceeded(
                    f"Slot {key} still holds {record.occupancy} members and cannot be removed",
                    slot_key=key,
                )
            if key in wanted and wanted[key].capacity < record.occupancy:
                raise CapacityExceeded(
                    f"Slot {key} holds {record.occupancy} members; capacity "
                    f"{wanted[key].capacity} is too small",
                    slot_key=key,
                )

    def load_config(self, config: dict[str, Any]) -> int:
        """Register venues from the JSON config layout ``{"regions": {name: {"venues": [...]}}}``."""
        loaded = 0
        for region, block in (config.get("regions") or {}).items():
            for raw in block.get("venues", []):
                self.register_venue(Venue(region=region, **raw))
                loaded += 1
        return loaded

    # ── Reservations ──

    def get_slot(self, key: str) -> SlotRecord:
        record = self._venues.get_slot(key)
        if record is None:
            raise NotFound(f"Slot '{key}' not found", slot_key=key)
        return record

    def find_slot(self, venue: str, slot_datetime: str) -> SlotRecord:
        if self._venues.get_venue(venue) is None:
            raise NotFound(f"Venue '{venue}' not found", venue=venue)
        return self.get_slot(slot_key(venue, slot_datetime))

    def claim(self, key: str, member_id: str, previous_key: Optional[str] = None) -> bool:
        """Take one unit of ``key``, moving the hold off ``previous_key`` if given.

        Returns False when the slot is full; nothing changes in that case.
        """
        new = self.get_slot(key)
        old = self.get_slot(previous_key) if previous_key not in (None, key) else None
        records = [new] if old is None else sorted((old, new), key=lambda r: r.key)
        with ExitStack() as held:
            for record in records:
                held.enter_context(record.lock)
            for record in records:
                self._ensure_registered(record)
            granted = member_id in new.holders or new.remaining > 0
            if granted:
                new.holders.add(member_id)
                if old is not None:
                    old.holders.discard(member_id)
        if granted:
            for record in records:
                self._publish(record)
        return granted

    def reserve(self, key: str, member_id: str) -> SlotRecord:
        """Take one unit of ``key`` for ``member_id``. Re-reserving is a no-op."""
        if not self.claim(key, member_id):
            raise self._rejection(self.get_slot(key))
        return self.get_slot(key)

    def release(self, key: str, member_id: str) -> bool:
        record = self._venues.get_slot(key)
        if record is None:
            return False
        with record.lock:
            held = member_id in record.holders
            record.holders.discard(member_id)
        if held:
            self._publish(record)
        return held

    def move(self, old_key: str, new_key: str, member_id: str) -> SlotRecord:
        """Atomically swap a member's hold from ``old_key`` to ``new_key``.

        On rejection the old hold is untouched.
        """
        if not self.claim(new_key, member_id, previous_key=old_key):
            raise self._rejection(self.get_slot(new_key))
        return self.get_slot(new_key)

    def holds(self, key: str, member_id: str) -> bool:
        record = self._venues.get_slot(key)
        return record is not None and member_id in record.holders

    # ── Views ──

    def venue_region(self, venue: str) -> str:
        found = self._venues.get_venue(venue)
        if found is None:
            raise NotFound(f"Venue '{venue}' not found", venue=venue)
        return found.region

    def slots_for_preference(self, preference: Preference, region: str) -> list[SlotRecord]:
        """Chronological slots matching one preference inside ``region``."""
        return [
            s for s in self._venues.slots_for_venue(preference.venue)
            if s.region == region and preference.matches(s.slot_datetime)
        ]

    def has_open_slot(self, preference: Preference, region: str) -> bool:
        return any(s.remaining > 0 for s in self.slots_for_preference(preference, region))

    def least_loaded_open_slot(
        self, region: str, exclude: Iterable[str] = ()
    ) -> Optional[SlotRecord]:
        """Open slot with the lowest load ratio; ties by venue name then datetime."""
        skipped = set(exclude)
        candidates = [
            s for s in self._venues.slots_for_region(region)
            if s.key not in skipped and s.capacity > 0 and s.remaining > 0
        ]
        if not candidates:
            return None
        return min(
            candidates,
            key=lambda s: (s.occupancy / s.capacity, s.venue, s.slot_datetime),
        )

    def suggest_alternate(self, record: SlotRecord) -> Optional[dict[str, Any]]:
        """Best open slot for someone turned away from ``record``.

        Prefers later (or earlier) slots at the same venue before other venues.
        """
        same_venue = [
            s for s in self._venues.slots_for_venue(record.venue)
            if s.key != record.key and s.remaining > 0
        ]
        chosen = same_venue[0] if same_venue else self.least_loaded_open_slot(
            record.region, exclude=[record.key]
        )
        return _slot_summary(chosen) if chosen is not None else None

    def capacity_view(self, region: Optional[str] = None) -> list[dict[str, Any]]:
        """Venues with per-slot capacity, occupancy and utilisation."""
        view = []
        for venue in self._venues.get_all_venues(region=region):
            slots = [_slot_summary(s) for s in self._venues.slots_for_venue(venue.name)]
            capacity = sum(s["capacity"] for s in slots)
            assigned = sum(s["assigned"] for s in slots)
            view.append({
                "venue": venue.name,
                "region": venue.region,
                "address": venue.address,
                "total_capacity": capacity,
                "total_assigned": assigned,
                "available": capacity - assigned,
                "utilization_rate": _utilization(assigned, capacity),
                "slots": slots,
            })
        return view

    def invariant_violations(self) -> list[str]:
        """Slot keys whose occupancy exceeds capacity. Always empty in a healthy ledger."""
        return [s.key for s in self._venues.all_slots() if s.occupancy > s.capacity]

    # ── Internal ──

    def _ensure_registered(self, record: SlotRecord) -> None:
        """Caller holds ``record.lock``; a slot removed by reconfiguration takes no holds."""
        if self._venues.get_slot(record.key) is not record:
            raise NotFound(f"Slot '{record.key}' not found", slot_key=record.key)

    def _rejection(self, record: SlotRecord) -> CapacityExceeded:
        CAPACITY_REJECTIONS.labels(venue=record.venue).inc()
        return CapacityExceeded(
            f"Slot {record.venue} at {record.slot_datetime} is full "
            f"({record.occupancy}/{record.capacity})",
            slot_key=record.key,
            suggested_slot=self.suggest_alternate(record),
        )

    @staticmethod
    def _publish(record: Optional[SlotRecord]) -> None:
        if record is not None:
            SLOT_OCCUPANCY.labels(venue=record.venue, slot=record.slot_datetime).set(record.occupancy)


def _slot_summary(record: SlotRecord) -> dict[str, Any]:
    occupancy = record.occupancy
    return {
        "slot_key": record.key,
        "venue": record.venue,
        "region": record.region,
        "datetime": record.slot_datetime,
        "capacity": record.capacity,
        "assigned": occupancy,
        "available": max(record.capacity - occupancy, 0),
        "utilization_rate": _utilization(occupancy, record.capacity),
        "full": occupancy >= record.capacity,
    }


def _utilization(assigned: int, capacity: int) -> float:
    return round(assigned / capacity * 100, 1) if capacity else 0.0
