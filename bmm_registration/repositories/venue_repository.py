# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Repository: Venue and slot data access.
Venues are stored by name; slots live in one arena indexed by
``venue|YYYY-MM-DDTHH:MM``. Each slot record owns its holder set and lock,
which together are the single authoritative occupancy counter.
"""

import threading
from typing import Optional

from bmm_registration.models.domain import Venue


class SlotRecord:
    """Capacity bookkeeping for one (venue, date, time) slot."""

    __slots__ = ("key", "venue", "region", "slot_datetime", "capacity", "holders", "lock")

    def __init__(self, key: str, venue: str, region: str, slot_datetime: str, capacity: int) -> None:
        self.key = key
        self.venue = venue
        self.region = region
        self.slot_datetime = slot_datetime
        self.capacity = capacity
        self.holders: set[str] = set()
        self.lock = threading.Lock()

    @property
    def occupancy(self) -> int:
        return len(self.holders)

    @property
    def remaining(self) -> int:
        return self.capacity - len(self.holders)


class VenueRepository:
    """In-memory venue + slot arena."""

    def __init__(self) -> None:
        self._venues: dict[str, Venue] = {}
        self._slots: dict[str, SlotRecord] = {}
        self._guard = threading.Lock()

    # ── Read ──

    def get_venue(self, name: str) -> Optional[Venue]:
        venue = self._venues.get(name)
        return venue.model_copy(deep=True) if venue is not None else None

    def get_all_venues(self, region: Optional[str] = None) -> list[Venue]:
        venues = sorted(self._venues.values(), key=lambda v: (v.region, v.name))
        if region:
            venues = [v for v in venues if v.region == region]
        return [v.model_copy(deep=True) for v in venues]

    def get_slot(self, key: str) -> Optional[SlotRecord]:
        return self._slots.get(key)

    def slots_for_venue(self, venue: str) -> list[SlotRecord]:
        """Chronological slots of one venue."""
        return sorted(
            (s for s in self._slots.values() if s.venue == venue),
            key=lambda s: s.slot_datetime,
        )

    def slots_for_region(self, region: str) -> list[SlotRecord]:
        return sorted(
            (s for s in self._slots.values() if s.region == region),
            key=lambda s: (s.venue, s.slot_datetime),
        )

    def all_slots(self) -> list[SlotRecord]:
        return sorted(self._slots.values(), key=lambda s: s.key)

    def count(self) -> int:
        return len(self._venues)

    # ── Write ──

    def save_venue(self, venue: Venue) -> None:
        with self._guard:
            self._venues[venue.name] = venue.model_copy(deep=True)

    def add_slot(self, record: SlotRecord) -> None:
        with self._guard:
            self._slots[record.key] = record

    def remove_slots(self, keys: list[str]) -> None:
        with self._guard:
            for key in keys:
                self._slots.pop(key, None)

    # ── Bulk / internal ──

    def clear(self) -> None:
        with self._guard:
            self._venues.clear()
            self._slots.clear()
