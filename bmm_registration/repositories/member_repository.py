# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Repository: Member data access.
In-memory store of member records keyed by member_id.
NO business rules here, just CRUD plus per-member locks.
Reads hand out deep copies so no caller can mutate the stored record.
"""

import threading
from typing import Optional

from bmm_registration.models.domain import Member, Stage


class MemberRepository:
    """In-memory member storage."""

    def __init__(self) -> None:
        self._store: dict[str, Member] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    # ── Locking ──

    def lock(self, member_id: str) -> threading.RLock:
        """Return the lock that serialises every write to one member."""
        with self._guard:
            lock = self._locks.get(member_id)
            if lock is None:
                lock = self._locks[member_id] = threading.RLock()
            return lock

    # ── Read ──

    def get(self, member_id: str) -> Optional[Member]:
        member = self._store.get(member_id)
        return member.model_copy(deep=True) if member is not None else None

    def get_all(
        self,
        region: Optional[str] = None,
        stage: Optional[Stage] = None,
    ) -> list[Member]:
        members = list(self._store.values())
        if region:
            members = [m for m in members if m.region == region]
        if stage:
            members = [m for m in members if m.stage == stage]
        return [m.model_copy(deep=True) for m in members]

    def get_many(self, member_ids: list[str]) -> list[Member]:
        found = (self._store.get(mid) for mid in member_ids)
        return [m.model_copy(deep=True) for m in found if m is not None]

    def find_by_ticket_token(self, ticket_token: str) -> Optional[Member]:
        for member in list(self._store.values()):
            if member.ticket_token == ticket_token:
                return member.model_copy(deep=True)
        return None

    def exists(self, member_id: str) -> bool:
        return member_id in self._store

    def count(self) -> int:
        return len(self._store)

    def regions(self) -> list[str]:
        return sorted({m.region for m in list(self._store.values())})

    # ── Write ──

    def save(self, member: Member) -> None:
        self._store[member.member_id] = member.model_copy(deep=True)

    # ── Bulk / internal ──

    def clear(self) -> None:
        with self._guard:
            self._store.clear()
            self._locks.clear()

    @property
    def store(self) -> dict[str, Member]:
        """Direct access for tests and seeding."""
        return self._store
