# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false

"""
Unit tests for the BMM registration services.
Each test builds its own repositories and services, so nothing leaks
between tests and background pools are shut down afterwards.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import pytest
from prometheus_client import REGISTRY
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from bmm_registration.core.config import settings
from bmm_registration.core.database import build_engine
from bmm_registration.core.errors import (
    CapacityExceeded,
    InvalidTransition,
    NotFound,
    PartialBatchFailure,
    RegionMismatch,
    TicketNotGenerated,
)
from bmm_registration.models.domain import (
    NotificationChannel,
    Preference,
    Slot,
    Stage,
    TemplateKind,
    Venue,
    normalize_slot_datetime,
    slot_key,
)
from bmm_registration.repositories.audit_repository import AuditRepository
from bmm_registration.repositories.job_repository import JobRepository
from bmm_registration.repositories.member_repository import MemberRepository
from bmm_registration.repositories.notification_repository import NotificationRepository
from bmm_registration.repositories.venue_repository import VenueRepository
from bmm_registration.services.assignment_engine import (
    ASSIGNED,
    CAPACITY_EXHAUSTED,
    SKIPPED_ALREADY_ASSIGNED,
    AssignmentEngine,
)
from bmm_registration.services.capacity_ledger import CapacityLedger
from bmm_registration.services.channel_handlers import SendResult, SmsExportQueue, deliver_mailjet
from bmm_registration.services.notification_dispatcher import (
    ALREADY_SENT,
    ATTEMPTS_EXHAUSTED,
    FAILED,
    KEY_LOCK_STRIPES,
    SENT,
    UNREACHABLE,
    NotificationDispatcher,
    resolve_channel,
)
from bmm_registration.services.preference_store import PreferenceStore
from bmm_registration.services.progress_tracker import SyncProgressTracker
from bmm_registration.services.stage_ledger import StageLedger, membership_sort_key
from bmm_registration.services.statistics_service import StatisticsService
from bmm_registration.services.templates import RenderedMessage, render, render_text
from bmm_registration.services.ticket_service import TicketService

DAY = "2026-03-10"


# ============================================
# Fixtures / helpers
# ============================================
def build_stack(provider=None):
    """Wire a private copy of every service, like core.dependencies does."""
    calls = []

    def recording_provider(recipient, message, **kwargs):
        calls.append((recipient, message.subject))
        return SendResult(ok=True, provider="log")

    venues = VenueRepository()
    audit = AuditRepository()
    capacity = CapacityLedger(venues)
    ledger = StageLedger(MemberRepository(), audit, release_hold=capacity.release)
    sms = SmsExportQueue()
    dispatcher = NotificationDispatcher(
        ledger,
        NotificationRepository(build_engine("sqlite://")),
        sms,
        email_providers={"log": provider or recording_provider},
        max_attempts=3,
        backoff=0,
        concurrency=4,
        sleep=lambda seconds: None,
    )
    tracker = SyncProgressTracker(JobRepository(), max_workers=2)
    return SimpleNamespace(
        venues=venues,
        audit=audit,
        capacity=capacity,
        ledger=ledger,
        preferences=PreferenceStore(ledger, venues),
        engine=AssignmentEngine(ledger, capacity),
        dispatcher=dispatcher,
        tracker=tracker,
        tickets=TicketService(ledger, dispatcher, tracker),
        statistics=StatisticsService(ledger, capacity, dispatcher),
        sms=sms,
        calls=calls,
    )


@pytest.fixture
def stack():
    s = build_stack()
    yield s
    s.dispatcher.drain(timeout=10)
    s.tracker.shutdown(wait=True)
    s.dispatcher.shutdown(wait=True)


def add_member(s, member_id, region="Northern", number=None, email="default", mobile=None):
    if email == "default":
        email = f"{member_id}@example.com"
    s.ledger.import_members([{
        "member_id": member_id,
        "membership_number": number or member_id,
        "name": f"Member {member_id}",
        "region": region,
        "primary_email": email,
        "mobile": mobile,
    }])


def add_venue(s, name, region="Northern", slots=((DAY, "10:00", 10),)):
    s.capacity.register_venue(Venue(
        name=name,
        region=region,
        slots=[Slot(date=d, time=t, capacity=c) for d, t, c in slots],
    ))


def submit(s, member_id, venues, attending=True):
    return s.preferences.submit(
        member_id, [Preference(venue=v) for v in venues], preferred_attending=attending,
    )


def assigned_member(s, member_id="m1", venue="Auckland", region="Northern"):
    if s.venues.get_venue(venue) is None:
        add_venue(s, venue, region)
    add_member(s, member_id, region=region)
    submit(s, member_id, [venue])
    return s.engine.assign(member_id, venue, f"{DAY}T10:00")


class RunOnAcquire:
    """Slot lock stand-in that runs ``action`` the first time it is entered."""

    def __init__(self, record, action):
        self._inner = record.lock
        self._action = action

    def __enter__(self):
        action, self._action = self._action, None
        if action is not None:
            action()
        return self._inner.__enter__()

    def __exit__(self, *exc):
        return self._inner.__exit__(*exc)


class ReserveOnAcquire(RunOnAcquire):
    def __init__(self, record, member_id):
        super().__init__(record, lambda: record.holders.add(member_id))


def rejections(venue):
    value = REGISTRY.get_sample_value("bmm_capacity_rejections_total", {"venue": venue})
    return value or 0.0


# ============================================
# Domain helpers
# ============================================
class TestDomain:
    def test_stage_parse_is_case_insensitive(self):
        assert Stage.parse("venue_assigned") == Stage.VENUE_ASSIGNED

    def test_stage_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            Stage.parse("WAITLISTED")

    def test_normalize_slot_datetime_drops_seconds(self):
        assert normalize_slot_datetime("2026-03-10T10:00:00") == "2026-03-10T10:00"

    def test_normalize_slot_datetime_rejects_garbage(self):
        with pytest.raises(ValueError):
            normalize_slot_datetime("next tuesday")

    def test_slot_key(self):
        assert slot_key("Greymouth", "2026-03-10 10:00") == "Greymouth|2026-03-10T10:00"

    def test_preference_matches_date_and_time(self):
        pref = Preference(venue="A", date=DAY, time="10:00")
        assert pref.matches(f"{DAY}T10:00")
        assert not pref.matches(f"{DAY}T14:00")
        assert Preference(venue="A").matches("2030-01-01T09:00")

    def test_membership_numbers_sort_numerically(self):
        numbers = ["100", "20", "3", "A7"]
        assert sorted(numbers, key=membership_sort_key) == ["3", "20", "100", "A7"]


# ============================================
# Stage ledger
# ============================================
class TestStageLedger:
    def test_import_creates_invited_member(self, stack):
        add_member(stack, "m1")
        member = stack.ledger.get_member("m1")
        assert member.stage == Stage.INVITED
        assert member.history[0].event_type == "member_imported"

    def test_import_updates_contact_fields(self, stack):
        add_member(stack, "m1")
        result = stack.ledger.import_members([{
            "member_id": "m1", "membership_number": "m1", "name": "Renamed",
            "region": "Northern", "primary_email": "new@example.com",
        }])
        assert result["updated"] == 1
        member = stack.ledger.get_member("m1")
        assert member.name == "Renamed"
        assert member.primary_email == "new@example.com"

    def test_unknown_member_raises_not_found(self, stack):
        with pytest.raises(NotFound):
            stack.ledger.get_member("ghost")

    def test_advance_to_immediate_successor(self, stack):
        add_member(stack, "m1")
        member = stack.ledger.advance("m1", Stage.PREFERENCE_SUBMITTED)
        assert member.stage == Stage.PREFERENCE_SUBMITTED
        assert member.history[-1].from_stage == Stage.INVITED
        assert member.history[-1].to_stage == Stage.PREFERENCE_SUBMITTED

    def test_skipping_a_stage_is_rejected(self, stack):
        add_member(stack, "m1")
        with pytest.raises(InvalidTransition):
            stack.ledger.advance("m1", Stage.VENUE_ASSIGNED)
        assert stack.ledger.get_member("m1").stage == Stage.INVITED

    def test_regression_is_rejected(self, stack):
        add_member(stack, "m1")
        stack.ledger.advance("m1", "PREFERENCE_SUBMITTED")
        with pytest.raises(InvalidTransition):
            stack.ledger.advance("m1", "INVITED")

    def test_unknown_stage_is_invalid_transition(self, stack):
        add_member(stack, "m1")
        with pytest.raises(InvalidTransition):
            stack.ledger.advance("m1", "WAITLISTED")

    def test_checked_in_is_terminal(self, stack):
        assigned_member(stack)
        stack.ledger.advance("m1", Stage.CHECKED_IN, override=True, actor="admin")
        with pytest.raises(InvalidTransition):
            stack.ledger.advance("m1", Stage.TICKET_ISSUED)

    def test_override_jumps_and_is_audited(self, stack):
        assigned_member(stack)
        member = stack.ledger.advance(
            "m1", Stage.TICKET_ISSUED, {"reason": "walk-in"}, override=True, actor="admin",
        )
        assert member.stage == Stage.TICKET_ISSUED
        assert member.history[-1].event_type == "stage_override"
        assert member.history[-1].actor == "admin"
        events = stack.audit.get_all(member_id="m1", event_type="stage_override")
        assert len(events) == 1
        assert events[0]["details"]["to_stage"] == "TICKET_ISSUED"

    def test_override_forward_requires_assignment(self, stack):
        add_venue(stack, "Auckland")
        add_member(stack, "m1")
        submit(stack, "m1", ["Auckland"])
        with pytest.raises(InvalidTransition) as exc:
            stack.ledger.advance("m1", Stage.ATTENDANCE_CONFIRMED, override=True, actor="admin")
        assert "assign a slot" in exc.value.message
        member = stack.ledger.get_member("m1")
        assert member.stage == Stage.PREFERENCE_SUBMITTED
        assert member.assignment is None
        assert stack.audit.count() == 0

    def test_advance_to_venue_assigned_requires_assignment(self, stack):
        add_venue(stack, "Auckland")
        add_member(stack, "m1")
        submit(stack, "m1", ["Auckland"])
        with pytest.raises(InvalidTransition):
            stack.ledger.advance("m1", Stage.VENUE_ASSIGNED)
        assert stack.ledger.get_member("m1").stage == Stage.PREFERENCE_SUBMITTED

    def test_normal_transition_is_not_audited(self, stack):
        add_member(stack, "m1")
        stack.ledger.advance("m1", Stage.PREFERENCE_SUBMITTED)
        assert stack.audit.count() == 0

    def test_not_attending_member_is_frozen(self, stack):
        add_venue(stack, "Auckland")
        add_member(stack, "m1")
        submit(stack, "m1", [], attending=False)
        with pytest.raises(InvalidTransition):
            stack.ledger.advance("m1", Stage.VENUE_ASSIGNED)

    def test_history_entries_are_immutable(self, stack):
        add_member(stack, "m1")
        entry = stack.ledger.get_history("m1")[0]
        with pytest.raises(ValidationError):
            entry.actor = "someone-else"

    def test_failed_commit_writes_nothing(self, stack):
        add_member(stack, "m1")

        def mutate(member):
            member.name = "Changed"
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            stack.ledger.commit("m1", mutate)
        assert stack.ledger.get_member("m1").name == "Member m1"

    def test_returned_member_is_a_copy(self, stack):
        add_member(stack, "m1")
        member = stack.ledger.get_member("m1")
        member.stage = Stage.CHECKED_IN
        assert stack.ledger.get_member("m1").stage == Stage.INVITED

    def test_override_below_venue_assigned_releases_seat(self, stack):
        assigned_member(stack)
        key = slot_key("Auckland", f"{DAY}T10:00")
        assert stack.capacity.get_slot(key).occupancy == 1
        member = stack.ledger.advance("m1", Stage.PREFERENCE_SUBMITTED, override=True, actor="admin")
        assert member.assignment is None
        assert stack.capacity.get_slot(key).occupancy == 0


# ============================================
# Capacity ledger
# ============================================
class TestCapacityLedger:
    def test_reserve_until_full(self, stack):
        add_venue(stack, "Greymouth", "West Coast", slots=((DAY, "10:00", 2), (DAY, "14:00", 5)))
        key = slot_key("Greymouth", f"{DAY}T10:00")
        stack.capacity.reserve(key, "a")
        stack.capacity.reserve(key, "b")
        with pytest.raises(CapacityExceeded) as exc:
            stack.capacity.reserve(key, "c")
        assert exc.value.suggested_slot["datetime"] == f"{DAY}T14:00"
        assert stack.capacity.get_slot(key).occupancy == 2

    def test_reserve_is_idempotent_per_member(self, stack):
        add_venue(stack, "Greymouth", "West Coast", slots=((DAY, "10:00", 1),))
        key = slot_key("Greymouth", f"{DAY}T10:00")
        stack.capacity.reserve(key, "a")
        stack.capacity.reserve(key, "a")
        assert stack.capacity.get_slot(key).occupancy == 1

    def test_concurrent_reservations_never_overbook(self, stack):
        add_venue(stack, "Greymouth", "West Coast", slots=((DAY, "10:00", 50),))
        key = slot_key("Greymouth", f"{DAY}T10:00")

        def attempt(i):
            try:
                stack.capacity.reserve(key, f"member-{i}")
                return True
            except CapacityExceeded:
                return False

        with ThreadPoolExecutor(max_workers=32) as pool:
            results = list(pool.map(attempt, range(200)))
        assert sum(results) == 50
        assert stack.capacity.get_slot(key).occupancy == 50
        assert stack.capacity.invariant_violations() == []

    def test_release(self, stack):
        add_venue(stack, "Greymouth", "West Coast")
        key = slot_key("Greymouth", f"{DAY}T10:00")
        stack.capacity.reserve(key, "a")
        assert stack.capacity.release(key, "a") is True
        assert stack.capacity.release(key, "a") is False
        assert stack.capacity.get_slot(key).occupancy == 0

    def test_move_to_full_slot_keeps_old_hold(self, stack):
        add_venue(stack, "Greymouth", "West Coast", slots=((DAY, "10:00", 1), (DAY, "14:00", 1)))
        morning = slot_key("Greymouth", f"{DAY}T10:00")
        afternoon = slot_key("Greymouth", f"{DAY}T14:00")
        stack.capacity.reserve(morning, "a")
        stack.capacity.reserve(afternoon, "b")
        with pytest.raises(CapacityExceeded):
            stack.capacity.move(morning, afternoon, "a")
        assert stack.capacity.holds(morning, "a")
        assert not stack.capacity.holds(afternoon, "a")

    def test_unknown_slot(self, stack):
        with pytest.raises(NotFound):
            stack.capacity.reserve("Nowhere|2026-01-01T00:00", "a")

    def test_cannot_shrink_below_occupancy(self, stack):
        add_venue(stack, "Greymouth", "West Coast", slots=((DAY, "10:00", 2),))
        key = slot_key("Greymouth", f"{DAY}T10:00")
        stack.capacity.reserve(key, "a")
        stack.capacity.reserve(key, "b")
        with pytest.raises(CapacityExceeded):
            add_venue(stack, "Greymouth", "West Coast", slots=((DAY, "10:00", 1),))
        assert stack.capacity.get_slot(key).capacity == 2

    def test_can_grow_capacity(self, stack):
        add_venue(stack, "Greymouth", "West Coast", slots=((DAY, "10:00", 2),))
        add_venue(stack, "Greymouth", "West Coast", slots=((DAY, "10:00", 40),))
        assert stack.capacity.get_slot(slot_key("Greymouth", f"{DAY}T10:00")).capacity == 40

    def test_shrink_rechecks_occupancy_under_slot_lock(self, stack):
        add_venue(stack, "Auckland", slots=((DAY, "10:00", 2),))
        key = slot_key("Auckland", f"{DAY}T10:00")
        stack.capacity.reserve(key, "a")
        record = stack.capacity.get_slot(key)
        # A reservation lands just before reconfiguration takes the slot lock.
        record.lock = ReserveOnAcquire(record, "b")
        with pytest.raises(CapacityExceeded):
            add_venue(stack, "Auckland", slots=((DAY, "10:00", 1),))
        assert record.occupancy == 2
        assert record.capacity == 2
        assert stack.capacity.invariant_violations() == []

    def test_removed_slot_takes_no_new_holds(self, stack):
        add_venue(stack, "Auckland", slots=((DAY, "10:00", 5), (DAY, "14:00", 5)))
        key = slot_key("Auckland", f"{DAY}T10:00")
        record = stack.capacity.get_slot(key)
        # The slot is dropped between the reserve's lookup and its lock.
        record.lock = RunOnAcquire(
            record, lambda: add_venue(stack, "Auckland", slots=((DAY, "14:00", 5),))
        )
        with pytest.raises(NotFound):
            stack.capacity.reserve(key, "a")
        assert record.occupancy == 0
        assert stack.venues.get_slot(key) is None

    def test_claim_reports_full_slot_without_rejection(self, stack):
        add_venue(stack, "Kaitaia", slots=((DAY, "10:00", 1),))
        key = slot_key("Kaitaia", f"{DAY}T10:00")
        before = rejections("Kaitaia")
        assert stack.capacity.claim(key, "a") is True
        assert stack.capacity.claim(key, "b") is False
        assert stack.capacity.get_slot(key).holders == {"a"}
        assert rejections("Kaitaia") == before

    def test_least_loaded_open_slot(self, stack):
        add_venue(stack, "Alpha", "Northern", slots=((DAY, "10:00", 10),))
        add_venue(stack, "Beta", "Northern", slots=((DAY, "10:00", 10),))
        stack.capacity.reserve(slot_key("Alpha", f"{DAY}T10:00"), "a")
        chosen = stack.capacity.least_loaded_open_slot("Northern")
        assert chosen.venue == "Beta"

    def test_least_loaded_ties_break_by_venue_name(self, stack):
        add_venue(stack, "Beta", "Northern")
        add_venue(stack, "Alpha", "Northern")
        assert stack.capacity.least_loaded_open_slot("Northern").venue == "Alpha"

    def test_capacity_view(self, stack):
        add_venue(stack, "Greymouth", "West Coast", slots=((DAY, "10:00", 4),))
        stack.capacity.reserve(slot_key("Greymouth", f"{DAY}T10:00"), "a")
        view = stack.capacity.capacity_view(region="West Coast")
        assert view[0]["total_capacity"] == 4
        assert view[0]["total_assigned"] == 1
        assert view[0]["utilization_rate"] == 25.0
        assert view[0]["slots"][0]["available"] == 3

    def test_load_config(self, stack):
        loaded = stack.capacity.load_config({"regions": {
            "Central": {"venues": [
                {"name": "Wellington", "slots": [{"date": DAY, "time": "09:00", "capacity": 30}]},
            ]},
        }})
        assert loaded == 1
        assert stack.capacity.venue_region("Wellington") == "Central"


# ============================================
# Preferences
# ============================================
class TestPreferenceStore:
    def test_first_submission_advances_stage(self, stack):
        add_venue(stack, "Auckland")
        add_member(stack, "m1")
        member = submit(stack, "m1", ["Auckland"])
        assert member.stage == Stage.PREFERENCE_SUBMITTED
        assert [p.venue for p in member.preferences] == ["Auckland"]

    def test_resubmission_replaces_preferences(self, stack):
        add_venue(stack, "Auckland")
        add_venue(stack, "Whangarei")
        add_member(stack, "m1")
        submit(stack, "m1", ["Auckland"])
        member = submit(stack, "m1", ["Whangarei", "Auckland"])
        assert [p.venue for p in member.preferences] == ["Whangarei", "Auckland"]
        assert member.history[-1].event_type == "preferences_updated"

    def test_duplicates_are_collapsed(self, stack):
        add_venue(stack, "Auckland")
        add_member(stack, "m1")
        member = submit(stack, "m1", ["Auckland", "Auckland"])
        assert len(member.preferences) == 1

    def test_closed_after_assignment(self, stack):
        assigned_member(stack)
        with pytest.raises(InvalidTransition):
            submit(stack, "m1", ["Auckland"])

    def test_unknown_venue(self, stack):
        add_member(stack, "m1")
        with pytest.raises(NotFound):
            submit(stack, "m1", ["Atlantis"])
        assert stack.ledger.get_member("m1").stage == Stage.INVITED

    def test_venue_in_other_region(self, stack):
        add_venue(stack, "Dunedin", "Southern")
        add_member(stack, "m1", region="Northern")
        with pytest.raises(RegionMismatch):
            submit(stack, "m1", ["Dunedin"])

    def test_special_vote_request_is_recorded(self, stack):
        add_member(stack, "m1")
        member = stack.preferences.submit("m1", [], preferred_attending=False,
                                          special_vote_requested=True)
        assert member.special_vote_requested is True
        assert member.preferred_attending is False

    def test_summary(self, stack):
        add_venue(stack, "Auckland")
        add_venue(stack, "Whangarei")
        for mid in ("m1", "m2", "m3"):
            add_member(stack, mid)
        submit(stack, "m1", ["Auckland"])
        submit(stack, "m2", ["Auckland", "Whangarei"])
        submit(stack, "m3", [], attending=False)
        block = stack.preferences.summary()["regions"]["Northern"]
        assert block["submitted"] == 3
        assert block["not_attending"] == 1
        assert block["first_choice"] == {"Auckland": 2}


# ============================================
# Assignment
# ============================================
class TestManualAssignment:
    def test_assign_reserves_and_advances(self, stack):
        member = assigned_member(stack)
        assert member.stage == Stage.VENUE_ASSIGNED
        assert member.assignment.venue == "Auckland"
        assert member.assignment.source.value == "MANUAL"
        assert stack.capacity.holds(slot_key("Auckland", f"{DAY}T10:00"), "m1")

    def test_region_mismatch_is_rejected(self, stack):
        add_venue(stack, "Dunedin", "Southern")
        add_venue(stack, "Auckland", "Northern")
        add_member(stack, "m1", region="Northern")
        submit(stack, "m1", ["Auckland"])
        with pytest.raises(RegionMismatch):
            stack.engine.assign("m1", "Dunedin", f"{DAY}T10:00")
        member = stack.ledger.get_member("m1")
        assert member.stage == Stage.PREFERENCE_SUBMITTED
        assert member.assignment is None

    def test_assign_before_preferences_is_rejected(self, stack):
        add_venue(stack, "Auckland")
        add_member(stack, "m1")
        with pytest.raises(InvalidTransition):
            stack.engine.assign("m1", "Auckland", f"{DAY}T10:00")

    def test_not_attending_member_cannot_be_assigned(self, stack):
        add_venue(stack, "Auckland")
        add_member(stack, "m1")
        submit(stack, "m1", [], attending=False)
        with pytest.raises(InvalidTransition):
            stack.engine.assign("m1", "Auckland", f"{DAY}T10:00")

    def test_unknown_venue_and_slot(self, stack):
        add_venue(stack, "Auckland")
        add_member(stack, "m1")
        submit(stack, "m1", ["Auckland"])
        with pytest.raises(NotFound):
            stack.engine.assign("m1", "Atlantis", f"{DAY}T10:00")
        with pytest.raises(NotFound):
            stack.engine.assign("m1", "Auckland", f"{DAY}T23:00")

    def test_full_slot_suggests_alternate(self, stack):
        add_venue(stack, "Auckland", slots=((DAY, "10:00", 1), (DAY, "14:00", 1)))
        for mid in ("m1", "m2"):
            add_member(stack, mid)
            submit(stack, mid, ["Auckland"])
        stack.engine.assign("m1", "Auckland", f"{DAY}T10:00")
        with pytest.raises(CapacityExceeded) as exc:
            stack.engine.assign("m2", "Auckland", f"{DAY}T10:00")
        assert exc.value.suggested_slot["datetime"] == f"{DAY}T14:00"
        assert stack.ledger.get_member("m2").stage == Stage.PREFERENCE_SUBMITTED

    def test_reassignment_moves_the_seat(self, stack):
        add_venue(stack, "Auckland", slots=((DAY, "10:00", 5), (DAY, "14:00", 5)))
        add_member(stack, "m1")
        submit(stack, "m1", ["Auckland"])
        stack.engine.assign("m1", "Auckland", f"{DAY}T10:00")
        member = stack.engine.assign("m1", "Auckland", f"{DAY}T14:00")
        assert member.stage == Stage.VENUE_ASSIGNED
        assert member.assignment.slot_datetime == f"{DAY}T14:00"
        assert member.history[-1].event_type == "venue_reassigned"
        assert stack.capacity.get_slot(slot_key("Auckland", f"{DAY}T10:00")).occupancy == 0
        assert stack.capacity.get_slot(slot_key("Auckland", f"{DAY}T14:00")).occupancy == 1

    def test_failed_reassignment_leaves_original_intact(self, stack):
        add_venue(stack, "Auckland", slots=((DAY, "10:00", 5), (DAY, "14:00", 1)))
        for mid in ("m1", "m2"):
            add_member(stack, mid)
            submit(stack, mid, ["Auckland"])
        stack.engine.assign("m1", "Auckland", f"{DAY}T10:00")
        stack.engine.assign("m2", "Auckland", f"{DAY}T14:00")
        with pytest.raises(CapacityExceeded):
            stack.engine.assign("m1", "Auckland", f"{DAY}T14:00")
        member = stack.ledger.get_member("m1")
        assert member.assignment.slot_datetime == f"{DAY}T10:00"
        assert stack.capacity.holds(slot_key("Auckland", f"{DAY}T10:00"), "m1")

    def test_concurrent_manual_assignments_respect_capacity(self, stack):
        add_venue(stack, "Auckland", slots=((DAY, "10:00", 10),))
        member_ids = [f"m{i:03d}" for i in range(60)]
        for mid in member_ids:
            add_member(stack, mid)
            submit(stack, mid, ["Auckland"])

        def attempt(mid):
            try:
                stack.engine.assign(mid, "Auckland", f"{DAY}T10:00")
                return True
            except CapacityExceeded:
                return False

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(attempt, member_ids))
        assert sum(results) == 10
        assigned = stack.ledger.list_members(stage=Stage.VENUE_ASSIGNED)
        assert len(assigned) == 10
        assert stack.capacity.get_slot(slot_key("Auckland", f"{DAY}T10:00")).occupancy == 10


class TestBulkAssignment:
    def test_all_succeed(self, stack):
        add_venue(stack, "Auckland")
        for mid in ("m1", "m2"):
            add_member(stack, mid)
            submit(stack, mid, ["Auckland"])
        result = stack.engine.bulk_assign([
            {"member_id": "m1", "venue": "Auckland", "datetime": f"{DAY}T10:00"},
            {"member_id": "m2", "venue": "Auckland", "datetime": f"{DAY}T10:00"},
        ])
        assert result["succeeded"] == 2
        assert result["failed"] == 0

    def test_mixed_outcomes_raise_partial_failure(self, stack):
        add_venue(stack, "Auckland", slots=((DAY, "10:00", 1),))
        for mid in ("m1", "m2"):
            add_member(stack, mid)
            submit(stack, mid, ["Auckland"])
        with pytest.raises(PartialBatchFailure) as exc:
            stack.engine.bulk_assign([
                {"member_id": "m1", "venue": "Auckland", "datetime": f"{DAY}T10:00"},
                {"member_id": "m2", "venue": "Auckland", "datetime": f"{DAY}T10:00"},
                {"member_id": "ghost", "venue": "Auckland", "datetime": f"{DAY}T10:00"},
            ])
        items = {i["member_id"]: i for i in exc.value.items}
        assert items["m1"]["status"] == "ASSIGNED"
        assert items["m2"]["error"] == "capacity_exceeded"
        assert items["ghost"]["error"] == "not_found"


class TestAutoAssignment:
    def _greymouth(self, s, members=60):
        add_venue(s, "Greymouth", "West Coast", slots=((DAY, "10:00", 50),))
        add_venue(s, "Hokitika", "West Coast", slots=((DAY, "10:00", 20),))
        for n in range(1, members + 1):
            add_member(s, f"m{n:03d}", region="West Coast", number=str(n))
            submit(s, f"m{n:03d}", ["Greymouth"])

    def test_oversubscribed_venue_spills_to_least_loaded(self, stack):
        self._greymouth(stack)
        report = stack.engine.auto_assign()
        assert report["assigned"] == 60
        assert stack.capacity.get_slot(slot_key("Greymouth", f"{DAY}T10:00")).occupancy == 50
        assert stack.capacity.get_slot(slot_key("Hokitika", f"{DAY}T10:00")).occupancy == 10
        outcomes = {o["member_id"]: o for o in report["outcomes"]}
        assert outcomes["m001"]["venue"] == "Greymouth"
        assert outcomes["m001"]["preference_rank"] == 1
        assert outcomes["m051"]["venue"] == "Hokitika"
        assert outcomes["m051"]["preference_rank"] is None
        assert all(o["status"] == ASSIGNED for o in report["outcomes"])

    def test_second_run_is_a_no_op(self, stack):
        self._greymouth(stack)
        stack.engine.auto_assign()
        before = {m.member_id: m.assignment.slot_key for m in stack.ledger.list_members()}
        report = stack.engine.auto_assign()
        after = {m.member_id: m.assignment.slot_key for m in stack.ledger.list_members()}
        assert report["skipped"] == 60
        assert {o["status"] for o in report["outcomes"]} == {SKIPPED_ALREADY_ASSIGNED}
        assert report["assigned"] == 0
        assert before == after

    def test_result_is_deterministic(self):
        mappings = []
        for _ in range(2):
            s = build_stack()
            try:
                self._greymouth(s)
                s.engine.auto_assign()
                mappings.append({m.member_id: m.assignment.slot_key for m in s.ledger.list_members()})
            finally:
                s.tracker.shutdown()
                s.dispatcher.shutdown()
        assert mappings[0] == mappings[1]

    def test_second_preference_used_when_first_is_full(self, stack):
        add_venue(stack, "Auckland", slots=((DAY, "10:00", 1),))
        add_venue(stack, "Whangarei", slots=((DAY, "10:00", 5),))
        add_venue(stack, "Kaitaia", slots=((DAY, "10:00", 5),))
        for mid, number in (("a", "1"), ("b", "2")):
            add_member(stack, mid, number=number)
            submit(stack, mid, ["Auckland", "Kaitaia"])
        report = stack.engine.auto_assign()
        outcomes = {o["member_id"]: o for o in report["outcomes"]}
        assert outcomes["a"]["venue"] == "Auckland"
        assert outcomes["b"]["venue"] == "Kaitaia"
        assert outcomes["b"]["preference_rank"] == 2

    def test_open_first_choice_goes_before_lower_membership_number(self, stack):
        add_venue(stack, "Auckland", slots=((DAY, "10:00", 1),))
        add_venue(stack, "Whangarei", slots=((DAY, "10:00", 1),))
        add_venue(stack, "Kaitaia", slots=((DAY, "10:00", 5),))
        stack.capacity.reserve(slot_key("Auckland", f"{DAY}T10:00"), "walk-in")
        add_member(stack, "low", number="1")
        add_member(stack, "high", number="2")
        submit(stack, "low", ["Auckland", "Whangarei"])
        submit(stack, "high", ["Whangarei"])
        report = stack.engine.auto_assign()
        assert [o["member_id"] for o in report["outcomes"]] == ["high", "low"]
        outcomes = {o["member_id"]: o for o in report["outcomes"]}
        assert outcomes["high"]["venue"] == "Whangarei"
        assert outcomes["high"]["preference_rank"] == 1
        assert outcomes["low"]["venue"] == "Kaitaia"
        assert outcomes["low"]["preference_rank"] is None

    def test_full_slots_tried_by_auto_assign_are_not_rejections(self, stack):
        add_venue(stack, "Ruatoria", "East Coast", slots=((DAY, "10:00", 1),))
        add_venue(stack, "Gisborne", "East Coast", slots=((DAY, "10:00", 5),))
        for n in range(1, 4):
            add_member(stack, f"e{n}", region="East Coast", number=str(n))
            submit(stack, f"e{n}", ["Ruatoria"])
        before = rejections("Ruatoria")
        report = stack.engine.auto_assign()
        assert report["assigned"] == 3
        assert rejections("Ruatoria") == before
        add_member(stack, "e4", region="East Coast", number="4")
        submit(stack, "e4", ["Ruatoria"])
        with pytest.raises(CapacityExceeded):
            stack.engine.assign("e4", "Ruatoria", f"{DAY}T10:00")
        assert rejections("Ruatoria") == before + 1

    def test_capacity_exhausted_flags_special_vote(self, stack):
        add_venue(stack, "Westport", "West Coast", slots=((DAY, "10:00", 2),))
        for n in range(1, 4):
            add_member(stack, f"m{n}", region="West Coast", number=str(n))
            submit(stack, f"m{n}", ["Westport"])
        report = stack.engine.auto_assign()
        assert report["capacity_exhausted"] == 1
        assert report["outcomes"][-1]["status"] == CAPACITY_EXHAUSTED
        member = stack.ledger.get_member("m3")
        assert member.stage == Stage.PREFERENCE_SUBMITTED
        assert member.special_vote_eligible is True
        assert member.assignment is None

    def test_not_attending_members_are_excluded(self, stack):
        add_venue(stack, "Auckland")
        add_member(stack, "m1")
        add_member(stack, "m2")
        submit(stack, "m1", ["Auckland"])
        submit(stack, "m2", [], attending=False)
        report = stack.engine.auto_assign()
        assert [o["member_id"] for o in report["outcomes"]] == ["m1"]
        assert stack.ledger.get_member("m2").stage == Stage.PREFERENCE_SUBMITTED

    def test_invited_members_are_not_assigned(self, stack):
        add_venue(stack, "Auckland")
        add_member(stack, "m1")
        report = stack.engine.auto_assign()
        assert report["processed"] == 0

    def test_region_filter(self, stack):
        add_venue(stack, "Auckland", "Northern")
        add_venue(stack, "Dunedin", "Southern")
        add_member(stack, "n1", region="Northern")
        add_member(stack, "s1", region="Southern")
        submit(stack, "n1", ["Auckland"])
        submit(stack, "s1", ["Dunedin"])
        report = stack.engine.auto_assign(region="Southern")
        assert [o["member_id"] for o in report["outcomes"]] == ["s1"]
        assert stack.ledger.get_member("n1").stage == Stage.PREFERENCE_SUBMITTED

    def test_regions_are_processed_together(self, stack):
        for region, venue in (("Northern", "Auckland"), ("Southern", "Dunedin"), ("Central", "Wellington")):
            add_venue(stack, venue, region)
            for n in range(3):
                mid = f"{region[0]}{n}"
                add_member(stack, mid, region=region)
                submit(stack, mid, [venue])
        report = stack.engine.auto_assign()
        assert report["assigned"] == 9
        assert stack.capacity.invariant_violations() == []

    def test_replace_existing_moves_to_preferred_venue(self, stack):
        add_venue(stack, "Auckland")
        add_venue(stack, "Whangarei")
        add_member(stack, "m1")
        submit(stack, "m1", ["Auckland"])
        stack.engine.assign("m1", "Whangarei", f"{DAY}T10:00")
        report = stack.engine.auto_assign(replace_existing=True)
        assert report["outcomes"][0]["venue"] == "Auckland"
        assert stack.capacity.get_slot(slot_key("Whangarei", f"{DAY}T10:00")).occupancy == 0
        assert stack.ledger.get_member("m1").stage == Stage.VENUE_ASSIGNED

    def test_cancelled_job_stops_before_members(self, stack):
        self._greymouth(stack, members=5)
        job = MagicMock(cancelled=True, sync_id="job-1")
        report = stack.engine.auto_assign(job=job)
        assert report["cancelled"] is True
        assert report["processed"] == 0
        job.set_total.assert_called_once_with(5)

    def test_progress_is_reported(self, stack):
        self._greymouth(stack, members=4)
        job = MagicMock(cancelled=False, sync_id="job-1")
        stack.engine.auto_assign(job=job)
        assert job.advance.call_count == 4


# ============================================
# Notifications
# ============================================
class TestChannelResolution:
    def test_email_first(self, stack):
        add_member(stack, "m1", mobile="+6421000000")
        assert resolve_channel(stack.ledger.get_member("m1")) == NotificationChannel.EMAIL

    def test_temp_email_falls_back_to_sms(self, stack):
        add_member(stack, "m1", email="m1@temp-email.etu.nz", mobile="+6421000000")
        assert resolve_channel(stack.ledger.get_member("m1")) == NotificationChannel.SMS_EXPORT

    def test_no_contact(self, stack):
        add_member(stack, "m1", email=None, mobile=None)
        assert resolve_channel(stack.ledger.get_member("m1")) == NotificationChannel.NONE


class TestNotificationDispatcher:
    def test_send_once(self, stack):
        add_member(stack, "m1")
        first = stack.dispatcher.dispatch("m1", TemplateKind.INVITATION)
        second = stack.dispatcher.dispatch("m1", "invitation")
        assert first["outcome"] == SENT
        assert second["outcome"] == ALREADY_SENT
        assert len(stack.calls) == 1

    def test_force_resends(self, stack):
        add_member(stack, "m1")
        stack.dispatcher.dispatch("m1", TemplateKind.INVITATION)
        result = stack.dispatcher.dispatch("m1", TemplateKind.INVITATION, force=True)
        assert result["outcome"] == SENT
        assert len(stack.calls) == 2

    def test_different_templates_are_independent(self, stack):
        add_member(stack, "m1")
        stack.dispatcher.dispatch("m1", TemplateKind.INVITATION)
        result = stack.dispatcher.dispatch("m1", TemplateKind.ATTENDANCE_REQUEST)
        assert result["outcome"] == SENT

    def test_concurrent_dispatch_sends_once(self):
        calls = []

        def slow_provider(recipient, message, **kwargs):
            time.sleep(0.01)
            calls.append(recipient)
            return SendResult(ok=True, provider="log")

        s = build_stack(provider=slow_provider)
        try:
            add_member(s, "m1")
            with ThreadPoolExecutor(max_workers=8) as pool:
                results = list(pool.map(
                    lambda _: s.dispatcher.dispatch("m1", TemplateKind.INVITATION), range(8)
                ))
        finally:
            s.tracker.shutdown()
            s.dispatcher.shutdown()
        outcomes = sorted(r["outcome"] for r in results)
        assert outcomes.count(SENT) == 1
        assert outcomes.count(ALREADY_SENT) == 7
        assert len(calls) == 1

    def test_retries_then_exhausts(self):
        provider = MagicMock(return_value=SendResult(ok=False, provider="log", error="503"))
        s = build_stack(provider=provider)
        try:
            add_member(s, "m1")
            result = s.dispatcher.dispatch("m1", TemplateKind.INVITATION)
            assert result["outcome"] == FAILED
            assert result["attempt_count"] == 3
            assert provider.call_count == 3
            again = s.dispatcher.dispatch("m1", TemplateKind.INVITATION)
            assert again["outcome"] == ATTEMPTS_EXHAUSTED
            assert provider.call_count == 3
        finally:
            s.tracker.shutdown()
            s.dispatcher.shutdown()

    def test_non_retryable_failure_stops_immediately(self):
        provider = MagicMock(return_value=SendResult(ok=False, provider="log", error="400",
                                                     retryable=False))
        s = build_stack(provider=provider)
        try:
            add_member(s, "m1")
            result = s.dispatcher.dispatch("m1", TemplateKind.INVITATION)
            assert result["outcome"] == FAILED
            assert provider.call_count == 1
        finally:
            s.tracker.shutdown()
            s.dispatcher.shutdown()

    def test_provider_exception_is_recorded(self):
        provider = MagicMock(side_effect=[RuntimeError("connection reset"),
                                          SendResult(ok=True, provider="log")])
        s = build_stack(provider=provider)
        try:
            add_member(s, "m1")
            result = s.dispatcher.dispatch("m1", TemplateKind.INVITATION)
            assert result["outcome"] == SENT
            assert result["attempt_count"] == 2
        finally:
            s.tracker.shutdown()
            s.dispatcher.shutdown()

    def test_sms_export_for_temp_email(self, stack):
        add_member(stack, "m1", email="m1@temp-email.etu.nz", mobile="+6421555000")
        result = stack.dispatcher.dispatch("m1", TemplateKind.INVITATION)
        assert result["channel"] == "SMS_EXPORT"
        assert result["outcome"] == SENT
        assert stack.calls == []
        csv_text = stack.dispatcher.export_sms()
        assert "+6421555000" in csv_text
        assert csv_text.splitlines()[0].startswith("member_id,membership_number")

    def test_sms_export_drain(self, stack):
        add_member(stack, "m1", email=None, mobile="+6421555000")
        stack.dispatcher.dispatch("m1", TemplateKind.INVITATION)
        stack.dispatcher.export_sms(drain=True)
        assert stack.sms.pending() == 0

    def test_unreachable_member_writes_no_record(self, stack):
        add_member(stack, "m1", email=None, mobile=None)
        result = stack.dispatcher.dispatch("m1", TemplateKind.INVITATION)
        assert result["outcome"] == UNREACHABLE
        total, _ = stack.dispatcher.list_records(member_id="m1")
        assert total == 0

    def test_ticket_requires_token(self, stack):
        add_member(stack, "m1")
        with pytest.raises(TicketNotGenerated):
            stack.dispatcher.dispatch("m1", TemplateKind.TICKET)

    def test_unknown_provider(self, stack):
        add_member(stack, "m1")
        with pytest.raises(ValueError):
            stack.dispatcher.dispatch("m1", TemplateKind.INVITATION, provider="pigeon")

    def test_dispatch_many_aggregates(self, stack):
        add_member(stack, "m1")
        add_member(stack, "m2")
        add_member(stack, "m3", email=None, mobile=None)
        stack.dispatcher.dispatch("m1", TemplateKind.INVITATION)
        summary = stack.dispatcher.dispatch_many(["m1", "m2", "m3", "ghost"], TemplateKind.INVITATION)
        assert summary["total"] == 4
        assert summary["outcomes"] == {ALREADY_SENT: 1, SENT: 1, UNREACHABLE: 1, "ERROR": 1}

    def test_dispatch_many_contains_storage_errors_to_one_member(self, stack):
        for mid in ("m1", "m2", "m3"):
            add_member(stack, mid)
        real_get = NotificationRepository.get

        def flaky_get(repo, member_id, template_kind):
            if member_id == "m2":
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            return real_get(repo, member_id, template_kind)

        with patch.object(NotificationRepository, "get", autospec=True, side_effect=flaky_get):
            summary = stack.dispatcher.dispatch_many(["m1", "m2", "m3"], TemplateKind.INVITATION)
        items = {item["member_id"]: item for item in summary["items"]}
        assert summary["total"] == 3
        assert summary["outcomes"] == {SENT: 2, "ERROR": 1}
        assert items["m2"]["error"] == "internal_error"
        assert "database is locked" in items["m2"]["detail"]
        assert sorted(recipient for recipient, _ in stack.calls) == ["m1@example.com", "m3@example.com"]

    def test_dispatch_locks_do_not_grow_with_members(self, stack):
        for n in range(300):
            add_member(stack, f"m{n}")
        stack.dispatcher.dispatch_many([f"m{n}" for n in range(300)], TemplateKind.INVITATION)
        assert len(stack.dispatcher._key_locks) == KEY_LOCK_STRIPES

    def test_records_and_stats(self, stack):
        add_member(stack, "m1")
        add_member(stack, "m2", email=None, mobile="+6421000001")
        stack.dispatcher.dispatch_many(["m1", "m2"], TemplateKind.INVITATION)
        total, records = stack.dispatcher.list_records(status="sent")
        assert total == 2
        stats = stack.dispatcher.get_stats()
        assert stats["sent"] == 2
        assert stats["by_channel"] == {"EMAIL": 1, "SMS_EXPORT": 1}
        assert stats["sms_export_pending"] == 1


MESSAGE = RenderedMessage("BMM 2026 - Register", "Dear Aroha")


class TestMailjet:
    def _client(self, response=None, error=None):
        client = MagicMock()
        post = client.__enter__.return_value.post
        if error is not None:
            post.side_effect = error
        else:
            post.return_value = response
        return client

    def _send(self, client, key="key", secret="secret"):
        with patch.object(settings, "MAILJET_API_KEY", key), \
             patch.object(settings, "MAILJET_API_SECRET", secret), \
             patch("bmm_registration.services.channel_handlers.httpx.Client",
                   return_value=client) as factory:
            result = deliver_mailjet("aroha@example.com", MESSAGE, name="Aroha")
        return result, factory

    def test_accepted(self):
        client = self._client(MagicMock(status_code=200))
        result, factory = self._send(client)
        assert result.ok
        assert factory.call_args.kwargs["auth"] == ("key", "secret")
        payload = client.__enter__.return_value.post.call_args.kwargs["json"]
        assert payload["Messages"][0]["To"][0]["Email"] == "aroha@example.com"
        assert payload["Messages"][0]["Subject"] == "BMM 2026 - Register"

    def test_missing_credentials_are_not_retried(self):
        client = self._client(MagicMock(status_code=200))
        result, factory = self._send(client, key="", secret="")
        assert not result.ok
        assert result.retryable is False
        factory.assert_not_called()

    def test_client_error_is_not_retried(self):
        result, _ = self._send(self._client(MagicMock(status_code=400, text="bad address")))
        assert not result.ok
        assert result.retryable is False
        assert "400" in result.error

    def test_server_error_is_retried(self):
        result, _ = self._send(self._client(MagicMock(status_code=503, text="unavailable")))
        assert not result.ok
        assert result.retryable is True

    def test_timeout_is_retried(self):
        result, _ = self._send(self._client(error=httpx.ReadTimeout("slow")))
        assert not result.ok
        assert result.retryable is True
        assert result.error.startswith("timeout")


class TestTemplates:
    def test_ticket_template(self):
        message = render(TemplateKind.TICKET, {
            "name": "Aroha", "venue": "Greymouth", "dateTime": "2026-03-10 10:00",
            "ticketToken": "tok-1", "ticketLink": "https://example.test/tok-1", "year": "2026",
        })
        assert "Dear Aroha" in message.body
        assert "Venue: Greymouth" in message.body
        assert "Ticket ID: tok-1" in message.body
        assert message.subject == "BMM 2026 - Your meeting ticket"

    def test_missing_placeholder_renders_empty(self):
        assert render_text("Hi {{ name }}!{{unknown}}", {"name": "Sam"}) == "Hi Sam!"


# ============================================
# Tickets
# ============================================
class TestTickets:
    def test_confirm_attendance_issues_and_sends_ticket(self, stack):
        assigned_member(stack)
        member = stack.tickets.confirm_attendance("m1")
        assert member.stage == Stage.TICKET_ISSUED
        assert member.ticket_token
        stack.dispatcher.drain(timeout=10)
        total, records = stack.dispatcher.list_records(member_id="m1", template_kind="TICKET")
        assert total == 1
        assert records[0]["status"] == "SENT"

    def test_confirm_without_ticket(self, stack):
        assigned_member(stack)
        member = stack.tickets.confirm_attendance("m1", send_ticket=False)
        assert member.stage == Stage.ATTENDANCE_CONFIRMED
        assert member.ticket_token is None

    def test_confirm_requires_venue(self, stack):
        add_venue(stack, "Auckland")
        add_member(stack, "m1")
        submit(stack, "m1", ["Auckland"])
        with pytest.raises(InvalidTransition):
            stack.tickets.confirm_attendance("m1")

    def test_decline_releases_seat_and_ticket(self, stack):
        assigned_member(stack)
        ticket = stack.tickets.confirm_attendance("m1").ticket_token
        stack.dispatcher.drain(timeout=10)
        member = stack.tickets.decline_attendance(
            "m1", special_vote_requested=True, reason="rostered on",
        )
        assert member.stage == Stage.PREFERENCE_SUBMITTED
        assert member.assignment is None
        assert member.preferred_attending is False
        assert member.special_vote_requested is True
        assert member.ticket_token is None
        assert stack.capacity.get_slot(slot_key("Auckland", f"{DAY}T10:00")).occupancy == 0
        entry = member.history[-1]
        assert entry.event_type == "attendance_declined"
        assert entry.evidence["venue"] == "Auckland"
        assert entry.evidence["reason"] == "rostered on"
        assert stack.audit.count() == 0
        with pytest.raises(NotFound):
            stack.tickets.check_in(ticket)

    def test_declined_member_stays_out_of_assignment(self, stack):
        add_venue(stack, "Auckland", slots=((DAY, "10:00", 1),))
        assigned_member(stack, "m1")
        stack.tickets.decline_attendance("m1")
        with pytest.raises(InvalidTransition):
            stack.engine.assign("m1", "Auckland", f"{DAY}T10:00")
        assert stack.engine.auto_assign()["processed"] == 0
        member = assigned_member(stack, "m2")
        assert member.assignment.venue == "Auckland"

    def test_decline_requires_assignment(self, stack):
        add_venue(stack, "Auckland")
        add_member(stack, "m1")
        submit(stack, "m1", ["Auckland"])
        with pytest.raises(InvalidTransition):
            stack.tickets.decline_attendance("m1")
        assert stack.ledger.get_member("m1").preferred_attending is True

    def test_generate_and_send_is_idempotent(self, stack):
        assigned_member(stack)
        stack.tickets.confirm_attendance("m1", send_ticket=False)
        first = stack.tickets.generate_and_send("m1")
        second = stack.tickets.generate_and_send("m1")
        assert first["member"].ticket_token == second["member"].ticket_token
        assert first["notification"]["outcome"] == SENT
        assert second["notification"]["outcome"] == ALREADY_SENT
        assert first["member"].qr_payload

    def test_generate_before_confirmation_is_rejected(self, stack):
        assigned_member(stack)
        with pytest.raises(InvalidTransition):
            stack.tickets.generate_and_send("m1")
        assert stack.ledger.get_member("m1").ticket_token is None

    def test_failed_send_keeps_ticket(self):
        provider = MagicMock(return_value=SendResult(ok=False, provider="log", error="timeout"))
        s = build_stack(provider=provider)
        try:
            assigned_member(s)
            s.tickets.confirm_attendance("m1", send_ticket=False)
            result = s.tickets.generate_and_send("m1")
            assert result["notification"]["outcome"] == FAILED
            member = s.ledger.get_member("m1")
            assert member.stage == Stage.TICKET_ISSUED
            assert member.ticket_token
        finally:
            s.tracker.shutdown()
            s.dispatcher.shutdown()

    def test_bulk_population_excludes_non_attendees(self, stack):
        add_venue(stack, "Auckland")
        for mid in ("m1", "m2"):
            add_member(stack, mid)
        submit(stack, "m1", ["Auckland"])
        stack.engine.assign("m1", "Auckland", f"{DAY}T10:00")
        stack.tickets.confirm_attendance("m1", send_ticket=False)
        submit(stack, "m2", ["Auckland"])
        stack.engine.assign("m2", "Auckland", f"{DAY}T10:00")
        stack.tickets.confirm_attendance("m2", send_ticket=False)
        stack.tickets.decline_attendance("m2")

        by_region = [m.member_id for m in stack.tickets.target_population(region="Northern")]
        explicit = [m.member_id for m in stack.tickets.target_population(member_ids=["m1", "m2"])]
        assert by_region == ["m1"]
        assert explicit == ["m1"]

    def test_bulk_generate_job(self, stack):
        add_venue(stack, "Auckland")
        for mid in ("m1", "m2"):
            add_member(stack, mid)
            submit(stack, mid, ["Auckland"])
            stack.engine.assign(mid, "Auckland", f"{DAY}T10:00")
            stack.tickets.confirm_attendance(mid, send_ticket=False)
        job = stack.tickets.bulk_generate(region="Northern")
        final = stack.tracker.wait(job["sync_id"], timeout=10)
        assert final["status"] == "COMPLETED"
        assert final["processed"] == 2
        assert final["percentage"] == 100.0
        assert final["result"]["issued"] == 2
        assert final["result"]["delivery"] == {SENT: 2}
        assert all(m.stage == Stage.TICKET_ISSUED for m in stack.ledger.list_members())

    def test_check_in(self, stack):
        assigned_member(stack)
        member = stack.tickets.confirm_attendance("m1", send_ticket=False)
        member = stack.tickets.issue_ticket("m1")
        checked = stack.tickets.check_in(member.ticket_token)
        assert checked.stage == Stage.CHECKED_IN
        assert checked.checked_in_at
        with pytest.raises(InvalidTransition):
            stack.tickets.check_in(member.ticket_token)

    def test_check_in_unknown_token(self, stack):
        with pytest.raises(NotFound):
            stack.tickets.check_in("not-a-ticket")


# ============================================
# Progress tracker
# ============================================
class TestProgressTracker:
    def test_completed_job(self, stack):
        def work(job):
            job.set_total(3)
            for ok in (True, False, True):
                job.advance(ok=ok)
            return {"done": True}

        record = stack.tracker.start("TEST", work)
        assert record["status"] in ("PENDING", "IN_PROGRESS", "COMPLETED")
        final = stack.tracker.wait(record["sync_id"], timeout=10)
        assert final["status"] == "COMPLETED"
        assert final["processed"] == 3
        assert final["error_count"] == 1
        assert final["percentage"] == 100.0
        assert final["result"] == {"done": True}
        assert final["finished_at"]

    def test_failed_job(self, stack):
        def work(job):
            raise RuntimeError("sync source unavailable")

        record = stack.tracker.start("TEST", work)
        final = stack.tracker.wait(record["sync_id"], timeout=10)
        assert final["status"] == "FAILED"
        assert "unavailable" in final["message"]

    def test_cancel_running_job(self, stack):
        started, release = threading.Event(), threading.Event()

        def work(job):
            started.set()
            release.wait(5)
            return {"stopped_early": job.cancelled}

        record = stack.tracker.start("TEST", work)
        assert started.wait(5)
        cancelled = stack.tracker.cancel(record["sync_id"])
        assert cancelled["status"] == "CANCELLED"
        release.set()
        final = stack.tracker.wait(record["sync_id"], timeout=10)
        assert final["status"] == "CANCELLED"
        assert final["result"] == {"stopped_early": True}

    def test_cancel_finished_job_is_rejected(self, stack):
        record = stack.tracker.start("TEST", lambda job: None)
        stack.tracker.wait(record["sync_id"], timeout=10)
        with pytest.raises(InvalidTransition):
            stack.tracker.cancel(record["sync_id"])

    def test_unknown_job(self, stack):
        with pytest.raises(NotFound):
            stack.tracker.get("nope")

    def test_partial_percentage(self, stack):
        started, release = threading.Event(), threading.Event()

        def work(job):
            job.set_total(4)
            job.advance()
            started.set()
            release.wait(5)

        record = stack.tracker.start("TEST", work)
        assert started.wait(5)
        progress = stack.tracker.get(record["sync_id"])
        release.set()
        assert progress["status"] == "IN_PROGRESS"
        assert progress["percentage"] == 25.0
        stack.tracker.wait(record["sync_id"], timeout=10)


# ============================================
# Statistics
# ============================================
class TestStatistics:
    def test_counts(self, stack):
        add_venue(stack, "Auckland", slots=((DAY, "10:00", 4),))
        for mid in ("m1", "m2", "m3"):
            add_member(stack, mid)
        submit(stack, "m1", ["Auckland"])
        stack.engine.assign("m1", "Auckland", f"{DAY}T10:00")
        submit(stack, "m2", [], attending=False)
        stats = stack.statistics.get_statistics()
        assert stats["total_members"] == 3
        assert stats["by_stage"]["INVITED"] == 1
        assert stats["by_stage"]["VENUE_ASSIGNED"] == 1
        assert stats["pending"]["assignment"] == 0
        assert stats["not_attending"] == 1
        assert stats["total_capacity"] == 4
        assert stats["total_assigned"] == 1
        assert stats["regions"]["Northern"]["total_members"] == 3
        assert stats["notifications"]["total"] == 0
