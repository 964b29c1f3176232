# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
FastAPI dependency injection wiring.
Singletons are created once at import time and shared across requests.
"""

from bmm_registration.core.database import engine
from bmm_registration.repositories.audit_repository import AuditRepository
from bmm_registration.repositories.job_repository import JobRepository
from bmm_registration.repositories.member_repository import MemberRepository
from bmm_registration.repositories.notification_repository import NotificationRepository
from bmm_registration.repositories.venue_repository import VenueRepository
from bmm_registration.services.assignment_engine import AssignmentEngine
from bmm_registration.services.capacity_ledger import CapacityLedger
from bmm_registration.services.channel_handlers import SmsExportQueue
from bmm_registration.services.notification_dispatcher import NotificationDispatcher
from bmm_registration.services.preference_store import PreferenceStore
from bmm_registration.services.progress_tracker import SyncProgressTracker
from bmm_registration.services.stage_ledger import StageLedger
from bmm_registration.services.statistics_service import StatisticsService
from bmm_registration.services.ticket_service import TicketService

# ── Repositories (singletons) ──
_member_repo = MemberRepository()
_venue_repo = VenueRepository()
_audit_repo = AuditRepository()
_job_repo = JobRepository()
_notification_repo = NotificationRepository(engine)
_sms_queue = SmsExportQueue()

# ── Services (singletons, injected with repos) ──
_capacity = CapacityLedger(_venue_repo)
_ledger = StageLedger(_member_repo, _audit_repo, release_hold=_capacity.release)
_preferences = PreferenceStore(_ledger, _venue_repo)
_assignments = AssignmentEngine(_ledger, _capacity)
_tracker = SyncProgressTracker(_job_repo)
_dispatcher = NotificationDispatcher(_ledger, _notification_repo, _sms_queue)
_tickets = TicketService(_ledger, _dispatcher, _tracker)
_statistics = StatisticsService(_ledger, _capacity, _dispatcher)


# ── Dependency providers ──

def get_member_repo() -> MemberRepository:
    return _member_repo


def get_venue_repo() -> VenueRepository:
    return _venue_repo


def get_audit_repo() -> AuditRepository:
    return _audit_repo


def get_job_repo() -> JobRepository:
    return _job_repo


def get_notification_repo() -> NotificationRepository:
    return _notification_repo


def get_sms_queue() -> SmsExportQueue:
    return _sms_queue


def get_capacity_ledger() -> CapacityLedger:
    return _capacity


def get_stage_ledger() -> StageLedger:
    return _ledger


def get_preference_store() -> PreferenceStore:
    return _preferences


def get_assignment_engine() -> AssignmentEngine:
    return _assignments


def get_progress_tracker() -> SyncProgressTracker:
    return _tracker


def get_dispatcher() -> NotificationDispatcher:
    return _dispatcher


def get_ticket_service() -> TicketService:
    return _tickets


def get_statistics_service() -> StatisticsService:
    return _statistics
