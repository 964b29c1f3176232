# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""Repository package."""
from bmm_registration.repositories.audit_repository import AuditRepository
from bmm_registration.repositories.job_repository import JobRepository
from bmm_registration.repositories.member_repository import MemberRepository
from bmm_registration.repositories.notification_repository import NotificationRepository
from bmm_registration.repositories.venue_repository import SlotRecord, VenueRepository

__all__ = [
    "AuditRepository",
    "JobRepository",
    "MemberRepository",
    "NotificationRepository",
    "SlotRecord",
    "VenueRepository",
]
