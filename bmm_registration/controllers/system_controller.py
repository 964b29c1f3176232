# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Controller: System endpoints (health, readiness, metrics).
Pure HTTP layer, no business logic.
"""

from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import Response

from bmm_registration.core.config import settings
from bmm_registration.core.dependencies import (
    get_capacity_ledger,
    get_job_repo,
    get_member_repo,
    get_notification_repo,
    get_venue_repo,
)

router = APIRouter(tags=["System"])


@router.get("/health")
def health_check():
    """Liveness probe for Docker and orchestration."""
    return {
        "status": "ok",
        "service": settings.SERVICE_NAME,
        "version": settings.SERVICE_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "members_count": get_member_repo().count(),
        "venues_count": get_venue_repo().count(),
        "active_jobs": get_job_repo().count_active(),
    }


@router.get("/health/ready")
def readiness_check():
    """Readiness probe: notification store reachable and capacity ledger consistent."""
    try:
        notifications = get_notification_repo().verify_connection()
    except SQLAlchemyError as exc:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "service": settings.SERVICE_NAME, "detail": str(exc)},
        )
    violations = get_capacity_ledger().invariant_violations()
    return {
        "status": "ready" if not violations else "degraded",
        "service": settings.SERVICE_NAME,
        "venues_loaded": get_venue_repo().count() > 0,
        "notification_records": notifications,
        "overbooked_slots": violations,
    }


@router.get("/metrics")
def prometheus_metrics():
    """Expose Prometheus metrics in OpenMetrics format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
