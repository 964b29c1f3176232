# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Controller: Venues, capacity and assignment endpoints.
Thin HTTP layer; all logic lives in CapacityLedger / AssignmentEngine.
Domain errors are translated to HTTP by the handler registered in main.py.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from bmm_registration.core.dependencies import (
    get_assignment_engine,
    get_capacity_ledger,
    get_preference_store,
    get_progress_tracker,
)
from bmm_registration.core.errors import PartialBatchFailure
from bmm_registration.models.domain import Venue
from bmm_registration.schemas import (
    AutoAssignRequest,
    BulkAssignRequest,
    ManualAssignRequest,
    MemberResponse,
    SyncProgressResponse,
    VenueCreateRequest,
)
from bmm_registration.services.assignment_engine import AssignmentEngine
from bmm_registration.services.capacity_ledger import CapacityLedger
from bmm_registration.services.preference_store import PreferenceStore
from bmm_registration.services.progress_tracker import SyncProgressTracker

router = APIRouter(prefix="/api/v1/bmm", tags=["Venues"])


# ── Venues ──

@router.post("/venues", status_code=201)
def register_venue(
    payload: VenueCreateRequest,
    capacity: CapacityLedger = Depends(get_capacity_ledger),
):
    """Create or reconfigure a venue and its slots."""
    capacity.register_venue(Venue(**payload.model_dump()))
    return capacity.capacity_view(region=payload.region)


@router.get("/venues-with-capacity")
def venues_with_capacity(
    region: Optional[str] = None,
    capacity: CapacityLedger = Depends(get_capacity_ledger),
):
    """Venues with per-slot capacity, current assignments and utilisation."""
    return {"region": region, "venues": capacity.capacity_view(region=region)}


@router.get("/preferences/summary")
def preference_summary(
    region: Optional[str] = None,
    store: PreferenceStore = Depends(get_preference_store),
):
    """First-choice counts per venue, for planning before auto-assign."""
    return store.summary(region=region)


# ── Assignment ──

@router.post("/auto-assign-venues", status_code=202, response_model=SyncProgressResponse)
def auto_assign_venues(
    payload: Optional[AutoAssignRequest] = None,
    engine: AssignmentEngine = Depends(get_assignment_engine),
    tracker: SyncProgressTracker = Depends(get_progress_tracker),
):
    """Start preference-driven auto-assignment. Poll /sync/progress/{sync_id}."""
    payload = payload or AutoAssignRequest()
    return tracker.start(
        "AUTO_ASSIGN",
        lambda job: engine.auto_assign(
            region=payload.region, replace_existing=payload.replace_existing, job=job,
        ),
    )


@router.post("/manual-assign-venue", response_model=MemberResponse)
def manual_assign_venue(
    payload: ManualAssignRequest,
    engine: AssignmentEngine = Depends(get_assignment_engine),
):
    """Assign (or reassign) one member to one venue slot."""
    member = engine.assign(payload.member_id, payload.venue, payload.datetime)
    return MemberResponse.from_member(member)


@router.post("/bulk-assign-venues")
def bulk_assign_venues(
    payload: BulkAssignRequest,
    engine: AssignmentEngine = Depends(get_assignment_engine),
):
    """Apply many manual assignments. 207 when some items fail."""
    try:
        return engine.bulk_assign([item.model_dump() for item in payload.assignments])
    except PartialBatchFailure as e:
        failed = sum(1 for item in e.items if item["status"] == "FAILED")
        return JSONResponse(status_code=207, content={
            "total": len(e.items),
            "succeeded": len(e.items) - failed,
            "failed": failed,
            "items": e.items,
        })
