# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Controller: Background job progress.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from bmm_registration.core.dependencies import get_progress_tracker
from bmm_registration.schemas import SyncProgressResponse
from bmm_registration.services.progress_tracker import SyncProgressTracker

router = APIRouter(prefix="/api/v1/bmm", tags=["Sync"])


@router.get("/sync/progress", response_model=list[SyncProgressResponse])
def list_jobs(
    sync_type: Optional[str] = None,
    tracker: SyncProgressTracker = Depends(get_progress_tracker),
):
    return tracker.list_jobs(sync_type=sync_type)


@router.get("/sync/progress/{sync_id}", response_model=SyncProgressResponse)
def get_progress(
    sync_id: str,
    tracker: SyncProgressTracker = Depends(get_progress_tracker),
):
    """Poll a job: processed / total / percentage / error count."""
    return tracker.get(sync_id)


@router.post("/sync/progress/{sync_id}/cancel", response_model=SyncProgressResponse)
def cancel_job(
    sync_id: str,
    tracker: SyncProgressTracker = Depends(get_progress_tracker),
):
    """Request cancellation; members already being processed still complete."""
    return tracker.cancel(sync_id)
