# type: ignore
# pyright: reportGeneralTypeIssues=false
# pyright: reportOptionalMemberAccess=false
"""
BMM Registration Service
========================
Runs the Biennial Membership Meeting registration pipeline: member stage
tracking, venue preferences, capacity-safe venue assignment (manual, bulk and
automatic), attendance confirmation, tickets, check-in and idempotent
notification delivery, with pollable progress for long bulk jobs.

Stage machine (one step at a time; admin overrides are audited):
    INVITED ─► PREFERENCE_SUBMITTED ─► VENUE_ASSIGNED ─► ATTENDANCE_CONFIRMED
            ─► TICKET_ISSUED ─► CHECKED_IN

Port: 8010
"""
import json
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bmm_registration.controllers import (
    member_controller,
    sync_controller,
    system_controller,
    ticket_controller,
    venue_controller,
)
from bmm_registration.core.config import settings
from bmm_registration.core.dependencies import (
    get_capacity_ledger,
    get_dispatcher,
    get_notification_repo,
    get_progress_tracker,
)
from bmm_registration.core.errors import BmmError
from bmm_registration.core.logging import get_logger
from bmm_registration.middleware import MetricsMiddleware, RequestIDMiddleware
from bmm_registration.schemas import ErrorResponse

logger = get_logger(settings.SERVICE_NAME)


def load_venue_config(path: str) -> int:
    """Register venues from the JSON config file, if one is configured."""
    if not path:
        return 0
    with open(path, encoding="utf-8") as fh:
        config = json.load(fh)
    return get_capacity_ledger().load_config(config)


# ── Lifespan ──────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Create the notification table, load venues, stop worker pools on shutdown."""
    get_notification_repo().init_schema()
    venues = load_venue_config(settings.VENUES_CONFIG_FILE)
    logger.info("%s v%s starting, %d venues loaded",
                settings.SERVICE_NAME, settings.SERVICE_VERSION, venues)
    yield
    get_progress_tracker().shutdown(wait=True)
    get_dispatcher().shutdown(wait=True)
    get_notification_repo().dispose()
    logger.info("%s shutting down", settings.SERVICE_NAME)


# ── FastAPI App ───────────────────────────────────────────────────────────
app = FastAPI(
    title="BMM Registration Service",
    description="Member stages, venue capacity, assignment, tickets and notifications for the BMM.",
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
    responses={
        404: {"model": ErrorResponse, "description": "Not found"},
        409: {"model": ErrorResponse, "description": "Invalid transition or capacity exceeded"},
        422: {"model": ErrorResponse, "description": "Validation error or region mismatch"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIDMiddleware)


# ── Exception handlers ────────────────────────────────────────────────────
@app.exception_handler(BmmError)
async def domain_exception_handler(request: Request, exc: BmmError):
    req_id = getattr(request.state, "request_id", None)
    logger.info("Request rejected: %s", exc.message, extra={"request_id": req_id})
    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_dict(), "request_id": req_id},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    req_id = getattr(request.state, "request_id", None)
    logger.exception("Unhandled exception", extra={"request_id": req_id})
    return JSONResponse(
        status_code=500,
        content={"error": "internal_server_error", "detail": str(exc), "request_id": req_id},
    )


# ── Routers ───────────────────────────────────────────────────────────────
app.include_router(system_controller.router)
app.include_router(member_controller.router)
app.include_router(venue_controller.router)
app.include_router(ticket_controller.router)
app.include_router(sync_controller.router)


# ── Entrypoint ────────────────────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.SERVICE_PORT, log_level="info")
