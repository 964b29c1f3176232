# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Prometheus metrics. Every metric object is defined here.
Imported by services and middleware. Never instantiated in controllers.
"""

from prometheus_client import Counter, Gauge, Histogram

# ── HTTP Metrics (used by middleware) ──
REQUEST_COUNT = Counter(
    "bmm_requests_total",
    "Total HTTP requests to the BMM registration service",
    ["method", "endpoint", "status"],
)
REQUEST_LATENCY = Histogram(
    "bmm_request_duration_seconds",
    "Request latency in seconds",
    ["method", "endpoint"],
)
HTTP_ERRORS = Counter(
    "bmm_http_errors_total",
    "Total HTTP error responses",
    ["method", "endpoint", "status"],
)

# ── Business Metrics (updated by service layer only) ──
STAGE_TRANSITIONS = Counter(
    "bmm_stage_transitions_total",
    "Stage transitions applied",
    ["from_stage", "to_stage", "override"],
)
ASSIGNMENTS_TOTAL = Counter(
    "bmm_assignments_total",
    "Venue assignments committed",
    ["source", "region"],
)
CAPACITY_REJECTIONS = Counter(
    "bmm_capacity_rejections_total",
    "Reservations rejected because the slot was full",
    ["venue"],
)
SLOT_OCCUPANCY = Gauge(
    "bmm_slot_occupancy",
    "Current occupancy per venue slot",
    ["venue", "slot"],
)
NOTIFICATIONS_SENT = Counter(
    "bmm_notifications_sent_total",
    "Notification delivery attempts by outcome",
    ["channel", "template_kind", "status"],
)
NOTIFICATION_DISPATCH = Histogram(
    "bmm_notification_dispatch_seconds",
    "Time to dispatch one notification end-to-end",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)
TICKETS_GENERATED = Counter(
    "bmm_tickets_generated_total",
    "Ticket tokens generated",
)
JOBS_ACTIVE = Gauge(
    "bmm_jobs_active",
    "Background jobs pending or in progress",
)
JOBS_FINISHED = Counter(
    "bmm_jobs_finished_total",
    "Background jobs finished by type and final status",
    ["sync_type", "status"],
)
