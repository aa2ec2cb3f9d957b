"""
Prometheus metrics for the two-factor service

Provides application metrics for monitoring:
- HTTP request latency and counts
- Verification outcomes per flow and method
- Lockouts and backup-code consumption
"""
from prometheus_client import Counter, Histogram, Gauge, Info, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response
import time
import logging

logger = logging.getLogger(__name__)

# Create metrics router
metrics_router = APIRouter(tags=["metrics"])

# =============================================================================
# HTTP Metrics
# =============================================================================

HTTP_REQUEST_DURATION = Histogram(
    "twofactor_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status_code"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

HTTP_REQUESTS_TOTAL = Counter(
    "twofactor_http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"]
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "twofactor_http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"]
)

# =============================================================================
# Verification Metrics
# =============================================================================

VERIFICATIONS_TOTAL = Counter(
    "twofactor_verifications_total",
    "Total number of two-factor verification attempts",
    ["flow", "method", "outcome"]  # flow: enroll, login, disable, regenerate
)

LOCKOUTS_TOTAL = Counter(
    "twofactor_lockouts_total",
    "Total number of verification lockouts",
    ["action"]
)

ENROLLMENTS_TOTAL = Counter(
    "twofactor_enrollments_total",
    "Total number of enrollment steps",
    ["stage"]  # provisioned, confirmed, disabled
)

BACKUP_CODES_REDEEMED = Counter(
    "twofactor_backup_codes_redeemed_total",
    "Total number of backup codes consumed"
)

# =============================================================================
# System Info
# =============================================================================

APP_INFO = Info(
    "twofactor_service",
    "Two-factor service information"
)

# Set app info on module load
APP_INFO.info({
    "version": "1.0.0",
    "framework": "fastapi"
})

# =============================================================================
# Metrics Endpoint
# =============================================================================

@metrics_router.get("/metrics", include_in_schema=False)
async def metrics():
    """
    Prometheus metrics endpoint

    Returns all application metrics in Prometheus text format.
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


# =============================================================================
# Middleware for HTTP Metrics
# =============================================================================

async def metrics_middleware(request, call_next):
    """
    Middleware to collect HTTP request metrics
    """
    method = request.method
    endpoint = request.url.path

    HTTP_REQUESTS_IN_PROGRESS.labels(method=method, endpoint=endpoint).inc()

    start_time = time.time()
    status_code = "500"

    try:
        response = await call_next(request)
        status_code = str(response.status_code)
        return response
    finally:
        duration = time.time() - start_time
        HTTP_REQUEST_DURATION.labels(
            method=method,
            endpoint=endpoint,
            status_code=status_code
        ).observe(duration)
        HTTP_REQUESTS_TOTAL.labels(
            method=method,
            endpoint=endpoint,
            status_code=status_code
        ).inc()
        HTTP_REQUESTS_IN_PROGRESS.labels(method=method, endpoint=endpoint).dec()


# =============================================================================
# Helper Functions
# =============================================================================

def record_verification(flow: str, method: str, outcome: str):
    """Record a verification attempt"""
    VERIFICATIONS_TOTAL.labels(flow=flow, method=method, outcome=outcome).inc()


def record_lockout(action: str):
    """Record a key moving into the locked state"""
    LOCKOUTS_TOTAL.labels(action=action).inc()


def record_enrollment(stage: str):
    """Record an enrollment lifecycle step"""
    ENROLLMENTS_TOTAL.labels(stage=stage).inc()


def record_backup_code_redeemed():
    """Record a consumed backup code"""
    BACKUP_CODES_REDEEMED.inc()
