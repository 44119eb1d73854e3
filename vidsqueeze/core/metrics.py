"""Prometheus metrics for the transcoding service.

Exposed at GET /api/metrics.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

# Jobs live in one process, so a plain per-process registry is enough
REGISTRY = CollectorRegistry()


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "vidsqueeze_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Transcode Job Metrics
# ============================================
TRANSCODE_JOBS_TOTAL = Counter(
    "transcode_jobs_total",
    "Transcode jobs by terminal status (accepted counts every new job)",
    ["status"],
    registry=REGISTRY,
)

TRANSCODE_JOBS_ACTIVE = Gauge(
    "transcode_jobs_active",
    "Transcode jobs currently running in this process",
    registry=REGISTRY,
)

ENCODE_PASS_DURATION_SECONDS = Histogram(
    "encode_pass_duration_seconds",
    "Wall-clock duration of one encode pass",
    ["pass_number"],
    buckets=[1, 5, 15, 30, 60, 120, 180, 240, 300, 600],
    registry=REGISTRY,
)


# ============================================
# Artifact Lifecycle Metrics
# ============================================
ARTIFACTS_PURGED_TOTAL = Counter(
    "artifacts_purged_total",
    "Files deleted by the retention sweeper",
    registry=REGISTRY,
)

ARTIFACT_DELIVERIES_TOTAL = Counter(
    "artifact_deliveries_total",
    "Completed artifact downloads",
    ["kind"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
