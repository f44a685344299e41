"""Prometheus metrics for the transcoding pipeline.

Tracks queue depth, scheduler admission outcomes, job outcomes and
per-resolution encode durations.
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

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "hlspipe_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# Queue / Admission Metrics
# ============================================
QUEUE_DEPTH = Gauge(
    "transcode_queue_depth",
    "Messages waiting in the work queue, as last reported by the broker",
    ["queue_name"],
    registry=REGISTRY,
)

QUEUE_AVAILABLE_SLOTS = Gauge(
    "transcode_queue_available_slots",
    "Admission budget computed by the last scheduler cycle",
    ["queue_name"],
    registry=REGISTRY,
)

SCHEDULER_CYCLES_TOTAL = Counter(
    "scheduler_cycles_total",
    "Scheduler cycles by outcome",
    ["outcome"],
    registry=REGISTRY,
)

JOBS_PUBLISHED_TOTAL = Counter(
    "jobs_published_total",
    "Job messages published to the work queue",
    registry=REGISTRY,
)

JOBS_PUBLISH_FAILURES_TOTAL = Counter(
    "jobs_publish_failures_total",
    "Tasks that could not be turned into a published job message",
    registry=REGISTRY,
)


# ============================================
# Job Metrics
# ============================================
JOBS_PROCESSED_TOTAL = Counter(
    "jobs_processed_total",
    "Deliveries handled by the consumer by outcome",
    ["outcome"],
    registry=REGISTRY,
)

JOB_DURATION_SECONDS = Histogram(
    "transcode_job_duration_seconds",
    "Wall time of a whole transcode job",
    buckets=[10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0, 3600.0],
    registry=REGISTRY,
)

VARIANT_DURATION_SECONDS = Histogram(
    "transcode_variant_duration_seconds",
    "Wall time of a single resolution encode",
    ["resolution"],
    buckets=[5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
    registry=REGISTRY,
)


# ============================================
# Registry API Metrics
# ============================================
REGISTRY_REPORT_FAILURES_TOTAL = Counter(
    "registry_report_failures_total",
    "Status reports to the task registry that failed",
    ["operation"],
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
