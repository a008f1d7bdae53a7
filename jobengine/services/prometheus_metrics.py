"""
Prometheus metrics for the job engine
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

from ..config import API_VERSION

# Build info
BUILD_INFO = Gauge(
    'jobengine_build_info',
    'Build information',
    ['version']
)

# Request counters
REQUESTS_TOTAL = Counter(
    'jobengine_requests_total',
    'Total number of HTTP requests',
    ['status_class']
)

# Job lifecycle
JOBS_CREATED_TOTAL = Counter(
    'jobengine_jobs_created_total',
    'Total number of jobs created',
    ['type']
)

JOBS_FINISHED_TOTAL = Counter(
    'jobengine_jobs_finished_total',
    'Total number of jobs that reached a terminal state',
    ['type', 'status']
)

JOBS_REJECTED_TOTAL = Counter(
    'jobengine_jobs_rejected_total',
    'Job requests refused before anything was spawned',
    ['reason']
)

ACTIVE_JOBS = Gauge(
    'jobengine_active_jobs',
    'Jobs currently pending, running or awaiting approval'
)

JOB_DURATION_SECONDS = Histogram(
    'jobengine_job_duration_seconds',
    'Wall time from job creation to terminal state',
    ['type'],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600]
)

# Output streaming
OUTPUT_LINES_TOTAL = Counter(
    'jobengine_output_lines_total',
    'Total number of captured output lines'
)

LIVE_SUBSCRIBERS = Gauge(
    'jobengine_live_subscribers',
    'Output stream subscribers currently attached'
)

# Approval
APPROVAL_DECISIONS_TOTAL = Counter(
    'jobengine_approval_decisions_total',
    'Approval checkpoint outcomes',
    ['decision']
)

# Process cleanup
ORPHAN_PROCESS_WARNINGS_TOTAL = Counter(
    'jobengine_orphan_process_warnings_total',
    'Process groups that survived SIGKILL'
)

PROCESSES_SPAWNED_TOTAL = Counter(
    'jobengine_processes_spawned_total',
    'Backing processes started',
    ['outcome']
)


class PrometheusMetrics:
    """Thin wrapper so callers do not touch metric objects directly"""

    def __init__(self):
        self._setup_build_info()

    def _setup_build_info(self):
        BUILD_INFO.labels(version=API_VERSION).set(1)

    def increment_requests(self, status_code: int):
        """Increment request counter by status class."""
        if 200 <= status_code < 300:
            status_class = "2xx"
        elif 400 <= status_code < 500:
            status_class = "4xx"
        elif 500 <= status_code < 600:
            status_class = "5xx"
        else:
            status_class = "other"
        REQUESTS_TOTAL.labels(status_class=status_class).inc()

    def increment_jobs_created(self, job_type: str):
        JOBS_CREATED_TOTAL.labels(type=job_type).inc()

    def increment_jobs_rejected(self, reason: str):
        JOBS_REJECTED_TOTAL.labels(reason=reason).inc()

    def record_job_finished(self, job_type: str, status: str, duration_sec: float):
        JOBS_FINISHED_TOTAL.labels(type=job_type, status=status).inc()
        JOB_DURATION_SECONDS.labels(type=job_type).observe(max(0.0, duration_sec))

    def set_active_jobs(self, count: int):
        ACTIVE_JOBS.set(count)

    def increment_output_lines(self, count: int = 1):
        OUTPUT_LINES_TOTAL.inc(count)

    def inc_subscribers(self):
        LIVE_SUBSCRIBERS.inc()

    def dec_subscribers(self):
        LIVE_SUBSCRIBERS.dec()

    def increment_approval_decision(self, decision: str):
        APPROVAL_DECISIONS_TOTAL.labels(decision=decision).inc()

    def increment_orphan_warnings(self):
        ORPHAN_PROCESS_WARNINGS_TOTAL.inc()

    def increment_processes_spawned(self, outcome: str):
        PROCESSES_SPAWNED_TOTAL.labels(outcome=outcome).inc()

    def get_metrics(self) -> bytes:
        """Get Prometheus metrics in text format."""
        return generate_latest()

    def get_content_type(self) -> str:
        """Get the content type for Prometheus metrics."""
        return CONTENT_TYPE_LATEST


# Global metrics instance
prometheus_metrics = PrometheusMetrics()
