"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobcore.constants import (
    METRIC_DEAD_LETTERS_ARCHIVED,
    METRIC_DEAD_LETTERS_DEDUPLICATED,
    METRIC_DEAD_LETTERS_SUBMITTED,
    METRIC_JOB_DURATION,
    METRIC_JOB_RETRIES,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_DEAD,
    METRIC_JOBS_ENQUEUED,
    METRIC_LEASE_EXPIRED,
    METRIC_QUEUE_DEPTH,
)

METRIC_API_REQUESTS = "api_requests_total"
METRIC_API_LATENCY = "api_request_duration_seconds"

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the task execution core.

    Collects metrics for:
    - Queue depth
    - Job enqueues, claims and completions
    - Retries scheduled and jobs declared dead
    - Leases reclaimed by the reaper
    - Dead letter submissions, dedup hits and archival
    - API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of pending jobs",
            ["tenant_id"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["tenant_id", "job_type"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed",
            ["worker_id"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of jobs that finished an attempt",
            ["tenant_id", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["tenant_id", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

        self.job_retries = Counter(
            METRIC_JOB_RETRIES,
            "Total number of retries scheduled",
            ["tenant_id", "job_type"],
            registry=self._registry,
        )

        self.jobs_dead = Counter(
            METRIC_JOBS_DEAD,
            "Total number of jobs that exhausted their retries",
            ["tenant_id", "job_type"],
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of expired leases reclaimed",
            ["tenant_id"],
            registry=self._registry,
        )

        self.dead_letters_submitted = Counter(
            METRIC_DEAD_LETTERS_SUBMITTED,
            "Total number of new dead letter entries",
            ["tenant_id"],
            registry=self._registry,
        )

        self.dead_letters_deduplicated = Counter(
            METRIC_DEAD_LETTERS_DEDUPLICATED,
            "Total number of dead letter submissions merged into an existing entry",
            ["tenant_id"],
            registry=self._registry,
        )

        self.dead_letters_archived = Counter(
            METRIC_DEAD_LETTERS_ARCHIVED,
            "Total number of dead letter entries archived",
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

    def record_enqueued(self, tenant_id: str, job_type: str) -> None:
        self.jobs_enqueued.labels(tenant_id=tenant_id, job_type=job_type).inc()

    def record_claimed(self, worker_id: str, count: int = 1) -> None:
        self.jobs_claimed.labels(worker_id=worker_id).inc(count)

    def record_job_completed(
        self,
        tenant_id: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record the end of an attempt."""
        self.jobs_completed.labels(tenant_id=tenant_id, status=status).inc()
        self.job_duration.labels(tenant_id=tenant_id, status=status).observe(
            duration_seconds
        )

    def record_retry(self, tenant_id: str, job_type: str) -> None:
        self.job_retries.labels(tenant_id=tenant_id, job_type=job_type).inc()

    def record_dead(self, tenant_id: str, job_type: str) -> None:
        self.jobs_dead.labels(tenant_id=tenant_id, job_type=job_type).inc()

    def record_lease_expired(self, tenant_id: str) -> None:
        self.lease_expired.labels(tenant_id=tenant_id).inc()

    def record_dead_letter_submitted(
        self,
        tenant_id: str | None,
        deduplicated: bool,
    ) -> None:
        """Record a dead letter submission, split by dedup outcome."""
        label = tenant_id or "global"
        if deduplicated:
            self.dead_letters_deduplicated.labels(tenant_id=label).inc()
        else:
            self.dead_letters_submitted.labels(tenant_id=label).inc()

    def record_dead_letters_archived(self, count: int) -> None:
        self.dead_letters_archived.inc(count)

    def update_queue_depth(self, tenant_id: str, depth: int) -> None:
        """Update queue depth for a tenant."""
        self.queue_depth.labels(tenant_id=tenant_id).set(depth)

    def record_api_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        """Record an API request."""
        self.api_requests.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        self.api_latency.labels(method=method, endpoint=endpoint).observe(
            duration_seconds
        )

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
