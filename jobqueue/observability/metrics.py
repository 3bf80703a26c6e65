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
    start_http_server,
)

from jobqueue.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_ACKED,
    METRIC_JOBS_DEAD,
    METRIC_JOBS_PUSHED,
    METRIC_JOBS_RELEASED,
    METRIC_JOBS_RESERVED,
    METRIC_LEASES_REAPED,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the queue.

    Collects metrics for:
    - Jobs pushed, reserved, acknowledged, released and dead-lettered
    - Leases reclaimed by the reaper
    - Job execution duration
    - Queue depth by status
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_pushed = Counter(
            METRIC_JOBS_PUSHED,
            "Total number of jobs pushed",
            ["queue", "kind"],
            registry=self._registry,
        )

        self.jobs_reserved = Counter(
            METRIC_JOBS_RESERVED,
            "Total number of jobs leased by reserve()",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_acked = Counter(
            METRIC_JOBS_ACKED,
            "Total number of jobs acknowledged as done",
            registry=self._registry,
        )

        # reason: retry (fail with backoff) or yield (direct release)
        self.jobs_released = Counter(
            METRIC_JOBS_RELEASED,
            "Total number of jobs returned to pending",
            ["reason"],
            registry=self._registry,
        )

        # reason: no_retry, exhausted, hard_limit, lease_expired
        self.jobs_dead = Counter(
            METRIC_JOBS_DEAD,
            "Total number of dead-lettered jobs",
            ["reason"],
            registry=self._registry,
        )

        self.leases_reaped = Counter(
            METRIC_LEASES_REAPED,
            "Total number of stale leases reclaimed",
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["kind", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs in the table by status",
            ["queue", "status"],
            registry=self._registry,
        )

    def record_job_pushed(self, queue: str, kind: str) -> None:
        """Record a job submission."""
        self.jobs_pushed.labels(queue=queue, kind=kind).inc()

    def record_job_reserved(self, queue: str) -> None:
        """Record a lease acquisition."""
        self.jobs_reserved.labels(queue=queue).inc()

    def record_job_acked(self) -> None:
        """Record a successful completion."""
        self.jobs_acked.inc()

    def record_job_released(self, reason: str) -> None:
        """Record a job going back to pending."""
        self.jobs_released.labels(reason=reason).inc()

    def record_job_dead(self, reason: str, count: int = 1) -> None:
        """Record dead-lettered jobs."""
        self.jobs_dead.labels(reason=reason).inc(count)

    def record_leases_reaped(self, count: int) -> None:
        """Record reclaimed leases."""
        self.leases_reaped.inc(count)

    def record_job_executed(self, kind: str, status: str, duration_seconds: float) -> None:
        """Record a handler run."""
        self.job_duration.labels(kind=kind, status=status).observe(duration_seconds)

    def update_queue_depth(self, queue: str, counts: dict[str, int]) -> None:
        """Update depth gauges for a queue from a status -> count mapping."""
        for status, count in counts.items():
            self.queue_depth.labels(queue=queue, status=status).set(count)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: When set, serve the default registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port:
        start_http_server(port)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
