"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    start_http_server,
)

from jobcoord.constants import (
    METRIC_FETCHED_JOB_RESOLVED,
    METRIC_JOBS_EXPIRED,
    METRIC_LOCK_ACQUIRED,
    METRIC_LOCK_CONFLICTS,
    METRIC_LOCK_TAKEOVERS,
    METRIC_LOCK_TIMEOUTS,
    METRIC_LOCK_WAIT,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the coordination layer.

    Collects metrics for:
    - Distributed lock acquisitions, takeovers, timeouts and wait time
    - Store conflicts observed while racing for locks
    - Fetched job resolutions (removed / requeued)
    - Expired job cleanup
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.lock_acquired = Counter(
            METRIC_LOCK_ACQUIRED,
            "Total number of distributed locks acquired",
            ["path"],
            registry=self._registry,
        )

        self.lock_timeouts = Counter(
            METRIC_LOCK_TIMEOUTS,
            "Total number of distributed lock acquisitions that timed out",
            registry=self._registry,
        )

        self.lock_takeovers = Counter(
            METRIC_LOCK_TAKEOVERS,
            "Total number of stale distributed locks taken over",
            registry=self._registry,
        )

        # Lost races by kind: unique, gone, version
        self.lock_conflicts = Counter(
            METRIC_LOCK_CONFLICTS,
            "Total number of store conflicts while acquiring distributed locks",
            ["kind"],
            registry=self._registry,
        )

        self.lock_wait = Histogram(
            METRIC_LOCK_WAIT,
            "Time spent waiting for a distributed lock in seconds",
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self._registry,
        )

        self.fetched_job_resolved = Counter(
            METRIC_FETCHED_JOB_RESOLVED,
            "Total number of fetched jobs resolved",
            ["queue", "outcome"],
            registry=self._registry,
        )

        self.jobs_expired = Counter(
            METRIC_JOBS_EXPIRED,
            "Total number of expired jobs deleted",
            registry=self._registry,
        )

    def record_lock_acquired(self, path: str, wait_seconds: float) -> None:
        """Record a successful lock acquisition."""
        self.lock_acquired.labels(path=path).inc()
        self.lock_wait.observe(wait_seconds)
        if path == "takeover":
            self.lock_takeovers.inc()

    def record_lock_timeout(self, wait_seconds: float) -> None:
        """Record a lock acquisition that ran out of time."""
        self.lock_timeouts.inc()
        self.lock_wait.observe(wait_seconds)

    def record_lock_conflict(self, kind: str) -> None:
        """Record a lost race against another lock holder."""
        self.lock_conflicts.labels(kind=kind).inc()

    def record_fetched_job_resolved(self, queue: str, outcome: str) -> None:
        """Record a fetched job being removed or requeued."""
        self.fetched_job_resolved.labels(queue=queue, outcome=outcome).inc()

    def record_jobs_expired(self, count: int) -> None:
        """Record deleted expired jobs."""
        self.jobs_expired.inc(count)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, also expose the registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port)
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
