"""Prometheus metrics exposed by the mail spool."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class SpoolMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.enqueued = Counter("msp_enqueued_total", "Total jobs written to the queue", registry=self.registry)
        self.duplicates = Counter("msp_duplicates_total", "Total requests rejected as already delivered", registry=self.registry)
        self.sent = Counter("msp_sent_total", "Total delivered jobs", registry=self.registry)
        self.failed = Counter("msp_failed_total", "Total jobs moved to failed", ["reason"], registry=self.registry)
        self.retries = Counter("msp_retries_total", "Total delivery retries after a transient error", registry=self.registry)
        self.queued = Gauge("msp_queued_jobs", "Jobs currently in the queued directory", registry=self.registry)

    def inc_enqueued(self):
        self.enqueued.inc()

    def inc_duplicate(self):
        self.duplicates.inc()

    def inc_sent(self):
        self.sent.inc()

    def inc_failed(self, reason: str):
        """Increase the ``failed`` counter; reason is malformed, permanent, exhausted or expired."""
        self.failed.labels(reason=reason or "unknown").inc()

    def inc_retry(self):
        self.retries.inc()

    def set_queued(self, value: int):
        """Update the gauge tracking queued jobs."""
        self.queued.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
