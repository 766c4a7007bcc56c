"""Prometheus metrics exposed by the bulk mail service."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class MailMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("bms_sent_total", "Recipients sent", ["provider"], registry=self.registry)
        self.failed = Counter("bms_failed_total", "Recipients permanently failed", ["provider"], registry=self.registry)
        self.retried = Counter("bms_retried_total", "Recipient send attempts to retry", ["provider"], registry=self.registry)
        self.rate_limited = Counter("bms_rate_limited_total", "Jobs paused by the rate limiter", ["scope"], registry=self.registry)
        self.jobs = Counter("bms_jobs_total", "Jobs reaching a terminal status", ["status"], registry=self.registry)
        self.admitted = Counter("bms_jobs_admitted_total", "Jobs accepted by the dispatcher", ["status"], registry=self.registry)
        self.queued = Gauge("bms_queue_entries", "Queue entries by state", ["state"], registry=self.registry)

    def inc_sent(self, provider: str):
        """Increase the ``sent`` counter for the given provider."""
        self.sent.labels(provider=provider or "default").inc()

    def inc_failed(self, provider: str):
        self.failed.labels(provider=provider or "default").inc()

    def inc_retried(self, provider: str):
        self.retried.labels(provider=provider or "default").inc()

    def inc_rate_limited(self, scope: str):
        self.rate_limited.labels(scope=scope or "global").inc()

    def inc_job(self, status: str):
        """Count a job that reached ``status``."""
        self.jobs.labels(status=status).inc()

    def inc_admitted(self, status: str):
        self.admitted.labels(status=status).inc()

    def set_queue_stats(self, stats: dict):
        """Update the queue gauges from :meth:`SQLiteJobQueue.stats`."""
        for state in ("ready", "in_flight", "delayed"):
            self.queued.labels(state=state).set(int(stats.get(state, 0)))

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
