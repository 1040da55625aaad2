"""Prometheus metrics exposed by the delivery service."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class DeliveryMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("tc_sent_total", "Total delivered access links", registry=self.registry)
        self.failed = Counter("tc_failed_total", "Total failed deliveries", registry=self.registry)
        self.anomalies = Counter(
            "tc_status_write_anomalies_total",
            "Emails sent whose status update could not be stored",
            registry=self.registry,
        )
        self.runs = Counter("tc_dispatch_runs_total", "Dispatch runs by trigger", ["trigger"], registry=self.registry)
        self.resolutions = Counter(
            "tc_access_resolutions_total", "Access link lookups by outcome", ["outcome"], registry=self.registry
        )
        self.pending = Gauge("tc_pending_deliveries", "Deliveries still pending", registry=self.registry)

    def inc_sent(self):
        """Increase the ``sent`` counter."""
        self.sent.inc()

    def inc_failed(self):
        """Increase the ``failed`` counter."""
        self.failed.inc()

    def inc_anomaly(self):
        self.anomalies.inc()

    def inc_run(self, trigger: str):
        """Count a dispatch run started by ``trigger``."""
        self.runs.labels(trigger=trigger or "manual").inc()

    def inc_resolution(self, outcome: str):
        self.resolutions.labels(outcome=outcome).inc()

    def set_pending(self, value: int):
        """Update the gauge tracking pending deliveries."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
