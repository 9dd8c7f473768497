"""Prometheus metrics exposed by the fulfillment service."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class FulfillmentMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.submitted = Counter("pf_mailpieces_submitted_total", "Total mailpieces accepted by the provider", registry=self.registry)
        self.dispatch_failures = Counter("pf_dispatch_failures_total", "Total mailpieces that exhausted their attempts", registry=self.registry)
        self.dispatch_retries = Counter("pf_dispatch_retries_total", "Total dispatch retries", registry=self.registry)
        self.designs = Counter("pf_designs_processed_total", "Design assets processed", ["outcome"], registry=self.registry)
        self.campaigns = Counter("pf_campaigns_finished_total", "Campaign runs by final status", ["status"], registry=self.registry)
        self.webhooks = Counter("pf_webhook_events_total", "Provider webhook events", ["status"], registry=self.registry)
        self.processing = Gauge("pf_campaigns_processing", "Campaigns currently being processed", registry=self.registry)

    def inc_submitted(self):
        self.submitted.inc()

    def inc_dispatch_failure(self):
        self.dispatch_failures.inc()

    def inc_retry(self):
        self.dispatch_retries.inc()

    def inc_design(self, outcome: str):
        """Count a processed design; ``outcome`` is ``ok`` or ``error``."""
        self.designs.labels(outcome=outcome).inc()

    def inc_campaign(self, status: str):
        self.campaigns.labels(status=status or "unknown").inc()

    def inc_webhook(self, status: str):
        """Count a webhook by the status it mapped to (``ignored`` when unmapped)."""
        self.webhooks.labels(status=status or "ignored").inc()

    def processing_started(self):
        self.processing.inc()

    def processing_finished(self):
        self.processing.dec()

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
