from decimal import Decimal
from typing import Optional

from prometheus_client import Counter, Histogram, CollectorRegistry, REGISTRY

# =====================================
# METRICS COLLECTOR
# =====================================

class MetricsCollector:
    """Prometheus metrics for payment reconciliation"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        registry = registry or REGISTRY

        self.webhooks_total = Counter(
            "mpesa_webhooks_total",
            "M-Pesa webhook deliveries by outcome",
            ["outcome", "reason"],
            registry=registry,
        )

        self.tenant_matches_total = Counter(
            "tenant_matches_total",
            "Tenant matches by strategy",
            ["strategy"],
            registry=registry,
        )

        self.allocated_amount_total = Counter(
            "payment_allocated_amount_total",
            "Amount allocated per bucket (KES)",
            ["bucket"],
            registry=registry,
        )

        self.notifications_total = Counter(
            "sms_notifications_total",
            "Outbound SMS attempts",
            ["kind", "status"],
            registry=registry,
        )

        self.rollover_tenants_total = Counter(
            "ledger_rollover_tenants_total",
            "Tenants touched by monthly rollover",
            ["result"],  # result=updated|skipped|failed
            registry=registry,
        )

        self.reconciliation_duration = Histogram(
            "reconciliation_duration_seconds",
            "End-to-end webhook reconciliation time",
            registry=registry,
        )

    def record_webhook(self, outcome: str, reason: str = "none"):
        self.webhooks_total.labels(outcome=outcome, reason=reason).inc()

    def record_match(self, strategy: str):
        self.tenant_matches_total.labels(strategy=strategy).inc()

    def record_allocation(self, bucket: str, amount: Decimal):
        if amount > 0:
            self.allocated_amount_total.labels(bucket=bucket).inc(float(amount))

    def record_notification(self, kind: str, success: bool):
        self.notifications_total.labels(kind=kind, status="sent" if success else "failed").inc()

    def record_rollover(self, updated: int, skipped: int, failed: int):
        self.rollover_tenants_total.labels(result="updated").inc(updated)
        self.rollover_tenants_total.labels(result="skipped").inc(skipped)
        self.rollover_tenants_total.labels(result="failed").inc(failed)


# Global metrics instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Dependency to get metrics collector"""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector
