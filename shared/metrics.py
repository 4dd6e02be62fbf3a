"""
Shared metrics configuration for the client sync layer.
"""

from typing import Any, Dict, Optional

from prometheus_client import Counter, Gauge, CollectorRegistry

_READ_COUNTERS = {
    "hit": "cache_hits_total",
    "stale": "cache_stale_reads_total",
    "miss": "cache_misses_total",
}


class MetricsCollector:
    """
    Centralized metrics collector.

    With ``registry=None`` the metrics are created unregistered, so any
    number of collectors can coexist (one per test case, for example).
    """

    def __init__(self, component: str, registry: Optional[CollectorRegistry] = None):
        self.component = component
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up sync layer metrics."""

        # Cache metrics
        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Total fresh cache reads",
            ["resource"],
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Total cache reads that required a fetch",
            ["resource"],
            registry=self.registry
        )

        self._metrics["cache_stale_reads_total"] = Counter(
            "cache_stale_reads_total",
            "Total reads served stale while revalidating",
            ["resource"],
            registry=self.registry
        )

        self._metrics["cache_fetches_total"] = Counter(
            "cache_fetches_total",
            "Total completed fetches",
            ["resource", "outcome"],
            registry=self.registry
        )

        self._metrics["cache_retries_total"] = Counter(
            "cache_retries_total",
            "Total retried remote calls",
            ["classification"],
            registry=self.registry
        )

        self._metrics["cache_evictions_total"] = Counter(
            "cache_evictions_total",
            "Total garbage-collected cache entries",
            registry=self.registry
        )

        self._metrics["cache_entries"] = Gauge(
            "cache_entries",
            "Number of cache entries held",
            registry=self.registry
        )

        # Entitlement metrics
        self._metrics["entitlement_gate_checks_total"] = Counter(
            "entitlement_gate_checks_total",
            "Total feature gate checks",
            ["decision"],
            registry=self.registry
        )

        # Localization metrics
        self._metrics["locale_fallbacks_total"] = Counter(
            "locale_fallbacks_total",
            "Total fallbacks to the default locale",
            ["reason"],
            registry=self.registry
        )

        # Notification metrics
        self._metrics["toasts_shown_total"] = Counter(
            "toasts_shown_total",
            "Total toasts shown",
            ["variant"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.set(value)

    def record_cache_read(self, resource: str, outcome: str):
        """Record a cache read as ``hit``, ``stale`` or ``miss``."""
        self.increment_counter(_READ_COUNTERS[outcome], resource=resource)

    def record_fetch(self, resource: str, outcome: str):
        """Record a completed fetch."""
        self.increment_counter("cache_fetches_total", resource=resource, outcome=outcome)


def get_metrics_collector(component: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a component."""
    return MetricsCollector(component, registry)
