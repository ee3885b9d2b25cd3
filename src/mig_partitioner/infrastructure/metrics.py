"""Prometheus metrics for the partition manager."""

from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, Info, start_http_server


class MetricsRegistry:
    """Partition lifecycle metrics."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or REGISTRY

        self.slices_allocated_total = Counter(
            "mig_slices_allocated_total",
            "Slices allocated, by profile and whether an existing partition was reused",
            ["profile", "outcome"],
            registry=self._registry,
        )
        self.slices_reclaimed_total = Counter(
            "mig_slices_reclaimed_total", "Slices torn down", registry=self._registry
        )
        self.operation_failures_total = Counter(
            "mig_operation_failures_total",
            "Failed lifecycle operations by error kind",
            ["operation", "kind"],
            registry=self._registry,
        )
        self.operation_latency_seconds = Histogram(
            "mig_operation_latency_seconds",
            "Lifecycle operation latency",
            ["operation"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10),
            registry=self._registry,
        )
        self.live_slices = Gauge(
            "mig_live_slices", "Live slices per device at last inventory", ["device"], registry=self._registry
        )

        self.info = Info("mig_partitioner", "Partition manager info", registry=self._registry)

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry


_metrics: MetricsRegistry | None = None


def setup_metrics(port: int = 8005, registry: CollectorRegistry | None = None) -> MetricsRegistry:
    """Start the exporter for the global registry, creating it if needed."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsRegistry(registry)
    start_http_server(port, registry=_metrics.registry)
    return _metrics


def get_metrics() -> MetricsRegistry:
    """Get the global registry, creating it without an exporter if needed."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsRegistry()
    return _metrics
