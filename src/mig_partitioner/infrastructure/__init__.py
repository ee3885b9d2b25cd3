"""Infrastructure layer - cross-cutting concerns."""

from mig_partitioner.infrastructure.config import Config, get_config
from mig_partitioner.infrastructure.logging import get_logger, setup_logging
from mig_partitioner.infrastructure.metrics import MetricsRegistry, get_metrics, setup_metrics
from mig_partitioner.infrastructure.tracing import get_tracer, setup_tracing

__all__ = [
    "Config",
    "get_config",
    "setup_logging",
    "get_logger",
    "setup_metrics",
    "get_metrics",
    "MetricsRegistry",
    "setup_tracing",
    "get_tracer",
]
