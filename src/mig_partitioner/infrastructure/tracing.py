"""OpenTelemetry tracing configuration for the partition manager.

Every lifecycle operation runs in a ``slice.<operation>`` span. Spans carry
the request identifiers on entry and, once a slice is resolved, the
instance ids the driver handed back.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from mig_partitioner.infrastructure.config import Config, get_config

if TYPE_CHECKING:
    from mig_partitioner.domain.entities.slice import Slice


def setup_tracing(config: Config | None = None) -> trace.Tracer:
    """Configure OpenTelemetry tracing.

    Spans go to the OTLP endpoint when one is configured, to the console
    otherwise. The resource names the driver backend and device model so
    traces from mock and real hosts can be told apart.
    """
    config = config or get_config()

    resource = Resource.create(
        {
            "service.name": "mig_partitioner",
            "service.version": "0.1.0",
            "deployment.environment": config.observability.environment,
            "mig.driver.backend": config.driver.backend,
            "mig.device_model": config.catalog.device_model,
        }
    )

    provider = TracerProvider(resource=resource)

    if config.observability.otel_endpoint:
        exporter = OTLPSpanExporter(endpoint=config.observability.otel_endpoint, insecure=True)
    else:
        exporter = ConsoleSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)

    return get_tracer()


def get_tracer(name: str = "mig_partitioner") -> trace.Tracer:
    """Get a tracer instance."""
    return trace.get_tracer(name)


def record_slice(span: trace.Span, slice_: "Slice") -> None:
    """Attach a resolved slice's identity and outcome to a span."""
    span.set_attribute("slice.device", slice_.device)
    span.set_attribute("slice.placement", str(slice_.placement))
    span.set_attribute("slice.state", slice_.state.value)
    span.set_attribute("slice.reused", slice_.reused)
    if slice_.gi_id is not None:
        span.set_attribute("slice.gi_id", slice_.gi_id)
    if slice_.ci_id is not None:
        span.set_attribute("slice.ci_id", slice_.ci_id)
