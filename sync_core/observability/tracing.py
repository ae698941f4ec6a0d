"""
InvoiceSync OpenTelemetry Setup

Production observability:
- Traces for sync attempts (one span per attempt phase)
- Spans for inbound webhooks
- OTLP export when an endpoint is configured, otherwise spans stay in-process
"""
from __future__ import annotations
from typing import Optional
import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger(__name__)


def setup_tracing(
    service_name: str = "invoicesync",
    endpoint: Optional[str] = None,
) -> trace.Tracer:
    """Install a TracerProvider, exporting over OTLP when an endpoint is set."""
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)

    otlp_endpoint = endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if otlp_endpoint:
        # Ships with the `otlp` extra
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
        logger.info("Exporting traces to %s", otlp_endpoint)

    trace.set_tracer_provider(provider)
    return trace.get_tracer(service_name)


def create_webhook_span(tracer: trace.Tracer, platform: str, payload_size: int):
    """Start a span for one inbound webhook delivery."""
    return tracer.start_as_current_span(
        f"webhook.{platform}",
        attributes={
            "webhook.platform": platform,
            "webhook.payload_bytes": payload_size,
        },
    )
