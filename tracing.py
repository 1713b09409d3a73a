"""OpenTelemetry spans around the pipeline entry points.

Spans are exported over OTLP/HTTP only when OTEL_EXPORTER_OTLP_ENDPOINT is set;
otherwise the global no-op tracer provider swallows them.
"""

from __future__ import annotations

import functools
import os
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

SERVICE_NAME = "scene-montage"
ENDPOINT_ENV = "OTEL_EXPORTER_OTLP_ENDPOINT"

_provider: Optional[TracerProvider] = None


def init_tracing() -> bool:
    """Install an exporting tracer provider if an OTLP endpoint is configured."""
    global _provider
    if _provider is not None:
        return True
    if not os.environ.get(ENDPOINT_ENV):
        return False

    resource = Resource.create({"service.name": SERVICE_NAME})
    provider = TracerProvider(resource=resource)
    # The exporter reads the endpoint from the environment and appends /v1/traces.
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
    trace.set_tracer_provider(provider)
    _provider = provider
    return True


def shutdown_tracing() -> None:
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None


def traced(func):
    """Wrap a function call in a span named after the function."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span(func.__name__):
            return func(*args, **kwargs)

    return wrapper
