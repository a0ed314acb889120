"""OpenTelemetry tracing setup for ToolPilot.

Installs an OTLP exporter when OTEL_EXPORTER_OTLP_ENDPOINT is set and
the optional ``otlp`` extra is installed. Otherwise spans go to the
API's default no-op provider.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.trace import Tracer

from toolpilot import __version__

logger = logging.getLogger(__name__)

_tracer: Tracer | None = None
_initialized = False


def init_tracing(
    endpoint: str | None = None,
    service_name: str | None = None,
) -> bool:
    """Initialize OpenTelemetry tracing.

    Args:
        endpoint: OTLP endpoint URL. Falls back to OTEL_EXPORTER_OTLP_ENDPOINT env var.
        service_name: Service name for traces. Falls back to OTEL_SERVICE_NAME env var.

    Returns:
        True if tracing was initialized, False if skipped (no endpoint or
        the SDK/exporter packages are not installed).
    """
    global _tracer, _initialized

    if _initialized:
        return _tracer is not None

    _initialized = True

    endpoint = endpoint or os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        return False

    service_name = service_name or os.environ.get("OTEL_SERVICE_NAME", "toolpilot")

    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logger.warning("OTLP endpoint set but opentelemetry-sdk is not installed; tracing disabled")
        return False

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer("toolpilot", __version__)
    return True


def get_tracer() -> Tracer:
    """The ToolPilot tracer (no-op until a provider is installed)."""
    if _tracer is not None:
        return _tracer
    return trace.get_tracer("toolpilot", __version__)


def shutdown() -> None:
    """Flush and shut down the tracer provider."""
    global _tracer, _initialized
    provider = trace.get_tracer_provider()
    if hasattr(provider, "shutdown"):
        provider.shutdown()
    _tracer = None
    _initialized = False
