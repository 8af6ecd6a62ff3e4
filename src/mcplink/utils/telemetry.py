"""OpenTelemetry tracing helpers for mcplink.

Transports wrap each call in a span obtained from :func:`get_tracer`.  When
the OpenTelemetry SDK is *not* configured the API returns no-op
implementations, so tracing costs nothing unless explicitly opted in.

Usage::

    from mcplink.utils.telemetry import get_tracer

    _tracer = get_tracer(__name__)

    with _tracer.start_as_current_span("mcplink.http.call") as span:
        span.set_attribute(ATTR_METHOD, "tools/list")

To export spans, pass ``--otlp-endpoint`` to the CLI (or set
``MCPLINK_OTLP_ENDPOINT``), which calls :func:`configure_telemetry` once at
startup; this requires the ``otel`` extra.
"""

from __future__ import annotations

import logging

from opentelemetry import trace

# ---------------------------------------------------------------------------
# Semantic attribute keys used throughout mcplink instrumentation
# ---------------------------------------------------------------------------

ATTR_TRANSPORT = "mcplink.transport"
ATTR_METHOD = "mcplink.method"
ATTR_REQUEST_ID = "mcplink.request_id"
ATTR_CLIENT_ID = "mcplink.client_id"
ATTR_URL = "mcplink.url"
ATTR_COMMAND = "mcplink.command"
ATTR_STATUS_CODE = "mcplink.http.status_code"
ATTR_FALLBACK = "mcplink.fallback"

_INSTRUMENTATION_NAME = "mcplink"

logger = logging.getLogger(__name__)


def get_tracer(name: str | None = None) -> trace.Tracer:
    """Return a :class:`~opentelemetry.trace.Tracer` for *name*.

    If the OpenTelemetry SDK has not been configured the returned tracer
    is a no-op.
    """
    return trace.get_tracer(name or _INSTRUMENTATION_NAME)


def configure_telemetry(otlp_endpoint: str, *, service_name: str = "mcplink") -> None:
    """Install an SDK tracer provider that ships spans to *otlp_endpoint*.

    Spans go over OTLP/gRPC only; nothing is written to stdout, which the
    bridge and the time server use as their wire.

    Raises:
        ImportError: The ``otel`` extra (``pip install mcplink[otel]``) is missing.
    """
    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter  # pyright: ignore[reportMissingImports]
        from opentelemetry.sdk.resources import Resource  # pyright: ignore[reportMissingImports]
        from opentelemetry.sdk.trace import TracerProvider  # pyright: ignore[reportMissingImports]
        from opentelemetry.sdk.trace.export import BatchSpanProcessor  # pyright: ignore[reportMissingImports]
    except ImportError as exc:
        msg = "OTLP tracing needs opentelemetry-sdk and opentelemetry-exporter-otlp: pip install mcplink[otel]"
        raise ImportError(msg) from exc

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    trace.set_tracer_provider(provider)
    logger.info("Exporting traces to %s", otlp_endpoint)
