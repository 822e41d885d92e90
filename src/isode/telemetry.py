"""OpenTelemetry tracing for isode.

The pool and the transport trace through the OpenTelemetry API only:
``isode.provision`` covers creating a sandbox and ``isode.execute`` a
single dispatch, both tagged with the ``isode.*`` attributes below.
Until an SDK provider is installed these spans are no-ops.

:func:`configure_telemetry` installs one from a :class:`SandboxConfig`
(``ISODE_OTLP_ENDPOINT`` / ``ISODE_TRACE_CONSOLE``); it needs the ``otel``
extra (``pip install isode[otel]``).
"""

from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace

from isode.models import SandboxConfig

logger = logging.getLogger(__name__)

ATTR_ISOLATE_KEY = "isode.isolate_key"
ATTR_IMAGE = "isode.image"
ATTR_CONTAINER_ID = "isode.container.id"
ATTR_QUEUED = "isode.queued"
ATTR_ENDPOINT = "isode.endpoint"
ATTR_STATUS_CODE = "isode.status_code"

_INSTRUMENTATION_NAME = "isode"


def get_tracer(name: str | None = None) -> trace.Tracer:
    """Tracer for isode spans; a no-op until a provider is installed."""
    return trace.get_tracer(name or _INSTRUMENTATION_NAME)


def configure_telemetry(config: SandboxConfig | None = None, *, service_name: str = "isode") -> bool:
    """Export isode spans the way *config* asks.

    Spans go to the OTLP/gRPC collector at ``config.otlp_endpoint`` and,
    when ``config.trace_console`` is set, to stdout. With neither set the
    global tracer provider is left alone and ``False`` is returned.

    Raises
    ------
    ImportError
        If an exporter is requested but the ``otel`` extra is missing.
    """
    config = config or SandboxConfig()
    if not config.otlp_endpoint and not config.trace_console:
        return False

    try:
        from opentelemetry.sdk.resources import Resource  # pyright: ignore[reportMissingImports]
        from opentelemetry.sdk.trace import TracerProvider  # pyright: ignore[reportMissingImports]
        from opentelemetry.sdk.trace.export import (  # pyright: ignore[reportMissingImports]
            BatchSpanProcessor,
            ConsoleSpanExporter,
            SimpleSpanProcessor,
        )
    except ImportError as exc:
        msg = "opentelemetry-sdk is needed to export isode spans; install isode[otel]"
        raise ImportError(msg) from exc

    provider = TracerProvider(resource=Resource.create({"service.name": service_name, ATTR_IMAGE: config.image}))
    if config.trace_console:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    if config.otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(_otlp_exporter(config.otlp_endpoint)))

    trace.set_tracer_provider(provider)
    logger.info(
        "Tracing enabled (otlp=%s, console=%s)",
        config.otlp_endpoint or "off",
        "on" if config.trace_console else "off",
    )
    return True


def _otlp_exporter(endpoint: str) -> Any:
    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (  # pyright: ignore[reportMissingImports]
            OTLPSpanExporter,
        )
    except ImportError as exc:
        msg = f"opentelemetry-exporter-otlp is needed to export spans to {endpoint}; install isode[otel]"
        raise ImportError(msg) from exc
    return OTLPSpanExporter(endpoint=endpoint)
