"""OpenTelemetry distributed tracing integration.

Spans wrap every adapter call (``adapter.fetch_feed``, ``adapter.refresh``, ...)
and each polling run of a connection, so a slow platform shows up in traces
next to the run context from :mod:`socialsync.logging`.

Usage:
    ```python
    from socialsync.telemetry import get_tracer, span_for

    tracer = get_tracer(__name__)

    with span_for(tracer, "adapter.fetch_feed", {"platform": "mastodon"}) as span:
        page = await adapter.fetch_feed(credentials, cursor)
    ```

Environment Variables:
    - OTEL_SERVICE_NAME: Service name for traces (default: "socialsync")
    - ENABLE_TRACING / OTLP_ENDPOINT: Export spans over OTLP gRPC
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode, Tracer
from opentelemetry.trace.span import Span

from socialsync.config import settings
from socialsync.logging import get_run_context, logger

_tracer_provider: TracerProvider | None = None
_initialized: bool = False


def initialize_telemetry() -> None:
    """Install the tracer provider (once per process).

    Spans are always created so that ``span_for`` works everywhere; they are
    only exported when ``ENABLE_TRACING`` is set and ``OTLP_ENDPOINT`` points
    at a collector.

    Raises:
        ValueError: If the OTLP exporter cannot be created for the endpoint
    """
    global _tracer_provider, _initialized

    if _initialized:
        return

    _tracer_provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": os.getenv("OTEL_SERVICE_NAME", "socialsync"),
                "service.version": "0.1.0",
                "deployment.environment": settings.environment.value,
            }
        )
    )

    exporting = bool(settings.enable_tracing and settings.otlp_endpoint)
    if exporting:
        try:
            exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint)
        except Exception as e:
            logger.error(f"❌ Cannot export spans to {settings.otlp_endpoint}: {e}")
            raise ValueError(f"Invalid OTLP endpoint: {settings.otlp_endpoint}") from e
        _tracer_provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(_tracer_provider)
    _initialized = True
    logger.debug(f"🔭 Tracing initialized (exporting: {exporting})")


def get_tracer(name: str) -> Tracer:
    """Tracer for the calling module; the provider is set up on first use."""
    if not _initialized:
        initialize_telemetry()
    return trace.get_tracer(name)


def _set_attributes(span: Span, attributes: dict[str, Any]) -> None:
    for key, value in attributes.items():
        if value is None:
            continue
        span.set_attribute(key, value if isinstance(value, (str, bool, int, float)) else str(value))


@contextmanager
def span_for(
    tracer: Tracer,
    span_name: str,
    attributes: dict[str, Any] | None = None,
) -> Iterator[Span]:
    """Open a span tagged with the current run context and ``attributes``.

    An exception leaving the block is recorded on the span, marks it as an
    error, and propagates unchanged.
    """
    with tracer.start_as_current_span(span_name, record_exception=False) as span:
        _set_attributes(span, get_run_context())
        _set_attributes(span, attributes or {})
        try:
            yield span
        except BaseException as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise


def shutdown_telemetry() -> None:
    """Flush pending spans and shut the tracer provider down."""
    global _tracer_provider, _initialized

    if _tracer_provider is not None and _initialized:
        _tracer_provider.shutdown()
        _initialized = False
        logger.info("🔭 Tracing shut down")


__all__ = ["initialize_telemetry", "shutdown_telemetry", "get_tracer", "span_for"]
