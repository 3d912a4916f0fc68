"""OpenTelemetry helpers for carrying trace context through AMQP headers.

Publishers inject the W3C ``traceparent``/``tracestate`` pair into the message
headers; consumers extract it so handler spans join the producer's trace.
Until ``start_tracing`` installs an SDK provider, the global no-op provider
is in effect and injection leaves headers untouched.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from opentelemetry import trace  # type: ignore
from opentelemetry.context import Context  # type: ignore
from opentelemetry.propagate import get_global_textmap, inject, set_global_textmap  # type: ignore
from opentelemetry.sdk.resources import Resource  # type: ignore
from opentelemetry.sdk.trace import TracerProvider  # type: ignore
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor, SpanExporter  # type: ignore
from opentelemetry.trace import Tracer  # type: ignore
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator  # type: ignore


DEFAULT_SERVICE_NAME = "payment-queue"


def start_tracing(service_name: str = DEFAULT_SERVICE_NAME, exporter: Optional[SpanExporter] = None) -> Tracer:
    """Install a tracer provider for this process and return its tracer.

    Spans go to ``exporter`` (the console by default). Header propagation is
    pinned to W3C trace context.
    """
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(SimpleSpanProcessor(exporter or ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())
    return trace.get_tracer(service_name)


def get_tracer(service_name: str = DEFAULT_SERVICE_NAME) -> Tracer:
    return trace.get_tracer(service_name)


def inject_headers(headers: Mapping[str, Any] | None = None) -> Dict[str, Any]:
    """Return a copy of ``headers`` with the active trace context added."""
    carrier: Dict[str, Any] = dict(headers or {})
    inject(carrier)
    return carrier


def _text_carrier(headers: Mapping[str, Any]) -> Dict[str, str]:
    # AMQP tables may hand back bytes or ints; propagators only read strings
    carrier: Dict[str, str] = {}
    for key, value in headers.items():
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        carrier[str(key)] = value if isinstance(value, str) else str(value)
    return carrier


def extract_context_from_headers(headers: Mapping[str, Any] | None) -> Context:
    """Return the trace context carried by a delivery's headers (empty if none)."""
    return get_global_textmap().extract(_text_carrier(headers or {}))
