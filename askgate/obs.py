"""Observability helpers built on OpenTelemetry.

- configure_tracing: installs a tracer provider with a console exporter when
  OTEL_CONSOLE_EXPORT is enabled; otherwise the API's default (no-op) provider or
  one configured externally is used.
- span: context manager recording one pipeline step with attributes.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from askgate.config import settings

_otel_inited: bool = False


def configure_tracing(console_export: Optional[bool] = None) -> None:
    """Set a global tracer provider once, exporting to the console if asked."""
    global _otel_inited
    if _otel_inited:
        return
    enabled = settings.OTEL_CONSOLE_EXPORT if console_export is None else console_export
    if not enabled:
        return
    tp = TracerProvider()
    tp.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(tp)
    _otel_inited = True


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[trace.Span]:
    """Record a span around a pipeline step.

    Exceptions raised inside the block are recorded on the span and re-raised.
    """
    tracer = trace.get_tracer("askgate")
    with tracer.start_as_current_span(name) as current:
        for k, v in (attributes or {}).items():
            if v is not None:
                current.set_attribute(k, v)
        yield current
