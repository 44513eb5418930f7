"""Observability utilities: Langfuse tracing and OpenTelemetry spans.

This module centralizes lightweight observability features:
- Langfuse integration via a minimal Trace wrapper that is a no-op unless the
  Langfuse host and keys are configured.
- An OpenTelemetry span context manager. A console exporter is installed on
  first use unless a tracer provider was already configured externally.

Tracing failures are logged and never interrupt the request being traced.
Environment/config dependencies are read from docqa.config.settings.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from langfuse import Langfuse
from langfuse.client import StatefulTraceClient
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from docqa.config import settings

logger = logging.getLogger(__name__)

_langfuse_client: Optional[Langfuse] = None
_otel_inited: bool = False


def _init_langfuse() -> Optional[Langfuse]:
    """Initialize and memoize a Langfuse client if configuration is present.

    Returns:
        Optional[Langfuse]: A client when LANGFUSE_HOST, LANGFUSE_PUBLIC_KEY and
            LANGFUSE_SECRET_KEY are all configured; otherwise None.
    """
    global _langfuse_client
    if _langfuse_client is not None:
        return _langfuse_client
    if settings.LANGFUSE_HOST and settings.LANGFUSE_PUBLIC_KEY and settings.LANGFUSE_SECRET_KEY:
        _langfuse_client = Langfuse(
            host=settings.LANGFUSE_HOST,
            public_key=settings.LANGFUSE_PUBLIC_KEY,
            secret_key=settings.LANGFUSE_SECRET_KEY,
        )
        return _langfuse_client
    return None


def _init_otel() -> None:
    """Install a console-exporting tracer provider once.

    Leaves an externally configured SDK provider in place.
    """
    global _otel_inited
    if _otel_inited:
        return
    if not isinstance(trace.get_tracer_provider(), TracerProvider):
        tp = TracerProvider()
        tp.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(tp)
    _otel_inited = True


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[Any]:
    """OpenTelemetry span around a pipeline stage.

    Attribute values that are not OTel primitives are stringified.
    """
    _init_otel()
    tracer = trace.get_tracer(__name__)
    with tracer.start_as_current_span(name) as otel_span:
        for k, v in (attributes or {}).items():
            if v is None:
                continue
            if not isinstance(v, (str, bool, int, float)):
                v = str(v)
            otel_span.set_attribute(k, v)
        yield otel_span


class Trace:
    """
    Minimal wrapper for a Langfuse trace with no-op methods when not configured.
    """

    def __init__(self, name: str, input: Optional[Dict[str, Any]] = None):
        """Create a trace that wraps optional Langfuse state.

        Args:
            name: Logical name of the trace.
            input: Initial input payload to attach to the trace.
        """
        self.name = name
        self.enabled = False
        self._trace: Optional[StatefulTraceClient] = None
        client = _init_langfuse()
        if client is not None:
            try:
                self._trace = client.trace(name=name, input=input or {})
                self.enabled = True
            except Exception as exc:
                logger.warning("Langfuse trace %s could not be started: %s", name, exc)
                self._trace = None

    def event(self, name: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Record a structured event on the trace if Langfuse is enabled.

        Args:
            name: Event name.
            data: Optional dictionary payload to store with the event.
        """
        if not self.enabled or self._trace is None:
            return
        try:
            self._trace.event(name=name, input=data or {})
        except Exception as exc:
            logger.debug("Langfuse event %s dropped: %s", name, exc)

    def generation(self, name: str, prompt: str, output: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Record a generation with input/output text and optional metadata."""
        if not self.enabled or self._trace is None:
            return
        try:
            self._trace.generation(
                name=name,
                input=prompt,
                output=output,
                metadata=metadata or {},
                model=settings.OPENAI_MODEL,
            )
        except Exception as exc:
            logger.debug("Langfuse generation %s dropped: %s", name, exc)

    def end(self, output: Optional[Dict[str, Any]] = None) -> None:
        """Finalize the trace with an optional output payload."""
        if not self.enabled or self._trace is None:
            return
        try:
            self._trace.update(output=output or {})
        except Exception as exc:
            logger.debug("Langfuse trace %s could not be finalized: %s", self.name, exc)
