"""OpenTelemetry setup for the tutor engine.

Provides a configurable TracerProvider and MeterProvider:
  - **dev** (default): console exporters; spans print to stdout, metrics
    stay on the no-op path.
  - **prod**: OTLP exporters that ship spans and metrics to a collector.

Usage:
    from tutor_engine.telemetry import init_telemetry, get_tracer

    init_telemetry()          # call once at startup (lifespan)
    tracer = get_tracer()     # use anywhere
    with tracer.start_as_current_span("my.span"):
        ...
"""

from __future__ import annotations

import logging
import os
from typing import Any

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)

logger = logging.getLogger(__name__)

_SERVICE_NAME = "tutor-engine"
_INSTRUMENTATION_NAME = "tutor"
_initialized = False
_flashcard_clicks: metrics.Counter | None = None


def init_telemetry() -> None:
    """Initialise the global TracerProvider (and MeterProvider for OTLP).

    Reads ``OTEL_EXPORTER`` from the environment:
      - ``"otlp"`` → OTLP span + metric exporters (``OTEL_EXPORTER_OTLP_ENDPOINT``)
      - anything else → ConsoleSpanExporter (default for local dev)
    """
    global _initialized
    if _initialized:
        return

    resource = Resource.create({"service.name": _SERVICE_NAME})
    provider = TracerProvider(resource=resource)

    exporter_type = os.environ.get("OTEL_EXPORTER", "console").lower()
    if exporter_type == "otlp":
        try:
            from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
                OTLPMetricExporter,
            )
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter,
            )

            endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
            reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=endpoint))
            metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
            logger.info("[Telemetry] OTLP exporter → %s", endpoint)
        except ImportError:
            logger.warning("[Telemetry] OTLP exporter not installed — falling back to console.")
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    else:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("[Telemetry] Console exporter active (dev mode).")

    trace.set_tracer_provider(provider)
    _initialized = True


def get_tracer() -> trace.Tracer:
    """Return the tutor tracer (safe to call before ``init_telemetry``)."""
    return trace.get_tracer(_INSTRUMENTATION_NAME)


def get_meter() -> metrics.Meter:
    return metrics.get_meter(_INSTRUMENTATION_NAME)


def record_flashcard_click(attributes: dict[str, Any]) -> None:
    """Increment ``flashcard_clicks_total`` with *attributes*."""
    global _flashcard_clicks
    if _flashcard_clicks is None:
        _flashcard_clicks = get_meter().create_counter(
            "flashcard_clicks_total",
            description="Flashcards opened by learners in the UI",
        )
    _flashcard_clicks.add(1, attributes)
