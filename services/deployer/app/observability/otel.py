"""OpenTelemetry and structured logging setup for the deployer service."""
from __future__ import annotations

import logging

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from ..config import get_settings

logger = structlog.get_logger(__name__)


def signal_endpoint(base_url: str, signal: str) -> str:
    """OTLP/HTTP exporters take the full per-signal URL, e.g. ``.../v1/traces``."""
    return f"{base_url.rstrip('/')}/v1/{signal}"


def configure_telemetry() -> None:
    """Install tracer and meter providers; export only when an OTLP endpoint is set."""
    settings = get_settings()
    observability = settings.observability
    resource = Resource(
        attributes={SERVICE_NAME: observability.otel_service_name, "deployment.environment": settings.environment}
    )

    tracer_provider = TracerProvider(resource=resource)
    metric_readers = []
    if observability.otel_exporter_otlp_endpoint:
        endpoint = observability.otel_exporter_otlp_endpoint
        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=signal_endpoint(endpoint, "traces"))))
        metric_readers.append(
            PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=signal_endpoint(endpoint, "metrics")))
        )
    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=metric_readers))
    logger.info("telemetry.configured", exporting=bool(metric_readers))


def configure_logging() -> None:
    """Route structlog events through a level filter taken from settings."""
    settings = get_settings()
    level = logging.getLevelName(settings.observability.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    renderer = (
        structlog.dev.ConsoleRenderer() if settings.environment == "dev" else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


__all__ = ["configure_telemetry", "configure_logging", "signal_endpoint"]
