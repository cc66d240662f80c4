"""
OpenTelemetry tracing for the version control service.

``create_span`` yields ``None`` until ``initialize_telemetry`` has been
called, so services can trace unconditionally.
"""
from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.celery import CeleryInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from .logging_config import get_logger

logger = get_logger(__name__)

_tracer: Optional[trace.Tracer] = None


def initialize_telemetry(
    service_name: str = "asset-vcs",
    otlp_endpoint: str = "http://localhost:4317",
    environment: str = "development",
    app: Any = None,
    engine: Any = None,
) -> None:
    """
    Initialize OpenTelemetry tracing.

    Args:
        service_name: Name of the service for tracing
        otlp_endpoint: OTLP exporter endpoint
        environment: Environment name
        app: Optional FastAPI application to instrument
        engine: Optional SQLAlchemy engine to instrument
    """
    global _tracer

    resource = Resource.create({
        SERVICE_NAME: service_name,
        "service.environment": environment,
        "service.instance.id": os.getenv("HOSTNAME", "local"),
    })

    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
    )
    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(__name__)

    if app is not None:
        FastAPIInstrumentor.instrument_app(app)
    if engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine)
    CeleryInstrumentor().instrument()

    logger.info(
        "telemetry_initialized",
        service_name=service_name,
        otlp_endpoint=otlp_endpoint,
        environment=environment,
    )


@contextmanager
def create_span(
    name: str,
    operation_type: str = "vcs",
    correlation_id: Optional[str] = None,
    attributes: Optional[Dict[str, Any]] = None,
):
    """
    Create a span for a version control operation.

    Args:
        name: Span name
        operation_type: Type of operation (vcs, api, task)
        correlation_id: Request correlation id, if any
        attributes: Additional span attributes
    """
    if not _tracer:
        yield None
        return

    with _tracer.start_as_current_span(name) as span:
        span.set_attribute("operation.type", operation_type)
        if correlation_id:
            span.set_attribute("correlation.id", correlation_id)
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value if isinstance(value, (str, int, float, bool)) else str(value))
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
