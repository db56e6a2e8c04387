"""
Distributed Tracing with OpenTelemetry.

Both processes export to the same OTLP collector; the worker reports as
"<service>-worker" so re-engagement runs show up as their own service.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Tracer

from botmeter.config import settings


def _service_name(component: str) -> str:
    if component == "api":
        return settings.service_name
    return f"{settings.service_name}-{component}"


def setup_tracing(component: str = "api") -> None:
    """Install the OTLP tracer provider. No-op unless TRACING_ENABLED is set."""
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": _service_name(component),
                "service.version": settings.api_version,
                "botmeter.scheduler_provider": settings.scheduler_provider,
            }
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Trace every request except the Prometheus scrape."""
    if not settings.tracing_enabled:
        return

    FastAPIInstrumentor.instrument_app(app, excluded_urls="metrics")


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace queries issued through an async engine."""
    if not settings.tracing_enabled:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer(name: str) -> Tracer:
    """
    Tracer for manual spans.

        tracer = get_tracer(__name__)
        with tracer.start_as_current_span("re_engagement_run") as span:
            span.set_attribute("task_id", task_id)
    """
    return trace.get_tracer(name)
