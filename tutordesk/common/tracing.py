"""OpenTelemetry wiring: provider setup, FastAPI instrumentation, span helper."""

from contextlib import contextmanager
from typing import Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span

from tutordesk.common.config import settings
from tutordesk.common.logging import lesson_id_ctx, teacher_id_ctx

tracer = trace.get_tracer("tutordesk")


def setup_tracing(service_name: str) -> None:
    """Register a tracer provider; spans are exported only when an OTLP endpoint is set."""

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app)


@contextmanager
def traced(name: str, **attributes) -> Iterator[Span]:
    """Span tagged with the bound teacher/lesson ids plus any extra attributes."""

    with tracer.start_as_current_span(name) as span:
        for key, value in (("teacher_id", teacher_id_ctx.get()), ("lesson_id", lesson_id_ctx.get())):
            if value and value != "-":
                span.set_attribute(f"tutordesk.{key}", value)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"tutordesk.{key}", value)
        yield span
