import os
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor


def setup_tracing(service_name: str):
    """Setup OpenTelemetry tracing"""
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    trace.set_tracer_provider(provider)
    tracer = trace.get_tracer(service_name)

    # Jaeger and most collectors accept OTLP directly
    if os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"):
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))

    # Auto-instrument HTTP clients
    HTTPXClientInstrumentor().instrument()

    return tracer


def instrument_app(app):
    """Instrument FastAPI app"""
    FastAPIInstrumentor.instrument_app(app)
