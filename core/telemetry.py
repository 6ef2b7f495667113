import os
from typing import Optional

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.pika import PikaInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from sqlalchemy import Engine

SERVICE_VERSION = "1.0.0"
TELEMETRY_ENABLED = os.getenv("OTEL_ENABLED", "true").lower() == "true"


def setup_telemetry(service_name: str) -> Optional[TracerProvider]:
    """
    initialize OpenTelemetry, exporting spans over OTLP/gRPC
    :param service_name: medipay-api / medipay-worker / medipay-scheduler
    :return: TracerProvider, or None when OTEL_ENABLED=false
    """
    if not TELEMETRY_ENABLED:
        return None

    resource = Resource.create(
        attributes={
            "service.name": service_name,
            "service.version": SERVICE_VERSION,
        }
    )
    provider = TracerProvider(resource=resource)

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
    exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    return provider


def instrument_app(
    app: Optional[FastAPI],
    engine: Optional[Engine] = None,
    messaging: bool = False,
) -> None:
    """
    Auto-instrument the process
    :param app: FastAPI app, None for the worker and scheduler
    :param engine: SQLAlchemy engine
    :param messaging: instrument pika (worker / scheduler only)
    """
    if not TELEMETRY_ENABLED:
        return

    if app:
        FastAPIInstrumentor.instrument_app(app)
    if engine:
        SQLAlchemyInstrumentor().instrument(engine=engine)
    if messaging:
        PikaInstrumentor().instrument()

    RedisInstrumentor().instrument()
    # PayOS and billing-service calls
    HTTPXClientInstrumentor().instrument()
