from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.config import settings


def _install_provider(service_name: str) -> None:
    resource = Resource.create({"service.name": service_name, "deployment.environment": settings.env})
    provider = TracerProvider(resource=resource)
    processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{settings.otlp_endpoint}/v1/traces"))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)


def setup_telemetry(app) -> None:
    if not settings.telemetry_enabled:
        return
    from app.core.db import engine

    _install_provider(f"{settings.service_name}-api")
    FastAPIInstrumentor.instrument_app(app)
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def setup_worker_telemetry(engine: AsyncEngine) -> None:
    if not settings.telemetry_enabled:
        return
    _install_provider(f"{settings.service_name}-dispatcher")
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
