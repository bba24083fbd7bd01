import logging
import os
from collections.abc import Callable

from opentelemetry import trace

logger = logging.getLogger(__name__)

_TRACER_NAME = "crm_imports"


def get_tracer(name: str | None = None) -> trace.Tracer:
    """Return an OTel tracer.

    Until ``setup_otel`` installs a TracerProvider the API hands out no-op
    spans, so import batches can always open spans.
    """
    return trace.get_tracer(name or _TRACER_NAME)


def _instrument(label: str, apply: Callable[[], None]) -> None:
    try:
        apply()
        logger.info("OTel: %s instrumented", label)
    except Exception:
        logger.warning("OTel: %s instrumentation unavailable", label, exc_info=True)


def _instrument_fastapi(app) -> None:
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

    FastAPIInstrumentor.instrument_app(app)


def _instrument_sqlalchemy() -> None:
    from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

    from app.db import get_engine

    SQLAlchemyInstrumentor().instrument(engine=get_engine())


def _instrument_celery() -> None:
    from opentelemetry.instrumentation.celery import CeleryInstrumentor

    CeleryInstrumentor().instrument()


def _instrument_redis() -> None:
    from opentelemetry.instrumentation.redis import RedisInstrumentor

    RedisInstrumentor().instrument()


def _instrument_logging() -> None:
    from opentelemetry.instrumentation.logging import LoggingInstrumentor

    LoggingInstrumentor().instrument(set_logging_format=True)


def setup_otel(app=None) -> None:
    """Export traces over OTLP when ``OTEL_ENABLED`` is set.

    The API process passes its FastAPI app; Celery workers call this with no
    app. Instrumentor packages live in the ``otel`` extra.
    """
    if os.getenv("OTEL_ENABLED", "false").lower() not in {"1", "true", "yes", "on"}:
        return

    try:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception:
        logger.exception("OpenTelemetry SDK not available, skipping setup.")
        return

    service_name = os.getenv("OTEL_SERVICE_NAME", _TRACER_NAME)
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    exporter = OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces") if endpoint else OTLPSpanExporter()

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    if app is not None:
        _instrument("FastAPI", lambda: _instrument_fastapi(app))
    _instrument("SQLAlchemy", _instrument_sqlalchemy)
    _instrument("Celery", _instrument_celery)
    _instrument("Redis", _instrument_redis)
    _instrument("logging", _instrument_logging)

    logger.info("OpenTelemetry tracing enabled (service=%s)", service_name)
