from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any

from fastapi import FastAPI

from supportbridge.core.config import Settings
from supportbridge.db.session import get_engine

logger = logging.getLogger("supportbridge.api")


@dataclass(frozen=True)
class TracingSetupResult:
    enabled: bool
    reason: str


_PROVIDER: Any | None = None
_PROVIDER_LOCK = Lock()
# Engine and httpx instrumentation are process-wide; the API and the worker share them.
_CLIENTS_INSTRUMENTED = False


def setup_app_tracing(*, app: FastAPI, settings: Settings) -> TracingSetupResult:
    result = setup_process_tracing(settings=settings)
    if not result.enabled:
        return result

    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=_PROVIDER,
        excluded_urls=settings.OTEL_EXCLUDED_URLS,
    )
    return result


def setup_process_tracing(*, settings: Settings) -> TracingSetupResult:
    """Trace database statements and outbound platform/webhook calls of this process."""
    if not settings.ENABLE_OTEL_TRACING:
        return TracingSetupResult(enabled=False, reason="disabled")

    endpoint = settings.OTEL_EXPORTER_OTLP_TRACES_ENDPOINT.strip()
    if not endpoint:
        logger.warning("ENABLE_OTEL_TRACING is set but OTEL_EXPORTER_OTLP_TRACES_ENDPOINT is empty")
        return TracingSetupResult(enabled=False, reason="missing_endpoint")

    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
    from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

    provider = _get_or_create_provider(settings=settings, endpoint=endpoint)

    global _CLIENTS_INSTRUMENTED
    with _PROVIDER_LOCK:
        if not _CLIENTS_INSTRUMENTED:
            SQLAlchemyInstrumentor().instrument(engine=get_engine(), tracer_provider=provider)
            HTTPXClientInstrumentor().instrument(tracer_provider=provider)
            _CLIENTS_INSTRUMENTED = True

    logger.info("tracing enabled service=%s endpoint=%s", settings.OTEL_SERVICE_NAME, endpoint)
    return TracingSetupResult(enabled=True, reason="enabled")


def _get_or_create_provider(*, settings: Settings, endpoint: str) -> Any:
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

    global _PROVIDER
    with _PROVIDER_LOCK:
        if _PROVIDER is not None:
            return _PROVIDER

        provider = TracerProvider(
            resource=Resource.create(
                {SERVICE_NAME: settings.OTEL_SERVICE_NAME, SERVICE_VERSION: settings.VERSION}
            ),
            sampler=TraceIdRatioBased(settings.OTEL_TRACE_SAMPLE_RATIO),
        )
        exporter_kwargs: dict[str, Any] = {"endpoint": endpoint}
        headers = parse_otlp_headers(settings.OTEL_EXPORTER_OTLP_HEADERS)
        if headers:
            exporter_kwargs["headers"] = headers
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))
        trace.set_tracer_provider(provider)
        _PROVIDER = provider
        return provider


def parse_otlp_headers(raw: str) -> dict[str, str]:
    """`k1=v1,k2=v2` as used by OTEL_EXPORTER_OTLP_HEADERS; malformed pairs are dropped."""
    out: dict[str, str] = {}
    for piece in (p.strip() for p in raw.split(",")):
        if not piece:
            continue
        key, sep, value = piece.partition("=")
        if not sep or not key.strip() or not value.strip():
            logger.warning("ignoring malformed OTLP header entry: %s", piece)
            continue
        out[key.strip()] = value.strip()
    return out
