"""Tracing and log setup for the API process.

Spans cover inbound requests (FastAPI) and outbound Elasticsearch calls
(httpx). Log records always carry ``trace_id``/``span_id`` so the log format
can reference them even when tracing is disabled.
"""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from blog_api.core.config import Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_EMPTY_TRACE_ID = "0" * 32
_EMPTY_SPAN_ID = "0" * 16


class ApiTelemetry:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.provider: TracerProvider | None = None
        self._httpx = HTTPXClientInstrumentor()
        self._app: FastAPI | None = None

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    def instrument(self, app: FastAPI) -> None:
        if not self.settings.otel_enabled or self.provider is not None:
            return
        if self.settings.otel_log_correlation:
            install_log_correlation()

        self.provider = TracerProvider(
            resource=Resource.create(
                {
                    SERVICE_NAME: self.settings.otel_service_name,
                    DEPLOYMENT_ENVIRONMENT: self.settings.environment,
                }
            ),
            sampler=TraceIdRatioBased(self.settings.otel_trace_sample_ratio),
        )
        processor = span_processor_for(self.settings)
        if processor is not None:
            self.provider.add_span_processor(processor)
        trace.set_tracer_provider(self.provider)

        FastAPIInstrumentor.instrument_app(app, tracer_provider=self.provider, excluded_urls="healthz")
        self._httpx.instrument(tracer_provider=self.provider)
        self._app = app

    def shutdown(self) -> None:
        if self.provider is None:
            return
        if self._app is not None:
            FastAPIInstrumentor.uninstrument_app(self._app)
            self._app = None
        self._httpx.uninstrument()
        self.provider.force_flush()
        self.provider.shutdown()
        self.provider = None


def configure_api_logging(level: int = logging.INFO) -> None:
    install_log_correlation()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)


def span_processor_for(settings: Settings) -> SpanProcessor | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logger.info("no OTLP endpoint configured; spans for %s are not exported", settings.otel_service_name)
        return None
    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None))


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; malformed pairs are ignored."""
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


_correlation_installed = False


def install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return
    base_factory = logging.getLogRecordFactory()

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = base_factory(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else _EMPTY_TRACE_ID
        record.span_id = format(context.span_id, "016x") if context.is_valid else _EMPTY_SPAN_ID
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True
