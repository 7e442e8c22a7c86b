import logging

from opentelemetry.sdk.trace import TracerProvider

from blog_api.core.config import Settings
from blog_api.core.telemetry import install_log_correlation, parse_otlp_headers, span_processor_for


def test_parse_otlp_headers_skips_malformed_pairs() -> None:
    assert parse_otlp_headers("authorization=Bearer abc, x-team = blog ,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "blog",
    }
    assert parse_otlp_headers(None) == {}


def test_no_endpoint_means_no_exporter(monkeypatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    assert span_processor_for(Settings(otel_exporter_otlp_endpoint=None)) is None


def test_log_records_carry_trace_ids() -> None:
    install_log_correlation()
    record = logging.getLogRecordFactory()("blog", logging.INFO, __file__, 1, "plain", None, None)
    assert record.trace_id == "0" * 32
    assert record.span_id == "0" * 16

    tracer = TracerProvider().get_tracer(__name__)
    with tracer.start_as_current_span("traced") as span:
        traced = logging.getLogRecordFactory()("blog", logging.INFO, __file__, 1, "traced", None, None)
    assert traced.trace_id == format(span.get_span_context().trace_id, "032x")
