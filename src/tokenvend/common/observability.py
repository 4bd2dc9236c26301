"""Logging and tracing setup for the token vending machine.

Everything a device sends on ``/gettoken`` is either an identifier or proof
of key possession. The helpers here make sure the second kind never reaches
a log line or a span: structlog events pass through :func:`redact_secrets`,
and server spans have their query string replaced before export.
"""

from __future__ import annotations

import logging
import re
from typing import Any, MutableMapping, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars

from .settings import TokenVendingSettings


REDACTED = "[redacted]"

_SECRET_FIELDS = frozenset({"signature", "key", "secret_key", "secret_access_key", "session_token"})
_SIGNATURE_PARAM = re.compile(r"(signature=)[^&\s\"']*", re.IGNORECASE)
_LOG_VALUE_LIMIT = 128
_UNTRACED_URLS = "healthz"

_tracer_provider: Optional[TracerProvider] = None


def redact_secrets(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking device secrets and request signatures."""

    for field, value in list(event_dict.items()):
        if field in _SECRET_FIELDS or field.startswith("secret_"):
            event_dict[field] = REDACTED
        elif isinstance(value, str) and "signature=" in value.lower():
            event_dict[field] = _SIGNATURE_PARAM.sub(r"\g<1>" + REDACTED, value)
    return event_dict


def configure_logging(settings: TokenVendingSettings, service_name: str) -> None:
    """Route structlog JSON events through stdlib logging at ``settings.log_level``."""

    level = logging.getLevelNamesMapping().get(settings.log_level.strip().upper(), logging.INFO)
    logging.basicConfig(format="%(message)s")
    logging.getLogger().setLevel(level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_secrets,
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # The app factory may reconfigure the level, so loggers are not cached.
        cache_logger_on_first_use=False,
    )
    bind_contextvars(service=service_name)


def sanitize_for_log(value: object, limit: int = _LOG_VALUE_LIMIT) -> str:
    """Render a client-supplied value safely for a log line.

    Control characters are escaped so a caller cannot forge extra log records,
    and long values are truncated.
    """

    if value is None:
        return "-"
    text = str(value)
    escaped = "".join(ch if ch.isprintable() else ch.encode("unicode_escape").decode("ascii") for ch in text)
    if len(escaped) > limit:
        return escaped[:limit] + "..."
    return escaped


def parse_otlp_headers(raw: Optional[str]) -> dict[str, str]:
    """Parse ``name=value,name=value`` exporter headers, skipping malformed items."""

    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {name.strip(): value.strip() for name, sep, value in pairs if sep and name.strip() and value.strip()}


def configure_tracing(settings: TokenVendingSettings, service_name: str) -> Optional[TracerProvider]:
    """Install an OTLP-exporting tracer provider once per process.

    Without ``TVM_OTEL_EXPORTER_ENDPOINT`` nothing is installed and spans stay
    on the no-op provider.
    """

    global _tracer_provider
    if _tracer_provider is not None:
        return _tracer_provider

    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        _tracer_provider = current
        return current
    if not settings.otel_exporter_endpoint:
        return None

    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name, "service.namespace": "tokenvend"}),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_sampler_ratio)),
    )
    exporter = OTLPSpanExporter(
        endpoint=settings.otel_exporter_endpoint,
        headers=parse_otlp_headers(settings.otel_exporter_headers),
    )
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _tracer_provider = provider
    return provider


def strip_query_from_span(span, scope: dict) -> None:
    # Token request query strings carry the signature.
    if span is None or not span.is_recording() or not scope.get("query_string"):
        return
    span.set_attribute("http.target", scope.get("path", ""))
    span.set_attribute("url.query", REDACTED)


def instrument_fastapi_app(app) -> None:
    if getattr(app.state, "otel_instrumented", False):
        return
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=trace.get_tracer_provider(),
        excluded_urls=_UNTRACED_URLS,
        server_request_hook=strip_query_from_span,
    )
    app.state.otel_instrumented = True
