"""Structured logging, request ids and optional tracing for the control service."""
from __future__ import annotations

import contextlib
import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterator

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

if TYPE_CHECKING:
    from ptcontrol.config import Settings

try:  # pragma: no cover - optional runtime dependency
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
except ImportError:  # pragma: no cover - installed through the "otel" extra
    trace = None

REQUEST_ID_HEADER = "X-Request-ID"
TRACER_NAME = "ptcontrol"

_current_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)

# Keys copied onto every record by ServiceContextFilter.
_CONTEXT_KEYS = ("service", "request_id", "trace_id", "span_id")
# Anything a LogRecord carries on its own; the rest came in through ``extra=``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName", *_CONTEXT_KEYS}


def new_request_id() -> str:
    return uuid.uuid4().hex


def current_request_id() -> str | None:
    return _current_request_id.get()


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Adopt the caller's request id (or mint one) and echo it on the response."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or new_request_id()
        token = _current_request_id.set(request_id)
        try:
            response = await call_next(request)
        finally:
            _current_request_id.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _span_ids() -> tuple[str | None, str | None]:
    if trace is None:
        return None, None
    ctx = trace.get_current_span().get_span_context()
    if not ctx or not ctx.trace_id:
        return None, None
    return f"{ctx.trace_id:032x}", f"{ctx.span_id:016x}"


class ServiceContextFilter(logging.Filter):
    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service
        if not getattr(record, "request_id", None):
            record.request_id = current_request_id()
        record.trace_id, record.span_id = _span_ids()
        return True


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; ``extra=`` fields are nested under ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _CONTEXT_KEYS:
            entry[key] = getattr(record, key, None)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        extra = {key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS}
        if extra:
            entry["extra"] = extra
        return json.dumps(entry, default=str)


def configure_logging(service: str, level: str = "INFO") -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(ServiceContextFilter(service))
    level = level.upper()

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    # uvicorn installs its own handlers; route them through ours instead.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.setLevel(level)
        server_logger.propagate = False
    return handler


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """``"k1=v1,k2=v2"`` -> ``{"k1": "v1", "k2": "v2"}``; malformed items are dropped."""

    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def configure_tracing(app: FastAPI, settings: "Settings") -> bool:
    """Install an OTLP exporter and instrument ``app``; returns whether tracing is active."""

    if trace is None:
        logging.getLogger(__name__).warning("OpenTelemetry not installed; tracing disabled")
        return False
    attributes: dict[str, Any] = {"service.name": settings.service_name}
    if settings.service_version:
        attributes["service.version"] = settings.service_version
    ratio = max(0.0, min(float(settings.otel_sample_ratio), 1.0))
    provider = TracerProvider(resource=Resource.create(attributes), sampler=TraceIdRatioBased(ratio))
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(
                endpoint=settings.otel_exporter_otlp_endpoint,
                headers=parse_otlp_headers(settings.otel_exporter_otlp_headers),
            )
        )
    )
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app)
    return True


@contextlib.contextmanager
def traced(name: str, **attributes: Any) -> Iterator[None]:
    """Wrap a unit of background work (a control tick, one telemetry message) in a span.

    A no-op when OpenTelemetry is not installed. Without a configured
    provider the global tracer hands out non-recording spans.
    """

    if trace is None:
        yield
        return
    with trace.get_tracer(TRACER_NAME).start_as_current_span(name) as span:
        for key, value in attributes.items():
            span.set_attribute(key, value)
        yield


def configure_observability(app: FastAPI, settings: "Settings") -> None:
    configure_logging(settings.service_name, settings.log_level)
    app.add_middleware(RequestIdMiddleware)
    if settings.otel_enabled:
        configure_tracing(app, settings)
