"""
Correlation-id tracing for webhook deliveries and notification sends.

A span logs one ``TRACE:`` JSON line when it closes. The current trace and
span ids live in context variables while a span is open, so spans started
deeper in a request nest under the request span, and the enclosing ids come
back when the inner span closes.
"""
import json
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"
SPAN_HEADER = "X-Span-ID"

_current_trace: ContextVar[Optional[str]] = ContextVar("current_trace", default=None)
_current_span: ContextVar[Optional[str]] = ContextVar("current_span", default=None)


def _new_id(length: int) -> str:
    return uuid.uuid4().hex[:length]


class TraceSpan:

    def __init__(self, service: str, name: str, trace_id: Optional[str] = None, parent_span_id: Optional[str] = None):
        self.service = service
        self.name = name
        self.trace_id = trace_id or _new_id(16)
        self.span_id = _new_id(8)
        self.parent_span_id = parent_span_id
        self.tags: Dict[str, Any] = {}
        self.status = "ok"
        self.started_at = time.time()
        self._clock = time.monotonic()
        self._tokens = None

    def add_tag(self, key: str, value: Any) -> "TraceSpan":
        self.tags[key] = value
        return self

    def set_error(self, error: BaseException) -> "TraceSpan":
        self.status = "error"
        self.tags["error.type"] = type(error).__name__
        code = getattr(error, "code", None)
        if code:
            self.tags["error.code"] = code
        return self

    def record(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "operation": self.name,
            "duration_ms": round((time.monotonic() - self._clock) * 1000, 2),
            "status": self.status,
            "tags": self.tags,
            "timestamp": self.started_at,
        }

    def __enter__(self) -> "TraceSpan":
        self._tokens = (_current_trace.set(self.trace_id), _current_span.set(self.span_id))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_val is not None:
            self.set_error(exc_val)
        trace_token, span_token = self._tokens
        _current_span.reset(span_token)
        _current_trace.reset(trace_token)
        logger.info(f"TRACE: {json.dumps(self.record(), default=str)}")


class Tracer:
    """Creates spans tagged with one service name"""

    def __init__(self, service_name: str):
        self.service_name = service_name

    def start_span(self, name: str, trace_id: Optional[str] = None, parent_span_id: Optional[str] = None) -> TraceSpan:
        return TraceSpan(self.service_name, name, trace_id, parent_span_id)

    def start_child_span(self, name: str) -> TraceSpan:
        """Span under whatever span is open in the current context, or a new trace"""
        return self.start_span(name, _current_trace.get(), _current_span.get())


ingestion_tracer = Tracer("ingestion-service")
notification_tracer = Tracer("notification-service")


async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    """Wrap a request in a span that continues the caller's trace headers.

    Rejected deliveries (4xx) are normal outcomes for a webhook receiver; only
    5xx responses mark the span as an error.
    """
    span = tracer.start_span(
        f"{request.method} {request.url.path}",
        request.headers.get(TRACE_HEADER),
        request.headers.get(SPAN_HEADER),
    )
    span.add_tag("http.method", request.method)
    request.state.trace_id = span.trace_id

    with span:
        response = await call_next(request)
        span.add_tag("http.status_code", response.status_code)
        if response.status_code >= 500:
            span.status = "error"
        response.headers[TRACE_HEADER] = span.trace_id
        response.headers[SPAN_HEADER] = span.span_id
    return response
