from __future__ import annotations

import uuid
from dataclasses import dataclass

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from taskboard.context import reset_correlation_id, set_correlation_id


CORRELATION_HEADER = "x-correlation-id"
REQUEST_ID_HEADER = "x-request-id"
_MAX_CORRELATION_ID_LENGTH = 128


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    tenant_id: str
    user_id: str | None = None


def _incoming_correlation_id(request: Request) -> str:
    raw = (request.headers.get(CORRELATION_HEADER) or "").strip()
    if raw and len(raw) <= _MAX_CORRELATION_ID_LENGTH and raw.isprintable():
        return raw
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds the correlation id and a ``RequestContext`` to every request."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _incoming_correlation_id(request)
        context = RequestContext(
            request_id=str(uuid.uuid4()),
            correlation_id=correlation_id,
            tenant_id=request.headers.get("x-tenant-id", "default"),
        )
        request.state.correlation_id = correlation_id
        request.state.context = context

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            span.set_attribute("request_id", context.request_id)

        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers[REQUEST_ID_HEADER] = context.request_id
        return response
