from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from taskboard.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("taskboard.request")

# refresh-and-retry outcomes of position updates and throttling
_RETRYABLE_STATUSES = {409, 429, 504}


def _level_for(status_code: int) -> int:
    if status_code >= 500 and status_code not in _RETRYABLE_STATUSES:
        return logging.ERROR
    if status_code in _RETRYABLE_STATUSES:
        return logging.WARNING
    return logging.INFO


def _request_fields(request: Request, path: str, status_code: int, duration_ms: float) -> dict[str, Any]:
    context = getattr(request.state, "context", None)
    return {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "user_id": getattr(context, "user_id", None),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            path = resolve_http_path_label(request)
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_http_request(method=request.method, path=path, status=500, duration=duration_ms / 1000)
            logger.error("http.error", exc_info=True, extra=_request_fields(request, path, 500, duration_ms))
            raise

        # the route is only resolved once the router has run
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=request.method, path=path, status=response.status_code, duration=duration_ms / 1000)
        logger.log(
            _level_for(response.status_code),
            "http.request",
            extra=_request_fields(request, path, response.status_code, duration_ms),
        )
        return response
