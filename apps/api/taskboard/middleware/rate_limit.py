from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from taskboard.context import get_correlation_id
from taskboard.core.auth import ANONYMOUS_SUBJECT, bearer_token, decode_user
from taskboard.core.config import get_settings


PROJECTS_PREFIX = "/api/projects"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
WINDOW_SECONDS = 60


@dataclass
class _Bucket:
    tokens: float
    updated_at: float

    def refill(self, now: float, capacity: int, rate: float) -> None:
        elapsed = max(0.0, now - self.updated_at)
        self.tokens = min(float(capacity), self.tokens + elapsed * rate)
        self.updated_at = now


class TokenBucketLimiter:
    """Per (user, resource) token buckets refilled continuously over a window."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, key: tuple[str, str], capacity: int, window_seconds: int) -> int:
        """Consume one token; returns 0 when allowed, otherwise the seconds to wait."""
        if capacity <= 0:
            return window_seconds

        rate = capacity / float(window_seconds)
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault(key, _Bucket(tokens=float(capacity), updated_at=now))
            bucket.refill(now, capacity, rate)
            if bucket.tokens < 1.0:
                return max(1, math.ceil((1.0 - bucket.tokens) / rate))
            bucket.tokens -= 1.0
            return 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


def _resource_of(path: str) -> str:
    # boards, sections or tasks
    remainder = path[len(PROJECTS_PREFIX) :].strip("/")
    return remainder.split("/", 1)[0] or "projects"


def _subject_of(request: Request) -> str:
    token = bearer_token(request)
    user = decode_user(token) if token else None
    return user.sub if user is not None else ANONYMOUS_SUBJECT


class ProjectMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in MUTATING_METHODS
            or not path.startswith(PROJECTS_PREFIX)
        ):
            return await call_next(request)

        retry_after = _limiter.take(
            (_subject_of(request), _resource_of(path)),
            capacity=settings.rate_limit_project_mutations_per_minute,
            window_seconds=WINDOW_SECONDS,
        )
        if retry_after == 0:
            return await call_next(request)

        correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
        response = JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": {"retry_after_seconds": retry_after},
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        return response


def reset_rate_limiter() -> None:
    _limiter.clear()
