from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)


class ReindexMetrics:
    """Position-reindex counters, registered on the registry they are built with.

    One instance is built when the application starts and handed to every
    Reindexer; tests build their own against a private ``CollectorRegistry``.
    """

    def __init__(self, registry: CollectorRegistry | None = REGISTRY) -> None:
        self.registry = registry
        self.operations_total = Counter(
            "projects_reindex_operations_total",
            "Total reindex operations by collection, operation and outcome",
            ["collection", "operation", "outcome"],
            registry=registry,
        )
        self.duration_seconds = Histogram(
            "projects_reindex_duration_seconds",
            "Reindex operation duration in seconds",
            ["collection", "operation"],
            registry=registry,
        )
        self.rows_written_total = Counter(
            "projects_reindex_rows_written_total",
            "Total member rows whose position or container was rewritten",
            ["collection"],
            registry=registry,
        )

    def observe_operation(self, collection: str, operation: str, outcome: str, duration: float) -> None:
        self.operations_total.labels(collection=collection, operation=operation, outcome=outcome).inc()
        self.duration_seconds.labels(collection=collection, operation=operation).observe(duration)

    def observe_rows_written(self, collection: str, count: int) -> None:
        if count > 0:
            self.rows_written_total.labels(collection=collection).inc(count)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
