from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from taskboard.api.routes import router as api_router
from taskboard.core.config import get_settings
from taskboard.events import InternalEvent, event_bus
from taskboard.logging import configure_logging
from taskboard.metrics import ReindexMetrics
from taskboard.middleware.context import RequestContextMiddleware
from taskboard.middleware.rate_limit import ProjectMutationRateLimitMiddleware
from taskboard.middleware.request_logging import RequestLoggingMiddleware
from taskboard.otel import get_fastapi_server_request_hook, setup_otel
from taskboard.projects.service import build_projects_service


configure_logging()
logger = logging.getLogger("taskboard.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_project_event(event: InternalEvent) -> None:
    logger.info(
        "project_event",
        extra={
            "event_name": event.name,
            "board_id": event.payload.get("board_id"),
            "user_id": event.payload.get("actor_user_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe("projects.*", _on_project_event)
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.state.projects_service = build_projects_service(ReindexMetrics(), settings)
app.add_middleware(ProjectMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestContextMiddleware)
app.include_router(api_router)

setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
