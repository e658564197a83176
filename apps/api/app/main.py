from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.business.workflows.events import EVENT_TRIGGER_TYPES
from app.business.workflows.service import workflow_automation_service
from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.database import SessionLocal, get_db
from app.core.errors import DomainError
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_workflow_event_types = list(EVENT_TRIGGER_TYPES)


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name})


@contextmanager
def _workflow_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_request_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    settings = get_settings()
    try:
        if not settings.auto_run_workflow_jobs:
            from app.tasks import run_workflow_event

            run_workflow_event.delay(envelope)
            return
        with _workflow_session_scope() as session:
            workflow_automation_service.handle_event(session, envelope)
    except Exception as exc:
        logger.exception(
            "workflow_auto_run_failed",
            extra={"event_type": event.name, "event_id": envelope.get("event_id"), "error": str(exc)[:500]},
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _workflow_event_types:
            event_bus.subscribe(event_name, _on_request_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Pipeline API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "code": exc.code,
            "details": jsonable_encoder(exc.details),
            "correlation_id": getattr(request.state, "correlation_id", None) or get_correlation_id(),
        },
    )


settings = get_settings()
if settings.otel_enabled:
    setup_otel("pipeline-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
