from contextlib import asynccontextmanager
import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.routes import router as api_router
from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.events import NOTIFICATION_EVENT_TYPES
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import PublicActionRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.platform.errors import DomainError


configure_logging()
logger = logging.getLogger("app.lifecycle")
notification_logger = logging.getLogger("app.notifications")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


def _on_notification(event: InternalEvent) -> None:
    envelope: dict[str, Any] = event.payload if isinstance(event.payload, dict) else {}
    notification_logger.info(
        "notification.dispatched",
        extra={
            "event_type": event.name,
            "entity_type": envelope.get("entity_type"),
            "entity_id": envelope.get("entity_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in NOTIFICATION_EVENT_TYPES:
            event_bus.subscribe(event_name, _on_notification)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


def _error_response(request: Request, status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return JSONResponse(
        status_code=status_code,
        content={"code": code, "message": message, "details": details, "correlation_id": correlation_id},
    )


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("domain_error", extra={"error": exc.message, "status_code": exc.status_code})
    return _error_response(request, exc.status_code, exc.code, exc.message, exc.details)


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return _error_response(request, 400, "validation_error", "request validation failed", {"errors": details})


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    response = _error_response(request, exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(PublicActionRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(DomainError, domain_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)
# Registered on the Starlette base so router-level 404 and 405 use the same envelope.
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("quote-to-cash-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
