from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from salesdesk.api.routes import router as api_router
from salesdesk.core.auth import AuthenticationError
from salesdesk.core.config import get_settings
from salesdesk.core.context import RequestContextMiddleware
from salesdesk import events
from salesdesk.crm.api import error_response
from salesdesk.logging import configure_logging
from salesdesk.middleware.correlation_id import CorrelationIdMiddleware
from salesdesk.middleware.rate_limit import MutationRateLimitMiddleware
from salesdesk.middleware.request_logging import RequestLoggingMiddleware
from salesdesk.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("salesdesk.lifecycle")


def _on_system_started(envelope: dict) -> None:
    logger.info("system_event", extra={"event_name": envelope.get("event_type")})


def _on_deal_event(envelope: dict) -> None:
    inner = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
    logger.info(
        "domain_event",
        extra={
            "event_name": envelope.get("event_type"),
            "deal_id": inner.get("deal_id"),
            "from_stage": inner.get("from_stage"),
            "to_stage": inner.get("to_stage"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    events.subscribe("system.started", _on_system_started)
    events.subscribe("crm.deal.*", _on_deal_event)
    events.publish(
        events.build_envelope(
            "system.started",
            actor_user_id=None,
            organization_id=None,
            payload={"service": "salesdesk-api"},
        )
    )
    yield


app = FastAPI(title="SalesDesk API", version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    return error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", "invalid value"),
        }
        for error in exc.errors()
    ]
    return error_response(request, status_code=400, code="validation_error", message="Validation failed", details=details)


settings = get_settings()
if settings.otel_enabled:
    setup_otel("salesdesk-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
