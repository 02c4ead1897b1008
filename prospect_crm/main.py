from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from starlette.exceptions import HTTPException as StarletteHTTPException

from prospect_crm.api.routes import router as api_router
from prospect_crm.core.config import get_settings
from prospect_crm.crm.api import error_response, validation_error_response
from prospect_crm.crm.validation import ValidationFailure
from prospect_crm.logging import configure_logging
from prospect_crm.middleware.correlation_id import CorrelationIdMiddleware
from prospect_crm.middleware.request_logging import RequestLoggingMiddleware
from prospect_crm.otel import correlation_id_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("prospect_crm.lifecycle")

INVALID_PARAMS_MESSAGE = "參數錯誤"
SERVER_ERROR_MESSAGE = "伺服器錯誤"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("app.started")
    yield
    logger.info("app.stopped")


app = FastAPI(title="Prospect CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    failure = ValidationFailure()
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("path", "query", "body")]
        if not loc:
            failure.form_errors.append(str(error.get("msg")))
            continue
        failure.field_errors.setdefault(loc[0], []).append(str(error.get("msg")))
    return validation_error_response(request, failure, INVALID_PARAMS_MESSAGE)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(request, status_code=exc.status_code, message=str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("http.unhandled_error", extra={"path": request.url.path, "method": request.method})
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message=SERVER_ERROR_MESSAGE,
    )


settings = get_settings()
if settings.otel_enabled:
    setup_otel(settings.otel_exporter_endpoint)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=correlation_id_request_hook)
