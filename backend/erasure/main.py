"""Account erasure API.

Entry point: uvicorn erasure.main:app --app-dir backend --host 0.0.0.0 --port 8000
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from erasure.api.v1.routes import api_router
from erasure.core.config import settings
from erasure.core.logging_config import configure_logging
from erasure.core.sentry import init_sentry
from erasure.core.startup_checks import validate_production_settings
from erasure.middleware.request_log import RequestLoggingMiddleware
from erasure.schemas.error import ErrorResponse
from erasure.services.errors import AccountNotFoundError, StateConflictError
from erasure.workers import deletion_worker


@asynccontextmanager
async def lifespan(app: FastAPI):
    deletion_worker.start(app)
    try:
        yield
    finally:
        await deletion_worker.stop(app)


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    validate_production_settings()
    init_sentry()
    tags_metadata = [
        {"name": "account-deletion", "description": "Deferred, cancellable account deletion"},
        {"name": "admin", "description": "Operator views of pending and failed deletions"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(StateConflictError)
    async def state_conflict_handler(request: Request, exc: StateConflictError):
        status_code = status.HTTP_404_NOT_FOUND if isinstance(exc, AccountNotFoundError) else status.HTTP_409_CONFLICT
        payload = ErrorResponse(detail=str(exc), code=exc.code, account_id=exc.account_id, state=exc.state)
        return JSONResponse(status_code=status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error")
        return JSONResponse(status_code=422, content=payload.model_dump())

    return app


app = get_application()
