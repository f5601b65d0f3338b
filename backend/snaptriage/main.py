import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from snaptriage.api.v1 import api_router
from snaptriage.core.config import Settings, get_settings
from snaptriage.core.context import build_context, close_context
from snaptriage.core.logging_config import configure_logging, request_id_ctx_var
from snaptriage.core.sentry import init_sentry
from snaptriage.middleware import RequestLoggingMiddleware
from snaptriage.schemas.error import ErrorResponse

logger = logging.getLogger(__name__)


def get_application(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_json)
    init_sentry(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "context", None) is None:
            app.state.context = build_context(settings)
        try:
            yield
        finally:
            await close_context(app.state.context)

    tags_metadata = [
        {"name": "images", "description": "Photo lifecycle transitions and relocation status"},
        {"name": "projects", "description": "Projects and project assignment"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.state.context = None
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None, request_id=request_id_ctx_var.get())
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error", request_id=request_id_ctx_var.get())
        return JSONResponse(status_code=422, content=payload.model_dump())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", extra={"path": request.url.path, "method": request.method})
        payload = ErrorResponse(detail="Internal server error", code="internal_error", request_id=request_id_ctx_var.get())
        return JSONResponse(status_code=500, content=payload.model_dump())

    return app


app = get_application()
