"""
FastAPI application factory.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bankrecon.api.router import api_router
from bankrecon.config import settings
from bankrecon.models.database import close_db, init_models
from bankrecon.observability.logging import setup_logging
from bankrecon.pipeline.errors import (
    AccountNotFound,
    CsvParseError,
    DuplicateNotFound,
    DuplicateUpload,
    InvalidStateTransition,
    JobNotFound,
    MalformedStatement,
    OversizedFile,
    PipelineError,
    TransactionLocked,
    TransactionNotFound,
    UnsupportedFormat,
)

logger = structlog.get_logger(__name__)

# Most specific first; anything else typed is a 400
ERROR_STATUS = [
    (UnsupportedFormat, status.HTTP_415_UNSUPPORTED_MEDIA_TYPE),
    (OversizedFile, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE),
    (DuplicateUpload, status.HTTP_409_CONFLICT),
    (InvalidStateTransition, status.HTTP_409_CONFLICT),
    (TransactionLocked, status.HTTP_409_CONFLICT),
    (AccountNotFound, status.HTTP_404_NOT_FOUND),
    (JobNotFound, status.HTTP_404_NOT_FOUND),
    (TransactionNotFound, status.HTTP_404_NOT_FOUND),
    (DuplicateNotFound, status.HTTP_404_NOT_FOUND),
    (CsvParseError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (MalformedStatement, status.HTTP_422_UNPROCESSABLE_ENTITY),
]


def status_for(error: PipelineError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    body = {"error_code": exc.error_code, "detail": exc.message}
    if isinstance(exc, DuplicateUpload):
        body["existing_job_id"] = exc.existing_job_id
    if isinstance(exc, CsvParseError):
        body.update(field=exc.field, value=exc.value, row_number=exc.row_number)
    code = status_for(exc)
    logger.info("request_rejected", path=request.url.path, status=code, error_code=exc.error_code)
    return JSONResponse(status_code=code, content=body)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    setup_logging()

    if settings.SENTRY_DSN:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.1,
        )

    if settings.DEBUG:
        await init_models()

    logger.info("app_started", version=settings.APP_VERSION, pipeline_version=settings.PIPELINE_VERSION)
    yield

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Bank Statement Import & Reconciliation",
        description="Imports CSV, CAMT.053 and PDF bank statements into a ledger and reconciles it against invoices.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PipelineError, pipeline_error_handler)

    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app
        app.mount("/metrics", make_asgi_app())

    app.include_router(api_router)
    return app


app = create_app()
