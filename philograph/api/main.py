"""
PhiloGraph - API Entrypoint

- All plan endpoints under /api/v1/*
- Connection pool and PlanService created at startup, closed at shutdown
- Structured JSON errors with request_id, no stack traces to clients
- GET /healthz
"""

import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
import structlog

from philograph import __version__
from philograph.api.dependencies import (
    close_plan_service,
    generate_request_id,
    init_plan_service,
)
from philograph.api.v1 import health, plans
from philograph.config import reload_config
from philograph.core.errors import (
    CircuitOpenError,
    ErrorKind,
    NotFoundError,
    PhiloGraphError,
    PlanFailedError,
    ValidationFailedError,
)
from philograph.log import configure_logging
from philograph.plans.service import error_view

logger = structlog.get_logger()

# HTTP status for a failed plan, by the kind of its root cause
PLAN_FAILURE_STATUS = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.VALIDATION_FAILED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.CIRCUIT_OPEN: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.CANCELLED: status.HTTP_409_CONFLICT,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: load .env, configure logging, build the plan service.
    Shutdown: drain plan workers, close the pool.
    """
    load_dotenv()
    configure_logging()

    logger.info("app.startup", version=__version__)
    config = reload_config()
    init_plan_service(config)
    logger.info("app.ready", backend=config.backend)

    yield

    logger.info("app.shutdown")
    close_plan_service()


app = FastAPI(
    title="PhiloGraph API",
    description="Plan coordinator for philosophical concept graphs",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next):
    """Add request_id to request state for tracing."""
    request_id = generate_request_id()
    request.state.request_id = request_id

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id

    return response


def _error_response(request: Request, status_code: int, code: str, message: str, **extra) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code,
                "message": message,
                "request_id": request_id,
                **extra
            }
        }
    )


@app.exception_handler(PlanFailedError)
async def plan_failed_handler(request: Request, exc: PlanFailedError):
    logger.warning(
        "plan.request.failed",
        request_id=getattr(request.state, "request_id", "unknown"),
        plan_id=exc.plan_id,
        step=exc.step_name,
        kind=exc.kind.value
    )
    return _error_response(
        request,
        PLAN_FAILURE_STATUS.get(exc.kind, status.HTTP_409_CONFLICT),
        "plan_failed",
        exc.user_message(),
        plan_id=exc.plan_id,
        detail=error_view(exc)
    )


@app.exception_handler(ValidationFailedError)
async def validation_failed_handler(request: Request, exc: ValidationFailedError):
    return _error_response(request, status.HTTP_422_UNPROCESSABLE_ENTITY, exc.kind.value, exc.message)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error_response(request, status.HTTP_404_NOT_FOUND, exc.kind.value, exc.message)


@app.exception_handler(CircuitOpenError)
async def circuit_open_handler(request: Request, exc: CircuitOpenError):
    return _error_response(request, status.HTTP_503_SERVICE_UNAVAILABLE, exc.kind.value, exc.message)


@app.exception_handler(PhiloGraphError)
async def classified_error_handler(request: Request, exc: PhiloGraphError):
    return _error_response(
        request,
        PLAN_FAILURE_STATUS.get(exc.kind, status.HTTP_409_CONFLICT),
        exc.kind.value,
        exc.message
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """No stack traces to clients."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "unhandled_exception",
        exc_info=exc,
        request_id=request_id,
        path=request.url.path,
        method=request.method
    )

    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal_error",
        "An unexpected error occurred"
    )


app.include_router(health.router, tags=["health"])
app.include_router(plans.router, tags=["plans"])


@app.get("/", include_in_schema=False)
async def root():
    return {
        "message": f"PhiloGraph API v{__version__}",
        "docs": "/docs",
        "health": "/healthz"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "philograph.api.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("ENV", "production") == "development",
        log_level="info"
    )
