"""Service middleware for logging, metrics, and error handling."""

import time
import uuid
from typing import Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram

from rollover.core.exceptions import JobError, RolloverError

logger = structlog.get_logger()

# Prometheus metrics
REQUEST_COUNT = Counter(
    "rollover_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_DURATION = Histogram(
    "rollover_http_request_duration_seconds",
    "HTTP request duration",
    ["method", "endpoint"],
)


def setup_error_handling(app: FastAPI) -> None:
    """Map rollover errors and malformed job requests to JSON replies."""

    @app.exception_handler(RolloverError)
    async def rollover_error_handler(request: Request, exc: RolloverError) -> JSONResponse:
        # a reused job id or a second signal is a conflict with earlier requests
        status = 409 if isinstance(exc, JobError) else 500
        logger.warning("Request rejected", status_code=status, code=exc.code, error=str(exc))
        return JSONResponse(
            status_code=status,
            content={"error": exc.__class__.__name__, "message": str(exc), "code": exc.code},
        )

    @app.exception_handler(RequestValidationError)
    async def job_request_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "error": "ValidationError",
                "message": f"Malformed request for {request.url.path}",
                "details": exc.errors(),
            },
        )


def setup_logging_middleware(app: FastAPI) -> None:
    """Setup request logging middleware."""

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                "Request failed",
                duration_seconds=time.time() - start_time,
                exc_info=exc,
            )
            raise

        logger.debug(
            "Request completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        response.headers["X-Request-ID"] = request_id
        return response


def setup_metrics_middleware(app: FastAPI) -> None:
    """Setup metrics collection middleware."""

    @app.middleware("http")
    async def collect_metrics(request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        response = await call_next(request)

        # route template keeps job ids out of the label set
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
        ).inc()

        REQUEST_DURATION.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(time.time() - start_time)

        return response
