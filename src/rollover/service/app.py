"""HTTP entry point of the rollover service running on each target."""

import signal
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional, Union

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Query, status
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from rollover import __version__
from rollover.core.config import Settings
from rollover.service.context import ServiceContext
from rollover.service.methods import ServiceMethods
from rollover.service.middleware import (
    setup_error_handling,
    setup_logging_middleware,
    setup_metrics_middleware,
)
from rollover.service.models import (
    Accepted,
    ActivationRequest,
    CollectGarbageRequest,
    DerivationsRequest,
    ImportRequest,
    JobIdResponse,
    JobRequest,
    JobSignal,
    Pending,
    ProfileRequest,
    SetRequest,
)
from rollover.utils.logging import setup_logging

logger = structlog.get_logger()

ACCEPTED = {"status_code": status.HTTP_202_ACCEPTED, "response_model": Accepted}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    context: ServiceContext = app.state.context
    logger.info(
        "Starting rollover service",
        version=__version__,
        activation_modules_dir=str(context.modules.modules_dir),
        profiles_dir=str(context.profiles_dir),
    )
    yield
    logger.info("Shutting down rollover service")
    await app.state.methods.shutdown()


def create_app(settings: Optional[Settings] = None, context: Optional[ServiceContext] = None) -> FastAPI:
    """Create the service application."""
    if settings is None:
        settings = Settings()
    if context is None:
        context = ServiceContext.from_settings(settings)

    app = FastAPI(
        title="Rollover Service",
        version=__version__,
        description="Job-based activation, locking and profile service for one target",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.context = context
    app.state.methods = methods = ServiceMethods(context)

    setup_error_handling(app)
    setup_logging_middleware(app)
    setup_metrics_middleware(app)

    @app.get("/health", response_model=Dict[str, Union[str, bool]])
    async def health_check():
        return {
            "status": "healthy",
            "version": __version__,
            "locked": context.locked,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/jobs", response_model=JobIdResponse)
    async def get_job_id() -> JobIdResponse:
        return JobIdResponse(jobId=context.counter.next())

    @app.get("/jobs/{job_id}/signal", response_model=JobSignal, responses={202: {"model": Pending}})
    async def wait_for_signal(
        job_id: int,
        wait: float = Query(settings.signal_wait_seconds, ge=0),
    ):
        if not context.counter.issued(job_id):
            raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")
        job_signal = await context.jobs.wait(job_id, wait)
        if job_signal is None:
            return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=Pending().model_dump())
        return job_signal

    def accept(request: JobRequest) -> Accepted:
        if not context.counter.issued(request.jobId):
            raise HTTPException(status_code=404, detail=f"Unknown job: {request.jobId}")
        return Accepted()

    @app.post("/methods/activate", **ACCEPTED)
    async def activate(request: ActivationRequest):
        accepted = accept(request)
        methods.activate(request.jobId, request.derivation, request.type, request.arguments)
        return accepted

    @app.post("/methods/deactivate", **ACCEPTED)
    async def deactivate(request: ActivationRequest):
        accepted = accept(request)
        methods.deactivate(request.jobId, request.derivation, request.type, request.arguments)
        return accepted

    @app.post("/methods/lock", **ACCEPTED)
    async def lock(request: JobRequest):
        accepted = accept(request)
        methods.lock(request.jobId)
        return accepted

    @app.post("/methods/unlock", **ACCEPTED)
    async def unlock(request: JobRequest):
        accepted = accept(request)
        methods.unlock(request.jobId)
        return accepted

    @app.post("/methods/import", **ACCEPTED)
    async def import_closure(request: ImportRequest):
        accepted = accept(request)
        methods.import_closure(request.jobId, request.closure)
        return accepted

    @app.post("/methods/export", **ACCEPTED)
    async def export(request: DerivationsRequest):
        accepted = accept(request)
        methods.export(request.jobId, request.derivation)
        return accepted

    @app.post("/methods/print-invalid", **ACCEPTED)
    async def print_invalid(request: DerivationsRequest):
        accepted = accept(request)
        methods.print_invalid(request.jobId, request.derivation)
        return accepted

    @app.post("/methods/realise", **ACCEPTED)
    async def realise(request: DerivationsRequest):
        accepted = accept(request)
        methods.realise(request.jobId, request.derivation)
        return accepted

    @app.post("/methods/query-installed", **ACCEPTED)
    async def query_installed(request: ProfileRequest):
        accepted = accept(request)
        methods.query_installed(request.jobId, request.profile)
        return accepted

    @app.post("/methods/query-requisites", **ACCEPTED)
    async def query_requisites(request: DerivationsRequest):
        accepted = accept(request)
        methods.query_requisites(request.jobId, request.derivation)
        return accepted

    @app.post("/methods/set", **ACCEPTED)
    async def set_profile(request: SetRequest):
        accepted = accept(request)
        methods.set(request.jobId, request.profile, request.derivation)
        return accepted

    @app.post("/methods/collect-garbage", **ACCEPTED)
    async def collect_garbage(request: CollectGarbageRequest):
        accepted = accept(request)
        methods.collect_garbage(request.jobId, request.deleteOld)
        return accepted

    if settings.metrics_enabled:
        app.mount("/metrics", make_asgi_app())

    return app


def run(settings: Optional[Settings] = None):
    """Run the service until terminated."""
    settings = settings or Settings()
    setup_logging(settings.log_level, settings.log_format)

    def handle_sigterm(signum, frame):
        logger.info("Received SIGTERM, initiating graceful shutdown")
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_sigterm)

    config = uvicorn.Config(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=None,  # We handle logging ourselves
        access_log=False,  # Handled by middleware
    )
    uvicorn.Server(config).run()
