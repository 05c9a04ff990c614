"""FastAPI application for the pipeline orchestration engine.

This is the web service entry point. Clients create jobs and drive them by
polling (GET /api/v1/jobs/{id}?advance=true) or by explicit POST .../step
calls; the scheduler process (app.worker) can drive them instead.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from app import database
from app.capabilities import build_registry
from app.clients.capability import CapabilityClient
from app.config import get_capability_base_url, get_manual_capabilities
from app.exceptions import ConfigurationError
from app.orchestrator.controller import ResumableStepController
from app.routes import jobs
from app.services.job_lease import JobLeaseManager
from app.services.job_service import JobService
from app.services.persistence import SqlPersistenceGateway
from app.utils.logging import configure_logging

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the job service at startup and close the capability client at shutdown.

    Startup:
    - Without DATABASE_URL the API starts but job routes answer 503
    - Without CAPABILITY_BASE_URL jobs can be created and read, stepping answers 503
    - A lease TTL shorter than the worst-case capability call is a ConfigurationError

    Shutdown:
    - Close CapabilityClient HTTP connections
    """
    configure_logging()
    capability_client = None

    if database.async_session_factory is None:
        log.warning("database_not_configured", message="DATABASE_URL not set, job routes disabled")
        app.state.job_service = None
    else:
        persistence = SqlPersistenceGateway(database.async_session_factory)
        leases = JobLeaseManager(database.async_session_factory)
        controller = None

        if get_capability_base_url():
            capability_client = CapabilityClient()
            try:
                leases.require_ttl_above(
                    capability_client.worst_case_call_seconds, "the worst-case capability call"
                )
            except ConfigurationError:
                await capability_client.close()
                raise
            registry = build_registry(capability_client, manual=get_manual_capabilities())
            controller = ResumableStepController(persistence, leases, registry)
        else:
            log.warning(
                "capabilities_not_configured",
                message="CAPABILITY_BASE_URL not set, jobs cannot be stepped",
            )
        app.state.job_service = JobService(persistence, leases, controller)

    yield  # Application runs here

    if capability_client:
        await capability_client.close()


app = FastAPI(
    title="Pipeline Orchestration Engine",
    description=(
        "Turns a single request into a multi-artifact deliverable, one resumable step at a time"
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(jobs.router)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """Liveness check for deployment validation.

    Returns:
        JSONResponse: Status and whether the database and capabilities are configured
    """
    return JSONResponse(
        content={
            "status": "healthy",
            "service": "pipeline-orchestrator",
            "database_configured": database.async_session_factory is not None,
            "capabilities_configured": get_capability_base_url() is not None,
        }
    )


@app.get("/", status_code=status.HTTP_200_OK)
async def root() -> JSONResponse:
    """Root endpoint with API information."""
    return JSONResponse(
        content={
            "service": "Pipeline Orchestration Engine",
            "version": "0.1.0",
            "docs": "/docs",
            "health": "/health",
            "jobs": "/api/v1/jobs",
        }
    )


if __name__ == "__main__":
    import uvicorn

    # Binding to 0.0.0.0 is intentional for container deployments
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
