"""
FastAPI main application for the Release Tracker consumer API.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.config import config as api_config
from api.models import (
    CycleSummaryResponse, ErrorResponse, HealthResponse, ResolveRequest,
    ScheduleRefreshResponse, SchedulerStatusResponse, VerifyRequest
)
from scheduler.errors import (
    CycleInProgressError, DuplicateReleaseError, NotFoundError, TrackerError, VersionValidationError
)
from scheduler.models import RelationResolution
from scheduler.scheduler_service import SchedulerService, build_scheduler_service
from tracker.models import PendingUpdate, TrackedRelease, UpdateRecord
from utilities.config import config

# Setup logging
logger = structlog.get_logger(__name__)

# Global scheduler service
scheduler_service: Optional[SchedulerService] = None

ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    VersionValidationError: status.HTTP_400_BAD_REQUEST,
    DuplicateReleaseError: status.HTTP_409_CONFLICT,
    CycleInProgressError: status.HTTP_409_CONFLICT,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Release Tracker API")

    global scheduler_service
    try:
        scheduler_service = build_scheduler_service(config)
        await scheduler_service.db_manager.connect()
        if api_config.run_scheduler:
            await scheduler_service.start()
    except Exception as e:
        logger.error("Failed to start scheduler service", error=str(e))
        raise

    yield

    logger.info("Shutting down Release Tracker API")
    scheduler_service.stop()
    await scheduler_service.db_manager.disconnect()


app = FastAPI(
    title=api_config.api_title,
    description="""
    Consumer API for the release update detection engine.

    ## Features

    * **Check cycles**: Run an account's check cycle on demand
    * **Pending updates**: Approve or reject ambiguous detections
    * **Verification**: Record the version/build a user confirmed
    * **Relations**: Resolve sequel, edition and DLC candidates
    * **Schedule**: Inspect and refresh per-account check cadence
    """,
    version=api_config.api_version,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=api_config.cors_origins,
    allow_credentials=api_config.cors_allow_credentials,
    allow_methods=api_config.cors_allow_methods,
    allow_headers=api_config.cors_allow_headers,
)


def get_service() -> SchedulerService:
    if scheduler_service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler service not available"
        )
    return scheduler_service


# Exception handlers
@app.exception_handler(TrackerError)
async def tracker_exception_handler(request, exc: TrackerError):
    """Map engine errors onto HTTP status codes."""
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    logger.info("Request rejected", path=request.url.path, error=exc.message, status_code=status_code)
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=exc.message, detail=exc.details or None, status_code=status_code).model_dump()
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    """Report malformed request bodies as 400."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(
            error="Invalid request",
            detail={"errors": [e.get("msg") for e in exc.errors()]},
            status_code=status.HTTP_400_BAD_REQUEST
        ).model_dump()
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.detail, status_code=exc.status_code).model_dump(),
        headers=exc.headers
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    """Handle general exceptions."""
    logger.error("Unhandled exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="Internal server error",
            detail={"message": str(exc)} if api_config.debug else None,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        ).model_dump()
    )


# Health check endpoint
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint."""
    db_status = "unavailable"
    running = False
    if scheduler_service is not None:
        db_status = "healthy" if await scheduler_service.db_manager.ping() else "unhealthy"
        running = scheduler_service.running

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        timestamp=datetime.utcnow(),
        version=api_config.api_version,
        database_status=db_status,
        scheduler_running=running
    )


# Scheduler endpoints
@app.get("/scheduler/status", response_model=SchedulerStatusResponse, tags=["Scheduler"])
async def get_scheduler_status():
    """Running flag, scheduled account count and the soonest checks."""
    return get_service().status()


@app.post("/accounts/{account_id}/check", response_model=CycleSummaryResponse, tags=["Scheduler"])
async def check_account(account_id: str):
    """
    Run a check cycle for one account now.

    Returns 409 while a cycle for the account is already running.
    """
    summary = await get_service().check_now(account_id)
    return CycleSummaryResponse(**summary.model_dump())


@app.post("/accounts/{account_id}/schedule/refresh", response_model=ScheduleRefreshResponse, tags=["Scheduler"])
async def refresh_schedule(account_id: str):
    """Recompute an account's cadence after its releases changed."""
    entry = await get_service().refresh_schedule(account_id)
    return ScheduleRefreshResponse(account_id=account_id, scheduled=entry is not None, entry=entry)


# Pending update endpoints
@app.post("/releases/{release_id}/pending/{pending_id}/approve", response_model=UpdateRecord, tags=["Updates"])
async def approve_pending(release_id: str, pending_id: str):
    """Promote a pending update into the release history."""
    return await get_service().approve(release_id, pending_id)


@app.post("/releases/{release_id}/pending/{pending_id}/reject", response_model=PendingUpdate, tags=["Updates"])
async def reject_pending(release_id: str, pending_id: str):
    """Dismiss a pending update; the same detection is not queued again."""
    return await get_service().reject(release_id, pending_id)


@app.post("/releases/{release_id}/verify", response_model=TrackedRelease, tags=["Updates"])
async def verify_release(release_id: str, request: VerifyRequest):
    """Record the version and/or build a user confirmed."""
    return await get_service().verify(release_id, request.version, request.build)


# Relation endpoints
@app.post("/relations/{candidate_id}/resolve", response_model=RelationResolution, tags=["Relations"])
async def resolve_relation(candidate_id: str, request: ResolveRequest):
    """Apply track_same, track_separate or dismiss to a relation candidate."""
    return await get_service().resolve_relation(candidate_id, request.action)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host=api_config.host,
        port=api_config.port,
        reload=api_config.debug,
        log_level="info"
    )
