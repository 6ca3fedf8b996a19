"""Main FastAPI application for the letter workflow orchestrator."""

import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.core.dependencies import (
    close_adapters,
    get_intake,
    get_orchestrator,
)
from app.core.exceptions import OrchestrationError, orchestration_http_exception
from app.core.logging import setup_logging, get_logger, get_correlation_id
from app.core.middleware import RequestTracingMiddleware
from app.api.approval import router as approval_router
from app.api.health import router as health_router
from app.api.orchestration import router as orchestration_router

# Get settings
settings = get_settings()

# Initialize logging
setup_logging(
    log_level=settings.log_level,
    service_name=settings.service_name,
    environment=settings.environment,
)
logger = get_logger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Letter Workflow Orchestrator",
    description="Turns CRM tasks into human-approved, physically mailed letters",
    version=settings.service_version,
    docs_url="/docs",
    redoc_url="/redoc",
)
app.state.start_time = time.time()

# Correlation IDs and timing headers
app.add_middleware(RequestTracingMiddleware, slow_request_threshold_ms=5000.0)

# CORS middleware
if settings.enable_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Include API routers
app.include_router(health_router, prefix=settings.api_prefix, tags=["health"])
app.include_router(orchestration_router, prefix=settings.api_prefix)
app.include_router(approval_router, prefix=settings.api_prefix)


@app.exception_handler(OrchestrationError)
async def orchestration_error_handler(request: Request, exc: OrchestrationError):
    """Orchestration errors that escape a route handler."""
    http_error = orchestration_http_exception(exc)
    logger.warning(
        "Unhandled orchestration error",
        path=request.url.path,
        error_code=exc.error_code,
        error=str(exc),
    )
    return JSONResponse(
        status_code=http_error.status_code,
        content={"detail": http_error.detail, "correlation_id": get_correlation_id()},
        headers=http_error.headers,
    )


@app.on_event("startup")
async def startup_event():
    """Resume interrupted approvals and start intake polling."""
    logger.info("Starting Letter Workflow Orchestrator", version=settings.service_version)

    try:
        summary = await get_orchestrator().resume_pending()
        logger.info(
            "Startup resume complete",
            dispatched=len(summary["dispatched"]),
            delivered=len(summary["delivered"]),
            revised=len(summary["revised"]),
            failed=len(summary["failed"]),
        )
    except Exception as e:
        logger.error("Failed to resume pending approvals", error=str(e))

    get_intake().start()
    logger.info("Service startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    logger.info("Shutting down Letter Workflow Orchestrator")

    try:
        await get_intake().stop()
    except Exception as e:
        logger.error("Failed to stop intake polling", error=str(e))

    await close_adapters()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
