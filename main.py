# ============================================================================
# RULE WORKER - MAIN APPLICATION
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - FastAPI application entry point
# PURPOSE: Main application with run dispatcher
# CREATED: 18 OCT 2026
# ============================================================================
"""
Rule Worker Main Application

FastAPI application that:
1. Provides HTTP API for run submission and inspection
2. Runs the dispatcher and its task actors in the background
3. Manages the job store, signing keys and outbound HTTP client

Usage:
    uvicorn main:app --host 0.0.0.0 --port 8000
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from __version__ import __version__, BUILD_DATE, EPOCH
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings
from repositories import create_store
from services import JobDefinitionService, RunEventService
from infrastructure.auth import AuthGuard
from orchestrator.dispatcher import Dispatcher
from worker.outbound import OutboundClient
from api.routes import router, set_services

# Health check system
from health import health_router, set_health_checks, default_checks

# Configure logging using our structured logging system
from core.logging import configure_logging, get_logger

configure_logging(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    json_output=os.environ.get("LOG_FORMAT", "").lower() == "json",
)
logger = get_logger(__name__)

# Global instances
_dispatcher: Dispatcher = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Initializes services on startup, cleans up on shutdown.
    """
    global _dispatcher

    settings = get_settings()
    logger.info(f"Starting Rule Worker v{__version__} (Epoch {EPOCH}, Build {BUILD_DATE})")

    # Job store (postgres pool + schema, or in-memory)
    store = await create_store(settings.store)
    logger.info(f"Job store initialized ({settings.store.backend})")

    # Seed job definitions from YAML
    definitions = JobDefinitionService(store, settings.store.job_definitions_dir or None)
    count = await definitions.load_all()
    logger.info(f"Loaded {count} job definitions")

    # Auth guard (JWKS warmup failures are logged, validation retries later)
    guard = AuthGuard.from_settings(settings.auth)
    await guard.start()

    event_service = RunEventService()
    outbound = OutboundClient(max_body_bytes=settings.steps.response_body_max_bytes)

    _dispatcher = Dispatcher(
        store,
        guard,
        outbound,
        events=event_service,
        defaults=settings.dispatcher,
        step_defaults=settings.steps,
        stale_run_seconds=settings.store.stale_run_seconds,
    )
    await _dispatcher.start()

    # Set services for API routes
    set_services(
        dispatcher=_dispatcher,
        store=store,
        guard=guard,
        event_service=event_service,
        stale_run_seconds=settings.store.stale_run_seconds,
    )

    # Initialize health checks
    checks = default_checks(store=store, guard=guard, dispatcher=_dispatcher)
    set_health_checks(checks)
    logger.info(f"Health checks initialized ({len(checks)} checks registered)")

    yield

    # Shutdown
    logger.info("Shutting down Rule Worker...")

    await _dispatcher.stop(timeout=30.0)
    await outbound.close()
    await guard.close()
    await store.close()

    logger.info("Rule Worker stopped")


# Create FastAPI app
app = FastAPI(
    title="Rule Worker",
    description=f"Epoch {EPOCH} rule-driven background job worker",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include health check routes (no prefix - /livez, /readyz, /health)
app.include_router(health_router)

# Include API routes
app.include_router(router, prefix="/api/v1")


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Rule Worker",
        "version": __version__,
        "epoch": EPOCH,
        "build_date": BUILD_DATE,
        "status": "running",
        "docs": "/docs",
    }


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=os.environ.get("RELOAD", "false").lower() == "true",
    )
