# ============================================================================
# API ROUTES
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - FastAPI route definitions
# PURPOSE: HTTP endpoints for run submission and inspection
# CREATED: 18 OCT 2026
# ============================================================================
"""
API Routes

Mounted under /api/v1. Every route requires a bearer token validated by the
auth guard (unless AUTH_REQUIRED=false and no token is sent).

    POST /runs                  202 {run_id, status}; 401, 404, 503
    GET  /runs                  list (job_id, status, limit filters)
    GET  /runs/stale            running past the staleness window
    GET  /runs/{run_id}         full record with outcome log
    POST /runs/{run_id}/cancel  cancel queued or running run
    GET  /runs/{run_id}/events  event timeline
    GET  /dispatcher/status     admission counters
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from core.contracts import RunStatus
from core.errors import (
    AuthError,
    DispatchNotFoundError,
    OverloadedError,
    RunNotFoundError,
    StoreUnavailableError,
)
from core.models import Claims, RunRecord
from repositories.store import visible_to
from worker.contracts import RunRequest
from .schemas import (
    RunCreate,
    RunAccepted,
    RunResponse,
    RunSummary,
    RunListResponse,
    RunEventListResponse,
    DispatcherStatusResponse,
    ErrorResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# DEPENDENCY INJECTION
# ============================================================================
# These will be set by the main app at startup

_dispatcher = None
_store = None
_guard = None
_event_service = None
_stale_run_seconds = 900


def set_services(dispatcher, store, guard, event_service, stale_run_seconds: int = 900):
    """Set service instances for dependency injection."""
    global _dispatcher, _store, _guard, _event_service, _stale_run_seconds
    _dispatcher = dispatcher
    _store = store
    _guard = guard
    _event_service = event_service
    _stale_run_seconds = stale_run_seconds


def get_dispatcher():
    if _dispatcher is None:
        raise HTTPException(500, "Dispatcher not initialized")
    return _dispatcher


def get_store():
    if _store is None:
        raise HTTPException(500, "Store not initialized")
    return _store


def get_event_service():
    if _event_service is None:
        raise HTTPException(500, "Event service not initialized")
    return _event_service


async def get_caller(authorization: Optional[str] = Header(None)) -> Optional[Claims]:
    """
    Validate the bearer token.

    Returns:
        Claims, or None when auth is optional and no token was sent
    """
    if _guard is None:
        raise HTTPException(500, "Auth guard not initialized")

    if not authorization:
        if not _guard.required:
            return None
        raise HTTPException(
            401,
            {"kind": "AuthError.Invalid", "message": "Missing bearer token"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            401,
            {"kind": "AuthError.Invalid", "message": "Authorization header must be 'Bearer <token>'"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return await _guard.validate_inbound(token.strip())
    except AuthError as e:
        logger.warning(f"Rejected bearer token: {e.kind}: {e}")
        raise HTTPException(401, e.to_dict(), headers={"WWW-Authenticate": "Bearer"})


def _tenant_of(caller: Optional[Claims]) -> Optional[str]:
    return caller.tenant_id if caller else None


async def _load_run(run_id: str, caller: Optional[Claims]) -> RunRecord:
    """Run visible to the caller (other tenants' runs are reported missing)."""
    try:
        record = await get_store().get_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(404, e.to_dict())
    except StoreUnavailableError as e:
        raise HTTPException(503, e.to_dict())

    if not visible_to(record, _tenant_of(caller)):
        raise HTTPException(404, RunNotFoundError(run_id).to_dict())
    return record


# ============================================================================
# RUNS
# ============================================================================

@router.post(
    "/runs",
    response_model=RunAccepted,
    status_code=202,
    tags=["Runs"],
    responses={
        202: {"description": "Run accepted"},
        401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
        404: {"model": ErrorResponse, "description": "Unknown job"},
        503: {"model": ErrorResponse, "description": "Overloaded or store unavailable"},
    },
)
async def create_run(request: RunCreate, caller: Optional[Claims] = Depends(get_caller)):
    """
    Start a run of a job definition.

    Returns immediately with the run ID. Poll GET /runs/{run_id} to monitor
    progress.
    """
    dispatcher = get_dispatcher()

    run_request = RunRequest(
        job_id=request.job_id,
        payload=request.payload,
        correlation_id=request.correlation_id,
        submitted_by=caller.subject if caller else None,
        tenant_id=_tenant_of(caller),
    )

    try:
        record = await dispatcher.submit(run_request)
    except OverloadedError as e:
        raise HTTPException(503, e.to_dict(), headers={"Retry-After": "1"})
    except DispatchNotFoundError as e:
        raise HTTPException(404, e.to_dict())
    except StoreUnavailableError as e:
        raise HTTPException(503, e.to_dict())

    logger.info(f"Accepted run {record.run_id} for job {record.job_id}")
    return RunAccepted(
        run_id=record.run_id,
        job_id=record.job_id,
        status=record.status,
        correlation_id=record.correlation_id,
    )


@router.get("/runs", response_model=RunListResponse, tags=["Runs"])
async def list_runs(
    job_id: Optional[str] = Query(None, description="Filter by job"),
    status: Optional[RunStatus] = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=500),
    caller: Optional[Claims] = Depends(get_caller),
):
    """List runs, newest first."""
    try:
        records = await get_store().list_runs(
            job_id=job_id, status=status, limit=limit, tenant_id=_tenant_of(caller),
        )
    except StoreUnavailableError as e:
        raise HTTPException(503, e.to_dict())

    return RunListResponse(
        runs=[RunSummary.from_record(r) for r in records],
        count=len(records),
    )


@router.get("/runs/stale", response_model=RunListResponse, tags=["Runs"])
async def list_stale_runs(caller: Optional[Claims] = Depends(get_caller)):
    """
    Runs still running past the staleness window.

    These are candidates for external reconciliation (e.g. after a crash).
    """
    try:
        records = await get_store().list_stale_runs(
            timedelta(seconds=_stale_run_seconds), tenant_id=_tenant_of(caller),
        )
    except StoreUnavailableError as e:
        raise HTTPException(503, e.to_dict())
    return RunListResponse(
        runs=[RunSummary.from_record(r) for r in records],
        count=len(records),
    )


@router.get(
    "/runs/{run_id}",
    response_model=RunResponse,
    tags=["Runs"],
    responses={404: {"model": ErrorResponse, "description": "Run not found"}},
)
async def get_run(run_id: str, caller: Optional[Claims] = Depends(get_caller)):
    """Get a run with its outcome log."""
    record = await _load_run(run_id, caller)
    return RunResponse.from_record(record, active=get_dispatcher().is_active(run_id))


@router.post(
    "/runs/{run_id}/cancel",
    response_model=RunResponse,
    tags=["Runs"],
    responses={404: {"model": ErrorResponse, "description": "Run not found"}},
)
async def cancel_run(run_id: str, caller: Optional[Claims] = Depends(get_caller)):
    """
    Cancel a run.

    A queued run is cancelled immediately. A running run is cancelled at its
    next step boundary; the response may still show it running.
    """
    await _load_run(run_id, caller)
    dispatcher = get_dispatcher()
    try:
        record = await dispatcher.cancel(run_id)
    except RunNotFoundError as e:
        raise HTTPException(404, e.to_dict())

    logger.info(f"Cancel requested for run {run_id} (now {record.status.value})")
    return RunResponse.from_record(record, active=dispatcher.is_active(run_id))


@router.get("/runs/{run_id}/events", response_model=RunEventListResponse, tags=["Runs"])
async def get_run_events(
    run_id: str,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    caller: Optional[Claims] = Depends(get_caller),
):
    """Event timeline for a run, oldest first."""
    await _load_run(run_id, caller)
    events = get_event_service().get_events(run_id, limit=limit)
    return RunEventListResponse(run_id=run_id, events=events, count=len(events))


# ============================================================================
# DISPATCHER STATUS
# ============================================================================

@router.get("/dispatcher/status", response_model=DispatcherStatusResponse, tags=["Dispatcher"])
async def get_dispatcher_status(caller: Optional[Claims] = Depends(get_caller)):
    """Admission counters: running, queued, available slots, totals."""
    stats = get_dispatcher().stats
    return DispatcherStatusResponse(
        status="accepting" if stats["accepting"] else "stopped",
        stats=stats,
    )


__all__ = ["router", "set_services", "get_caller"]
