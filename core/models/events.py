# ============================================================================
# RUN EVENT MODEL
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core model - Execution timeline events
# PURPOSE: Track run and step milestones for debugging/live updates
# CREATED: 18 OCT 2026
# EXPORTS: RunEvent, EventType, EventStatus
# DEPENDENCIES: pydantic, enum
# ============================================================================
"""
Run Event Model

RunEvent records run milestones. Events are informational: the run record in
the store is the source of truth, events only make the timeline observable
(logs, live-update listeners, GET /runs/{id}/events).
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from core.contracts import utc_now


class EventType(str, Enum):
    """Types of events that can occur during a run."""

    # Run lifecycle
    RUN_QUEUED = "run_queued"
    RUN_STARTED = "run_started"
    RUN_SUCCEEDED = "run_succeeded"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"

    # Step lifecycle
    STEP_STARTED = "step_started"
    STEP_SUCCEEDED = "step_succeeded"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"
    STEP_RETRY = "step_retry"

    # Outbound call failed (any attempt)
    API_FAILED = "api_failed"


class EventStatus(str, Enum):
    """Status/severity of an event."""
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"
    INFO = "info"


class RunEvent(BaseModel):
    """A single event in the run timeline."""

    run_id: str = Field(..., max_length=64)
    job_id: str = Field(..., max_length=128)
    step_id: Optional[str] = Field(default=None, max_length=64)
    attempt: Optional[int] = None

    event_type: EventType
    event_status: EventStatus = Field(default=EventStatus.INFO)

    event_data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = Field(default=None, ge=0)
    created_at: datetime = Field(default_factory=utc_now)

    # ========================================================================
    # Factory Methods
    # ========================================================================

    @classmethod
    def run_event(
        cls,
        run_id: str,
        job_id: str,
        event_type: EventType,
        status: EventStatus = EventStatus.INFO,
        event_data: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> "RunEvent":
        """Create a run-level event."""
        return cls(
            run_id=run_id,
            job_id=job_id,
            event_type=event_type,
            event_status=status,
            event_data=event_data or {},
            error=error,
        )

    @classmethod
    def step_event(
        cls,
        run_id: str,
        job_id: str,
        step_id: str,
        event_type: EventType,
        status: EventStatus = EventStatus.INFO,
        attempt: Optional[int] = None,
        event_data: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[int] = None,
    ) -> "RunEvent":
        """Create a step-level event."""
        return cls(
            run_id=run_id,
            job_id=job_id,
            step_id=step_id,
            attempt=attempt,
            event_type=event_type,
            event_status=status,
            event_data=event_data or {},
            error=error,
            duration_ms=duration_ms,
        )


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "RunEvent",
    "EventType",
    "EventStatus",
]
