# ============================================================================
# API SCHEMAS
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Request/Response schemas
# PURPOSE: Pydantic models for API validation
# CREATED: 18 OCT 2026
# ============================================================================
"""
API Schemas

Request and response models for the API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from core.contracts import RunStatus
from core.models import RunEvent, RunRecord, StepOutcome


# ============================================================================
# REQUEST SCHEMAS
# ============================================================================

class RunCreate(BaseModel):
    """Request to start a run."""
    job_id: str = Field(..., min_length=1, max_length=128, description="Job definition to run")
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Trigger payload, overlays the job defaults"
    )
    correlation_id: Optional[str] = Field(
        None,
        max_length=64,
        description="External correlation ID for tracing"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "job_id": "charge-customer",
                    "payload": {"amount": 150, "customer": {"id": "c-42"}}
                }
            ]
        }
    }


# ============================================================================
# RESPONSE SCHEMAS
# ============================================================================

class RunAccepted(BaseModel):
    """Response for an admitted run."""
    run_id: str
    job_id: str
    status: RunStatus
    correlation_id: Optional[str] = None


class RunResponse(BaseModel):
    """Full run record."""
    run_id: str
    job_id: str
    tenant_id: Optional[str] = None
    status: RunStatus
    active: bool = False
    trigger_payload: Dict[str, Any] = Field(default_factory=dict)
    outcomes: List[StepOutcome] = Field(default_factory=list)
    final_context: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    submitted_by: Optional[str] = None
    correlation_id: Optional[str] = None

    @classmethod
    def from_record(cls, record: RunRecord, active: bool = False) -> "RunResponse":
        return cls(
            run_id=record.run_id,
            job_id=record.job_id,
            tenant_id=record.tenant_id,
            status=record.status,
            active=active,
            trigger_payload=record.trigger_payload,
            outcomes=record.outcomes,
            final_context=record.final_context,
            error=record.error,
            created_at=record.created_at,
            started_at=record.started_at,
            completed_at=record.completed_at,
            duration_seconds=record.duration_seconds,
            submitted_by=record.submitted_by,
            correlation_id=record.correlation_id,
        )


class RunSummary(BaseModel):
    """Run listing entry (no outcome log)."""
    run_id: str
    job_id: str
    status: RunStatus
    step_outcomes: int = 0
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: RunRecord) -> "RunSummary":
        return cls(
            run_id=record.run_id,
            job_id=record.job_id,
            status=record.status,
            step_outcomes=len(record.outcomes),
            created_at=record.created_at,
            started_at=record.started_at,
            completed_at=record.completed_at,
        )


class RunListResponse(BaseModel):
    runs: List[RunSummary]
    count: int


class RunEventListResponse(BaseModel):
    run_id: str
    events: List[RunEvent]
    count: int


class DispatcherStatusResponse(BaseModel):
    status: str
    stats: Dict[str, Any]


class ErrorResponse(BaseModel):
    """Error response body (``detail`` of an HTTPException)."""
    kind: str
    message: str


__all__ = [
    "RunCreate",
    "RunAccepted",
    "RunResponse",
    "RunSummary",
    "RunListResponse",
    "RunEventListResponse",
    "DispatcherStatusResponse",
    "ErrorResponse",
]
