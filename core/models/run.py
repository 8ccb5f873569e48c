# ============================================================================
# RUN RECORD MODEL
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core model - Run instance (job execution)
# PURPOSE: Track one execution of a job and its append-only outcome log
# CREATED: 18 OCT 2026
# EXPORTS: RunRecord, StepOutcome, RequestSnapshot, ResponseSnapshot
# DEPENDENCIES: pydantic
# ============================================================================
"""
Run Record Model

A RunRecord represents one execution of a job definition.

The outcome log is append-only: one StepOutcome per attempt, in step order.
Status only moves forward (see RunRecord.can_transition_to).
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, computed_field

from core.contracts import RunData, RunStatus, StepOutcomeStatus, utc_now


REDACTED = "***"

# Sorts after any iteration or inner step index
_LAST = float("inf")

# Header names whose values never reach the store
SENSITIVE_HEADERS = frozenset({
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
})


def redact_headers(headers: Dict[str, str], extra: Optional[set] = None) -> Dict[str, str]:
    """Copy of headers with credential values replaced."""
    hidden = SENSITIVE_HEADERS | {h.lower() for h in (extra or set())}
    return {
        name: (REDACTED if name.lower() in hidden else value)
        for name, value in headers.items()
    }


class RequestSnapshot(BaseModel):
    """What was sent, with credentials redacted."""
    method: str
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None


class ResponseSnapshot(BaseModel):
    """
    What came back.

    ``body`` is parsed JSON when the payload is complete JSON, text when it
    decodes as UTF-8, base64 otherwise. Payloads above the configured limit
    are cut and flagged ``truncated``.
    """
    status_code: int
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    encoding: str = Field(default="json", pattern="^(json|text|base64)$")
    size_bytes: int = 0
    truncated: bool = False


class StepOutcome(BaseModel):
    """
    One recorded step attempt.

    Identity within a run is (step_index, iteration, inner_index, attempt).
    A RETRYING outcome is followed by another attempt of the same step; every
    other status is terminal for that step.

    Outcomes of steps inside a loop carry the iteration, the inner step's
    index and the loop's step_id. The loop's own closing outcome has neither
    iteration nor inner_index and sorts after all of its inner outcomes.
    """
    step_id: str
    step_index: int = Field(..., ge=0)
    iteration: Optional[int] = Field(default=None, ge=0)
    inner_index: Optional[int] = Field(default=None, ge=0)
    parent_step_id: Optional[str] = None
    attempt: int = Field(default=1, ge=1)
    status: StepOutcomeStatus
    timestamp: datetime = Field(default_factory=utc_now)
    request: Optional[RequestSnapshot] = None
    response: Optional[ResponseSnapshot] = None
    output: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None

    @property
    def key(self) -> tuple:
        return (self.step_index, self.iteration, self.inner_index, self.attempt)

    @property
    def position(self) -> tuple:
        """Where the step sits in execution order."""
        return (
            self.step_index,
            _LAST if self.iteration is None else self.iteration,
            _LAST if self.inner_index is None else self.inner_index,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()


class RunRecord(RunData):
    """
    A run instance - one execution of a job.

    Maps to: run_records table

    Lifecycle:
        1. Created PENDING by the dispatcher
        2. RUNNING when its actor starts loading
        3. SUCCEEDED / FAILED / CANCELLED when the actor finishes
    """

    tenant_id: Optional[str] = Field(default=None, max_length=64)
    status: RunStatus = Field(default=RunStatus.PENDING)

    trigger_payload: Dict[str, Any] = Field(default_factory=dict)
    outcomes: List[StepOutcome] = Field(default_factory=list)
    final_context: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None

    # Timestamps
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)

    # Tracking
    submitted_by: Optional[str] = Field(default=None, max_length=256)
    correlation_id: Optional[str] = Field(default=None, max_length=64)

    @computed_field
    @property
    def is_terminal(self) -> bool:
        """Check if run is in a terminal state."""
        return self.status.is_terminal()

    @computed_field
    @property
    def duration_seconds(self) -> Optional[float]:
        """Calculate run duration if started."""
        if not self.started_at:
            return None
        end_time = self.completed_at or utc_now()
        return (end_time - self.started_at).total_seconds()

    def can_transition_to(self, new_status: RunStatus) -> bool:
        """
        Validate if a status transition is allowed.

        Valid transitions:
            PENDING -> RUNNING, FAILED, CANCELLED
            RUNNING -> SUCCEEDED, FAILED, CANCELLED
            SUCCEEDED, FAILED, CANCELLED -> (none, terminal)
        """
        allowed = {
            RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
            RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED},
            RunStatus.SUCCEEDED: set(),
            RunStatus.FAILED: set(),
            RunStatus.CANCELLED: set(),
        }
        return new_status in allowed.get(self.status, set())

    def last_outcome(self) -> Optional[StepOutcome]:
        return self.outcomes[-1] if self.outcomes else None

    def outcomes_for(self, step_id: str) -> List[StepOutcome]:
        """All recorded attempts of one step, in order."""
        return [o for o in self.outcomes if o.step_id == step_id]


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "REDACTED",
    "SENSITIVE_HEADERS",
    "redact_headers",
    "RequestSnapshot",
    "ResponseSnapshot",
    "StepOutcome",
    "RunRecord",
]
