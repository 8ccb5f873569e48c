# ============================================================================
# BASE CONTRACTS & ENUMS
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Foundation - Core enums and base contracts
# PURPOSE: Define status enums and base identity contracts for runs
# CREATED: 18 OCT 2026
# EXPORTS: RunStatus, StepOutcomeStatus, ActorState, StepKind, EngineTag,
#          BackoffStrategy, RunData
# DEPENDENCIES: enum, pydantic
# ============================================================================
"""
Base contracts for the job worker.

These define the status vocabularies and identity fields that cross
boundaries:
- SQL (PostgreSQL JSONB documents)
- HTTP (inbound trigger API)
- Python (actor and dispatcher internals)
"""

from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field


# ============================================================================
# STATUS ENUMS
# ============================================================================

class RunStatus(str, Enum):
    """
    Run lifecycle states.

    State transitions:
        PENDING -> RUNNING -> SUCCEEDED
                           -> FAILED
                           -> CANCELLED
        PENDING -> CANCELLED (cancelled while queued)
        PENDING -> FAILED    (could not start)
    """
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state (no further transitions)."""
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class StepOutcomeStatus(str, Enum):
    """
    Status of one recorded step attempt.

    RETRYING marks an attempt that failed but will be retried; every other
    status is terminal for the step.
    """
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"      # Guard evaluated to false
    RETRYING = "retrying"

    def is_terminal(self) -> bool:
        return self != StepOutcomeStatus.RETRYING


class ActorState(str, Enum):
    """
    Task actor state machine.

        CREATED -> LOADING -> STEPPING <-> WAITING
                                       -> SUCCEEDED | FAILED | CANCELLED
    """
    CREATED = "created"
    LOADING = "loading"
    STEPPING = "stepping"
    WAITING = "waiting"      # Outbound call in flight or backoff sleep
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        return self in (ActorState.SUCCEEDED, ActorState.FAILED, ActorState.CANCELLED)


class StepKind(str, Enum):
    """What a step does once its guard passes."""
    REQUEST = "request"      # Outbound HTTP call
    FILTER = "filter"        # Search a context value for matching entries
    LOOP = "loop"            # Run inner steps once per item of a list


class EngineTag(str, Enum):
    """Template engine selector carried on each request template."""
    JINJA2 = "jinja2"
    MUSTACHE = "mustache"


class BackoffStrategy(str, Enum):
    """Delay growth between retry attempts."""
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


# ============================================================================
# BASE DATA CONTRACTS
# ============================================================================

def utc_now() -> datetime:
    """Timezone-aware current time used for all persisted timestamps."""
    return datetime.now(timezone.utc)


class RunData(BaseModel):
    """
    Essential run identity - the minimum fields that define a run.
    """
    run_id: str = Field(..., max_length=64, description="Unique run identifier")
    job_id: str = Field(..., max_length=128, description="Job definition reference")

    model_config = {"frozen": False}


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "RunStatus",
    "StepOutcomeStatus",
    "ActorState",
    "StepKind",
    "EngineTag",
    "BackoffStrategy",
    "RunData",
    "utc_now",
]
