# ============================================================================
# CORE MODULE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core module initialization
# PURPOSE: Export core contracts, errors and models
# CREATED: 18 OCT 2026
# ============================================================================

from core.contracts import RunStatus, StepOutcomeStatus, ActorState, StepKind, EngineTag
from core.errors import WorkerError
from core.models import (
    JobDefinition,
    StepDefinition,
    RunRecord,
    StepOutcome,
    RunContext,
    AuthToken,
    RunEvent,
    EventType,
    EventStatus,
)

__all__ = [
    # Enums
    "RunStatus",
    "StepOutcomeStatus",
    "ActorState",
    "StepKind",
    "EngineTag",
    "EventType",
    "EventStatus",
    # Errors
    "WorkerError",
    # Models
    "JobDefinition",
    "StepDefinition",
    "RunRecord",
    "StepOutcome",
    "RunContext",
    "AuthToken",
    "RunEvent",
]
