# ============================================================================
# MODELS MODULE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Model exports
# PURPOSE: Central export point for all Pydantic models
# CREATED: 18 OCT 2026
# ============================================================================
"""
Models Module - Central Export Point

All models for the job worker. Job definitions and run records are stored as
JSONB documents, so model_dump(mode="json") is their persisted form.
"""

from core.models.job import (
    JobDefinition,
    StepDefinition,
    RequestTemplate,
    FilterSpec,
    LoopSpec,
    StepAuth,
    AuthType,
    RetryPolicy,
)
from core.models.run import (
    RunRecord,
    StepOutcome,
    RequestSnapshot,
    ResponseSnapshot,
    redact_headers,
)
from core.models.context import RunContext
from core.models.auth import AuthToken, Claims
from core.models.events import RunEvent, EventType, EventStatus

__all__ = [
    # Job
    "JobDefinition",
    "StepDefinition",
    "RequestTemplate",
    "FilterSpec",
    "LoopSpec",
    "StepAuth",
    "AuthType",
    "RetryPolicy",
    # Run
    "RunRecord",
    "StepOutcome",
    "RequestSnapshot",
    "ResponseSnapshot",
    "redact_headers",
    "RunContext",
    # Auth
    "AuthToken",
    "Claims",
    # Events
    "RunEvent",
    "EventType",
    "EventStatus",
]
