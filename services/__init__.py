# ============================================================================
# SERVICES MODULE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Service layer
# PURPOSE: Run events and job definition loading
# CREATED: 18 OCT 2026
# ============================================================================
"""
Services Module

Usage:
    from services import JobDefinitionService, RunEventService

    events = RunEventService()
    loader = JobDefinitionService(store, "jobs/")
    await loader.load_all()
"""

from .event_service import RunEventService
from .job_definition_service import JobDefinitionService

__all__ = [
    "RunEventService",
    "JobDefinitionService",
]
