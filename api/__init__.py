# ============================================================================
# API MODULE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - FastAPI routes
# PURPOSE: HTTP API for run submission and inspection
# CREATED: 18 OCT 2026
# ============================================================================
"""
API Module

FastAPI routes for the rule worker.
"""

from .routes import router, set_services
from .schemas import (
    RunCreate,
    RunAccepted,
    RunResponse,
    RunListResponse,
)

__all__ = [
    "router",
    "set_services",
    "RunCreate",
    "RunAccepted",
    "RunResponse",
    "RunListResponse",
]
