# ============================================================================
# WORKER MODULE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Run execution components
# PURPOSE: Task actor, outbound HTTP transport, run request contracts
# CREATED: 18 OCT 2026
# ============================================================================
"""
Worker Module

Components that execute runs:
- contracts: Run request schema and rendered outbound request
- outbound: httpx transport with timeout/status mapping and response capture
- actor: TaskActor, one per run
"""

from worker.contracts import (
    RunRequest,
    OutboundRequest,
)
from worker.outbound import (
    OutboundClient,
    substitute_path_params,
)
from worker.actor import TaskActor

__all__ = [
    # Contracts
    "RunRequest",
    "OutboundRequest",
    # Transport
    "OutboundClient",
    "substitute_path_params",
    # Actor
    "TaskActor",
]
