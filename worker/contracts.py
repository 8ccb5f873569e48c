# ============================================================================
# WORKER CONTRACTS
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Run request and outbound call contracts
# PURPOSE: Define what a run request carries and what an outbound call looks like
# CREATED: 18 OCT 2026
# ============================================================================
"""
Worker Contracts

Run Request Format (POST /api/v1/runs):
{
    "job_id": "charge-customer",
    "payload": {
        "amount": 150,
        "customer": {"id": "c-42", "tier": "gold"}
    },
    "correlation_id": "req-456"
}

The payload becomes the trigger payload of the run: it seeds the run context
on top of the job defaults. submitted_by and tenant_id are taken from the
validated bearer token, not from the request body.

OutboundRequest is a fully rendered HTTP call: every template has already
been resolved against the context and credentials are attached.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ============================================================================
# RUN REQUEST
# ============================================================================

class RunRequest(BaseModel):
    """Request to start a run of a job definition."""

    job_id: str = Field(..., min_length=1, max_length=128)
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Trigger payload, overlays the job defaults in the run context"
    )
    correlation_id: Optional[str] = Field(default=None, max_length=64)

    # Filled from the bearer token by the API layer
    submitted_by: Optional[str] = Field(default=None, max_length=256)
    tenant_id: Optional[str] = Field(default=None, max_length=64)


# ============================================================================
# OUTBOUND CALL
# ============================================================================

@dataclass
class OutboundRequest:
    """A rendered HTTP request, ready to send."""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)
    body: Optional[Any] = None
    timeout_seconds: float = 30.0

    def with_headers(self, extra: Dict[str, str]) -> "OutboundRequest":
        """Copy with additional headers (credentials win over template headers)."""
        headers = dict(self.headers)
        headers.update(extra)
        return OutboundRequest(
            method=self.method,
            url=self.url,
            headers=headers,
            query=dict(self.query),
            body=self.body,
            timeout_seconds=self.timeout_seconds,
        )


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "RunRequest",
    "OutboundRequest",
]
