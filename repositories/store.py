# ============================================================================
# JOB STORE INTERFACE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Persistence contract for definitions and run records
# PURPOSE: One interface, shared write rules for every backend
# CREATED: 18 OCT 2026
# ============================================================================
"""
Job Store

The store holds two document collections:
- job definitions (read-only to the worker, written by the loader/API)
- run records (created by the dispatcher, advanced by one actor per run)

Write rules shared by all backends (see check_append / check_transition):
- append_step_outcome is idempotent: an identical outcome for the same
  key (step_index, iteration, inner_index, attempt) is a no-op, a different
  one is a conflict
- outcomes arrive in position order (StepOutcome.position, so inner loop
  steps come before the loop's closing outcome); a step already terminal
  is never rewritten
- status only moves forward; finalize with the current status is a no-op
- a caller scoped to a tenant sees its own runs and runs with no tenant
  (see visible_to)
"""

import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, List, Optional

from core.contracts import RunStatus
from core.errors import StoreConflictError
from core.models import JobDefinition, RunRecord, StepOutcome

logger = logging.getLogger(__name__)


# ============================================================================
# SHARED WRITE RULES
# ============================================================================

def check_append(record: RunRecord, outcome: StepOutcome) -> bool:
    """
    Validate an outcome append against the current record.

    Returns:
        True if the outcome must be appended, False if it is an exact replay

    Raises:
        StoreConflictError: append would rewrite or reorder history
    """
    for existing in record.outcomes:
        if existing.key == outcome.key:
            if existing.model_dump(mode="json") == outcome.model_dump(mode="json"):
                return False
            raise StoreConflictError(
                f"Run {record.run_id}: step {outcome.step_id} attempt {outcome.attempt} "
                f"already recorded with a different outcome"
            )

    if record.status != RunStatus.RUNNING:
        raise StoreConflictError(
            f"Run {record.run_id} is {record.status.value}, outcomes can only be appended while running"
        )

    last = record.last_outcome()
    if last is None:
        return True

    if outcome.position < last.position:
        raise StoreConflictError(
            f"Run {record.run_id}: step {outcome.step_id} at {_describe(outcome)} precedes "
            f"last recorded {last.step_id} at {_describe(last)}"
        )

    if outcome.position == last.position:
        if last.is_terminal:
            raise StoreConflictError(
                f"Run {record.run_id}: step {last.step_id} is already {last.status.value}"
            )
        if outcome.attempt <= last.attempt:
            raise StoreConflictError(
                f"Run {record.run_id}: attempt {outcome.attempt} does not follow {last.attempt}"
            )
    elif not last.is_terminal:
        raise StoreConflictError(
            f"Run {record.run_id}: step {last.step_id} has no terminal outcome yet"
        )

    return True


def _describe(outcome: StepOutcome) -> str:
    if outcome.iteration is None:
        return f"index {outcome.step_index}"
    return f"index {outcome.step_index} iteration {outcome.iteration}.{outcome.inner_index}"


def visible_to(record: RunRecord, tenant_id: Optional[str]) -> bool:
    """Tenant scoping for reads. No tenant on either side means visible."""
    return tenant_id is None or record.tenant_id is None or record.tenant_id == tenant_id


def check_transition(record: RunRecord, status: RunStatus) -> bool:
    """
    Validate a status change.

    Returns:
        True if the status must change, False if it already holds

    Raises:
        StoreConflictError: transition is not allowed
    """
    if record.status == status:
        return False
    if not record.can_transition_to(status):
        raise StoreConflictError(
            f"Run {record.run_id}: cannot move from {record.status.value} to {status.value}"
        )
    return True


# ============================================================================
# INTERFACE
# ============================================================================

class JobStore(ABC):
    """Persistence for job definitions and run records."""

    # ------------------------------------------------------------------------
    # Job definitions
    # ------------------------------------------------------------------------

    @abstractmethod
    async def load(self, job_id: str) -> JobDefinition:
        """
        Load a job definition.

        Raises:
            JobNotFoundError: No definition with this ID
            StoreUnavailableError: Storage failure
        """

    @abstractmethod
    async def save_job(self, definition: JobDefinition) -> None:
        """Insert or replace a job definition."""

    @abstractmethod
    async def list_jobs(self) -> List[str]:
        """IDs of all stored job definitions."""

    # ------------------------------------------------------------------------
    # Run records
    # ------------------------------------------------------------------------

    @abstractmethod
    async def create_run(self, record: RunRecord) -> RunRecord:
        """
        Persist a new run record.

        Raises:
            StoreConflictError: run_id already exists
        """

    @abstractmethod
    async def get_run(self, run_id: str) -> RunRecord:
        """
        Get a run record.

        Raises:
            RunNotFoundError: No run with this ID
        """

    @abstractmethod
    async def mark_running(self, run_id: str) -> RunRecord:
        """Move a pending run to running and stamp started_at."""

    @abstractmethod
    async def append_step_outcome(self, run_id: str, outcome: StepOutcome) -> RunRecord:
        """
        Append one step attempt to the outcome log (idempotent).

        Raises:
            StoreConflictError: see check_append
        """

    @abstractmethod
    async def finalize(
        self,
        run_id: str,
        status: RunStatus,
        final_context: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> RunRecord:
        """
        Move a run to a terminal status.

        Raises:
            StoreConflictError: transition not allowed (see check_transition)
        """

    @abstractmethod
    async def list_runs(
        self,
        job_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
        tenant_id: Optional[str] = None,
    ) -> List[RunRecord]:
        """Most recent runs first, limited after tenant scoping."""

    @abstractmethod
    async def list_stale_runs(
        self,
        older_than: timedelta,
        tenant_id: Optional[str] = None,
    ) -> List[RunRecord]:
        """Runs still RUNNING whose last update is older than ``older_than``."""

    async def ping(self) -> bool:
        """Readiness probe."""
        return True

    async def close(self) -> None:
        """Release resources."""


__all__ = [
    "JobStore",
    "check_append",
    "check_transition",
    "visible_to",
]
