# ============================================================================
# IN-MEMORY JOB STORE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Process-local store
# PURPOSE: STORE_BACKEND=memory and tests
# CREATED: 18 OCT 2026
# ============================================================================
"""
In-Memory Job Store

Same write rules as the PostgreSQL store (shared check_* functions), kept in
dicts behind one asyncio lock. Records are copied in and out so callers never
hold a live reference.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from core.contracts import RunStatus, utc_now
from core.errors import JobNotFoundError, RunNotFoundError, StoreConflictError
from core.models import JobDefinition, RunRecord, StepOutcome
from repositories.store import JobStore, check_append, check_transition, visible_to

logger = logging.getLogger(__name__)


class InMemoryJobStore(JobStore):
    """Dict-backed JobStore."""

    def __init__(self, definitions: Optional[List[JobDefinition]] = None):
        self._jobs: Dict[str, JobDefinition] = {}
        self._runs: Dict[str, RunRecord] = {}
        self._lock = asyncio.Lock()
        for definition in definitions or []:
            self._jobs[definition.job_id] = definition.model_copy(deep=True)

    # ------------------------------------------------------------------------
    # Job definitions
    # ------------------------------------------------------------------------

    async def load(self, job_id: str) -> JobDefinition:
        definition = self._jobs.get(job_id)
        if definition is None:
            raise JobNotFoundError(job_id)
        return definition.model_copy(deep=True)

    async def save_job(self, definition: JobDefinition) -> None:
        async with self._lock:
            self._jobs[definition.job_id] = definition.model_copy(deep=True)
        logger.debug(f"Saved job definition {definition.job_id}")

    async def list_jobs(self) -> List[str]:
        return sorted(self._jobs)

    # ------------------------------------------------------------------------
    # Run records
    # ------------------------------------------------------------------------

    async def create_run(self, record: RunRecord) -> RunRecord:
        async with self._lock:
            if record.run_id in self._runs:
                raise StoreConflictError(f"Run {record.run_id} already exists")
            self._runs[record.run_id] = record.model_copy(deep=True)
        logger.debug(f"Created run {record.run_id} for job {record.job_id}")
        return record.model_copy(deep=True)

    async def get_run(self, run_id: str) -> RunRecord:
        record = self._runs.get(run_id)
        if record is None:
            raise RunNotFoundError(run_id)
        return record.model_copy(deep=True)

    async def mark_running(self, run_id: str) -> RunRecord:
        async with self._lock:
            record = self._require(run_id)
            if check_transition(record, RunStatus.RUNNING):
                now = utc_now()
                record.status = RunStatus.RUNNING
                record.started_at = now
                record.updated_at = now
            return record.model_copy(deep=True)

    async def append_step_outcome(self, run_id: str, outcome: StepOutcome) -> RunRecord:
        async with self._lock:
            record = self._require(run_id)
            if check_append(record, outcome):
                record.outcomes.append(outcome.model_copy(deep=True))
                record.updated_at = utc_now()
            else:
                logger.debug(f"Run {run_id}: replayed outcome {outcome.key} ignored")
            return record.model_copy(deep=True)

    async def finalize(
        self,
        run_id: str,
        status: RunStatus,
        final_context: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> RunRecord:
        if not status.is_terminal():
            raise StoreConflictError(f"finalize needs a terminal status, got {status.value}")
        async with self._lock:
            record = self._require(run_id)
            if check_transition(record, status):
                now = utc_now()
                record.status = status
                record.final_context = final_context
                record.error = error
                record.completed_at = now
                record.updated_at = now
            return record.model_copy(deep=True)

    async def list_runs(
        self,
        job_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
        tenant_id: Optional[str] = None,
    ) -> List[RunRecord]:
        records = [
            r for r in self._runs.values()
            if (job_id is None or r.job_id == job_id)
            and (status is None or r.status == status)
            and visible_to(r, tenant_id)
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in records[:limit]]

    async def list_stale_runs(
        self,
        older_than: timedelta,
        tenant_id: Optional[str] = None,
    ) -> List[RunRecord]:
        cutoff = utc_now() - older_than
        return [
            r.model_copy(deep=True) for r in self._runs.values()
            if r.status == RunStatus.RUNNING and r.updated_at < cutoff and visible_to(r, tenant_id)
        ]

    def _require(self, run_id: str) -> RunRecord:
        record = self._runs.get(run_id)
        if record is None:
            raise RunNotFoundError(run_id)
        return record


__all__ = ["InMemoryJobStore"]
