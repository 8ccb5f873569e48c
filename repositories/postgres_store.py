# ============================================================================
# POSTGRESQL JOB STORE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - JSONB document persistence
# PURPOSE: Database access for job_definitions and run_records tables
# CREATED: 18 OCT 2026
# ============================================================================
"""
PostgreSQL Job Store

Definitions and run records are JSONB documents. Every write to a run record
happens inside a transaction holding the row lock (SELECT ... FOR UPDATE), so
the shared check_append / check_transition rules see the committed state.

Connection failures surface as StoreUnavailableError.
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from psycopg import OperationalError, errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Json
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from core.contracts import RunStatus, utc_now
from core.errors import (
    JobNotFoundError,
    RunNotFoundError,
    StoreConflictError,
    StoreUnavailableError,
)
from core.models import JobDefinition, RunRecord, StepOutcome
from repositories.database import TABLE_JOB_DEFINITIONS, TABLE_RUN_RECORDS
from repositories.store import JobStore, check_append, check_transition

logger = logging.getLogger(__name__)


class PostgresJobStore(JobStore):
    """JobStore backed by psycopg3 async."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    @asynccontextmanager
    async def _connection(self):
        try:
            async with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as e:
            logger.error(f"Store unavailable: {e}")
            raise StoreUnavailableError(f"Store unavailable: {e}") from e

    # ------------------------------------------------------------------------
    # Job definitions
    # ------------------------------------------------------------------------

    async def load(self, job_id: str) -> JobDefinition:
        async with self._connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    sql.SQL("SELECT document FROM {} WHERE job_id = %s").format(TABLE_JOB_DEFINITIONS),
                    (job_id,),
                )
                row = await cur.fetchone()

        if row is None:
            raise JobNotFoundError(job_id)
        return JobDefinition.model_validate(row["document"])

    async def save_job(self, definition: JobDefinition) -> None:
        async with self._connection() as conn:
            await conn.execute(
                sql.SQL("""
                INSERT INTO {} (job_id, tenant_id, version, document)
                VALUES (%(job_id)s, %(tenant_id)s, %(version)s, %(document)s)
                ON CONFLICT (job_id) DO UPDATE SET
                    tenant_id = EXCLUDED.tenant_id,
                    version = EXCLUDED.version,
                    document = EXCLUDED.document,
                    updated_at = now()
                """).format(TABLE_JOB_DEFINITIONS),
                {
                    "job_id": definition.job_id,
                    "tenant_id": definition.tenant_id,
                    "version": definition.version,
                    "document": Json(definition.model_dump(mode="json")),
                },
            )
        logger.info(f"Saved job definition {definition.job_id} v{definition.version}")

    async def list_jobs(self) -> List[str]:
        async with self._connection() as conn:
            result = await conn.execute(
                sql.SQL("SELECT job_id FROM {} ORDER BY job_id").format(TABLE_JOB_DEFINITIONS)
            )
            rows = await result.fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------------
    # Run records
    # ------------------------------------------------------------------------

    async def create_run(self, record: RunRecord) -> RunRecord:
        async with self._connection() as conn:
            try:
                await conn.execute(
                    sql.SQL("""
                    INSERT INTO {} (run_id, job_id, tenant_id, status, document, created_at, updated_at)
                    VALUES (%(run_id)s, %(job_id)s, %(tenant_id)s, %(status)s, %(document)s,
                            %(created_at)s, %(updated_at)s)
                    """).format(TABLE_RUN_RECORDS),
                    self._params(record),
                )
            except errors.UniqueViolation as e:
                raise StoreConflictError(f"Run {record.run_id} already exists") from e
        logger.info(f"Created run {record.run_id} for job {record.job_id}")
        return record

    async def get_run(self, run_id: str) -> RunRecord:
        async with self._connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    sql.SQL("SELECT document FROM {} WHERE run_id = %s").format(TABLE_RUN_RECORDS),
                    (run_id,),
                )
                row = await cur.fetchone()

        if row is None:
            raise RunNotFoundError(run_id)
        return RunRecord.model_validate(row["document"])

    async def mark_running(self, run_id: str) -> RunRecord:
        async with self._locked(run_id) as (conn, record):
            if check_transition(record, RunStatus.RUNNING):
                now = utc_now()
                record.status = RunStatus.RUNNING
                record.started_at = now
                record.updated_at = now
                await self._write(conn, record)
        return record

    async def append_step_outcome(self, run_id: str, outcome: StepOutcome) -> RunRecord:
        async with self._locked(run_id) as (conn, record):
            if check_append(record, outcome):
                record.outcomes.append(outcome)
                record.updated_at = utc_now()
                await self._write(conn, record)
            else:
                logger.debug(f"Run {run_id}: replayed outcome {outcome.key} ignored")
        return record

    async def finalize(
        self,
        run_id: str,
        status: RunStatus,
        final_context: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> RunRecord:
        if not status.is_terminal():
            raise StoreConflictError(f"finalize needs a terminal status, got {status.value}")
        async with self._locked(run_id) as (conn, record):
            if check_transition(record, status):
                now = utc_now()
                record.status = status
                record.final_context = final_context
                record.error = error
                record.completed_at = now
                record.updated_at = now
                await self._write(conn, record)
        logger.info(f"Run {run_id} finalized: {record.status.value}")
        return record

    async def list_runs(
        self,
        job_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
        tenant_id: Optional[str] = None,
    ) -> List[RunRecord]:
        conditions = []
        params: Dict[str, Any] = {"limit": limit}
        if job_id is not None:
            conditions.append(sql.SQL("job_id = %(job_id)s"))
            params["job_id"] = job_id
        if status is not None:
            conditions.append(sql.SQL("status = %(status)s"))
            params["status"] = status.value
        if tenant_id is not None:
            conditions.append(sql.SQL("(tenant_id = %(tenant_id)s OR tenant_id IS NULL)"))
            params["tenant_id"] = tenant_id

        where = sql.SQL("WHERE ") + sql.SQL(" AND ").join(conditions) if conditions else sql.SQL("")
        query = sql.SQL("SELECT document FROM {} {} ORDER BY created_at DESC LIMIT %(limit)s").format(
            TABLE_RUN_RECORDS, where
        )

        async with self._connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params)
                rows = await cur.fetchall()
        return [RunRecord.model_validate(row["document"]) for row in rows]

    async def list_stale_runs(
        self,
        older_than: timedelta,
        tenant_id: Optional[str] = None,
    ) -> List[RunRecord]:
        async with self._connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    sql.SQL("""
                    SELECT document FROM {}
                    WHERE status = %(status)s AND updated_at < %(cutoff)s
                      AND (%(tenant_id)s::text IS NULL OR tenant_id = %(tenant_id)s OR tenant_id IS NULL)
                    ORDER BY updated_at
                    """).format(TABLE_RUN_RECORDS),
                    {
                        "status": RunStatus.RUNNING.value,
                        "cutoff": utc_now() - older_than,
                        "tenant_id": tenant_id,
                    },
                )
                rows = await cur.fetchall()
        return [RunRecord.model_validate(row["document"]) for row in rows]

    async def ping(self) -> bool:
        try:
            async with self._connection() as conn:
                await conn.execute("SELECT 1")
            return True
        except StoreUnavailableError:
            return False

    async def close(self) -> None:
        await self.pool.close()

    # ------------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, run_id: str):
        """Yield (conn, record) with the run row locked for this transaction."""
        async with self._connection() as conn:
            async with conn.transaction():
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(
                        sql.SQL("SELECT document FROM {} WHERE run_id = %s FOR UPDATE").format(
                            TABLE_RUN_RECORDS
                        ),
                        (run_id,),
                    )
                    row = await cur.fetchone()
                if row is None:
                    raise RunNotFoundError(run_id)
                yield conn, RunRecord.model_validate(row["document"])

    async def _write(self, conn, record: RunRecord) -> None:
        await conn.execute(
            sql.SQL("""
            UPDATE {} SET
                status = %(status)s,
                document = %(document)s,
                updated_at = %(updated_at)s
            WHERE run_id = %(run_id)s
            """).format(TABLE_RUN_RECORDS),
            self._params(record),
        )

    def _params(self, record: RunRecord) -> Dict[str, Any]:
        return {
            "run_id": record.run_id,
            "job_id": record.job_id,
            "tenant_id": record.tenant_id,
            "status": record.status.value,
            "document": Json(record.model_dump(mode="json")),
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }


__all__ = ["PostgresJobStore"]
