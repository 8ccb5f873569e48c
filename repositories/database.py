# ============================================================================
# DATABASE CONNECTION POOL
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Async PostgreSQL connection management
# PURPOSE: Provide connection pooling for psycopg3 async and the store schema
# CREATED: 18 OCT 2026
# ============================================================================
"""
Database Connection Pool

Manages async PostgreSQL connections using psycopg3 and psycopg_pool.
Singleton pattern ensures one pool per application.

Job definitions and run records are stored as JSONB documents; a few fields
are mirrored into plain columns for lookups (status, updated_at).

Connection string: DATABASE_URL, or built from POSTGRES_* vars.

Usage:
    from repositories.database import init_pool, ensure_schema

    pool = await init_pool()
    await ensure_schema(pool)
"""

import os
import logging
from typing import Optional
from contextlib import asynccontextmanager

from psycopg import sql as psycopg_sql
from psycopg_pool import AsyncConnectionPool

logger = logging.getLogger(__name__)

# Global pool instance
_pool: Optional[AsyncConnectionPool] = None


def get_connection_string() -> str:
    """
    Get database connection string from environment.

    Priority:
    1. DATABASE_URL environment variable
    2. Individual POSTGRES_* components

    Returns:
        PostgreSQL connection string
    """
    if url := os.environ.get("DATABASE_URL"):
        return url

    host = os.environ.get("POSTGRES_HOST", "localhost")
    port = os.environ.get("POSTGRES_PORT", "5432")
    name = os.environ.get("POSTGRES_DB", "postgres")
    user = os.environ.get("POSTGRES_USER", "postgres")
    password = os.environ.get("POSTGRES_PASSWORD", "")
    sslmode = os.environ.get("POSTGRES_SSLMODE", "prefer")

    return f"postgresql://{user}:{password}@{host}:{port}/{name}?sslmode={sslmode}"


def mask_connection_string(conninfo: str) -> str:
    """Connection string safe for logs."""
    if "@" in conninfo:
        return conninfo.split("@")[-1]
    if "password=" in conninfo:
        head, _, tail = conninfo.partition("password=")
        rest = tail.split(" ", 1)[1] if " " in tail else ""
        return f"{head}password=*** {rest}".strip()
    return conninfo


async def init_pool(
    min_size: int = 2,
    max_size: int = 10,
    connection_string: Optional[str] = None,
) -> AsyncConnectionPool:
    """
    Initialize the global connection pool.

    Args:
        min_size: Minimum connections to maintain
        max_size: Maximum connections allowed
        connection_string: Override connection string (defaults to env)

    Returns:
        AsyncConnectionPool instance
    """
    global _pool

    if _pool is not None:
        logger.warning("Pool already initialized, returning existing pool")
        return _pool

    conninfo = connection_string or get_connection_string()
    logger.info(f"Initializing connection pool: {mask_connection_string(conninfo)}")

    _pool = AsyncConnectionPool(
        conninfo=conninfo,
        min_size=min_size,
        max_size=max_size,
        open=False,  # We'll open it explicitly
    )

    await _pool.open()
    logger.info(f"Connection pool opened (min={min_size}, max={max_size})")

    return _pool


async def get_pool() -> AsyncConnectionPool:
    """Get the global connection pool, initializing if needed."""
    global _pool

    if _pool is None:
        await init_pool()

    return _pool


async def close_pool() -> None:
    """Close the global connection pool."""
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("Connection pool closed")


@asynccontextmanager
async def get_connection():
    """
    Get a connection from the pool.

    Usage:
        async with get_connection() as conn:
            await conn.execute(...)
    """
    pool = await get_pool()
    async with pool.connection() as conn:
        yield conn


# ============================================================================
# SCHEMA
# ============================================================================

SCHEMA = "worker"

# Table identifiers - use with psycopg sql.SQL().format() for injection-safe queries
TABLE_JOB_DEFINITIONS = psycopg_sql.Identifier(SCHEMA, "job_definitions")
TABLE_RUN_RECORDS = psycopg_sql.Identifier(SCHEMA, "run_records")

_DDL = [
    psycopg_sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(psycopg_sql.Identifier(SCHEMA)),
    psycopg_sql.SQL("""
    CREATE TABLE IF NOT EXISTS {} (
        job_id      TEXT PRIMARY KEY,
        tenant_id   TEXT,
        version     INTEGER NOT NULL DEFAULT 1,
        document    JSONB NOT NULL,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """).format(TABLE_JOB_DEFINITIONS),
    psycopg_sql.SQL("""
    CREATE TABLE IF NOT EXISTS {} (
        run_id      TEXT PRIMARY KEY,
        job_id      TEXT NOT NULL,
        tenant_id   TEXT,
        status      TEXT NOT NULL,
        document    JSONB NOT NULL,
        created_at  TIMESTAMPTZ NOT NULL,
        updated_at  TIMESTAMPTZ NOT NULL
    )
    """).format(TABLE_RUN_RECORDS),
    psycopg_sql.SQL("CREATE INDEX IF NOT EXISTS idx_run_records_job ON {} (job_id)").format(
        TABLE_RUN_RECORDS
    ),
    psycopg_sql.SQL(
        "CREATE INDEX IF NOT EXISTS idx_run_records_status_updated ON {} (status, updated_at)"
    ).format(TABLE_RUN_RECORDS),
]


async def ensure_schema(pool: AsyncConnectionPool) -> None:
    """Create schema, tables and indexes if missing (idempotent)."""
    async with pool.connection() as conn:
        async with conn.transaction():
            for statement in _DDL:
                await conn.execute(statement)
    logger.info(f"Schema '{SCHEMA}' ready")


__all__ = [
    "get_connection_string",
    "mask_connection_string",
    "init_pool",
    "get_pool",
    "close_pool",
    "get_connection",
    "ensure_schema",
    "SCHEMA",
    "TABLE_JOB_DEFINITIONS",
    "TABLE_RUN_RECORDS",
]
