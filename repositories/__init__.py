# ============================================================================
# REPOSITORIES MODULE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Persistence layer
# PURPOSE: Job definition and run record storage
# CREATED: 18 OCT 2026
# ============================================================================
"""
Repositories Module

Provides the JobStore interface with PostgreSQL (psycopg3 async, JSONB
documents) and in-memory implementations.

Usage:
    from repositories import create_store

    store = await create_store(settings.store)
    job = await store.load("charge-customer")
"""

import logging

from core.config import StoreBackend, StoreDefaults
from .database import init_pool, get_pool, close_pool, ensure_schema
from .store import JobStore, check_append, check_transition
from .memory_store import InMemoryJobStore
from .postgres_store import PostgresJobStore

logger = logging.getLogger(__name__)


async def create_store(defaults: StoreDefaults) -> JobStore:
    """Build the configured store (opening the pool and schema for postgres)."""
    if defaults.backend == StoreBackend.MEMORY.value:
        logger.info("Using in-memory job store")
        return InMemoryJobStore()

    pool = await init_pool(min_size=defaults.pool_min_size, max_size=defaults.pool_max_size)
    await ensure_schema(pool)
    return PostgresJobStore(pool)


__all__ = [
    "init_pool",
    "get_pool",
    "close_pool",
    "ensure_schema",
    "JobStore",
    "check_append",
    "check_transition",
    "InMemoryJobStore",
    "PostgresJobStore",
    "create_store",
]
