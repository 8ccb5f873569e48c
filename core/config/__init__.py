# ============================================================================
# CONFIGURATION MODULE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Configuration and defaults
# PURPOSE: Centralized configuration management
# CREATED: 18 OCT 2026
# ============================================================================
"""
Configuration Module

Provides centralized configuration and defaults for the job worker.
"""

from core.config.defaults import (
    StoreBackend,
    TokenSource,
    DispatcherDefaults,
    StepDefaults,
    AuthDefaults,
    StoreDefaults,
    WorkerSettings,
    get_settings,
    reset_settings,
)

__all__ = [
    "StoreBackend",
    "TokenSource",
    "DispatcherDefaults",
    "StepDefaults",
    "AuthDefaults",
    "StoreDefaults",
    "WorkerSettings",
    "get_settings",
    "reset_settings",
]
