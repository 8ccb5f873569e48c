# ============================================================================
# CONFIGURATION DEFAULTS
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Default configuration values
# PURPOSE: Centralized defaults for dispatching, steps, auth and storage
# CREATED: 18 OCT 2026
# ============================================================================
"""
Configuration Defaults

Provides sensible defaults for the job worker. Every value can be overridden
via environment variables; step-level values can also be overridden per step
in a job definition (timeout_seconds, retry).

Design:
- Immutable dataclasses for defaults
- Environment variable overrides
- Type-safe access
"""

import os
from dataclasses import dataclass, field
from typing import Optional
from enum import Enum


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class StoreBackend(str, Enum):
    """Where job definitions and run records live."""
    POSTGRES = "postgres"
    MEMORY = "memory"


class TokenSource(str, Enum):
    """How outbound service tokens are obtained."""
    CLIENT_CREDENTIALS = "client_credentials"
    MANAGED_IDENTITY = "managed_identity"


@dataclass(frozen=True)
class DispatcherDefaults:
    """
    Defaults for run admission.

    At most max_concurrent_runs actors run at once; up to queue_size further
    runs wait in FIFO order. Anything beyond that is rejected as overloaded.
    """
    max_concurrent_runs: int = 8
    queue_size: int = 32

    @classmethod
    def from_env(cls) -> "DispatcherDefaults":
        """Create from environment variables."""
        return cls(
            max_concurrent_runs=int(os.getenv("WORKER_MAX_CONCURRENT_RUNS", 8)),
            queue_size=int(os.getenv("WORKER_QUEUE_SIZE", 32)),
        )


@dataclass(frozen=True)
class StepDefaults:
    """
    Defaults applied to steps that do not declare their own.

    Retry settings mirror the fields of RetryPolicy.
    """
    timeout_seconds: float = 30.0
    retry_max_attempts: int = 3
    retry_backoff: str = "exponential"
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 60.0

    # Response capture
    response_body_max_bytes: int = 64 * 1024  # 64 KB

    @classmethod
    def from_env(cls) -> "StepDefaults":
        """Create from environment variables."""
        return cls(
            timeout_seconds=float(os.getenv("WORKER_STEP_TIMEOUT_SECONDS", 30)),
            retry_max_attempts=int(os.getenv("WORKER_RETRY_MAX_ATTEMPTS", 3)),
            retry_backoff=os.getenv("WORKER_RETRY_BACKOFF", "exponential"),
            retry_initial_delay_seconds=float(
                os.getenv("WORKER_RETRY_INITIAL_DELAY_SECONDS", 1)
            ),
            retry_max_delay_seconds=float(
                os.getenv("WORKER_RETRY_MAX_DELAY_SECONDS", 60)
            ),
            response_body_max_bytes=int(
                os.getenv("WORKER_RESPONSE_BODY_MAX_BYTES", 64 * 1024)
            ),
        )


@dataclass(frozen=True)
class AuthDefaults:
    """
    Defaults for inbound validation and outbound token issuance.

    Inbound tokens are checked against the identity provider's JWKS.
    Outbound tokens are refreshed token_refresh_skew_seconds before expiry.
    """
    required: bool = True
    issuer: str = ""
    audience: str = ""
    jwks_url: str = ""
    algorithms: tuple = ("RS256",)
    key_refresh_seconds: int = 3600  # 1 hour
    leeway_seconds: int = 30

    token_source: str = TokenSource.CLIENT_CREDENTIALS.value
    token_url: str = ""
    client_id: str = ""
    client_secret: str = ""
    token_refresh_skew_seconds: int = 60
    http_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "AuthDefaults":
        """Create from environment variables."""
        algorithms = tuple(
            a.strip() for a in os.getenv("AUTH_ALGORITHMS", "RS256").split(",") if a.strip()
        )
        return cls(
            required=_env_bool("AUTH_REQUIRED", True),
            issuer=os.getenv("AUTH_ISSUER", ""),
            audience=os.getenv("AUTH_AUDIENCE", ""),
            jwks_url=os.getenv("AUTH_JWKS_URL", ""),
            algorithms=algorithms,
            key_refresh_seconds=int(os.getenv("AUTH_KEY_REFRESH_SECONDS", 3600)),
            leeway_seconds=int(os.getenv("AUTH_LEEWAY_SECONDS", 30)),
            token_source=os.getenv(
                "AUTH_TOKEN_SOURCE", TokenSource.CLIENT_CREDENTIALS.value
            ),
            token_url=os.getenv("AUTH_TOKEN_URL", ""),
            client_id=os.getenv("AUTH_CLIENT_ID", ""),
            client_secret=os.getenv("AUTH_CLIENT_SECRET", ""),
            token_refresh_skew_seconds=int(
                os.getenv("AUTH_TOKEN_REFRESH_SKEW_SECONDS", 60)
            ),
            http_timeout_seconds=float(os.getenv("AUTH_HTTP_TIMEOUT_SECONDS", 10)),
        )


@dataclass(frozen=True)
class StoreDefaults:
    """
    Defaults for persistence.

    The connection string itself is resolved by repositories.database so the
    password never ends up in a settings dump.
    """
    backend: str = StoreBackend.POSTGRES.value
    pool_min_size: int = 2
    pool_max_size: int = 10
    stale_run_seconds: int = 900  # 15 min
    job_definitions_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "StoreDefaults":
        """Create from environment variables."""
        return cls(
            backend=os.getenv("STORE_BACKEND", StoreBackend.POSTGRES.value),
            pool_min_size=int(os.getenv("DB_POOL_MIN", 2)),
            pool_max_size=int(os.getenv("DB_POOL_MAX", 10)),
            stale_run_seconds=int(os.getenv("WORKER_STALE_RUN_SECONDS", 900)),
            job_definitions_dir=os.getenv("JOB_DEFINITIONS_DIR") or None,
        )


# ============================================================================
# GLOBAL SETTINGS INSTANCE
# ============================================================================

@dataclass
class WorkerSettings:
    """Container for all worker configuration."""
    dispatcher: DispatcherDefaults = field(default_factory=DispatcherDefaults)
    steps: StepDefaults = field(default_factory=StepDefaults)
    auth: AuthDefaults = field(default_factory=AuthDefaults)
    store: StoreDefaults = field(default_factory=StoreDefaults)
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "WorkerSettings":
        """Create all settings from environment variables."""
        return cls(
            dispatcher=DispatcherDefaults.from_env(),
            steps=StepDefaults.from_env(),
            auth=AuthDefaults.from_env(),
            store=StoreDefaults.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=os.getenv("LOG_FORMAT", "").lower() == "json",
        )


_settings: Optional[WorkerSettings] = None


def get_settings() -> WorkerSettings:
    """Get global settings instance."""
    global _settings
    if _settings is None:
        _settings = WorkerSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Reset settings (for testing)."""
    global _settings
    _settings = None


# ============================================================================
# EXPORTS
# ============================================================================

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
