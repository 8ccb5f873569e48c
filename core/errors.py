# ============================================================================
# ERROR TAXONOMY
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Foundation - Exceptions shared by every component
# PURPOSE: One exception hierarchy, serializable into step outcomes
# CREATED: 18 OCT 2026
# EXPORTS: WorkerError and the Eval/Render/Transport/Auth/Store/Dispatch
#          families
# ============================================================================
"""
Error Taxonomy

Every failure that can end up in a run record derives from WorkerError and
carries a stable ``kind`` string (e.g. ``TransportError.Timeout``). The actor
writes ``error.to_dict()`` into the step outcome, so kinds are part of the
persisted format.

Only TransportError is retryable (except TransportRequestError, which fails
the same way on every attempt). Everything else ends the run.
"""

from typing import Any, Dict, Optional


class WorkerError(Exception):
    """Base exception for all worker errors."""

    kind: str = "WorkerError"
    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for outcome logs and API responses."""
        return {"kind": self.kind, "message": self.message}


# ============================================================================
# RULE EVALUATION
# ============================================================================

class EvalError(WorkerError):
    """Expression could not be evaluated."""
    kind = "EvalError"


class UnknownVariableError(EvalError):
    """Expression referenced a name missing from the context."""
    kind = "EvalError.UnknownVariable"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Unknown variable: {path}")


class TypeMismatchError(EvalError):
    """Operator applied to values of incompatible types."""
    kind = "EvalError.TypeMismatch"


class ExpressionSyntaxError(EvalError):
    """Expression text is not valid or uses unsupported syntax."""
    kind = "EvalError.Syntax"


class IterationLimitError(EvalError):
    """Loop items exceed the step's max_iterations."""
    kind = "EvalError.IterationLimit"


class GuardEvaluationError(WorkerError):
    """A step guard raised instead of producing a boolean."""
    kind = "GuardEvaluationError"

    def __init__(self, step_id: str, cause: EvalError):
        self.step_id = step_id
        self.cause = cause
        super().__init__(f"Guard for step '{step_id}' failed: {cause.message}")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["cause"] = self.cause.to_dict()
        return result


# ============================================================================
# TEMPLATE RENDERING
# ============================================================================

class RenderError(WorkerError):
    """Template could not be rendered."""
    kind = "RenderError"


class UnknownTemplateVariableError(RenderError):
    """Strict template referenced a name missing from the context."""
    kind = "RenderError.UnknownVariable"

    def __init__(self, name: str, engine: str):
        self.name = name
        self.engine = engine
        super().__init__(f"Undefined template variable '{name}' ({engine})")


class TemplateEngineError(RenderError):
    """Template syntax error, unknown engine tag, or engine failure."""
    kind = "RenderError.Engine"


class InvalidHeaderError(RenderError):
    """Rendered header name or value cannot be sent (not ASCII, line breaks)."""
    kind = "RenderError.InvalidHeader"

    def __init__(self, header: str, message: str):
        self.header = header
        super().__init__(message)


# ============================================================================
# OUTBOUND TRANSPORT
# ============================================================================

class TransportError(WorkerError):
    """Outbound call failed. Retried according to the step's policy."""
    kind = "TransportError"
    retryable = True


class TransportConnectError(TransportError):
    kind = "TransportError.Connect"


class TransportRequestError(TransportError):
    """Request could not be built or encoded by the HTTP client. Not retried."""
    kind = "TransportError.Request"
    retryable = False


class TransportTimeoutError(TransportError):
    """Step timeout elapsed before a response arrived."""
    kind = "TransportError.Timeout"

    def __init__(self, message: str, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = timeout_seconds
        super().__init__(message)


class UpstreamStatusError(TransportError):
    """Remote answered with a non-2xx status."""
    kind = "TransportError.Status"

    def __init__(self, status_code: int, message: Optional[str] = None, response: Any = None):
        self.status_code = status_code
        # ResponseSnapshot of the failed exchange, kept for the outcome log
        self.response = response
        super().__init__(message or f"Upstream returned HTTP {status_code}")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["status_code"] = self.status_code
        return result


# ============================================================================
# AUTHENTICATION
# ============================================================================

class AuthError(WorkerError):
    kind = "AuthError"


class InvalidTokenError(AuthError):
    """Malformed token, bad signature, wrong issuer or audience."""
    kind = "AuthError.Invalid"


class TokenExpiredError(AuthError):
    kind = "AuthError.Expired"


class KeyRotationError(AuthError):
    """Signing key still unknown after the one allowed key re-fetch."""
    kind = "AuthError.KeyRotation"


class TokenIssuanceError(AuthError):
    """Outbound service token could not be obtained."""
    kind = "AuthError.Issuance"


# ============================================================================
# PERSISTENCE
# ============================================================================

class StoreError(WorkerError):
    kind = "StoreError"


class StoreUnavailableError(StoreError):
    kind = "StoreError.Unavailable"


class StoreConflictError(StoreError):
    """Write would rewrite history or move a status backwards."""
    kind = "StoreError.Conflict"


class JobNotFoundError(StoreError):
    kind = "StoreError.JobNotFound"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job definition not found: {job_id}")


class RunNotFoundError(StoreError):
    kind = "StoreError.RunNotFound"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


# ============================================================================
# DISPATCH
# ============================================================================

class DispatchError(WorkerError):
    kind = "DispatchError"


class OverloadedError(DispatchError):
    """Concurrency limit and queue are both full."""
    kind = "DispatchError.Overloaded"


class DispatchNotFoundError(DispatchError):
    """Run request names a job that does not exist."""
    kind = "DispatchError.NotFound"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Unknown job: {job_id}")


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "WorkerError",
    "EvalError",
    "UnknownVariableError",
    "TypeMismatchError",
    "ExpressionSyntaxError",
    "IterationLimitError",
    "GuardEvaluationError",
    "RenderError",
    "UnknownTemplateVariableError",
    "TemplateEngineError",
    "InvalidHeaderError",
    "TransportError",
    "TransportConnectError",
    "TransportRequestError",
    "TransportTimeoutError",
    "UpstreamStatusError",
    "AuthError",
    "InvalidTokenError",
    "TokenExpiredError",
    "KeyRotationError",
    "TokenIssuanceError",
    "StoreError",
    "StoreUnavailableError",
    "StoreConflictError",
    "JobNotFoundError",
    "RunNotFoundError",
    "DispatchError",
    "OverloadedError",
    "DispatchNotFoundError",
]
