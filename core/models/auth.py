# ============================================================================
# AUTH MODELS
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core model - Tokens and validated claims
# PURPOSE: Values exchanged with the auth guard (never persisted)
# CREATED: 18 OCT 2026
# EXPORTS: AuthToken, Claims
# DEPENDENCIES: pydantic
# ============================================================================
"""
Auth Models

AuthToken is an outbound bearer token held in memory by the guard.
Claims is the validated identity behind an inbound run request.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from core.contracts import utc_now


class AuthToken(BaseModel):
    """Opaque bearer token with its expiry."""
    value: str = Field(..., repr=False)
    issuer: Optional[str] = None
    expires_at: datetime
    scopes: List[str] = Field(default_factory=list)

    def ttl_seconds(self) -> float:
        """Seconds until expiry (negative once expired)."""
        return (self.expires_at - utc_now()).total_seconds()

    def is_valid(self, min_ttl_seconds: float = 0) -> bool:
        """True if the token stays valid for at least ``min_ttl_seconds``."""
        return utc_now() + timedelta(seconds=min_ttl_seconds) < self.expires_at

    def authorization_header(self) -> str:
        return f"Bearer {self.value}"


class Claims(BaseModel):
    """Verified claims from an inbound token."""
    subject: str
    issuer: str
    audience: Optional[Any] = None
    tenant_id: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Claims":
        """Build from a decoded JWT payload."""
        scopes = payload.get("scope") or payload.get("scp") or []
        if isinstance(scopes, str):
            scopes = scopes.split()
        exp = payload.get("exp")
        return cls(
            subject=str(payload.get("sub", "")),
            issuer=str(payload.get("iss", "")),
            audience=payload.get("aud"),
            tenant_id=payload.get("tid") or payload.get("tenant_id"),
            scopes=list(scopes),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
            raw=payload,
        )


__all__ = ["AuthToken", "Claims"]
