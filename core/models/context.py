# ============================================================================
# RUN CONTEXT
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core model - Per-run variable bag
# PURPOSE: Values visible to guards, templates and extraction
# CREATED: 18 OCT 2026
# EXPORTS: RunContext
# ============================================================================
"""
Run Context

A mutable name -> JSON-like value mapping owned by exactly one task actor.
Seeded from the job defaults, then the trigger payload (payload wins). Each
completed step may merge one value under its output key; later steps see it.

The evaluator and renderer only ever receive ``snapshot()`` copies.
"""

import copy
from typing import Any, Dict, Optional


class RunContext:
    """Variable bag for a single run."""

    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, Any] = copy.deepcopy(values or {})

    @classmethod
    def seed(
        cls,
        defaults: Optional[Dict[str, Any]],
        payload: Optional[Dict[str, Any]],
    ) -> "RunContext":
        """Job defaults overlaid with the trigger payload."""
        values = copy.deepcopy(defaults or {})
        values.update(copy.deepcopy(payload or {}))
        return cls(values)

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy safe to hand to pure components."""
        return copy.deepcopy(self._values)

    def merge(self, key: str, value: Any) -> None:
        """Store a step result under ``key``, replacing any previous value."""
        self._values[key] = copy.deepcopy(value)

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"RunContext(keys={sorted(self._values)})"


__all__ = ["RunContext"]
