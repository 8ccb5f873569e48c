# ============================================================================
# JOB DEFINITION MODEL
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core model - Job template/blueprint
# PURPOSE: Define the ordered steps a run walks through
# CREATED: 18 OCT 2026
# EXPORTS: JobDefinition, StepDefinition, RequestTemplate, FilterSpec,
#          StepAuth, AuthType, RetryPolicy, LoopSpec
# DEPENDENCIES: pydantic
# ============================================================================
"""
Job Definition Models

A JobDefinition is the template for a run. It defines:
- The ordered steps
- Each step's guard (rule expression, optional)
- What the step does: an outbound request, a filter over the context, or a
  loop running inner steps once per item of a list
- How results are extracted into the run context
- Retry, timeout and auth settings per step

Definitions are created by an external API or seeded from YAML files, and are
read-only to the worker. A run works on the copy it loaded at start.
"""

from typing import Any, Dict, List, Optional, Union
from enum import Enum
from pydantic import BaseModel, Field, field_validator, model_validator

from core.contracts import BackoffStrategy, EngineTag, StepKind


class RetryPolicy(BaseModel):
    """Retry configuration for a step."""
    max_attempts: int = Field(default=3, ge=1, le=20)
    backoff: BackoffStrategy = Field(default=BackoffStrategy.EXPONENTIAL)
    initial_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=60.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """
        Delay before the attempt following ``attempt`` (1-based).

        exponential: initial * 2^(attempt-1)
        linear:      initial * attempt
        fixed:       initial
        """
        if self.backoff == BackoffStrategy.EXPONENTIAL:
            delay = self.initial_delay_seconds * (2 ** (attempt - 1))
        elif self.backoff == BackoffStrategy.LINEAR:
            delay = self.initial_delay_seconds * attempt
        else:
            delay = self.initial_delay_seconds
        return min(delay, self.max_delay_seconds)


class RequestTemplate(BaseModel):
    """
    Outbound request pieces, each a template string.

    ``url`` may contain ``:name`` segments filled from ``path_params``.
    ``body`` is either a template string or a JSON structure whose string
    leaves are templates.
    """
    method: str = Field(default="GET")
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, str] = Field(default_factory=dict)
    path_params: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Union[str, Dict[str, Any], List[Any]]] = None
    engine: EngineTag = Field(default=EngineTag.JINJA2)
    strict: bool = True


class FilterSpec(BaseModel):
    """
    Search a context value for entries whose ``search_key`` matches.

    ``source`` is a rule expression; the rest are literal.
    """
    source: str
    search_key: str
    condition: str = Field(default="=", pattern=r"^(=|!=|contains|startsWith|>|<)$")
    search_value: Any = None


class AuthType(str, Enum):
    """How credentials are attached to an outbound request."""
    NONE = "none"
    SERVICE_TOKEN = "service_token"  # Issued by the auth guard for ``scope``
    BEARER = "bearer"
    BASIC = "basic"
    API_KEY = "api_key"


class StepAuth(BaseModel):
    """Credentials for one step. String fields are templates."""
    type: AuthType = AuthType.NONE
    scope: Optional[str] = None
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    header: str = "X-API-Key"
    value: Optional[str] = None

    @model_validator(mode="after")
    def check_fields(self) -> "StepAuth":
        if self.type == AuthType.SERVICE_TOKEN and not self.scope:
            raise ValueError("service_token auth requires 'scope'")
        if self.type == AuthType.BEARER and not self.token:
            raise ValueError("bearer auth requires 'token'")
        if self.type == AuthType.BASIC and self.username is None:
            raise ValueError("basic auth requires 'username'")
        if self.type == AuthType.API_KEY and self.value is None:
            raise ValueError("api_key auth requires 'value'")
        return self


class StepDefinition(BaseModel):
    """
    Definition of a single step in a job.

    This is the TEMPLATE - StepOutcome (in run.py) records what happened.
    """
    step_id: str = Field(..., min_length=1, max_length=64)
    kind: StepKind = Field(default=StepKind.REQUEST)
    description: Optional[str] = None

    guard: Optional[str] = Field(
        default=None,
        description="Rule expression; step is skipped when it evaluates to false"
    )

    request: Optional[RequestTemplate] = None
    filter: Optional[FilterSpec] = None
    loop: Optional["LoopSpec"] = None

    extract: Optional[str] = Field(
        default=None,
        description="Rule expression over the response, result stored under output_key"
    )
    output_key: Optional[str] = Field(
        default=None,
        description="Context key for the step result (defaults to step_id)"
    )

    retry: Optional[RetryPolicy] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=3600)
    auth: Optional[StepAuth] = None

    @model_validator(mode="after")
    def check_kind(self) -> "StepDefinition":
        if self.kind == StepKind.REQUEST and self.request is None:
            raise ValueError(f"Step '{self.step_id}' of kind request needs 'request'")
        if self.kind == StepKind.FILTER and self.filter is None:
            raise ValueError(f"Step '{self.step_id}' of kind filter needs 'filter'")
        if self.kind == StepKind.LOOP and self.loop is None:
            raise ValueError(f"Step '{self.step_id}' of kind loop needs 'loop'")
        return self

    @property
    def result_key(self) -> str:
        return self.output_key or self.step_id


class LoopSpec(BaseModel):
    """
    Run ``steps`` once per element of the list ``items`` evaluates to.

    Each iteration sees the run context plus ``item_key`` and ``index_key``.
    Inner results stay in their iteration; the loop step's own result is
    {"count": n, "iterations": [{inner result_key: output, ...}, ...]}.
    Loops do not nest.
    """
    items: str = Field(..., min_length=1, description="Rule expression producing a list")
    item_key: str = Field(default="item", min_length=1)
    index_key: str = Field(default="index", min_length=1)
    max_iterations: int = Field(default=1000, ge=1, le=100000)
    steps: List[StepDefinition] = Field(..., min_length=1)

    @field_validator("steps")
    @classmethod
    def flat_unique_steps(cls, v: List[StepDefinition]) -> List[StepDefinition]:
        seen = set()
        for step in v:
            if step.kind == StepKind.LOOP:
                raise ValueError(f"Loop step '{step.step_id}' cannot be nested in a loop")
            if step.step_id in seen:
                raise ValueError(f"Duplicate step_id in loop: {step.step_id}")
            seen.add(step.step_id)
        return v


StepDefinition.model_rebuild()
LoopSpec.model_rebuild()


class JobDefinition(BaseModel):
    """
    Complete job definition.

    Immutable once a run starts - the actor keeps the copy it loaded.
    """
    job_id: str = Field(..., min_length=1, max_length=128)
    name: Optional[str] = Field(default=None, max_length=128)
    version: int = Field(default=1, ge=1)
    description: Optional[str] = None
    tenant_id: Optional[str] = Field(default=None, max_length=64)

    defaults: Dict[str, Any] = Field(
        default_factory=dict,
        description="Context values every run starts with (trigger payload wins)"
    )
    steps: List[StepDefinition] = Field(default_factory=list)

    @field_validator("steps")
    @classmethod
    def unique_step_ids(cls, v: List[StepDefinition]) -> List[StepDefinition]:
        seen = set()
        for step in v:
            if step.step_id in seen:
                raise ValueError(f"Duplicate step_id: {step.step_id}")
            seen.add(step.step_id)
        return v

    def get_step(self, step_id: str) -> StepDefinition:
        """Get a step definition by ID."""
        for step in self.steps:
            if step.step_id == step_id:
                return step
        raise KeyError(f"Step '{step_id}' not found in job '{self.job_id}'")


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "RetryPolicy",
    "RequestTemplate",
    "FilterSpec",
    "LoopSpec",
    "AuthType",
    "StepAuth",
    "StepDefinition",
    "JobDefinition",
]
