# ============================================================================
# MODEL TESTS
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Tests - Job, run, context and auth models
# PURPOSE: Verify validators, retry delays, transitions, redaction
# CREATED: 18 OCT 2026
# ============================================================================
"""
Model Tests

Covers:
1. RetryPolicy delays per backoff strategy
2. StepAuth / StepDefinition / LoopSpec / JobDefinition validation
3. RunRecord status transitions
4. Header redaction
5. RunContext seeding and isolation
6. AuthToken expiry, Claims parsing

Run with:
    pytest tests/test_models.py -v
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from core.contracts import BackoffStrategy, RunStatus, StepKind, StepOutcomeStatus, utc_now
from core.models import (
    AuthToken,
    Claims,
    JobDefinition,
    RetryPolicy,
    RunContext,
    RunRecord,
    StepAuth,
    StepDefinition,
    StepOutcome,
    redact_headers,
)


# ============================================================================
# RETRY POLICY
# ============================================================================

class TestRetryPolicy:

    def test_exponential(self):
        policy = RetryPolicy(initial_delay_seconds=1.0, max_delay_seconds=60.0)
        assert [policy.delay_for(a) for a in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_exponential_capped(self):
        policy = RetryPolicy(initial_delay_seconds=10.0, max_delay_seconds=30.0)
        assert policy.delay_for(5) == 30.0

    def test_linear(self):
        policy = RetryPolicy(backoff=BackoffStrategy.LINEAR, initial_delay_seconds=2.0)
        assert [policy.delay_for(a) for a in (1, 2, 3)] == [2.0, 4.0, 6.0]

    def test_fixed(self):
        policy = RetryPolicy(backoff="fixed", initial_delay_seconds=0.5)
        assert policy.delay_for(1) == policy.delay_for(7) == 0.5

    def test_max_attempts_bounds(self):
        with pytest.raises(ValidationError):
            RetryPolicy(max_attempts=0)


# ============================================================================
# JOB DEFINITION
# ============================================================================

class TestStepValidation:

    def test_request_step_requires_request(self):
        with pytest.raises(ValidationError):
            StepDefinition(step_id="charge", kind=StepKind.REQUEST)

    def test_filter_step_requires_filter(self):
        with pytest.raises(ValidationError):
            StepDefinition(step_id="pick", kind="filter")

    def test_filter_condition_pattern(self):
        with pytest.raises(ValidationError):
            StepDefinition(
                step_id="pick",
                kind="filter",
                filter={"source": "items", "search_key": "x", "condition": "~"},
            )

    def test_loop_step_requires_loop(self):
        with pytest.raises(ValidationError):
            StepDefinition(step_id="each-order", kind="loop")

    def test_loop_step_parses_inner_steps(self):
        step = StepDefinition(
            step_id="each-order",
            kind="loop",
            loop={"items": "orders", "steps": [{"step_id": "fetch", "request": {"url": "https://x"}}]},
        )
        assert step.loop.item_key == "item"
        assert step.loop.index_key == "index"
        assert step.loop.steps[0].kind == StepKind.REQUEST

    @pytest.mark.parametrize("inner", [
        [],
        [{"step_id": "a", "request": {"url": "https://x"}}, {"step_id": "a", "request": {"url": "https://y"}}],
        [{"step_id": "nested", "kind": "loop", "loop": {
            "items": "xs", "steps": [{"step_id": "b", "request": {"url": "https://x"}}],
        }}],
    ])
    def test_loop_inner_steps_rejected(self, inner):
        with pytest.raises(ValidationError):
            StepDefinition(step_id="each-order", kind="loop", loop={"items": "orders", "steps": inner})

    def test_result_key_defaults_to_step_id(self):
        step = StepDefinition(step_id="charge", request={"url": "https://x"})
        assert step.result_key == "charge"
        step = StepDefinition(step_id="charge", request={"url": "https://x"}, output_key="invoice")
        assert step.result_key == "invoice"

    @pytest.mark.parametrize("fields", [
        {"type": "service_token"},
        {"type": "bearer"},
        {"type": "basic"},
        {"type": "api_key"},
    ])
    def test_auth_required_fields(self, fields):
        with pytest.raises(ValidationError):
            StepAuth(**fields)

    def test_auth_valid(self):
        auth = StepAuth(type="api_key", value="{{ key }}")
        assert auth.header == "X-API-Key"


class TestJobDefinition:

    def test_duplicate_step_ids_rejected(self):
        step = {"step_id": "a", "request": {"url": "https://x"}}
        with pytest.raises(ValidationError):
            JobDefinition(job_id="job", steps=[step, step])

    def test_get_step(self):
        job = JobDefinition(job_id="job", steps=[{"step_id": "a", "request": {"url": "https://x"}}])
        assert job.get_step("a").step_id == "a"
        with pytest.raises(KeyError):
            job.get_step("b")

    def test_round_trip_through_json(self):
        job = JobDefinition(
            job_id="job",
            defaults={"currency": "EUR"},
            steps=[{
                "step_id": "a",
                "guard": "amount > 100",
                "request": {"method": "POST", "url": "https://x/:id", "path_params": {"id": "{{ id }}"}},
                "retry": {"max_attempts": 2},
            }],
        )
        restored = JobDefinition.model_validate(job.model_dump(mode="json"))
        assert restored == job


# ============================================================================
# RUN RECORD
# ============================================================================

class TestRunRecord:

    def _make_run(self, status=RunStatus.PENDING):
        return RunRecord(run_id="r1", job_id="job", status=status)

    @pytest.mark.parametrize("start,target,allowed", [
        (RunStatus.PENDING, RunStatus.RUNNING, True),
        (RunStatus.PENDING, RunStatus.CANCELLED, True),
        (RunStatus.PENDING, RunStatus.SUCCEEDED, False),
        (RunStatus.RUNNING, RunStatus.SUCCEEDED, True),
        (RunStatus.RUNNING, RunStatus.PENDING, False),
        (RunStatus.SUCCEEDED, RunStatus.FAILED, False),
        (RunStatus.CANCELLED, RunStatus.RUNNING, False),
    ])
    def test_transitions(self, start, target, allowed):
        assert self._make_run(start).can_transition_to(target) is allowed

    def test_is_terminal(self):
        assert self._make_run(RunStatus.FAILED).is_terminal is True
        assert self._make_run(RunStatus.RUNNING).is_terminal is False

    def test_outcomes_for(self):
        run = self._make_run(RunStatus.RUNNING)
        run.outcomes = [
            StepOutcome(step_id="a", step_index=0, attempt=1, status=StepOutcomeStatus.RETRYING),
            StepOutcome(step_id="a", step_index=0, attempt=2, status=StepOutcomeStatus.SUCCEEDED),
            StepOutcome(step_id="b", step_index=1, status=StepOutcomeStatus.SKIPPED),
        ]
        assert [o.attempt for o in run.outcomes_for("a")] == [1, 2]
        assert run.last_outcome().step_id == "b"
        assert run.outcomes[0].is_terminal is False
        assert run.outcomes[0].key == (0, None, None, 1)

    def test_loop_outcome_positions(self):
        inner = StepOutcome(
            step_id="fetch", step_index=2, iteration=4, inner_index=1,
            parent_step_id="each-order", status=StepOutcomeStatus.SUCCEEDED,
        )
        closing = StepOutcome(step_id="each-order", step_index=2, status=StepOutcomeStatus.SUCCEEDED)
        next_step = StepOutcome(step_id="notify", step_index=3, status=StepOutcomeStatus.SUCCEEDED)

        assert inner.key == (2, 4, 1, 1)
        assert inner.position < closing.position < next_step.position

    def test_duration(self):
        run = self._make_run(RunStatus.SUCCEEDED)
        assert run.duration_seconds is None
        run.started_at = utc_now() - timedelta(seconds=5)
        run.completed_at = run.started_at + timedelta(seconds=2)
        assert run.duration_seconds == 2.0


class TestRedaction:

    def test_sensitive_headers_hidden(self):
        headers = {
            "Authorization": "Bearer abc",
            "X-API-Key": "k",
            "Content-Type": "application/json",
        }
        assert redact_headers(headers) == {
            "Authorization": "***",
            "X-API-Key": "***",
            "Content-Type": "application/json",
        }

    def test_extra_names(self):
        assert redact_headers({"X-Notify-Key": "s"}, {"x-notify-key"}) == {"X-Notify-Key": "***"}

    def test_original_untouched(self):
        headers = {"Authorization": "Bearer abc"}
        redact_headers(headers)
        assert headers["Authorization"] == "Bearer abc"


# ============================================================================
# RUN CONTEXT
# ============================================================================

class TestRunContext:

    def test_payload_overrides_defaults(self):
        ctx = RunContext.seed({"currency": "EUR", "amount": 0}, {"amount": 150})
        assert ctx.get("currency") == "EUR"
        assert ctx.get("amount") == 150

    def test_seed_copies_inputs(self):
        payload = {"customer": {"tier": "gold"}}
        ctx = RunContext.seed({}, payload)
        payload["customer"]["tier"] = "silver"
        assert ctx.get("customer") == {"tier": "gold"}

    def test_snapshot_is_isolated(self):
        ctx = RunContext({"items": [1]})
        snap = ctx.snapshot()
        snap["items"].append(2)
        assert ctx.get("items") == [1]

    def test_merge_replaces(self):
        ctx = RunContext({"invoice": None})
        ctx.merge("invoice", {"id": "inv-1"})
        assert ctx.get("invoice") == {"id": "inv-1"}
        assert "invoice" in ctx
        assert len(ctx) == 1


# ============================================================================
# AUTH MODELS
# ============================================================================

class TestAuthModels:

    def test_token_validity_with_skew(self):
        token = AuthToken(value="t", expires_at=utc_now() + timedelta(seconds=30))
        assert token.is_valid() is True
        assert token.is_valid(min_ttl_seconds=60) is False
        assert token.authorization_header() == "Bearer t"

    def test_token_value_not_in_repr(self):
        token = AuthToken(value="secret-value", expires_at=utc_now())
        assert "secret-value" not in repr(token)

    def test_claims_from_payload(self):
        claims = Claims.from_payload({
            "sub": "svc-a",
            "iss": "https://issuer",
            "aud": "api://worker",
            "tid": "tenant-1",
            "scp": "runs.write runs.read",
            "exp": 2000000000,
        })
        assert claims.subject == "svc-a"
        assert claims.tenant_id == "tenant-1"
        assert claims.scopes == ["runs.write", "runs.read"]
        assert claims.expires_at.year == 2033

    def test_claims_scope_list(self):
        claims = Claims.from_payload({"sub": "x", "iss": "i", "scope": ["a"]})
        assert claims.scopes == ["a"]
        assert claims.expires_at is None
