# ============================================================================
# API ROUTE TESTS
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Tests - HTTP surface
# PURPOSE: Verify status codes, auth handling and tenant isolation
# CREATED: 18 OCT 2026
# ============================================================================
"""
API Route Tests

Covers:
1. POST /runs: 202, 401 (missing / malformed / rejected token), 404, 503, 422
2. GET /runs, GET /runs/stale, GET /runs/{run_id} with tenant isolation;
   POST /runs for another tenant's job is 404
3. POST /runs/{run_id}/cancel
4. GET /runs/{run_id}/events
5. GET /dispatcher/status
6. Health probes

The dispatcher and auth guard are mocks; runs live in the in-memory store.

Run with:
    pytest tests/test_routes.py -v
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import router, set_services
from core.contracts import RunStatus, StepOutcomeStatus, utc_now
from core.errors import DispatchNotFoundError, InvalidTokenError, OverloadedError
from core.models import Claims, JobDefinition, RunRecord, StepOutcome
from health import health_router, set_health_checks
from health.checks import DispatcherCheck, StoreCheck
from health.core import HealthCheck, HealthCheckResult
from orchestrator.dispatcher import Dispatcher
from repositories import InMemoryJobStore
from services.event_service import RunEventService

AUTH = {"Authorization": "Bearer good-token"}


# ============================================================================
# FIXTURES
# ============================================================================

def _stats(**overrides):
    stats = {
        "accepting": True,
        "max_concurrent_runs": 8,
        "queue_size": 32,
        "running": 1,
        "queued": 0,
        "available": 39,
        "submitted": 1,
        "rejected": 0,
        "completed": 0,
    }
    stats.update(overrides)
    return stats


@pytest.fixture
def store():
    store = InMemoryJobStore([JobDefinition(job_id="charge-customer")])

    async def _seed():
        await store.create_run(RunRecord(run_id="run-a", job_id="charge-customer", tenant_id="tenant-1"))
        await store.mark_running("run-a")
        await store.append_step_outcome("run-a", StepOutcome(
            step_id="charge", step_index=0, status=StepOutcomeStatus.SKIPPED,
        ))
        await store.create_run(RunRecord(run_id="run-b", job_id="charge-customer", tenant_id="tenant-2"))

    asyncio.run(_seed())
    return store


@pytest.fixture
def guard():
    guard = MagicMock()
    guard.required = True
    guard.validate_inbound = AsyncMock(return_value=Claims(
        subject="svc-billing", issuer="https://login.example.com", tenant_id="tenant-1",
    ))
    return guard


@pytest.fixture
def dispatcher():
    dispatcher = MagicMock()
    dispatcher.submit = AsyncMock(return_value=RunRecord(
        run_id="run-new", job_id="charge-customer", correlation_id="req-1",
    ))
    dispatcher.is_active = MagicMock(return_value=False)
    dispatcher.stats = _stats()
    return dispatcher


@pytest.fixture
def events():
    return RunEventService()


@pytest.fixture
def client(dispatcher, store, guard, events):
    app = FastAPI()
    app.include_router(router, prefix="/api/v1")
    app.include_router(health_router)
    set_services(dispatcher=dispatcher, store=store, guard=guard, event_service=events)
    set_health_checks([])
    return TestClient(app)


# ============================================================================
# SUBMIT
# ============================================================================

class TestSubmitRun:

    def test_accepted(self, client, dispatcher):
        response = client.post(
            "/api/v1/runs",
            json={"job_id": "charge-customer", "payload": {"amount": 150}, "correlation_id": "req-1"},
            headers=AUTH,
        )

        assert response.status_code == 202
        body = response.json()
        assert body["run_id"] == "run-new"
        assert body["status"] == "pending"

        request = dispatcher.submit.await_args.args[0]
        assert request.payload == {"amount": 150}
        assert request.submitted_by == "svc-billing"
        assert request.tenant_id == "tenant-1"

    def test_missing_token(self, client, dispatcher):
        response = client.post("/api/v1/runs", json={"job_id": "charge-customer"})

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert response.json()["detail"]["kind"] == "AuthError.Invalid"
        dispatcher.submit.assert_not_awaited()

    def test_malformed_header(self, client):
        response = client.post(
            "/api/v1/runs",
            json={"job_id": "charge-customer"},
            headers={"Authorization": "Basic abc"},
        )
        assert response.status_code == 401

    def test_rejected_token(self, client, guard, dispatcher):
        guard.validate_inbound.side_effect = InvalidTokenError("bad signature")

        response = client.post("/api/v1/runs", json={"job_id": "charge-customer"}, headers=AUTH)

        assert response.status_code == 401
        assert response.json()["detail"] == {"kind": "AuthError.Invalid", "message": "bad signature"}
        dispatcher.submit.assert_not_awaited()

    def test_auth_optional_without_token(self, client, guard, dispatcher):
        guard.required = False

        response = client.post("/api/v1/runs", json={"job_id": "charge-customer"})

        assert response.status_code == 202
        assert dispatcher.submit.await_args.args[0].submitted_by is None

    def test_overloaded(self, client, dispatcher):
        dispatcher.submit.side_effect = OverloadedError("At capacity")

        response = client.post("/api/v1/runs", json={"job_id": "charge-customer"}, headers=AUTH)

        assert response.status_code == 503
        assert response.headers["retry-after"] == "1"
        assert response.json()["detail"]["kind"] == "DispatchError.Overloaded"

    def test_unknown_job(self, client, dispatcher):
        dispatcher.submit.side_effect = DispatchNotFoundError("nope")

        response = client.post("/api/v1/runs", json={"job_id": "nope"}, headers=AUTH)

        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "DispatchError.NotFound"

    def test_invalid_body(self, client):
        response = client.post("/api/v1/runs", json={"payload": {}}, headers=AUTH)
        assert response.status_code == 422

    def test_other_tenants_job_not_found(self, store, guard, events):
        asyncio.run(store.save_job(JobDefinition(job_id="other-job", tenant_id="tenant-2")))
        dispatcher = Dispatcher(store, guard, MagicMock(), events=events, stale_run_seconds=0)
        app = FastAPI()
        app.include_router(router, prefix="/api/v1")
        set_services(dispatcher=dispatcher, store=store, guard=guard, event_service=events)

        response = TestClient(app).post("/api/v1/runs", json={"job_id": "other-job"}, headers=AUTH)

        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "DispatchError.NotFound"
        runs = asyncio.run(store.list_runs(job_id="other-job"))
        assert runs == []


# ============================================================================
# INSPECTION
# ============================================================================

class TestInspectRuns:

    def test_get_run(self, client):
        response = client.get("/api/v1/runs/run-a", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "running"
        assert body["active"] is False
        assert body["outcomes"][0]["status"] == "skipped"

    def test_other_tenant_hidden(self, client):
        response = client.get("/api/v1/runs/run-b", headers=AUTH)
        assert response.status_code == 404

    def test_missing_run(self, client):
        response = client.get("/api/v1/runs/nope", headers=AUTH)
        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "StoreError.RunNotFound"

    def test_list_runs_filters_tenant(self, client):
        response = client.get("/api/v1/runs", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["runs"][0]["run_id"] == "run-a"
        assert body["runs"][0]["step_outcomes"] == 1

    def test_list_runs_by_status(self, client, guard):
        guard.validate_inbound.return_value = Claims(subject="ops", issuer="i")

        response = client.get("/api/v1/runs", params={"status": "pending"}, headers=AUTH)

        assert [r["run_id"] for r in response.json()["runs"]] == ["run-b"]

    def test_list_runs_limit_applies_after_tenant_scope(self, client, store):
        # run-b (tenant-2) is the newest record
        store._runs["run-a"].created_at = utc_now() - timedelta(minutes=1)
        response = client.get("/api/v1/runs", params={"limit": 1}, headers=AUTH)

        assert [r["run_id"] for r in response.json()["runs"]] == ["run-a"]

    def test_stale_runs_empty(self, client):
        response = client.get("/api/v1/runs/stale", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["count"] == 0

    def test_stale_runs_scoped_to_tenant(self, client, store):
        async def _age():
            await store.create_run(RunRecord(run_id="run-c", job_id="charge-customer", tenant_id="tenant-2"))
            await store.mark_running("run-c")
            for run_id in ("run-a", "run-c"):
                store._runs[run_id].updated_at = utc_now() - timedelta(hours=1)

        asyncio.run(_age())

        response = client.get("/api/v1/runs/stale", headers=AUTH)

        assert [r["run_id"] for r in response.json()["runs"]] == ["run-a"]

    def test_events(self, client, events):
        asyncio.run(events.emit_run_started("run-a", "charge-customer", 1))
        asyncio.run(events.emit_step_skipped("run-a", "charge-customer", "charge", "amount > 100"))

        response = client.get("/api/v1/runs/run-a/events", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 2
        assert [e["event_type"] for e in body["events"]] == ["run_started", "step_skipped"]

    def test_dispatcher_status(self, client):
        response = client.get("/api/v1/dispatcher/status", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["status"] == "accepting"
        assert response.json()["stats"]["available"] == 39


# ============================================================================
# CANCEL
# ============================================================================

class TestCancelRun:

    def test_cancel(self, client, dispatcher):
        dispatcher.cancel = AsyncMock(return_value=RunRecord(
            run_id="run-a", job_id="charge-customer", status=RunStatus.CANCELLED,
        ))

        response = client.post("/api/v1/runs/run-a/cancel", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        dispatcher.cancel.assert_awaited_once_with("run-a")

    def test_cancel_other_tenant(self, client, dispatcher):
        dispatcher.cancel = AsyncMock()

        response = client.post("/api/v1/runs/run-b/cancel", headers=AUTH)

        assert response.status_code == 404
        dispatcher.cancel.assert_not_awaited()


# ============================================================================
# HEALTH
# ============================================================================

class FixedCheck(HealthCheck):
    def __init__(self, name, result, required=True):
        self.name = name
        self.result = result
        self.required_for_ready = required

    async def check(self):
        return self.result


class BrokenCheck(HealthCheck):
    name = "broken"

    async def check(self):
        raise RuntimeError("boom")


class TestHealth:

    def test_livez(self, client):
        assert client.get("/livez").json()["status"] == "alive"

    def test_healthy(self, client, store, dispatcher):
        set_health_checks([StoreCheck(store), DispatcherCheck(dispatcher)])

        response = client.get("/health")

        assert response.status_code == 200
        assert set(response.json()["checks"]) == {"store", "dispatcher"}

    def test_degraded(self, client, dispatcher):
        dispatcher.stats = _stats(available=0)
        set_health_checks([DispatcherCheck(dispatcher)])

        assert client.get("/health").status_code == 206
        assert client.get("/readyz").status_code == 200

    def test_unhealthy_not_ready(self, client):
        set_health_checks([
            FixedCheck("store", HealthCheckResult.unhealthy("down")),
            FixedCheck("optional", HealthCheckResult.healthy(), required=False),
        ])

        assert client.get("/readyz").status_code == 503
        assert client.get("/health").status_code == 503

    def test_raising_check_is_unhealthy(self, client):
        set_health_checks([BrokenCheck()])

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["checks"]["broken"]["status"] == "unhealthy"
