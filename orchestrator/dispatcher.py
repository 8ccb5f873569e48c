# ============================================================================
# DISPATCHER
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Run admission and actor supervision
# PURPOSE: Accept run requests, bound concurrency, spawn one actor per run
# CREATED: 18 OCT 2026
# ============================================================================
"""
Dispatcher

Accepts run requests and supervises task actors.

Admission:
    capacity = max_concurrent_runs (running) + queue_size (queued)

    1. Reserve a slot synchronously. No slot -> OverloadedError, raised
       before any store access or actor creation.
    2. Load the job definition. Unknown job, or a job owned by another
       tenant than the request's -> DispatchNotFoundError.
    3. Create the pending RunRecord.
    4. Start an actor now if a running slot is free, else queue FIFO.

When an actor finishes its slot goes to the next queued run.

Cancellation:
    queued run  -> removed from the queue, finalized cancelled
    running run -> actor signalled, cancelled at its next step boundary

A background scan reports runs that have been running longer than the
staleness window. It only logs them; reconciliation is left to operators.

Runs as background tasks in the FastAPI application.
"""

import asyncio
import logging
import uuid
from collections import deque
from datetime import timedelta
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from core.config import DispatcherDefaults, StepDefaults
from core.contracts import RunStatus
from core.errors import DispatchNotFoundError, JobNotFoundError, OverloadedError, StoreError
from core.logging import log_context
from core.models import RunRecord
from infrastructure.auth import AuthGuard
from repositories.store import JobStore
from services.event_service import RunEventService
from worker.actor import TaskActor
from worker.contracts import RunRequest
from worker.outbound import OutboundClient

logger = logging.getLogger(__name__)

ActorFactory = Callable[[str, str], TaskActor]


class Dispatcher:
    """
    Bounded run admission with one TaskActor per run.

    Actors share the store, auth guard and outbound client; they never share
    a RunContext.
    """

    def __init__(
        self,
        store: JobStore,
        guard: AuthGuard,
        outbound: OutboundClient,
        events: Optional[RunEventService] = None,
        defaults: Optional[DispatcherDefaults] = None,
        step_defaults: Optional[StepDefaults] = None,
        actor_factory: Optional[ActorFactory] = None,
        stale_run_seconds: int = 900,
        stale_scan_interval_seconds: float = 60.0,
    ):
        """
        Initialize dispatcher.

        Args:
            store: Job store shared by all actors
            guard: Auth guard used for outbound credentials
            outbound: Shared HTTP transport
            events: Event service (a private one is created if omitted)
            defaults: Concurrency limit and queue size
            step_defaults: Step timeout/retry defaults passed to actors
            actor_factory: Builds an actor for (run_id, job_id); tests override
            stale_run_seconds: Running longer than this is reported as stale (0 disables)
            stale_scan_interval_seconds: Seconds between stale scans
        """
        defaults = defaults or DispatcherDefaults()
        self.max_concurrent_runs = defaults.max_concurrent_runs
        self.queue_size = defaults.queue_size

        self.store = store
        self.guard = guard
        self.outbound = outbound
        self.events = events or RunEventService()
        self.step_defaults = step_defaults or StepDefaults()
        self._actor_factory = actor_factory or self._build_actor

        self.stale_run_seconds = stale_run_seconds
        self.stale_scan_interval_seconds = stale_scan_interval_seconds

        # State
        self._actors: Dict[str, TaskActor] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._queue: Deque[Tuple[str, str]] = deque()
        self._reserved = 0
        self._accepting = True
        self._stop_event = asyncio.Event()
        self._stale_scan_task: Optional[asyncio.Task] = None

        # Counters
        self._submitted = 0
        self._rejected = 0
        self._completed = 0

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Start background tasks."""
        self._accepting = True
        self._stop_event.clear()
        if self.stale_run_seconds > 0:
            self._stale_scan_task = asyncio.create_task(
                self._stale_scan_loop(), name="stale-run-scan"
            )
        logger.info(
            f"Dispatcher started (max_concurrent_runs={self.max_concurrent_runs}, "
            f"queue_size={self.queue_size})"
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop gracefully.

        Stops admission, cancels queued runs, signals running actors and
        waits for them. After ``timeout`` seconds remaining actor tasks are
        cancelled outright; their records stay running.
        """
        logger.info(
            f"Stopping dispatcher (running={len(self._tasks)}, queued={len(self._queue)})"
        )
        self._accepting = False
        self._stop_event.set()

        if self._stale_scan_task:
            self._stale_scan_task.cancel()
            try:
                await self._stale_scan_task
            except asyncio.CancelledError:
                pass
            self._stale_scan_task = None

        while self._queue:
            run_id, _job_id = self._queue.popleft()
            await self._cancel_queued(run_id)

        for actor in list(self._actors.values()):
            actor.cancel()

        tasks = list(self._tasks.values())
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"{len(pending)} actors did not stop in time, cancelled")
                await asyncio.gather(*pending, return_exceptions=True)
                # Tasks cancelled before their first step never reach their finally
                self._actors.clear()
                self._tasks.clear()

        logger.info(
            f"Dispatcher stopped (submitted={self._submitted}, rejected={self._rejected}, "
            f"completed={self._completed})"
        )

    # =========================================================================
    # ADMISSION
    # =========================================================================

    @property
    def capacity(self) -> int:
        return self.max_concurrent_runs + self.queue_size

    def _occupied(self) -> int:
        return len(self._tasks) + len(self._queue) + self._reserved

    async def submit(self, request: RunRequest) -> RunRecord:
        """
        Admit a run request.

        Returns:
            The created RunRecord (status pending)

        Raises:
            OverloadedError: No running slot and the queue is full
            DispatchNotFoundError: Unknown job
            StoreError: Store unavailable
        """
        # Reserve before the first await so concurrent submits cannot overshoot
        if not self._accepting:
            self._rejected += 1
            raise OverloadedError("Dispatcher is shutting down")
        if self._occupied() >= self.capacity:
            self._rejected += 1
            logger.warning(
                f"Rejecting run for job {request.job_id}: at capacity "
                f"({len(self._tasks)} running, {len(self._queue)} queued)"
            )
            raise OverloadedError(
                f"At capacity: {self.max_concurrent_runs} running, {self.queue_size} queued"
            )
        self._reserved += 1

        try:
            try:
                job = await self.store.load(request.job_id)
            except JobNotFoundError as e:
                raise DispatchNotFoundError(request.job_id) from e

            if request.tenant_id and job.tenant_id and request.tenant_id != job.tenant_id:
                logger.warning(
                    f"Rejecting run for job {job.job_id}: owned by tenant {job.tenant_id}, "
                    f"requested by tenant {request.tenant_id}"
                )
                raise DispatchNotFoundError(request.job_id)

            record = RunRecord(
                run_id=uuid.uuid4().hex,
                job_id=job.job_id,
                tenant_id=request.tenant_id or job.tenant_id,
                trigger_payload=request.payload,
                submitted_by=request.submitted_by,
                correlation_id=request.correlation_id,
            )
            record = await self.store.create_run(record)
        finally:
            self._reserved -= 1

        self._submitted += 1
        if not self._accepting:
            # Stopped while the record was being created
            return await self._cancel_queued(record.run_id)

        queued = len(self._tasks) >= self.max_concurrent_runs
        with log_context(run_id=record.run_id, job_id=record.job_id):
            if queued:
                self._queue.append((record.run_id, record.job_id))
                logger.info(f"Run {record.run_id} queued (position {len(self._queue)})")
            else:
                self._start_actor(record.run_id, record.job_id)
                logger.info(f"Run {record.run_id} started")
        await self.events.emit_run_queued(record, queued)
        return record

    def _build_actor(self, run_id: str, job_id: str) -> TaskActor:
        return TaskActor(
            run_id,
            job_id,
            store=self.store,
            guard=self.guard,
            outbound=self.outbound,
            events=self.events,
            step_defaults=self.step_defaults,
        )

    def _start_actor(self, run_id: str, job_id: str) -> None:
        actor = self._actor_factory(run_id, job_id)
        self._actors[run_id] = actor
        self._tasks[run_id] = asyncio.create_task(
            self._run_actor(actor), name=f"run-{run_id}"
        )

    async def _run_actor(self, actor: TaskActor) -> None:
        try:
            status = await actor.run()
            logger.debug(f"Actor for run {actor.run_id} finished: {status.value}")
        finally:
            self._actors.pop(actor.run_id, None)
            self._tasks.pop(actor.run_id, None)
            self._completed += 1
            self._drain()

    def _drain(self) -> None:
        """Move queued runs into free running slots."""
        while self._queue and self._accepting and len(self._tasks) < self.max_concurrent_runs:
            run_id, job_id = self._queue.popleft()
            logger.info(f"Run {run_id} dequeued")
            self._start_actor(run_id, job_id)

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    async def cancel(self, run_id: str) -> RunRecord:
        """
        Cancel a run.

        Returns:
            The run record as it stands after the request (a running run is
            still running until its actor reaches a step boundary)

        Raises:
            RunNotFoundError: Unknown run
        """
        for entry in self._queue:
            if entry[0] == run_id:
                self._queue.remove(entry)
                return await self._cancel_queued(run_id)

        actor = self._actors.get(run_id)
        if actor is not None:
            actor.cancel()
            return await self.store.get_run(run_id)

        record = await self.store.get_run(run_id)
        logger.info(f"Cancel for run {run_id} ignored: not active here ({record.status.value})")
        return record

    async def _cancel_queued(self, run_id: str) -> RunRecord:
        record = await self.store.finalize(run_id, RunStatus.CANCELLED)
        logger.info(f"Queued run {run_id} cancelled")
        await self.events.emit_run_completed(run_id, record.job_id, RunStatus.CANCELLED.value)
        return record

    # =========================================================================
    # STALE RUN SCAN
    # =========================================================================

    async def _stale_scan_loop(self) -> None:
        """Periodically log runs stuck in running (e.g. left by a crashed process)."""
        while not self._stop_event.is_set():
            try:
                await self.report_stale_runs()
            except StoreError as e:
                logger.warning(f"Stale run scan failed: {e}")

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.stale_scan_interval_seconds,
                )
            except asyncio.TimeoutError:
                pass

    async def report_stale_runs(self):
        """Running records older than the staleness window that no actor here owns."""
        stale = await self.store.list_stale_runs(timedelta(seconds=self.stale_run_seconds))
        orphans = [record for record in stale if record.run_id not in self._actors]
        for record in orphans:
            logger.warning(
                f"Run {record.run_id} (job {record.job_id}) running since "
                f"{record.started_at} with {len(record.outcomes)} outcomes: eligible for reconciliation"
            )
        return orphans

    # =========================================================================
    # STATUS
    # =========================================================================

    def is_active(self, run_id: str) -> bool:
        return run_id in self._actors or any(entry[0] == run_id for entry in self._queue)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "accepting": self._accepting,
            "max_concurrent_runs": self.max_concurrent_runs,
            "queue_size": self.queue_size,
            "running": len(self._tasks),
            "queued": len(self._queue),
            "available": max(self.capacity - self._occupied(), 0),
            "submitted": self._submitted,
            "rejected": self._rejected,
            "completed": self._completed,
        }

    async def wait_idle(self) -> None:
        """Wait until no run is running or queued."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)


__all__ = ["Dispatcher"]
