# ============================================================================
# TASK ACTOR
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Worker - Executes one run of a job definition
# PURPOSE: Walk the steps of a job: guard, render, authenticate, call, extract
# CREATED: 18 OCT 2026
# ============================================================================
"""
Task Actor

One actor owns exactly one run. It is created by the dispatcher and driven by
a single asyncio task; nothing else touches its RunContext.

State machine:

    created -> loading -> stepping <-> waiting -> succeeded | failed | cancelled

    loading:   mark the run running, load the job, seed the context
    stepping:  evaluate guard, render, build the request, record outcomes
    waiting:   outbound call in flight, or retry backoff

Per step:
    guard absent          -> true
    guard false           -> Skipped outcome, context unchanged
    guard raises          -> run Failed (GuardEvaluationError)
    render / auth failure -> run Failed, no retry (headers must render to
                             ASCII without line breaks)
    transport failure     -> retry per policy, one outcome per attempt
                             (Retrying, ..., Failed on the last); a request
                             the HTTP client cannot encode is not retried
    success               -> extract, merge under output key, Succeeded

Loop steps evaluate their items expression, then run the inner steps once
per item against an iteration scope (run context plus item and index).
Inner outcomes carry the iteration and inner index; the loop closes with
its own outcome. The first inner failure fails the loop and the run.

Cancellation is checked at step boundaries only: before each step and
before each inner step of a loop. An in-flight call, including its retry
backoff, always completes and its outcome is recorded before the run is
cancelled.

Every outcome is written to the store before the actor moves on. If the
store fails while recording, the actor tries once to finalize the run as
failed; if that also fails the record stays running for reconciliation.
An unexpected exception records a Failed outcome for the step in progress
before the run is finalized.
"""

import asyncio
import copy
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Tuple

from core.config import StepDefaults
from core.contracts import ActorState, BackoffStrategy, RunStatus, StepKind, StepOutcomeStatus
from core.errors import (
    AuthError,
    EvalError,
    GuardEvaluationError,
    InvalidHeaderError,
    IterationLimitError,
    JobNotFoundError,
    RenderError,
    StoreConflictError,
    StoreError,
    TransportError,
    TypeMismatchError,
    WorkerError,
)
from core.logging import ComponentType, log_context
from core.models import (
    RequestSnapshot,
    ResponseSnapshot,
    RetryPolicy,
    RunContext,
    StepDefinition,
    StepOutcome,
    redact_headers,
)
from infrastructure.auth import AuthGuard
from orchestrator.engine.evaluator import RuleEvaluator, get_evaluator
from orchestrator.engine.filter import filter_result, search_json
from orchestrator.engine.templates import TemplateRenderer, get_renderer
from repositories.store import JobStore
from services.event_service import RunEventService
from worker.contracts import OutboundRequest
from worker.outbound import OutboundClient, substitute_path_params

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


class StepSlot(NamedTuple):
    """Where a step's outcomes sit in the run's outcome log."""
    index: int
    iteration: Optional[int] = None
    inner_index: Optional[int] = None
    parent_step_id: Optional[str] = None

    def label(self, step: StepDefinition) -> str:
        if self.iteration is None:
            return step.step_id
        return f"{self.parent_step_id}[{self.iteration}].{step.step_id}"


class _IterationContext(RunContext):
    """Scope of one loop iteration; remembers what its inner steps merged."""

    def __init__(self, values: Dict[str, Any]):
        super().__init__(values)
        self.results: Dict[str, Any] = {}

    def merge(self, key: str, value: Any) -> None:
        super().merge(key, value)
        self.results[key] = copy.deepcopy(value)


class _Cancelled(Exception):
    """Cancellation observed inside a loop step."""


class TaskActor:
    """Executes one run from start to terminal status."""

    def __init__(
        self,
        run_id: str,
        job_id: str,
        store: JobStore,
        guard: AuthGuard,
        outbound: OutboundClient,
        events: Optional[RunEventService] = None,
        step_defaults: Optional[StepDefaults] = None,
        evaluator: Optional[RuleEvaluator] = None,
        renderer: Optional[TemplateRenderer] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.run_id = run_id
        self.job_id = job_id
        self.store = store
        self.guard = guard
        self.outbound = outbound
        self.events = events or RunEventService()
        self.step_defaults = step_defaults or StepDefaults()
        self.evaluator = evaluator or get_evaluator()
        self.renderer = renderer or get_renderer()
        self._sleep = sleep

        self.state = ActorState.CREATED
        self.transitions: List[ActorState] = [ActorState.CREATED]
        self.context: Optional[RunContext] = None
        self.status: Optional[RunStatus] = None
        self._cancel = asyncio.Event()
        # Step, slot and next attempt still owed a terminal outcome
        self._current: Optional[Tuple[StepDefinition, StepSlot, int]] = None

    # ========================================================================
    # PUBLIC
    # ========================================================================

    def cancel(self) -> None:
        """Request cancellation; honoured at the next step boundary."""
        if not self._cancel.is_set():
            logger.info(f"Run {self.run_id}: cancellation requested")
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    async def run(self) -> RunStatus:
        """
        Execute the run.

        Returns:
            Terminal RunStatus (RUNNING only if the store failed and the
            record could not be finalized)
        """
        with log_context(run_id=self.run_id, job_id=self.job_id, component=ComponentType.ACTOR.value):
            try:
                self.status = await self._execute()
            except StoreError as e:
                logger.error(f"Run {self.run_id}: store failure while recording: {e}")
                self.status = await self._finalize_best_effort(e)
            except Exception as e:
                logger.exception(f"Run {self.run_id}: unexpected error: {e}")
                error = WorkerError(f"Unexpected error: {type(e).__name__}: {e}")
                await self._record_unexpected(error)
                self.status = await self._finalize_best_effort(error)
            return self.status

    # ========================================================================
    # RUN LIFECYCLE
    # ========================================================================

    async def _execute(self) -> RunStatus:
        self._transition(ActorState.LOADING)

        try:
            record = await self.store.mark_running(self.run_id)
        except StoreConflictError:
            # Finalized before it started (cancelled while queued)
            record = await self.store.get_run(self.run_id)
            logger.info(f"Run {self.run_id} already {record.status.value}, not starting")
            self._transition(_terminal_state(record.status))
            return record.status

        try:
            job = await self.store.load(self.job_id)
        except JobNotFoundError as e:
            logger.error(f"Run {self.run_id}: job {self.job_id} could not be loaded: {e}")
            return await self._finish(RunStatus.FAILED, RunContext(), error=e)

        self.context = RunContext.seed(job.defaults, record.trigger_payload)
        await self.events.emit_run_started(self.run_id, self.job_id, len(job.steps))
        logger.info(
            f"Run {self.run_id} started: job {job.job_id} v{job.version}, "
            f"{len(job.steps)} steps"
        )

        for index, step in enumerate(job.steps):
            if self._cancel.is_set():
                logger.info(f"Run {self.run_id} cancelled before step {step.step_id}")
                return await self._finish(RunStatus.CANCELLED, self.context)

            self._transition(ActorState.STEPPING)
            try:
                with log_context(step_id=step.step_id):
                    error = await self._run_step(StepSlot(index), step, self.context)
            except _Cancelled:
                logger.info(f"Run {self.run_id} cancelled inside loop step {step.step_id}")
                return await self._finish(RunStatus.CANCELLED, self.context)
            if error is not None:
                return await self._finish(RunStatus.FAILED, self.context, error=error)

        return await self._finish(RunStatus.SUCCEEDED, self.context)

    async def _finish(
        self,
        status: RunStatus,
        context: RunContext,
        error: Optional[WorkerError] = None,
    ) -> RunStatus:
        error_dict = error.to_dict() if error else None
        record = await self.store.finalize(
            self.run_id,
            status,
            final_context=context.snapshot(),
            error=error_dict,
        )
        self._transition(_terminal_state(status))
        await self.events.emit_run_completed(self.run_id, self.job_id, status.value, error_dict)

        duration = record.duration_seconds
        took = f" in {duration:.2f}s" if duration is not None else ""
        if status == RunStatus.FAILED:
            logger.warning(f"Run {self.run_id} failed{took}: {error_dict}")
        else:
            logger.info(f"Run {self.run_id} {status.value}{took}")
        return status

    async def _finalize_best_effort(self, error: WorkerError) -> RunStatus:
        snapshot = self.context.snapshot() if self.context else None
        try:
            await self.store.finalize(
                self.run_id,
                RunStatus.FAILED,
                final_context=snapshot,
                error=error.to_dict(),
            )
        except StoreError as e:
            logger.error(
                f"Run {self.run_id}: could not finalize after store failure, "
                f"record left running: {e}"
            )
            return RunStatus.RUNNING
        self._transition(ActorState.FAILED)
        await self.events.emit_run_completed(
            self.run_id, self.job_id, RunStatus.FAILED.value, error.to_dict()
        )
        return RunStatus.FAILED

    async def _record_unexpected(self, error: WorkerError) -> None:
        """Close the step in progress with a Failed outcome, if there is one."""
        if self._current is None:
            return
        step, slot, attempt = self._current
        try:
            await self._record(self._outcome(step, slot, attempt, StepOutcomeStatus.FAILED, error=error))
        except StoreError as e:
            logger.error(
                f"Run {self.run_id}: could not record failure of step {slot.label(step)}: {e}"
            )

    def _transition(self, state: ActorState) -> None:
        if state == self.state:
            return
        logger.debug(f"Run {self.run_id}: actor {self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append(state)

    # ========================================================================
    # STEPS
    # ========================================================================

    async def _run_step(
        self,
        slot: StepSlot,
        step: StepDefinition,
        context: RunContext,
    ) -> Optional[WorkerError]:
        """Run one step. Returns the error that ends the run, or None."""
        snapshot = context.snapshot()
        self._current = (step, slot, 1)

        if step.guard is not None and step.guard.strip():
            try:
                passed = self.evaluator.evaluate_guard(step.guard, snapshot)
            except EvalError as e:
                error = GuardEvaluationError(step.step_id, e)
                await self._record(self._outcome(step, slot, 1, StepOutcomeStatus.FAILED, error=error))
                await self.events.emit_step_failed(
                    self.run_id, self.job_id, step.step_id, 1, error.to_dict()
                )
                return error

            if not passed:
                logger.info(f"Step {slot.label(step)} skipped: guard '{step.guard}' is false")
                await self._record(self._outcome(step, slot, 1, StepOutcomeStatus.SKIPPED))
                await self.events.emit_step_skipped(self.run_id, self.job_id, step.step_id, step.guard)
                return None

        if step.kind == StepKind.FILTER:
            return await self._run_filter_step(slot, step, context, snapshot)
        if step.kind == StepKind.LOOP:
            return await self._run_loop_step(slot, step, context, snapshot)
        return await self._run_request_step(slot, step, context, snapshot)

    async def _run_filter_step(
        self,
        slot: StepSlot,
        step: StepDefinition,
        context: RunContext,
        snapshot: Dict[str, Any],
    ) -> Optional[WorkerError]:
        await self.events.emit_step_started(self.run_id, self.job_id, step.step_id, 1)
        start_time = time.time()
        spec = step.filter
        try:
            source = self.evaluator.evaluate(spec.source, snapshot)
            output = filter_result(
                search_json(source, spec.search_key, spec.condition, spec.search_value)
            )
        except EvalError as e:
            duration_ms = int((time.time() - start_time) * 1000)
            await self._record(self._outcome(
                step, slot, 1, StepOutcomeStatus.FAILED, error=e, duration_ms=duration_ms,
            ))
            await self.events.emit_step_failed(
                self.run_id, self.job_id, step.step_id, 1, e.to_dict(), duration_ms
            )
            return e

        duration_ms = int((time.time() - start_time) * 1000)
        await self._record(self._outcome(
            step, slot, 1, StepOutcomeStatus.SUCCEEDED, output=output, duration_ms=duration_ms,
        ))
        context.merge(step.result_key, output)
        logger.info(f"Step {slot.label(step)} filter matched {output['count']} entries")
        await self.events.emit_step_succeeded(
            self.run_id, self.job_id, step.step_id, 1, duration_ms, step.result_key
        )
        return None

    async def _run_loop_step(
        self,
        slot: StepSlot,
        step: StepDefinition,
        context: RunContext,
        snapshot: Dict[str, Any],
    ) -> Optional[WorkerError]:
        await self.events.emit_step_started(self.run_id, self.job_id, step.step_id, 1)
        start_time = time.time()
        spec = step.loop

        try:
            items = self.evaluator.evaluate(spec.items, snapshot)
            if not isinstance(items, list):
                raise TypeMismatchError(
                    f"Loop items must be a list, got {type(items).__name__}"
                )
            if len(items) > spec.max_iterations:
                raise IterationLimitError(
                    f"Loop has {len(items)} items, max_iterations is {spec.max_iterations}"
                )
        except EvalError as e:
            duration_ms = int((time.time() - start_time) * 1000)
            await self._record(self._outcome(
                step, slot, 1, StepOutcomeStatus.FAILED, error=e, duration_ms=duration_ms,
            ))
            await self.events.emit_step_failed(
                self.run_id, self.job_id, step.step_id, 1, e.to_dict(), duration_ms
            )
            return e

        logger.info(f"Step {step.step_id} looping over {len(items)} items")
        iterations = []
        for iteration, item in enumerate(items):
            scope = dict(snapshot)
            scope[spec.item_key] = item
            scope[spec.index_key] = iteration
            iteration_context = _IterationContext(scope)

            for inner_index, inner in enumerate(spec.steps):
                if self._cancel.is_set():
                    raise _Cancelled()

                inner_slot = StepSlot(slot.index, iteration, inner_index, step.step_id)
                with log_context(step_id=inner_slot.label(inner)):
                    error = await self._run_step(inner_slot, inner, iteration_context)
                if error is not None:
                    duration_ms = int((time.time() - start_time) * 1000)
                    self._current = (step, slot, 1)
                    await self._record(self._outcome(
                        step, slot, 1, StepOutcomeStatus.FAILED,
                        output={"iteration": iteration, "step_id": inner.step_id},
                        error=error,
                        duration_ms=duration_ms,
                    ))
                    logger.warning(
                        f"Step {step.step_id} failed in iteration {iteration} "
                        f"at inner step {inner.step_id}"
                    )
                    await self.events.emit_step_failed(
                        self.run_id, self.job_id, step.step_id, 1, error.to_dict(), duration_ms
                    )
                    return error

            iterations.append(iteration_context.results)

        output = {"count": len(iterations), "iterations": iterations}
        duration_ms = int((time.time() - start_time) * 1000)
        self._current = (step, slot, 1)
        await self._record(self._outcome(
            step, slot, 1, StepOutcomeStatus.SUCCEEDED, output=output, duration_ms=duration_ms,
        ))
        context.merge(step.result_key, output)
        logger.info(f"Step {step.step_id} completed {len(iterations)} iterations")
        await self.events.emit_step_succeeded(
            self.run_id, self.job_id, step.step_id, 1, duration_ms, step.result_key
        )
        return None

    async def _run_request_step(
        self,
        slot: StepSlot,
        step: StepDefinition,
        context: RunContext,
        snapshot: Dict[str, Any],
    ) -> Optional[WorkerError]:
        policy = step.retry or self._default_retry_policy()
        timeout = step.timeout_seconds or self.step_defaults.timeout_seconds
        template = step.request
        label = slot.label(step)

        try:
            request = self._render_request(step, snapshot, timeout)
        except RenderError as e:
            logger.error(f"Step {label}: render failed: {e}")
            await self._record(self._outcome(step, slot, 1, StepOutcomeStatus.FAILED, error=e))
            await self.events.emit_step_failed(self.run_id, self.job_id, step.step_id, 1, e.to_dict())
            return e

        attempt = 0
        while True:
            attempt += 1
            await self.events.emit_step_started(self.run_id, self.job_id, step.step_id, attempt)

            try:
                credentials = await self.guard.credential_headers(
                    step.auth, snapshot, engine=template.engine, strict=template.strict,
                )
            except (AuthError, RenderError) as e:
                logger.error(f"Step {label}: credentials unavailable: {e}")
                await self._record(self._outcome(
                    step, slot, attempt, StepOutcomeStatus.FAILED,
                    request=self._request_snapshot(request, set()),
                    error=e,
                ))
                await self.events.emit_step_failed(
                    self.run_id, self.job_id, step.step_id, attempt, e.to_dict()
                )
                return e

            outbound = request.with_headers(credentials)
            request_snapshot = self._request_snapshot(outbound, set(credentials))

            start_time = time.time()
            self._transition(ActorState.WAITING)
            try:
                response = await self.outbound.send(outbound)
            except TransportError as e:
                duration_ms = int((time.time() - start_time) * 1000)
                self._transition(ActorState.STEPPING)
                final_attempt = attempt >= policy.max_attempts or not e.retryable
                status = StepOutcomeStatus.FAILED if final_attempt else StepOutcomeStatus.RETRYING
                await self._record(self._outcome(
                    step, slot, attempt, status,
                    request=request_snapshot,
                    response=getattr(e, "response", None),
                    error=e,
                    duration_ms=duration_ms,
                ))
                await self.events.emit_api_failed(
                    self.run_id, self.job_id, step.step_id, attempt, e.to_dict(), duration_ms
                )

                if final_attempt:
                    logger.warning(
                        f"Step {label} failed after {attempt} attempt(s): {e}"
                    )
                    await self.events.emit_step_failed(
                        self.run_id, self.job_id, step.step_id, attempt, e.to_dict(), duration_ms
                    )
                    return e

                delay = policy.delay_for(attempt)
                logger.warning(
                    f"Step {label} attempt {attempt}/{policy.max_attempts} failed "
                    f"({e.kind}), retrying in {delay:.2f}s"
                )
                await self.events.emit_step_retry(
                    self.run_id, self.job_id, step.step_id, attempt, delay, e.to_dict()
                )
                self._transition(ActorState.WAITING)
                await self._sleep(delay)
                self._transition(ActorState.STEPPING)
                continue

            duration_ms = int((time.time() - start_time) * 1000)
            self._transition(ActorState.STEPPING)
            break

        try:
            has_output, output = self._extract(step, response, snapshot)
        except EvalError as e:
            logger.error(f"Step {label}: extraction failed: {e}")
            await self._record(self._outcome(
                step, slot, attempt, StepOutcomeStatus.FAILED,
                request=request_snapshot, response=response, error=e, duration_ms=duration_ms,
            ))
            await self.events.emit_step_failed(
                self.run_id, self.job_id, step.step_id, attempt, e.to_dict(), duration_ms
            )
            return e

        await self._record(self._outcome(
            step, slot, attempt, StepOutcomeStatus.SUCCEEDED,
            request=request_snapshot,
            response=response,
            output=output if has_output else None,
            duration_ms=duration_ms,
        ))
        if has_output:
            context.merge(step.result_key, output)

        logger.info(
            f"Step {label} succeeded: HTTP {response.status_code} "
            f"in {duration_ms}ms (attempt {attempt})"
        )
        await self.events.emit_step_succeeded(
            self.run_id, self.job_id, step.step_id, attempt, duration_ms,
            step.result_key if has_output else None,
        )
        return None

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _default_retry_policy(self) -> RetryPolicy:
        defaults = self.step_defaults
        return RetryPolicy(
            max_attempts=defaults.retry_max_attempts,
            backoff=BackoffStrategy(defaults.retry_backoff),
            initial_delay_seconds=defaults.retry_initial_delay_seconds,
            max_delay_seconds=defaults.retry_max_delay_seconds,
        )

    def _render_request(
        self,
        step: StepDefinition,
        snapshot: Dict[str, Any],
        timeout: float,
    ) -> OutboundRequest:
        """Resolve every template of a request step against the context."""
        template = step.request

        def render(text: str) -> str:
            return self.renderer.render(text, snapshot, engine=template.engine, strict=template.strict)

        method = render(template.method).strip().upper()
        url = render(template.url).strip()
        path_params = {name: render(value) for name, value in template.path_params.items()}
        url = substitute_path_params(url, path_params)

        headers = {}
        for name, value in template.headers.items():
            headers[name] = render(value)
            check_header(name, headers[name])

        return OutboundRequest(
            method=method,
            url=url,
            headers=headers,
            query={name: render(value) for name, value in template.query.items()},
            body=self.renderer.render_value(
                template.body, snapshot, engine=template.engine, strict=template.strict,
            ),
            timeout_seconds=timeout,
        )

    def _extract(
        self,
        step: StepDefinition,
        response: ResponseSnapshot,
        snapshot: Dict[str, Any],
    ):
        """
        Step output from a response.

        Returns:
            (has_output, output). Without an extract expression the body is
            the output only when the step declares output_key.
        """
        if step.extract:
            scope = dict(snapshot)
            scope["response"] = response.body
            scope["status_code"] = response.status_code
            scope["headers"] = dict(response.headers)
            return True, self.evaluator.evaluate(step.extract, scope)
        if step.output_key:
            return True, response.body
        return False, None

    def _request_snapshot(self, request: OutboundRequest, credential_headers: set) -> RequestSnapshot:
        return RequestSnapshot(
            method=request.method,
            url=request.url,
            headers=redact_headers(request.headers, extra=credential_headers),
            query=dict(request.query),
            body=request.body,
        )

    def _outcome(
        self,
        step: StepDefinition,
        slot: StepSlot,
        attempt: int,
        status: StepOutcomeStatus,
        request: Optional[RequestSnapshot] = None,
        response: Optional[ResponseSnapshot] = None,
        output: Any = None,
        error: Optional[WorkerError] = None,
        duration_ms: Optional[int] = None,
    ) -> StepOutcome:
        return StepOutcome(
            step_id=step.step_id,
            step_index=slot.index,
            iteration=slot.iteration,
            inner_index=slot.inner_index,
            parent_step_id=slot.parent_step_id,
            attempt=attempt,
            status=status,
            request=request,
            response=response,
            output=output,
            error=error.to_dict() if error else None,
            duration_ms=duration_ms,
        )

    async def _record(self, outcome: StepOutcome) -> None:
        await self.store.append_step_outcome(self.run_id, outcome)
        if outcome.is_terminal:
            self._current = None
        elif self._current is not None:
            step, slot, _ = self._current
            self._current = (step, slot, outcome.attempt + 1)


def check_header(name: str, value: str) -> None:
    """
    Reject a header the HTTP client could not send.

    Raises:
        InvalidHeaderError: Name or value is not ASCII or holds a line break
    """
    for part in (name, value):
        if "\r" in part or "\n" in part:
            raise InvalidHeaderError(name, f"Header '{name}' contains a line break")
        try:
            part.encode("ascii")
        except UnicodeEncodeError as e:
            raise InvalidHeaderError(
                name, f"Header '{name}' is not ASCII after rendering"
            ) from e


def _terminal_state(status: RunStatus) -> ActorState:
    return {
        RunStatus.SUCCEEDED: ActorState.SUCCEEDED,
        RunStatus.FAILED: ActorState.FAILED,
        RunStatus.CANCELLED: ActorState.CANCELLED,
    }.get(status, ActorState.FAILED)


__all__ = ["TaskActor", "StepSlot", "check_header"]
