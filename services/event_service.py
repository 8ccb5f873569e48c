# ============================================================================
# EVENT SERVICE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Event emission and retrieval
# PURPOSE: Emit run lifecycle events for debugging and live updates
# CREATED: 18 OCT 2026
# ============================================================================
"""
Event Service

Provides methods to emit events at key lifecycle points.
Events are fire-and-forget - failures are logged but don't propagate.

Every event is:
- written as a checkpoint log line (run/job/step context attached)
- kept in a bounded per-run history (GET /api/v1/runs/{id}/events)
- passed to registered listeners (live-update hooks)
"""

import inspect
import logging
from collections import OrderedDict, deque
from typing import Any, Callable, Deque, Dict, List, Optional

from core.logging import log_checkpoint
from core.models import RunEvent, RunRecord
from core.models.events import EventType, EventStatus

logger = logging.getLogger(__name__)

EventListener = Callable[[RunEvent], Any]

# Terminal run status -> (event type, status)
_RUN_COMPLETION_EVENTS = {
    "succeeded": (EventType.RUN_SUCCEEDED, EventStatus.SUCCESS),
    "failed": (EventType.RUN_FAILED, EventStatus.FAILURE),
    "cancelled": (EventType.RUN_CANCELLED, EventStatus.WARNING),
}


class RunEventService:
    """Service for emitting and retrieving run events."""

    def __init__(self, max_runs: int = 1000, max_events_per_run: int = 200):
        """
        Initialize event service.

        Args:
            max_runs: Number of runs whose history is kept (oldest evicted)
            max_events_per_run: Events kept per run (oldest dropped)
        """
        self.max_runs = max_runs
        self.max_events_per_run = max_events_per_run
        self._history: "OrderedDict[str, Deque[RunEvent]]" = OrderedDict()
        self._listeners: List[EventListener] = []

    # =========================================================================
    # CORE EMIT METHOD
    # =========================================================================

    async def emit(self, event: RunEvent) -> Optional[RunEvent]:
        """
        Emit an event. Fire-and-forget - logs errors but doesn't raise.

        Returns:
            The event, or None if emission failed
        """
        try:
            self._remember(event)

            data = {
                "event_status": event.event_status.value,
                **event.event_data,
            }
            if event.attempt is not None:
                data["attempt"] = event.attempt
            if event.error:
                data["error"] = event.error
            if event.duration_ms is not None:
                data["duration_ms"] = event.duration_ms
            log_checkpoint(event.event_type.value, data, logger)

            for listener in list(self._listeners):
                result = listener(event)
                if inspect.isawaitable(result):
                    await result

            return event

        except Exception as e:
            # Fire-and-forget - log but don't raise
            logger.warning(
                f"Failed to emit event {event.event_type.value} for run {event.run_id}: {e}"
            )
            return None

    def _remember(self, event: RunEvent) -> None:
        history = self._history.get(event.run_id)
        if history is None:
            history = deque(maxlen=self.max_events_per_run)
            self._history[event.run_id] = history
            while len(self._history) > self.max_runs:
                self._history.popitem(last=False)
        history.append(event)

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def add_listener(self, listener: EventListener) -> None:
        """Register a callable (sync or async) invoked for every event."""
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # =========================================================================
    # RUN LIFECYCLE EVENTS
    # =========================================================================

    async def emit_run_queued(self, record: RunRecord, queued: bool) -> None:
        """Emit RUN_QUEUED event (queued=False: started immediately)."""
        await self.emit(RunEvent.run_event(
            record.run_id,
            record.job_id,
            EventType.RUN_QUEUED,
            event_data={
                "queued": queued,
                "submitted_by": record.submitted_by,
                "correlation_id": record.correlation_id,
            },
        ))

    async def emit_run_started(self, run_id: str, job_id: str, step_count: int) -> None:
        await self.emit(RunEvent.run_event(
            run_id,
            job_id,
            EventType.RUN_STARTED,
            event_data={"step_count": step_count},
        ))

    async def emit_run_completed(
        self,
        run_id: str,
        job_id: str,
        status: str,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Emit RUN_SUCCEEDED / RUN_FAILED / RUN_CANCELLED."""
        event_type, event_status = _RUN_COMPLETION_EVENTS[status]
        await self.emit(RunEvent.run_event(
            run_id,
            job_id,
            event_type,
            status=event_status,
            error=error,
        ))

    # =========================================================================
    # STEP LIFECYCLE EVENTS
    # =========================================================================

    async def emit_step_started(self, run_id: str, job_id: str, step_id: str, attempt: int) -> None:
        await self.emit(RunEvent.step_event(
            run_id, job_id, step_id, EventType.STEP_STARTED, attempt=attempt,
        ))

    async def emit_step_succeeded(
        self,
        run_id: str,
        job_id: str,
        step_id: str,
        attempt: int,
        duration_ms: Optional[int] = None,
        output_key: Optional[str] = None,
    ) -> None:
        await self.emit(RunEvent.step_event(
            run_id,
            job_id,
            step_id,
            EventType.STEP_SUCCEEDED,
            status=EventStatus.SUCCESS,
            attempt=attempt,
            event_data={"output_key": output_key} if output_key else None,
            duration_ms=duration_ms,
        ))

    async def emit_step_failed(
        self,
        run_id: str,
        job_id: str,
        step_id: str,
        attempt: int,
        error: Dict[str, Any],
        duration_ms: Optional[int] = None,
    ) -> None:
        await self.emit(RunEvent.step_event(
            run_id,
            job_id,
            step_id,
            EventType.STEP_FAILED,
            status=EventStatus.FAILURE,
            attempt=attempt,
            error=error,
            duration_ms=duration_ms,
        ))

    async def emit_step_retry(
        self,
        run_id: str,
        job_id: str,
        step_id: str,
        attempt: int,
        delay_seconds: float,
        error: Dict[str, Any],
    ) -> None:
        await self.emit(RunEvent.step_event(
            run_id,
            job_id,
            step_id,
            EventType.STEP_RETRY,
            status=EventStatus.WARNING,
            attempt=attempt,
            event_data={"delay_seconds": delay_seconds},
            error=error,
        ))

    async def emit_step_skipped(self, run_id: str, job_id: str, step_id: str, guard: str) -> None:
        await self.emit(RunEvent.step_event(
            run_id,
            job_id,
            step_id,
            EventType.STEP_SKIPPED,
            event_data={"guard": guard},
        ))

    async def emit_api_failed(
        self,
        run_id: str,
        job_id: str,
        step_id: str,
        attempt: int,
        error: Dict[str, Any],
        duration_ms: Optional[int] = None,
    ) -> None:
        """Emit API_FAILED for any failed outbound call, retried or not."""
        await self.emit(RunEvent.step_event(
            run_id,
            job_id,
            step_id,
            EventType.API_FAILED,
            status=EventStatus.FAILURE,
            attempt=attempt,
            error=error,
            duration_ms=duration_ms,
        ))

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_events(self, run_id: str, limit: Optional[int] = None) -> List[RunEvent]:
        """Events for a run, oldest first."""
        events = list(self._history.get(run_id, ()))
        if limit is not None:
            events = events[-limit:]
        return events

    def forget(self, run_id: str) -> None:
        self._history.pop(run_id, None)


__all__ = ["RunEventService"]
