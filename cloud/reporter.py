"""
Cloud - Event Reporter.

============================================================
RESPONSIBILITY
============================================================
Mirrors lifecycle transitions to the deployment tracking service.

- Turns each StateTransition into a CloudEvent keyed by the run id
- Submits events strictly in the order transitions happened
- Never blocks the orchestrator on the network
- Retries transient failures a bounded number of times

============================================================
DELIVERY
============================================================
A single FIFO queue is consumed by a single sender task, so events are
never reordered and never sent concurrently. Undeliverable events are
logged and kept as ReportingErrors; whether they affect the exit code
is the orchestrator's decision (ReportingPolicy.strict).

Each event carries its position in the stack's log, so the service
acknowledges a retry after a lost response instead of recording the
event twice. Once an event of a stack is lost, the stack's later events
are not sent; the recorded log stays a valid prefix of the local one.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Set

from core.constants import (
    DEFAULT_REPORT_FLUSH_TIMEOUT_SECONDS,
    DEFAULT_REPORT_MAX_ATTEMPTS,
    DEFAULT_REPORT_RETRY_BACKOFF_BASE,
)
from core.exceptions import ReportingError, TransportError
from core.lifecycle import LifecycleState, StateTransition

from .client import CloudClient, deployment_events_path
from .models import DeploymentEventAck, DeploymentEventPayload


logger = logging.getLogger(__name__)


# ============================================================
# CLOUD EVENT
# ============================================================

@dataclass(frozen=True)
class CloudEvent:
    """One lifecycle transition as seen by the tracking service."""

    run_id: str
    stack_id: str
    state: LifecycleState
    position: int

    @classmethod
    def from_transition(cls, run_id: str, transition: StateTransition) -> "CloudEvent":
        return cls(
            run_id=run_id,
            stack_id=transition.stack_id,
            state=transition.to_state,
            position=transition.position,
        )

    def to_payload(self) -> DeploymentEventPayload:
        return DeploymentEventPayload(
            run_id=self.run_id,
            stack_id=self.stack_id,
            state=self.state,
            position=self.position,
        )


# ============================================================
# REPORTING POLICY
# ============================================================

@dataclass
class ReportingPolicy:
    """How hard to try before giving up on an event."""

    max_attempts: int = DEFAULT_REPORT_MAX_ATTEMPTS
    """Attempts per event, including the first."""

    retry_backoff_base: float = DEFAULT_REPORT_RETRY_BACKOFF_BASE
    """Delay before the first retry; doubles on each further retry."""

    strict: bool = False
    """Treat undelivered events as a run failure."""

    flush_timeout: float = DEFAULT_REPORT_FLUSH_TIMEOUT_SECONDS
    """Seconds close() waits for queued events."""

    def backoff(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return self.retry_backoff_base * (2 ** (attempt - 1))


DeliveryCallback = Callable[[CloudEvent], None]


# ============================================================
# REPORTER
# ============================================================

class CloudEventReporter:
    """
    Ordered, best-effort event sink.

    Register ``on_transition`` as a StackLifecycle listener.
    """

    def __init__(
        self,
        client: CloudClient,
        org_id: str,
        run_id: str,
        policy: Optional[ReportingPolicy] = None,
        on_delivered: Optional[DeliveryCallback] = None,
    ):
        """
        Initialize reporter.

        Args:
            client: Authenticated API client
            org_id: Organization owning the deployment
            run_id: Correlation key for every event of the run
            policy: Retry policy
            on_delivered: Called with each event the service acknowledged
        """
        self._client = client
        self._org_id = org_id
        self._run_id = run_id
        self._policy = policy or ReportingPolicy()
        self._on_delivered = on_delivered

        self._queue: "asyncio.Queue[CloudEvent]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._in_flight: Optional[CloudEvent] = None
        self._closed = False

        self._delivered: List[CloudEvent] = []
        self._failures: List[ReportingError] = []
        self._broken_stacks: Set[str] = set()

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def policy(self) -> ReportingPolicy:
        return self._policy

    @property
    def delivered(self) -> List[CloudEvent]:
        return list(self._delivered)

    @property
    def failures(self) -> List[ReportingError]:
        return list(self._failures)

    @property
    def has_failures(self) -> bool:
        return bool(self._failures)

    @property
    def pending(self) -> int:
        """Events queued or being sent."""
        return self._queue.qsize() + (1 if self._in_flight else 0)

    # --------------------------------------------------------
    # Submission
    # --------------------------------------------------------

    async def on_transition(self, transition: StateTransition) -> None:
        """Lifecycle listener: queue the matching event."""
        self.submit(CloudEvent.from_transition(self._run_id, transition))

    def submit(self, event: CloudEvent) -> None:
        """Queue an event for delivery. Never blocks."""
        if self._closed:
            raise RuntimeError("reporter is closed")
        self._ensure_worker()
        self._queue.put_nowait(event)

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run_worker())

    # --------------------------------------------------------
    # Shutdown
    # --------------------------------------------------------

    async def close(self) -> None:
        """
        Flush queued events and stop the sender.

        Events still queued when the flush timeout expires are recorded as
        failures.
        """
        if self._closed:
            return
        self._closed = True

        if self._worker is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=self._policy.flush_timeout)
            except asyncio.TimeoutError:
                logger.error(
                    f"Event flush timed out after {self._policy.flush_timeout}s "
                    f"with {self.pending} event(s) undelivered"
                )
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

        abandoned = []
        if self._in_flight is not None:
            abandoned.append(self._in_flight)
            self._in_flight = None
        while not self._queue.empty():
            abandoned.append(self._queue.get_nowait())
            self._queue.task_done()

        for event in abandoned:
            self._record_failure(event, "not delivered before shutdown", attempts=0)

    # --------------------------------------------------------
    # Delivery
    # --------------------------------------------------------

    async def _run_worker(self) -> None:
        while True:
            event = await self._queue.get()
            self._in_flight = event
            try:
                await self._deliver(event)
            except asyncio.CancelledError:
                # close() reports the in-flight event as abandoned
                self._queue.task_done()
                raise
            except Exception as e:
                self._record_failure(event, f"unexpected error: {e}", attempts=1, cause=e)
            self._in_flight = None
            self._queue.task_done()

    async def _deliver(self, event: CloudEvent) -> None:
        if event.stack_id in self._broken_stacks:
            self._record_failure(
                event, "an earlier event of the stack was not delivered", attempts=0
            )
            return

        path = deployment_events_path(self._org_id, event.run_id)
        payload = event.to_payload()

        for attempt in range(1, self._policy.max_attempts + 1):
            try:
                ack = await self._client.request(DeploymentEventAck, "POST", path, payload)
            except TransportError as e:
                if not e.transient or attempt >= self._policy.max_attempts:
                    self._record_failure(event, e.message, attempts=attempt, cause=e)
                    return

                wait_time = self._policy.backoff(attempt)
                logger.warning(
                    f"Event {event.stack_id}:{event.state.value} failed ({e.message}), "
                    f"retry {attempt}/{self._policy.max_attempts - 1} in {wait_time:.2f}s"
                )
                await asyncio.sleep(wait_time)
                continue

            if (
                ack.stack_id != event.stack_id
                or ack.state != event.state
                or ack.position != event.position
            ):
                self._record_failure(
                    event,
                    f"acknowledged {ack.stack_id}:{ack.state.value}@{ack.position} instead",
                    attempts=attempt,
                )
                return

            self._delivered.append(event)
            logger.debug(f"Reported {event.stack_id}:{event.state.value} run_id={event.run_id}")
            if self._on_delivered is not None:
                self._on_delivered(event)
            return

    def _record_failure(
        self,
        event: CloudEvent,
        reason: str,
        attempts: int,
        cause: Optional[Exception] = None,
    ) -> None:
        error = ReportingError(
            message=f"Failed to report {event.stack_id}:{event.state.value}: {reason}",
            run_id=event.run_id,
            stack_id=event.stack_id,
            state=event.state.value,
            attempts=attempts,
            cause=cause,
        )
        self._failures.append(error)
        self._broken_stacks.add(event.stack_id)
        logger.error(error.message)


__all__ = [
    "CloudEvent",
    "ReportingPolicy",
    "CloudEventReporter",
]
