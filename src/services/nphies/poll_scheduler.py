"""
Poll Scheduler.

Per-subject state machine driving poll cycles, plus the cancelable deferred
re-poll that follows an acknowledgment.

State Diagram:
    IDLE | DONE | ERROR -> POLLING                  (poll)
    ACKNOWLEDGED_WAITING_FINAL -> POLLING           (poll, deferred_poll)
    POLLING -> IDLE                                 (queued, nothing_final)
    POLLING -> DONE                                 (final_response)
    POLLING -> ACKNOWLEDGED_WAITING_FINAL           (acknowledged)
    POLLING -> ERROR                                (failed)
    any -> IDLE                                     (cancel)

A cycle claims the polling state before its first await, so at most one
poll per subject is in flight. At most one deferred poll is pending per
subject. Starting a poll or cancelling clears it. A cancelled cycle still
persists what it received but no longer changes state or schedules a timer.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from src.core.config import NphiesSettings, get_nphies_settings
from src.core.enums import (
    CommunicationType,
    FinalResponseStatus,
    PollOutcome,
    PollState,
    ResponseCode,
)
from src.gateways.nphies_gateway import NphiesGateway, TransportError
from src.services.nphies.bundle_composer import BundleComposer
from src.services.nphies.correlation_store import CorrelationStore
from src.services.nphies.errors import (
    ExchangeError,
    ExchangeIssue,
    NormalizedError,
    PollInProgressError,
    SubjectNotFoundError,
    normalize_error,
)
from src.services.nphies.records import (
    CommunicationRecord,
    CommunicationRequestRecord,
    SubjectRef,
)
from src.services.nphies.response_interpreter import (
    ClaimResponseInfo,
    InterpretedResponse,
    ResponseInterpreter,
    classify_final_status,
)

logger = logging.getLogger(__name__)


class PollEvent(str, Enum):
    """Events that trigger scheduler transitions."""

    POLL = "poll"
    DEFERRED_POLL = "deferred_poll"
    QUEUED = "queued"
    FINAL_RESPONSE = "final_response"
    ACKNOWLEDGED = "acknowledged"
    NOTHING_FINAL = "nothing_final"
    FAILED = "failed"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Transition:
    """Represents a valid state transition."""

    from_state: PollState
    to_state: PollState
    event: PollEvent


# =============================================================================
# Valid Transitions Definition
# =============================================================================


VALID_TRANSITIONS: list[Transition] = [
    # Starting a poll
    Transition(PollState.IDLE, PollState.POLLING, PollEvent.POLL),
    Transition(PollState.DONE, PollState.POLLING, PollEvent.POLL),
    Transition(PollState.ERROR, PollState.POLLING, PollEvent.POLL),
    Transition(PollState.ACKNOWLEDGED_WAITING_FINAL, PollState.POLLING, PollEvent.POLL),
    Transition(PollState.ACKNOWLEDGED_WAITING_FINAL, PollState.POLLING, PollEvent.DEFERRED_POLL),

    # Results of a poll
    Transition(PollState.POLLING, PollState.IDLE, PollEvent.QUEUED),
    Transition(PollState.POLLING, PollState.IDLE, PollEvent.NOTHING_FINAL),
    Transition(PollState.POLLING, PollState.DONE, PollEvent.FINAL_RESPONSE),
    Transition(PollState.POLLING, PollState.ACKNOWLEDGED_WAITING_FINAL, PollEvent.ACKNOWLEDGED),
    Transition(PollState.POLLING, PollState.ERROR, PollEvent.FAILED),

    # Cancel from anywhere
    *[Transition(state, PollState.IDLE, PollEvent.CANCEL) for state in PollState],
]


@dataclass
class PollCycleResult:
    """What one poll cycle found and where it left the scheduler."""

    subject: SubjectRef
    outcome: PollOutcome
    state: PollState
    response_code: Optional[ResponseCode] = None
    communication_requests: list[CommunicationRequestRecord] = field(default_factory=list)
    acknowledgments: list[CommunicationRecord] = field(default_factory=list)
    claim_responses: list[ClaimResponseInfo] = field(default_factory=list)
    final_response_status: Optional[FinalResponseStatus] = None
    errors: list[ExchangeIssue] = field(default_factory=list)
    error: Optional[NormalizedError] = None
    retryable: bool = False
    auto_poll_scheduled: bool = False
    request_bundle: Optional[dict[str, Any]] = None
    response_bundle: Optional[dict[str, Any]] = None


@dataclass
class PollStatus:
    """Snapshot of a scheduler for display."""

    subject: SubjectRef
    state: PollState
    auto_poll_pending: bool = False
    auto_poll_due_at: Optional[datetime] = None
    last_outcome: Optional[PollOutcome] = None
    last_polled_at: Optional[datetime] = None
    final_response_status: Optional[FinalResponseStatus] = None
    last_error: Optional[NormalizedError] = None
    valid_events: list[PollEvent] = field(default_factory=list)


TransitionCallback = Callable[[SubjectRef, PollState, PollState, PollEvent], None]


class PollScheduler:
    """
    Poll state machine for one subject.

    Owns only transient state and the pending timer handle; everything
    received is persisted through the correlation store.
    """

    def __init__(
        self,
        subject: SubjectRef,
        store: CorrelationStore,
        gateway: NphiesGateway,
        composer: Optional[BundleComposer] = None,
        interpreter: Optional[ResponseInterpreter] = None,
        settings: Optional[NphiesSettings] = None,
    ):
        self.subject = subject
        self._store = store
        self._gateway = gateway
        self._settings = settings or get_nphies_settings()
        self._composer = composer or BundleComposer(self._settings)
        self._interpreter = interpreter or ResponseInterpreter()

        self._state = PollState.IDLE
        self._epoch = 0
        self._timer: Optional[asyncio.Task] = None
        self._timer_due_at: Optional[datetime] = None
        self._callbacks: list[TransitionCallback] = []

        self._last_outcome: Optional[PollOutcome] = None
        self._last_polled_at: Optional[datetime] = None
        self._final_response_status: Optional[FinalResponseStatus] = None
        self._last_error: Optional[NormalizedError] = None

        self._transitions: dict[tuple[PollState, PollEvent], Transition] = {
            (t.from_state, t.event): t for t in VALID_TRANSITIONS
        }

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def has_pending_auto_poll(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def status(self) -> PollStatus:
        return PollStatus(
            subject=self.subject,
            state=self._state,
            auto_poll_pending=self.has_pending_auto_poll,
            auto_poll_due_at=self._timer_due_at if self.has_pending_auto_poll else None,
            last_outcome=self._last_outcome,
            last_polled_at=self._last_polled_at,
            final_response_status=self._final_response_status,
            last_error=self._last_error,
            valid_events=self.get_valid_events(),
        )

    def get_valid_events(self) -> list[PollEvent]:
        """Events accepted in the current state."""
        return [event for (state, event) in self._transitions if state == self._state]

    def register_callback(self, callback: TransitionCallback) -> None:
        """Register a callback invoked after every transition."""
        self._callbacks.append(callback)

    def _transition(self, event: PollEvent) -> bool:
        transition = self._transitions.get((self._state, event))
        if transition is None:
            logger.warning(
                f"Invalid poll transition for {self.subject}: "
                f"{self._state.value} + {event.value}"
            )
            return False

        from_state = self._state
        self._state = transition.to_state

        for callback in self._callbacks:
            try:
                callback(self.subject, from_state, transition.to_state, event)
            except Exception as e:
                logger.error(f"Poll transition callback error: {e}")

        logger.info(
            f"Poll scheduler {self.subject} transitioned: "
            f"{from_state.value} -> {transition.to_state.value} (event: {event.value})"
        )
        return True

    # =========================================================================
    # Timer
    # =========================================================================

    def _cancel_timer(self) -> bool:
        timer = self._timer
        self._timer = None
        self._timer_due_at = None
        if timer is not None and not timer.done():
            timer.cancel()
            logger.info(f"Cancelled pending auto-poll for {self.subject}")
            return True
        return False

    def _schedule_deferred_poll(self) -> None:
        self._cancel_timer()
        delay = self._settings.AUTO_POLL_DELAY_SECONDS
        self._timer_due_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self._timer = asyncio.create_task(
            self._run_deferred_poll(delay),
            name=f"nphies-auto-poll-{self.subject}",
        )
        logger.info(f"Auto-poll for {self.subject} scheduled in {delay:.1f}s")

    async def _run_deferred_poll(self, delay: float) -> None:
        await asyncio.sleep(delay)

        # Detach so the poll below does not cancel the task running it
        self._timer = None
        self._timer_due_at = None

        try:
            await self.poll(deferred=True)
        except PollInProgressError:
            logger.info(f"Auto-poll for {self.subject} skipped: poll already running")
        except Exception as e:
            logger.error(f"Auto-poll for {self.subject} failed: {e}")

    # =========================================================================
    # Poll cycle
    # =========================================================================

    async def poll(self, deferred: bool = False) -> PollCycleResult:
        """
        Run one poll cycle.

        Args:
            deferred: True when fired by the auto-poll timer

        Returns:
            PollCycleResult; outcome `cancelled` when a deferred poll no longer applies

        Raises:
            PollInProgressError: A poll for this subject is in flight
            SubjectNotFoundError: No tracking record for the subject
            ValidationError: The poll-request could not be composed
        """
        if deferred and self._state != PollState.ACKNOWLEDGED_WAITING_FINAL:
            if self._state == PollState.POLLING:
                raise PollInProgressError(
                    f"A poll for {self.subject} is already in progress",
                    details={"state": self._state.value},
                )
            logger.info(f"Deferred poll for {self.subject} dropped in state {self._state.value}")
            return PollCycleResult(
                subject=self.subject, outcome=PollOutcome.CANCELLED, state=self._state
            )

        # Claim the polling slot before the first await
        previous_state = self._state
        if not self._transition(PollEvent.DEFERRED_POLL if deferred else PollEvent.POLL):
            raise PollInProgressError(
                f"A poll for {self.subject} is already in progress",
                details={"state": self._state.value},
            )
        if not deferred:
            self._cancel_timer()
        self._epoch += 1
        epoch = self._epoch

        try:
            subject_record = await self._store.get_subject(self.subject)
            if subject_record is None:
                raise SubjectNotFoundError(
                    f"No NPHIES submission registered for {self.subject}",
                    details={"subject": str(self.subject)},
                )
            composed = self._composer.build_poll_request(subject_record)
        except Exception:
            self._release(epoch, previous_state)
            raise

        self._last_polled_at = datetime.now(timezone.utc)

        try:
            response = await self._gateway.process_message(composed.bundle)
        except TransportError as e:
            error = normalize_error(e)
            result = PollCycleResult(
                subject=self.subject,
                outcome=PollOutcome.TRANSPORT_ERROR,
                state=self._state,
                error=error,
                retryable=True,
                request_bundle=composed.bundle,
            )
            return self._finish(epoch, PollEvent.FAILED, result)
        except Exception:
            if epoch == self._epoch:
                self._transition(PollEvent.FAILED)
            raise

        try:
            interpreted = self._interpreter.interpret(response)
            result = await self._apply(interpreted)
        except Exception:
            if epoch == self._epoch:
                self._transition(PollEvent.FAILED)
            raise

        result.request_bundle = composed.bundle
        result.response_bundle = response
        return self._finish(epoch, self._event_for(result.outcome), result)

    async def _apply(self, interpreted: InterpretedResponse) -> PollCycleResult:
        """Persist what arrived and classify the cycle outcome."""
        result = PollCycleResult(
            subject=self.subject,
            outcome=PollOutcome.NOTHING_FINAL,
            state=self._state,
            response_code=interpreted.response_code,
            errors=list(interpreted.errors),
        )

        if interpreted.response_code == ResponseCode.QUEUED:
            result.outcome = PollOutcome.QUEUED
            return result

        if interpreted.is_error:
            result.outcome = PollOutcome.EXCHANGE_ERROR
            result.retryable = interpreted.response_code == ResponseCode.TRANSIENT_ERROR
            result.error = normalize_error(ExchangeError(interpreted.response_code, interpreted.errors))
            return result

        for request in interpreted.communication_requests:
            stored = await self._store.upsert_communication_request(request.to_record(self.subject))
            result.communication_requests.append(stored)

        for ack in interpreted.acknowledgments:
            acknowledged = await self._store.mark_acknowledged(
                ack.communication_id, ack.status, ack.resource
            )
            if acknowledged is not None:
                result.acknowledgments.append(acknowledged)

        result.claim_responses = list(interpreted.claim_responses)
        for claim_response in interpreted.claim_responses:
            final_status = classify_final_status(claim_response)
            if final_status is None:
                continue
            await self._store.record_final_response(self.subject, final_status, claim_response)
            result.final_response_status = final_status
            result.outcome = PollOutcome.FINAL_RESPONSE
            return result

        if any(
            ack.communication_type == CommunicationType.UNSOLICITED and ack.ref == self.subject
            for ack in result.acknowledgments
        ):
            result.outcome = PollOutcome.ACKNOWLEDGED

        return result

    def _release(self, epoch: int, previous_state: PollState) -> None:
        """Give back a polling slot claimed by a cycle that never sent."""
        if epoch != self._epoch or self._state != PollState.POLLING:
            return
        self._state = previous_state
        logger.info(
            f"Poll for {self.subject} not sent; back to {previous_state.value}"
        )

    @staticmethod
    def _event_for(outcome: PollOutcome) -> PollEvent:
        return {
            PollOutcome.QUEUED: PollEvent.QUEUED,
            PollOutcome.NOTHING_FINAL: PollEvent.NOTHING_FINAL,
            PollOutcome.ACKNOWLEDGED: PollEvent.ACKNOWLEDGED,
            PollOutcome.FINAL_RESPONSE: PollEvent.FINAL_RESPONSE,
            PollOutcome.EXCHANGE_ERROR: PollEvent.FAILED,
            PollOutcome.TRANSPORT_ERROR: PollEvent.FAILED,
        }[outcome]

    def _finish(self, epoch: int, event: PollEvent, result: PollCycleResult) -> PollCycleResult:
        if epoch != self._epoch:
            logger.info(f"Poll result for {self.subject} discarded after cancel")
            result.outcome = PollOutcome.CANCELLED
            result.state = self._state
            return result

        self._transition(event)
        self._last_outcome = result.outcome
        if result.final_response_status is not None:
            self._final_response_status = result.final_response_status

        self._last_error = result.error

        if (
            result.outcome == PollOutcome.ACKNOWLEDGED
            and self._settings.AUTO_POLL_AFTER_ACKNOWLEDGMENT
        ):
            self._schedule_deferred_poll()
            result.auto_poll_scheduled = True

        result.state = self._state
        return result

    def cancel(self) -> bool:
        """
        Cancel the pending auto-poll and return to idle.

        An in-flight HTTP call is not aborted; its result is discarded.

        Returns:
            True when a pending auto-poll was cancelled
        """
        cancelled = self._cancel_timer()
        self._epoch += 1
        self._transition(PollEvent.CANCEL)
        return cancelled

    async def shutdown(self) -> None:
        """Cancel and await the pending timer."""
        timer = self._timer
        self._cancel_timer()
        if timer is not None:
            await asyncio.gather(timer, return_exceptions=True)


class PollSchedulerRegistry:
    """One PollScheduler per subject, created on first use."""

    def __init__(
        self,
        store: CorrelationStore,
        gateway: NphiesGateway,
        composer: Optional[BundleComposer] = None,
        interpreter: Optional[ResponseInterpreter] = None,
        settings: Optional[NphiesSettings] = None,
    ):
        self._store = store
        self._gateway = gateway
        self._settings = settings or get_nphies_settings()
        self._composer = composer or BundleComposer(self._settings)
        self._interpreter = interpreter or ResponseInterpreter()
        self._schedulers: dict[SubjectRef, PollScheduler] = {}
        self._failed_cycles = 0
        self._final_responses = 0

    def get(self, subject: SubjectRef) -> PollScheduler:
        scheduler = self._schedulers.get(subject)
        if scheduler is None:
            scheduler = PollScheduler(
                subject,
                store=self._store,
                gateway=self._gateway,
                composer=self._composer,
                interpreter=self._interpreter,
                settings=self._settings,
            )
            scheduler.register_callback(self._record_transition)
            self._schedulers[subject] = scheduler
        return scheduler

    def peek(self, subject: SubjectRef) -> Optional[PollScheduler]:
        """Existing scheduler for a subject, without creating one."""
        return self._schedulers.get(subject)

    def _record_transition(
        self, subject: SubjectRef, from_state: PollState, to_state: PollState, event: PollEvent
    ) -> None:
        if to_state == PollState.ERROR:
            self._failed_cycles += 1
        elif to_state == PollState.DONE:
            self._final_responses += 1

    def summary(self) -> dict[str, Any]:
        """Scheduler counts for the detailed health check."""
        schedulers = list(self._schedulers.values())
        return {
            "subjects": len(schedulers),
            "polling": sum(1 for s in schedulers if s.state == PollState.POLLING),
            "auto_poll_pending": sum(1 for s in schedulers if s.has_pending_auto_poll),
            "failed_cycles": self._failed_cycles,
            "final_responses": self._final_responses,
        }

    async def shutdown(self) -> None:
        """Cancel every pending auto-poll."""
        await asyncio.gather(*(s.shutdown() for s in self._schedulers.values()))
        logger.info(f"Poll scheduler registry stopped ({len(self._schedulers)} subject(s))")
