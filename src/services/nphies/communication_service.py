"""
NPHIES Communication Service.

Use cases behind the REST API:
- register a submission for messaging
- preview / send Communications (solicited and unsolicited)
- preview / send status-check
- preview / run polls, inspect and cancel the auto-poll
- refresh one or all pending Communication acknowledgments
- list Communications and CommunicationRequests
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from src.core.config import NphiesSettings, get_nphies_settings
from src.core.enums import (
    CommunicationStatus,
    CommunicationType,
    NphiesEndpoint,
    ResponseCode,
)
from src.gateways.nphies_gateway import NphiesGateway
from src.services.nphies.bundle_composer import BundleComposer, ComposedBundle
from src.services.nphies.correlation_store import CorrelationStore
from src.services.nphies.errors import (
    CommunicationNotFoundError,
    CommunicationRequestNotFoundError,
    ExchangeError,
    ExchangeIssue,
    RequestAlreadyRespondedError,
    SubjectNotFoundError,
    ValidationError,
)
from src.services.nphies.poll_scheduler import (
    PollCycleResult,
    PollSchedulerRegistry,
    PollStatus,
)
from src.services.nphies.records import (
    CommunicationDraft,
    CommunicationRecord,
    CommunicationRequestRecord,
    SubjectRecord,
    SubjectRef,
)
from src.services.nphies.response_interpreter import ResponseInterpreter

logger = logging.getLogger(__name__)


@dataclass
class CommunicationSendResult:
    """Outcome of sending one Communication."""

    communication: CommunicationRecord
    response_code: Optional[ResponseCode]
    acknowledgment_status: Optional[ResponseCode]
    queued: bool
    request_bundle: dict[str, Any]
    response_bundle: dict[str, Any]


@dataclass
class StatusCheckResult:
    """Outcome of a status-check exchange."""

    response_code: Optional[ResponseCode]
    queued: bool
    request_bundle: dict[str, Any]
    response_bundle: dict[str, Any]
    issues: list[ExchangeIssue] = field(default_factory=list)


@dataclass
class AcknowledgmentRefreshResult:
    """Outcome of refreshing a Communication's acknowledgment."""

    communication: CommunicationRecord
    acknowledged: bool
    polled: bool
    poll_result: Optional[PollCycleResult] = None


@dataclass
class BulkAcknowledgmentRefreshResult:
    """Outcome of refreshing every pending acknowledgment of a subject."""

    subject: SubjectRef
    polled: bool
    total: int = 0
    acknowledged: int = 0
    still_queued: int = 0
    communications: list[CommunicationRecord] = field(default_factory=list)
    poll_result: Optional[PollCycleResult] = None


class CommunicationService:
    """Orchestrates composer, gateway, interpreter, store and schedulers."""

    def __init__(
        self,
        store: CorrelationStore,
        gateway: NphiesGateway,
        schedulers: PollSchedulerRegistry,
        composer: Optional[BundleComposer] = None,
        interpreter: Optional[ResponseInterpreter] = None,
        settings: Optional[NphiesSettings] = None,
    ):
        self._store = store
        self._gateway = gateway
        self._schedulers = schedulers
        self._settings = settings or get_nphies_settings()
        self._composer = composer or BundleComposer(self._settings)
        self._interpreter = interpreter or ResponseInterpreter()

    # =========================================================================
    # Subjects
    # =========================================================================

    async def register_submission(self, record: SubjectRecord) -> SubjectRecord:
        """Create or update the submission tracking record."""
        if not record.provider_nphies_id or not record.insurer_nphies_id:
            raise ValidationError(
                "Provider and insurer NPHIES ids are required",
                details={"subject": str(record.ref)},
            )
        return await self._store.upsert_subject(record)

    async def get_submission(self, subject: SubjectRef) -> SubjectRecord:
        record = await self._store.get_subject(subject)
        if record is None:
            raise SubjectNotFoundError(
                f"No NPHIES submission registered for {subject}",
                details={"subject": str(subject)},
            )
        return record

    # =========================================================================
    # Communications
    # =========================================================================

    async def _prepare_draft(
        self, subject: SubjectRecord, draft: CommunicationDraft
    ) -> tuple[CommunicationDraft, Optional[CommunicationRequestRecord]]:
        """Check solicited drafts against the request they answer."""
        BundleComposer.validate_draft(draft)
        if draft.communication_type != CommunicationType.SOLICITED:
            return draft, None

        request = await self._store.get_communication_request(draft.based_on_request_id or "")
        if request is None or not request.belongs_to(subject.ref):
            raise CommunicationRequestNotFoundError(
                f"CommunicationRequest {draft.based_on_request_id} not found for {subject.ref}",
                details={"request_id": draft.based_on_request_id},
            )
        if request.is_responded:
            raise RequestAlreadyRespondedError(
                f"CommunicationRequest {request.request_id} was already answered",
                details={
                    "request_id": request.request_id,
                    "response_communication_id": request.response_communication_id,
                },
            )

        if not draft.about_reference and request.about_reference:
            draft.about_reference = request.about_reference
            draft.about_type = request.about_type or draft.about_type
        return draft, request

    async def preview_communication(
        self, subject: SubjectRef, draft: CommunicationDraft
    ) -> ComposedBundle:
        """Compose the Communication Bundle without sending it."""
        record = await self.get_submission(subject)
        draft, _ = await self._prepare_draft(record, draft)
        return self._composer.build_communication(record, draft)

    async def send_communication(
        self,
        subject: SubjectRef,
        draft: CommunicationDraft,
        endpoint: Optional[NphiesEndpoint] = None,
    ) -> CommunicationSendResult:
        """
        Compose, send and record a Communication.

        Raises:
            ValidationError: Bad draft; nothing is sent
            RequestAlreadyRespondedError: The request is answered or being answered
            TransportError: HTTP failure; nothing is recorded
            ExchangeError: fatal-error / transient-error, raised after recording
        """
        record = await self.get_submission(subject)
        draft, request = await self._prepare_draft(record, draft)
        composed = self._composer.build_communication(record, draft)

        if request is not None:
            await self._store.reserve_request(request.request_id, composed.focus_id)
        try:
            response = await self._gateway.process_message(composed.bundle, endpoint)
            interpreted = self._interpreter.interpret(response)
        except Exception:
            await self._release(request, composed.focus_id)
            raise

        if interpreted.is_queued:
            ack_status: Optional[ResponseCode] = ResponseCode.QUEUED
        else:
            ack_status = interpreted.response_code
        failed = interpreted.is_error
        now = datetime.now(timezone.utc)

        communication = CommunicationRecord(
            communication_id=composed.focus_id,
            subject_type=subject.subject_type,
            subject_id=subject.subject_id,
            communication_type=draft.communication_type,
            payloads=composed.payloads or [],
            based_on_request_id=draft.based_on_request_id if request else None,
            category=draft.category.value,
            priority=draft.priority.value,
            about_reference=draft.about_reference or self._composer.about_reference(record),
            status=CommunicationStatus.DRAFT if failed else CommunicationStatus.COMPLETED,
            sent_at=now,
            nphies_communication_id=interpreted.message_header_id,
            acknowledgment_received=ack_status is not None and ack_status != ResponseCode.QUEUED,
            acknowledgment_status=ack_status,
            acknowledgment_at=now if ack_status is not None else None,
            request_bundle=composed.bundle,
            response_bundle=response,
        )
        try:
            communication = await self._store.record_sent_communication(communication)
        except Exception:
            await self._release(request, composed.focus_id)
            raise

        if failed:
            await self._release(request, composed.focus_id)
            logger.error(
                f"Communication {composed.focus_id} for {subject} rejected: "
                f"{interpreted.response_code.value if interpreted.response_code else 'no response code'}"
            )
            raise ExchangeError(interpreted.response_code, interpreted.errors)

        if request is not None:
            await self._store.mark_responded(request.request_id, composed.focus_id)

        logger.info(
            f"Sent {draft.communication_type.value} communication {composed.focus_id} "
            f"for {subject} (ack: {ack_status.value if ack_status else 'none'})"
        )
        return CommunicationSendResult(
            communication=communication,
            response_code=interpreted.response_code,
            acknowledgment_status=ack_status,
            queued=interpreted.is_queued,
            request_bundle=composed.bundle,
            response_bundle=response,
        )

    async def _release(
        self, request: Optional[CommunicationRequestRecord], communication_id: str
    ) -> None:
        if request is not None:
            await self._store.release_request(request.request_id, communication_id)

    async def list_communications(self, subject: SubjectRef) -> list[CommunicationRecord]:
        return await self._store.list_communications(subject)

    async def get_communication(
        self, subject: SubjectRef, communication_id: str
    ) -> CommunicationRecord:
        communication = await self._store.get_communication(communication_id)
        if communication is None or communication.ref != subject:
            raise CommunicationNotFoundError(
                f"Communication {communication_id} not found for {subject}",
                details={"communication_id": communication_id},
            )
        return communication

    async def list_communication_requests(
        self, subject: SubjectRef, pending_only: bool = False
    ) -> list[CommunicationRequestRecord]:
        return await self._store.list_communication_requests(subject, pending_only=pending_only)

    async def refresh_acknowledgment(
        self, subject: SubjectRef, communication_id: str
    ) -> AcknowledgmentRefreshResult:
        """
        Return the stored acknowledgment when final, otherwise poll for it.
        """
        communication = await self.get_communication(subject, communication_id)

        if communication.has_final_acknowledgment:
            return AcknowledgmentRefreshResult(
                communication=communication, acknowledged=True, polled=False
            )

        poll_result = await self._schedulers.get(subject).poll()
        refreshed = await self._store.get_communication(communication_id) or communication
        return AcknowledgmentRefreshResult(
            communication=refreshed,
            acknowledged=refreshed.has_final_acknowledgment,
            polled=True,
            poll_result=poll_result,
        )

    async def refresh_all_acknowledgments(
        self, subject: SubjectRef
    ) -> BulkAcknowledgmentRefreshResult:
        """
        Poll once for every sent Communication still awaiting its acknowledgment.

        One poll cycle collects whatever the exchange has queued for the
        subject, so the Communications are re-read afterwards rather than
        polled one by one.
        """
        awaiting = await self._store.find_awaiting_acknowledgment(subject)
        if not awaiting:
            return BulkAcknowledgmentRefreshResult(subject=subject, polled=False)

        poll_result = await self._schedulers.get(subject).poll()

        refreshed: list[CommunicationRecord] = []
        for communication in awaiting:
            current = await self._store.get_communication(communication.communication_id)
            refreshed.append(current or communication)
        acknowledged = sum(1 for c in refreshed if c.has_final_acknowledgment)

        logger.info(
            f"Acknowledgment refresh for {subject}: {acknowledged} of "
            f"{len(refreshed)} acknowledged"
        )
        return BulkAcknowledgmentRefreshResult(
            subject=subject,
            polled=True,
            total=len(refreshed),
            acknowledged=acknowledged,
            still_queued=len(refreshed) - acknowledged,
            communications=refreshed,
            poll_result=poll_result,
        )

    # =========================================================================
    # Status check
    # =========================================================================

    async def preview_status_check(self, subject: SubjectRef) -> ComposedBundle:
        record = await self.get_submission(subject)
        return self._composer.build_status_check(record)

    async def send_status_check(
        self, subject: SubjectRef, endpoint: Optional[NphiesEndpoint] = None
    ) -> StatusCheckResult:
        """
        Send a status-check.

        Raises:
            ExchangeError: The exchange answered fatal-error / transient-error
        """
        record = await self.get_submission(subject)
        composed = self._composer.build_status_check(record)
        response = await self._gateway.process_message(composed.bundle, endpoint)
        interpreted = self._interpreter.interpret(response)

        if interpreted.is_error:
            raise ExchangeError(interpreted.response_code, interpreted.errors)

        logger.info(
            f"Status-check for {subject}: "
            f"{interpreted.response_code.value if interpreted.response_code else 'none'}"
        )
        return StatusCheckResult(
            response_code=interpreted.response_code,
            queued=interpreted.is_queued,
            request_bundle=composed.bundle,
            response_bundle=response,
            issues=interpreted.errors,
        )

    # =========================================================================
    # Poll
    # =========================================================================

    async def preview_poll(self, subject: SubjectRef) -> ComposedBundle:
        record = await self.get_submission(subject)
        return self._composer.build_poll_request(record)

    async def poll(self, subject: SubjectRef) -> PollCycleResult:
        """Run a poll cycle through the subject's scheduler."""
        await self.get_submission(subject)
        return await self._schedulers.get(subject).poll()

    def poll_state(self, subject: SubjectRef) -> PollStatus:
        return self._schedulers.get(subject).status()

    def cancel_auto_poll(self, subject: SubjectRef) -> PollStatus:
        """Cancel the pending auto-poll; subjects never polled have nothing to cancel."""
        scheduler = self._schedulers.peek(subject)
        if scheduler is not None:
            scheduler.cancel()
        return self.poll_state(subject)
